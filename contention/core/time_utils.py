from __future__ import annotations

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def now_ms() -> int:
    """Wall-clock time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


def transcript_timestamp(moment: datetime | None = None) -> str:
    """Format a local ``HH:MM:SS.mmm`` stamp for transcript lines."""
    local = (moment or utc_now()).astimezone()
    return local.strftime("%H:%M:%S.") + f"{local.microsecond // 1000:03d}"
