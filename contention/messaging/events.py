"""Observable events a peer coordinator emits to its host.

A host (the CLI transcript printer, a test) can attach purely to these.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class PeerEvent:
    """Base class for all peer events."""

    occurred_at: datetime
    peer_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.occurred_at, datetime):
            raise TypeError("occurred_at must be a datetime")
        if not self.peer_id:
            raise ValueError("peer_id must not be empty")


@dataclass(frozen=True)
class PeerReady(PeerEvent):
    """The peer is idle and able to start a run."""


@dataclass(frozen=True)
class PeerGo(PeerEvent):
    """The peer received a go signal and is starting its benchmark loop."""

    end_time: int

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.end_time < 0:
            raise ValueError("end_time must be non-negative")


@dataclass(frozen=True)
class PeerLog(PeerEvent):
    """One timestamped transcript line."""

    text: str


@dataclass(frozen=True)
class ClientCount(PeerEvent):
    """The registry's latest count of connected peers."""

    count: int
