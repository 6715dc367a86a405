"""Command line entry points for running registries and peers."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING

from contention.config import AppConfig, load_config
from contention.core.logging_utils import setup_json_logging
from contention.db.backends import connection_factory
from contention.db.job_pool import ConnectionJobPool
from contention.db.models import read_snapshot
from contention.db.schema import RESET_SQL
from contention.messaging.broadcast import (
    REGISTRY_CHANNEL,
    InMemoryBroadcast,
    create_broadcast,
)
from contention.messaging.event_bus import EventBus
from contention.messaging.events import ClientCount, PeerLog
from contention.peer.coordinator import PeerCoordinator
from contention.peer.liveness import FileLockManager, InMemoryLockManager
from contention.peer.registry import PeerRegistry

if TYPE_CHECKING:
    from collections.abc import Callable

    from contention.peer.benchmark import BenchmarkResult

logger = logging.getLogger(__name__)

__all__ = ["main", "parse_args"]

REGISTRATION_TIMEOUT_SEC = 10.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="contention",
        description="Measure SQLite write contention between concurrent peers",
        allow_abbrev=False,
    )
    parser.add_argument("--db-path", help="Override the configured SQLite path.")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level for this session.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("registry", help="Run the peer registry until interrupted.")

    peer = commands.add_parser("peer", help="Run one peer and print its transcript.")
    peer.add_argument("--backend", help="Backend preset label (default: BACKEND).")
    peer.add_argument(
        "--clear", action="store_true", help="Delete the database files before opening."
    )
    peer.add_argument(
        "--start", action="store_true", help="Request a run as soon as the peer is ready."
    )
    peer.add_argument("--duration-ms", type=int, help="Run duration used with --start.")

    start = commands.add_parser("start", help="Reset the tables and request a run.")
    start.add_argument("--backend", help="Backend preset used to reset the tables.")
    start.add_argument("--duration-ms", type=int, help="Run duration in milliseconds.")

    spawn = commands.add_parser("spawn", help="Launch additional peer processes.")
    spawn.add_argument("--count", type=int, default=1, help="Number of peers to launch.")
    spawn.add_argument("--backend", help="Backend preset passed to each peer.")

    demo = commands.add_parser("demo", help="Run a registry and peers in one process.")
    demo.add_argument("--peers", type=int, default=2, help="Number of peers.")
    demo.add_argument("--backend", help="Backend preset label.")
    demo.add_argument("--duration-ms", type=int, help="Run duration in milliseconds.")

    commands.add_parser("report", help="Print the counter and per-peer row counts.")

    args = parser.parse_args(argv)
    for name in ("count", "peers", "duration_ms"):
        value = getattr(args, name, None)
        if value is not None and value <= 0:
            parser.error(f"--{name.replace('_', '-')} must be positive")
    return args


def _prepare_config(args: argparse.Namespace) -> AppConfig:
    """Load configuration, applying CLI overrides."""
    runtime: dict[str, str] = {}
    if args.db_path:
        runtime["db_path"] = args.db_path
    if args.log_level:
        runtime["log_level"] = args.log_level

    try:
        return load_config(runtime=runtime) if runtime else load_config()
    except RuntimeError as exc:
        msg = f"Configuration error: {exc}"
        raise SystemExit(msg) from exc


def _write(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def _attach_printer(events: EventBus, *, prefix_peer: bool = False) -> Callable[[], None]:
    async def on_log(event: PeerLog) -> None:
        _write(f"[{event.peer_id}] {event.text}" if prefix_peer else event.text)

    async def on_clients(event: ClientCount) -> None:
        if not prefix_peer:
            _write(f"connected peers: {event.count}")

    events.subscribe(PeerLog, on_log)
    events.subscribe(ClientCount, on_clients)

    def detach() -> None:
        events.unsubscribe(PeerLog, on_log)
        events.unsubscribe(ClientCount, on_clients)

    return detach


def _locks(config: AppConfig) -> FileLockManager:
    return FileLockManager(
        config.runtime.lock_dir, poll_interval=config.runtime.lock_poll_interval_sec
    )


async def run_registry(config: AppConfig) -> None:
    broadcast = await create_broadcast(config)
    if isinstance(broadcast, InMemoryBroadcast):
        logger.warning("registry_in_memory_broadcast", extra={"hint": "BROADCAST_BACKEND=redis"})
    registry = PeerRegistry(broadcast, _locks(config))
    try:
        await registry.serve()
    finally:
        await registry.stop()
        await broadcast.close()


async def run_peer(config: AppConfig, args: argparse.Namespace) -> None:
    broadcast = await create_broadcast(config)
    events = EventBus()
    detach_printer = _attach_printer(events)
    coordinator = PeerCoordinator.from_config(
        config, broadcast, _locks(config), backend=args.backend, clear=args.clear, events=events
    )
    try:
        await coordinator.prepare()
        _write(f"peer {coordinator.peer_id} ready")
        if args.start:
            await coordinator.request_start(args.duration_ms)
        # Serve go signals until interrupted
        await asyncio.Event().wait()
    finally:
        await coordinator.close()
        detach_printer()
        await broadcast.close()


async def run_start(config: AppConfig, args: argparse.Namespace) -> None:
    backend = config.backend(args.backend)
    pool = await ConnectionJobPool.open(
        connection_factory(backend, busy_timeout=config.database.busy_timeout_sec)
    )
    broadcast = await create_broadcast(config)
    try:
        await pool.query(RESET_SQL)
        duration = args.duration_ms or config.runtime.run_duration_ms
        receivers = await broadcast.publish(REGISTRY_CHANNEL, {"type": "go", "duration": duration})
        if receivers == 0:
            logger.warning("start_no_registry", extra={"duration_ms": duration})
        _write(f"requested a {duration} ms run")
    finally:
        await pool.close()
        await broadcast.close()


async def run_spawn(config: AppConfig, args: argparse.Namespace) -> int:
    command = [sys.executable, "-m", "contention.cli.main"]
    if args.db_path:
        command += ["--db-path", args.db_path]
    command.append("peer")
    if args.backend:
        command += ["--backend", args.backend]

    processes = []
    for _ in range(args.count):
        process = await asyncio.create_subprocess_exec(*command)
        processes.append(process)
        logger.info("peer_spawned", extra={"pid": process.pid})
        _write(f"spawned peer process {process.pid}")

    try:
        codes = await asyncio.gather(*(process.wait() for process in processes))
    finally:
        for process in processes:
            if process.returncode is None:
                process.terminate()
    return max(codes, default=0)


async def run_demo(config: AppConfig, args: argparse.Namespace) -> int:
    broadcast = InMemoryBroadcast()
    locks = InMemoryLockManager()
    events = EventBus()
    detach_printer = _attach_printer(events, prefix_peer=True)

    registry = PeerRegistry(broadcast, locks)
    await registry.start()
    peers = [
        PeerCoordinator.from_config(
            config, broadcast, locks, backend=args.backend, clear=index == 0, events=events
        )
        for index in range(args.peers)
    ]
    try:
        for peer in peers:
            await peer.prepare()
        async with asyncio.timeout(REGISTRATION_TIMEOUT_SEC):
            while registry.count < len(peers):
                await asyncio.sleep(0.01)

        runs = [asyncio.create_task(peer.next_run()) for peer in peers]
        await peers[0].request_start(args.duration_ms)
        results: list[BenchmarkResult] = await asyncio.gather(*runs)
    finally:
        for peer in peers:
            await peer.close()
        detach_printer()
        await registry.stop()
        await broadcast.close()

    snapshot = read_snapshot(config.backend(args.backend).database_path)
    committed = sum(result.committed for result in results)
    _write(f"counter={snapshot.counter} committed={committed} logged={snapshot.total}")
    return 0 if snapshot.counter == committed else 1


def run_report(config: AppConfig) -> None:
    snapshot = read_snapshot(config.runtime.db_path)
    _write(
        json.dumps(
            {
                "counter": snapshot.counter,
                "transactions": snapshot.counts,
                "total": snapshot.total,
                "latest_time": snapshot.latest_time,
            },
            sort_keys=True,
        )
    )


async def run_command(config: AppConfig, args: argparse.Namespace) -> int:
    if args.command == "registry":
        await run_registry(config)
    elif args.command == "peer":
        await run_peer(config, args)
    elif args.command == "start":
        await run_start(config, args)
    elif args.command == "spawn":
        return await run_spawn(config, args)
    elif args.command == "demo":
        return await run_demo(config, args)
    elif args.command == "report":
        run_report(config)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``python -m contention.cli.main``."""
    args = parse_args(argv)
    config = _prepare_config(args)
    setup_json_logging(
        config.runtime.log_level,
        use_loguru=config.runtime.log_backend == "loguru",
        log_file=config.runtime.log_file,
    )
    try:
        return asyncio.run(run_command(config, args))
    except KeyboardInterrupt:  # pragma: no cover - user stopped a long-running command
        return 0
    except Exception as exc:
        logger.exception("cli_command_failed", exc_info=exc, extra={"command": args.command})
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
