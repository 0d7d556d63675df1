#!/usr/bin/env python3
"""Alert engine entrypoint — wires the engine from settings and runs it.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config file
    python scripts/run.py --config config/settings.yaml

    # Override log level
    python scripts/run.py --log-level DEBUG

    # Replay recorded samples through the engine and exit
    python scripts/run.py --replay samples.jsonl

    # Send a test notification through one channel and exit
    python scripts/run.py --test-channel ops-webhook
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from alertengine.core.clock import ManualClock
from alertengine.core.config import ConfigError, load_settings
from alertengine.core.logging import setup_logging
from alertengine.engine import AlertEngine
from alertengine.factory import create_engine
from alertengine.intake.exceptions import ReplayFormatError
from alertengine.intake.replay import JsonlReplaySource
from alertengine.notify.exceptions import NotifyError

logger = structlog.get_logger(__name__)


async def run_replay(engine: AlertEngine, source: JsonlReplaySource) -> int:
    await engine.start()
    try:
        samples = await source.replay(engine)
    except ReplayFormatError as exc:
        logger.error("replay_file_invalid", error=str(exc))
        return 1
    finally:
        await engine.stop()

    stats = engine.stats()
    logger.info(
        "replay_summary",
        samples=samples,
        alerts=stats["alerts"],
        notifications=stats["notifications"],
    )
    return 0


async def run_test_channel(engine: AlertEngine, channel: str) -> int:
    try:
        ok = await engine.send_test(channel)
    except NotifyError as exc:
        print(f"Test notification failed: {exc}", file=sys.stderr)
        return 1
    finally:
        await engine.router.stop(grace_secs=0)
    print(f"Test notification to {channel}: {'sent' if ok else 'FAILED'}")
    return 0 if ok else 1


async def run(args: argparse.Namespace) -> int:
    """Start the engine and run until interrupted."""
    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    setup_logging(level=args.log_level)

    clock = ManualClock() if args.replay else None
    try:
        engine = create_engine(settings, clock=clock, persist=not args.replay)
    except NotifyError as exc:
        print(f"Invalid channel configuration: {exc}", file=sys.stderr)
        return 2

    if args.test_channel:
        return await run_test_channel(engine, args.test_channel)

    if isinstance(clock, ManualClock):
        return await run_replay(engine, JsonlReplaySource(args.replay, clock))

    logger.info(
        "engine_starting",
        channels=[c.name for c in settings.channels],
        state_path=settings.engine.state_path,
    )

    await engine.start()

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("engine_shutting_down")
    await engine.stop()

    stats = engine.stats()
    logger.info(
        "engine_exit_summary",
        alerts=stats["alerts"],
        notifications=stats["notifications"],
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the alert evaluation and notification engine.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    parser.add_argument(
        "--replay",
        default=None,
        help="Replay a JSON Lines sample file instead of running live",
    )
    parser.add_argument(
        "--test-channel",
        default=None,
        help="Send a test notification through the named channel and exit",
    )
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
