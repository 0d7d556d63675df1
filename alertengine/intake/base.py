"""Abstract metric source — poll loop, snapshot dispatch, staleness."""

from __future__ import annotations

import abc
import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from types import TracebackType

import structlog

from alertengine.core.clock import Clock
from alertengine.core.types import MetricSnapshot

logger = structlog.stdlib.get_logger()

SnapshotCallback = Callable[[MetricSnapshot], Awaitable[None] | None]


class MetricSource(abc.ABC):
    """Abstract base class for metric sources (one per cluster/server).

    Subclasses implement ``connect()``, ``close()`` and ``poll()``; the base
    class runs the background loop and hands each snapshot to the
    registered callbacks.  A failed poll is logged and retried on the next
    interval; it never removes entities, so an unreachable cluster keeps
    its alerts as they were.

    After ``stale_after`` consecutive failed polls the source is reported
    stale (``source_stale``), once; the next good poll logs
    ``source_recovered`` with how long the source was dark.

    Usage::

        source = MyClusterSource("pve-1", poll_interval_ms=2000)
        source.on_snapshot(intake.handle_snapshot)
        async with source:
            await asyncio.sleep(60)
    """

    def __init__(
        self,
        source_id: str,
        poll_interval_ms: int = 2000,
        stale_after: int = 3,
        clock: Clock | None = None,
    ) -> None:
        self._source_id = source_id
        self._poll_interval_ms = poll_interval_ms
        self._stale_after = stale_after
        self._clock = clock or Clock()
        self._callbacks: list[SnapshotCallback] = []
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._error_count = 0
        self._consecutive_failures = 0
        self._last_poll_time: float = 0.0
        self._last_success_mono: float | None = None

    @property
    def source_id(self) -> str:
        return self._source_id

    @property
    def poll_interval_ms(self) -> int:
        return self._poll_interval_ms

    @property
    def running(self) -> bool:
        return self._running

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def stale(self) -> bool:
        return self._consecutive_failures >= self._stale_after

    @property
    def last_poll_time(self) -> float:
        """Wall-clock epoch ms of the last successful poll (0 if none)."""
        return self._last_poll_time

    def staleness_ms(self) -> float | None:
        """Milliseconds since the last successful poll, None before the first."""
        if self._last_success_mono is None:
            return None
        return self._clock.monotonic_ms() - self._last_success_mono

    def on_snapshot(self, callback: SnapshotCallback) -> None:
        """Register a callback for collected snapshots."""
        self._callbacks.append(callback)

    async def _emit(self, snapshot: MetricSnapshot) -> None:
        for cb in self._callbacks:
            try:
                result = cb(snapshot)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "source_snapshot_callback_error",
                    source_id=self._source_id,
                    samples=len(snapshot.samples),
                )

    @abc.abstractmethod
    async def connect(self) -> None:
        """Establish a connection to the monitored system."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the connection."""

    @abc.abstractmethod
    async def poll(self) -> MetricSnapshot | None:
        """Collect one snapshot, or None if there is nothing new."""

    async def start(self) -> None:
        """Connect and start the background poll loop."""
        if self._running:
            return
        self._running = True
        await self.connect()
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "source_started",
            source_id=self._source_id,
            poll_interval_ms=self._poll_interval_ms,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.close()
        logger.info(
            "source_stopped",
            source_id=self._source_id,
            errors=self._error_count,
            stale=self.stale,
        )

    async def poll_once(self) -> bool:
        """Run one poll and dispatch its snapshot. Returns True on success."""
        try:
            snapshot = await self.poll()
        except asyncio.CancelledError:
            raise
        except Exception:
            self._record_failure()
            return False
        self._record_success()
        if snapshot is not None:
            if snapshot.source_id != self._source_id:
                logger.warning(
                    "source_snapshot_id_mismatch",
                    source_id=self._source_id,
                    snapshot_source_id=snapshot.source_id,
                )
            await self._emit(snapshot)
        return True

    def _record_failure(self) -> None:
        self._error_count += 1
        self._consecutive_failures += 1
        logger.exception(
            "source_poll_error",
            source_id=self._source_id,
            consecutive=self._consecutive_failures,
            staleness_ms=self.staleness_ms(),
        )
        if self._consecutive_failures == self._stale_after:
            logger.warning(
                "source_stale",
                source_id=self._source_id,
                failed_polls=self._consecutive_failures,
                staleness_ms=self.staleness_ms(),
            )

    def _record_success(self) -> None:
        if self.stale:
            logger.info(
                "source_recovered",
                source_id=self._source_id,
                failed_polls=self._consecutive_failures,
                outage_ms=self.staleness_ms(),
            )
        self._consecutive_failures = 0
        self._last_success_mono = self._clock.monotonic_ms()
        self._last_poll_time = self._clock.wall_ms()

    async def _poll_loop(self) -> None:
        interval_secs = self._poll_interval_ms / 1000.0
        while self._running:
            try:
                await self.poll_once()
                await asyncio.sleep(interval_secs)
            except asyncio.CancelledError:
                break

    async def __aenter__(self) -> MetricSource:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
