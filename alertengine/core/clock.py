"""Monotonic / wall clock pair used for every alert timing decision."""

from __future__ import annotations

import time


class Clock:
    """Real clock.

    Elapsed-time comparisons go through ``monotonic_ms()``; anything that is
    persisted or sent to a channel uses ``wall_ms()``.  The two conversion
    helpers re-anchor persisted wall timestamps onto the monotonic clock
    after a restart.
    """

    def monotonic_ms(self) -> float:
        return time.monotonic() * 1000.0

    def wall_ms(self) -> float:
        return time.time() * 1000.0

    def to_monotonic(self, wall_ms: float) -> float:
        """Map a wall-clock timestamp onto the monotonic timeline."""
        return self.monotonic_ms() - (self.wall_ms() - wall_ms)

    def to_wall(self, monotonic_ms: float) -> float:
        """Map a monotonic timestamp back to wall-clock epoch ms."""
        return self.wall_ms() - (self.monotonic_ms() - monotonic_ms)


class ManualClock(Clock):
    """Clock that only moves when told to.

    Used by the replay source (time follows the recorded samples) and by
    tests.  Both timelines advance together, so conversions are exact.
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = float(start_ms)

    def monotonic_ms(self) -> float:
        return self._now

    def wall_ms(self) -> float:
        return self._now

    def set(self, now_ms: float) -> None:
        if now_ms < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = float(now_ms)

    def advance(self, delta_ms: float) -> None:
        self.set(self._now + delta_ms)
