"""RouterMetrics — delivery counters per channel.

Every drop the router makes (rate limit, cooldown, silence, queue overflow)
increments a counter here so it is observable rather than silent.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass
class ChannelCounters:
    """Counters for a single channel."""

    batches_sent: int = 0
    alerts_sent: int = 0
    failed: int = 0
    retried: int = 0
    rate_limited: int = 0
    cooldown_suppressed: int = 0
    silenced: int = 0
    acknowledged_suppressed: int = 0
    recoveries_cancelled: int = 0
    recoveries_skipped: int = 0


class RouterMetrics:
    """Aggregates per-channel counters plus router-wide queue stats.

    Usage::

        metrics = RouterMetrics()
        metrics.channel("ops-webhook").rate_limited += 1
        snap = metrics.snapshot()
    """

    def __init__(self) -> None:
        self._channels: dict[str, ChannelCounters] = {}
        self.events_published = 0
        self.queue_dropped = 0
        self.queue_high_water = 0

    def channel(self, name: str) -> ChannelCounters:
        counters = self._channels.get(name)
        if counters is None:
            counters = ChannelCounters()
            self._channels[name] = counters
        return counters

    def observe_queue_depth(self, depth: int) -> None:
        if depth > self.queue_high_water:
            self.queue_high_water = depth

    def totals(self) -> ChannelCounters:
        total = ChannelCounters()
        for counters in self._channels.values():
            for name, value in asdict(counters).items():
                setattr(total, name, getattr(total, name) + value)
        return total

    def snapshot(self) -> dict[str, object]:
        return {
            "events_published": self.events_published,
            "queue_dropped": self.queue_dropped,
            "queue_high_water": self.queue_high_water,
            "totals": asdict(self.totals()),
            "channels": {name: asdict(c) for name, c in self._channels.items()},
        }
