"""Tests for RouterMetrics — per-channel counters and totals."""

from __future__ import annotations

from alertengine.notify.metrics import RouterMetrics


class TestRouterMetrics:
    def test_channel_counters_created_on_demand(self) -> None:
        metrics = RouterMetrics()
        metrics.channel("ops").batches_sent += 1
        assert metrics.channel("ops").batches_sent == 1

    def test_totals(self) -> None:
        metrics = RouterMetrics()
        metrics.channel("a").rate_limited += 2
        metrics.channel("b").rate_limited += 3
        metrics.channel("b").failed += 1
        totals = metrics.totals()
        assert totals.rate_limited == 5
        assert totals.failed == 1

    def test_high_water(self) -> None:
        metrics = RouterMetrics()
        metrics.observe_queue_depth(4)
        metrics.observe_queue_depth(2)
        assert metrics.queue_high_water == 4

    def test_snapshot_shape(self) -> None:
        metrics = RouterMetrics()
        metrics.channel("ops").alerts_sent += 7
        snap = metrics.snapshot()
        assert snap["channels"]["ops"]["alerts_sent"] == 7  # type: ignore[index]
        assert snap["totals"]["alerts_sent"] == 7  # type: ignore[index]
        assert snap["queue_dropped"] == 0
