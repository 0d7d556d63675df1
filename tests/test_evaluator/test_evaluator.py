"""Tests for AlertEvaluator — lifecycle, sustained duration, flapping, restart."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from alertengine.core.clock import ManualClock
from alertengine.core.config import EvaluatorConfig
from alertengine.core.types import (
    AlertEvent,
    AlertEventKind,
    AlertKey,
    AlertState,
    EntityKey,
    EventReason,
    MetricKind,
    MetricSample,
    ThresholdRule,
)
from alertengine.evaluator.evaluator import AlertEvaluator
from alertengine.evaluator.exceptions import UnknownAlertError
from alertengine.rules.registry import ThresholdRegistry

VM101 = EntityKey(source="pve-1", entity_id="vm-101")
VM102 = EntityKey(source="pve-1", entity_id="vm-102")
CPU101 = AlertKey(entity=VM101, metric_kind=MetricKind.CPU)


# ── Helpers ─────────────────────────────────────────────────────


def _registry(
    threshold: float = 85.0,
    duration: int = 0,
    kind: MetricKind = MetricKind.CPU,
) -> ThresholdRegistry:
    reg = ThresholdRegistry()
    reg.set_global_rule(kind, ThresholdRule(
        metric_kind=kind, threshold=threshold, sustained_duration_ms=duration,
    ))
    return reg


def _make(
    duration: int = 0,
    recovery_delay_ms: int = 0,
    registry: ThresholdRegistry | None = None,
    clock: ManualClock | None = None,
) -> tuple[AlertEvaluator, ManualClock, list[AlertEvent]]:
    clock = clock or ManualClock()
    evaluator = AlertEvaluator(
        registry or _registry(duration=duration),
        EvaluatorConfig(recovery_delay_ms=recovery_delay_ms),
        clock,
    )
    events: list[AlertEvent] = []
    evaluator.on_event(events.append)
    return evaluator, clock, events


async def _feed(
    evaluator: AlertEvaluator,
    clock: ManualClock,
    at: float,
    value: float,
    entity: EntityKey = VM101,
    kind: MetricKind = MetricKind.CPU,
) -> AlertState:
    clock.set(at)
    return await evaluator.submit_sample(MetricSample(
        entity=entity, metric_kind=kind, value=value, timestamp=at,
    ))


def _kinds(events: list[AlertEvent]) -> list[AlertEventKind]:
    return [e.kind for e in events]


# ── Sustained duration ──────────────────────────────────────────


class TestSustainedDuration:
    async def test_below_threshold_never_fires(self) -> None:
        ev, clock, events = _make(duration=0)
        for i in range(10):
            state = await _feed(ev, clock, i * 1000, 84.9)
            assert state == AlertState.OK
        assert events == []
        assert ev.get(CPU101) is None

    async def test_scenario_pending_then_firing_once(self) -> None:
        ev, clock, events = _make(duration=300_000)
        assert await _feed(ev, clock, 0, 90.0) == AlertState.PENDING
        for t in (60_000, 120_000, 180_000):
            assert await _feed(ev, clock, t, 90.0) == AlertState.PENDING
        assert events == []
        assert await _feed(ev, clock, 300_000, 90.0) == AlertState.FIRING
        assert _kinds(events) == [AlertEventKind.FIRED]
        # further breaching samples do not re-fire
        await _feed(ev, clock, 360_000, 95.0)
        assert _kinds(events) == [AlertEventKind.FIRED]

    async def test_one_ms_short_then_drop_never_fires(self) -> None:
        ev, clock, events = _make(duration=300_000)
        await _feed(ev, clock, 0, 90.0)
        await _feed(ev, clock, 299_999, 90.0)
        assert await _feed(ev, clock, 300_000, 50.0) == AlertState.OK
        assert events == []
        assert ev.get(CPU101) is None

    async def test_zero_duration_fires_on_first_breach(self) -> None:
        ev, clock, events = _make(duration=0)
        assert await _feed(ev, clock, 0, 85.0) == AlertState.FIRING
        assert _kinds(events) == [AlertEventKind.FIRED]

    async def test_sweep_promotes_pending(self) -> None:
        ev, clock, events = _make(duration=300_000)
        await _feed(ev, clock, 0, 90.0)
        clock.set(299_000)
        await ev.sweep()
        assert events == []
        clock.set(300_000)
        await ev.sweep()
        assert _kinds(events) == [AlertEventKind.FIRED]
        assert ev.get(CPU101).state == AlertState.FIRING  # type: ignore[union-attr]

    async def test_no_rule_never_creates_alerts(self) -> None:
        ev, clock, events = _make(duration=0)
        await _feed(ev, clock, 0, 100.0, kind=MetricKind.DISK)
        assert len(ev) == 0
        assert events == []


# ── Recovery / flapping ─────────────────────────────────────────


class TestRecovery:
    async def test_recovered_after_delay(self) -> None:
        ev, clock, events = _make(recovery_delay_ms=30_000)
        await _feed(ev, clock, 0, 90.0)
        assert await _feed(ev, clock, 1_000, 50.0) == AlertState.RECOVERING
        assert _kinds(events) == [AlertEventKind.FIRED]
        assert await _feed(ev, clock, 31_000, 50.0) == AlertState.OK
        assert _kinds(events) == [AlertEventKind.FIRED, AlertEventKind.RECOVERED]
        assert events[1].reason == EventReason.THRESHOLD

    async def test_recovery_checked_by_sweep(self) -> None:
        ev, clock, events = _make(recovery_delay_ms=30_000)
        await _feed(ev, clock, 0, 90.0)
        await _feed(ev, clock, 1_000, 50.0)
        clock.set(30_999)
        await ev.sweep()
        assert len(events) == 1
        clock.set(31_000)
        await ev.sweep()
        assert _kinds(events) == [AlertEventKind.FIRED, AlertEventKind.RECOVERED]
        assert len(ev) == 0

    async def test_flap_suppressed(self) -> None:
        ev, clock, events = _make(recovery_delay_ms=30_000)
        await _feed(ev, clock, 0, 90.0)
        await _feed(ev, clock, 1_000, 50.0)
        assert await _feed(ev, clock, 2_000, 91.0) == AlertState.FIRING
        await _feed(ev, clock, 3_000, 50.0)
        await _feed(ev, clock, 4_000, 92.0)
        assert _kinds(events) == [AlertEventKind.FIRED]

    async def test_zero_recovery_delay_recovers_immediately(self) -> None:
        ev, clock, events = _make(recovery_delay_ms=0)
        await _feed(ev, clock, 0, 90.0)
        assert await _feed(ev, clock, 1_000, 10.0) == AlertState.OK
        assert _kinds(events) == [AlertEventKind.FIRED, AlertEventKind.RECOVERED]

    async def test_liveness_down_then_up(self) -> None:
        reg = _registry(threshold=0.0, duration=10_000, kind=MetricKind.LIVENESS)
        ev, clock, events = _make(registry=reg)
        await _feed(ev, clock, 0, 0.0, kind=MetricKind.LIVENESS)
        await _feed(ev, clock, 10_000, 0.0, kind=MetricKind.LIVENESS)
        assert _kinds(events) == [AlertEventKind.FIRED]
        await _feed(ev, clock, 12_000, 1.0, kind=MetricKind.LIVENESS)
        assert _kinds(events) == [AlertEventKind.FIRED, AlertEventKind.RECOVERED]


# ── Stale samples ───────────────────────────────────────────────


class TestStaleSamples:
    async def test_out_of_order_sample_ignored(self) -> None:
        ev, clock, events = _make(recovery_delay_ms=0)
        await _feed(ev, clock, 0, 90.0)
        clock.set(5_000)
        state = await ev.submit_sample(MetricSample(
            entity=VM101, metric_kind=MetricKind.CPU, value=10.0, timestamp=0,
        ))
        assert state == AlertState.FIRING
        assert ev.stats()["samples_ignored"] == 1
        assert _kinds(events) == [AlertEventKind.FIRED]

    async def test_duplicate_timestamp_ignored(self) -> None:
        ev, clock, events = _make(duration=1_000)
        await _feed(ev, clock, 0, 90.0)
        await _feed(ev, clock, 0, 10.0)
        assert ev.get(CPU101).state == AlertState.PENDING  # type: ignore[union-attr]


# ── Entity removal / rule changes ───────────────────────────────


class TestRemovalAndRuleChanges:
    async def test_remove_firing_entity_emits_recovered(self) -> None:
        ev, clock, events = _make()
        await _feed(ev, clock, 0, 90.0)
        removed = await ev.remove_entity(VM101)
        assert removed == 1
        assert _kinds(events) == [AlertEventKind.FIRED, AlertEventKind.RECOVERED]
        assert events[1].reason == EventReason.ENTITY_REMOVED
        assert len(ev) == 0

    async def test_remove_pending_entity_is_silent(self) -> None:
        ev, clock, events = _make(duration=60_000)
        await _feed(ev, clock, 0, 90.0)
        await ev.remove_entity(VM101)
        assert events == []
        assert len(ev) == 0

    async def test_remove_unknown_entity(self) -> None:
        ev, _, events = _make()
        assert await ev.remove_entity(VM102) == 0
        assert events == []

    async def test_rule_disabled_while_firing(self) -> None:
        reg = _registry()
        ev, clock, events = _make(registry=reg)
        await _feed(ev, clock, 0, 90.0)
        reg.set_custom_rule(VM101, MetricKind.CPU, ThresholdRule(
            metric_kind=MetricKind.CPU, enabled=False, threshold=85.0,
        ))
        await ev.sweep()
        assert _kinds(events) == [AlertEventKind.FIRED, AlertEventKind.RECOVERED]
        assert events[1].reason == EventReason.RULE_DISABLED

    async def test_rule_removed_while_pending_is_silent(self) -> None:
        reg = _registry(duration=60_000)
        ev, clock, events = _make(registry=reg)
        await _feed(ev, clock, 0, 90.0)
        reg.set_global_rule(MetricKind.CPU, None)
        await ev.sweep()
        assert events == []
        assert len(ev) == 0

    async def test_custom_disabled_scenario(self) -> None:
        reg = _registry()
        reg.set_custom_rule(VM101, MetricKind.CPU, ThresholdRule(
            metric_kind=MetricKind.CPU, enabled=False, threshold=85.0,
        ))
        ev, clock, events = _make(registry=reg)
        await _feed(ev, clock, 0, 99.0, entity=VM101)
        await _feed(ev, clock, 0, 99.0, entity=VM102)
        assert ev.get(CPU101) is None
        assert [e.key.entity for e in events] == [VM102]

    async def test_entities_by_source(self) -> None:
        ev, clock, _ = _make()
        other = EntityKey(source="pve-2", entity_id="ct-200")
        await _feed(ev, clock, 0, 90.0, entity=VM101)
        await _feed(ev, clock, 0, 90.0, entity=other)
        assert ev.entities() == {VM101, other}
        assert ev.entities("pve-1") == {VM101}

    async def test_removal_callbacks_run_even_without_alerts(self) -> None:
        ev, clock, events = _make()
        removed: list[EntityKey] = []
        ev.on_entity_removed(removed.append)
        await _feed(ev, clock, 0, 90.0, entity=VM101)
        await ev.remove_entity(VM101)
        await ev.remove_entity(VM102)
        assert removed == [VM101, VM102]
        assert events[-1].reason == EventReason.ENTITY_REMOVED

    async def test_failing_removal_callback_isolated(self) -> None:
        ev, clock, _ = _make()

        def boom(entity: EntityKey) -> None:
            raise RuntimeError("callback failed")

        ev.on_entity_removed(boom)
        await _feed(ev, clock, 0, 90.0, entity=VM101)
        assert await ev.remove_entity(VM101) == 1
        assert ev.get(CPU101) is None


# ── Operator actions ────────────────────────────────────────────


class TestOperatorActions:
    async def test_acknowledge(self) -> None:
        ev, clock, _ = _make()
        await _feed(ev, clock, 0, 90.0)
        alert = await ev.acknowledge(CPU101, user="alice", note="looking")
        assert alert.acknowledged
        assert alert.acknowledged_by == "alice"
        assert ev.get(CPU101).ack_note == "looking"  # type: ignore[union-attr]

    async def test_acknowledge_unknown(self) -> None:
        ev, _, _ = _make()
        with pytest.raises(UnknownAlertError):
            await ev.acknowledge(CPU101)

    async def test_manual_resolve(self) -> None:
        ev, clock, events = _make(recovery_delay_ms=60_000)
        await _feed(ev, clock, 0, 90.0)
        await ev.resolve(CPU101, resolved_by="bob")
        assert _kinds(events) == [AlertEventKind.FIRED, AlertEventKind.RECOVERED]
        assert events[1].reason == EventReason.MANUAL
        assert len(ev) == 0

    async def test_resolve_unknown(self) -> None:
        ev, _, _ = _make()
        with pytest.raises(UnknownAlertError):
            await ev.resolve(CPU101)

    async def test_mark_notified_keeps_latest(self) -> None:
        ev, clock, _ = _make()
        await _feed(ev, clock, 0, 90.0)
        ev.mark_notified(CPU101, 5_000)
        ev.mark_notified(CPU101, 4_000)
        assert ev.get(CPU101).last_notified_at == 5_000  # type: ignore[union-attr]


# ── History ─────────────────────────────────────────────────────


class TestHistory:
    async def test_closed_alert_recorded(self) -> None:
        ev, clock, _ = _make()
        await _feed(ev, clock, 1_000, 90.0)
        await _feed(ev, clock, 2_000, 97.0)
        await _feed(ev, clock, 6_000, 10.0)
        entries = ev.history.entries()
        assert len(entries) == 1
        assert entries[0].key == CPU101
        assert entries[0].peak_value == 97.0
        assert entries[0].duration_ms == 5_000

    async def test_pending_discard_not_recorded(self) -> None:
        ev, clock, _ = _make(duration=10_000)
        await _feed(ev, clock, 0, 90.0)
        await _feed(ev, clock, 1_000, 10.0)
        assert len(ev.history) == 0


# ── Persistence ordering / restart ──────────────────────────────


class TestPersistence:
    async def test_persist_before_emit(self) -> None:
        ev, clock, _ = _make()
        order: list[str] = []

        async def hook() -> None:
            order.append("persist")

        ev.set_persist_hook(hook)
        ev.on_event(lambda e: order.append(f"emit:{e.kind}"))
        await _feed(ev, clock, 0, 90.0)
        assert order == ["persist", "emit:fired"]

    async def test_failing_callback_does_not_break_evaluation(self) -> None:
        ev, clock, events = _make()

        def boom(_: AlertEvent) -> None:
            raise RuntimeError("router down")

        ev.on_event(boom)
        assert await _feed(ev, clock, 0, 90.0) == AlertState.FIRING
        assert len(events) == 1

    async def test_restart_round_trip_no_duplicate_fire(self) -> None:
        duration = 300_000
        t0 = 1_000_000
        reg = _registry(duration=duration)
        ev, clock, events = _make(registry=reg, clock=ManualClock(t0))
        await _feed(ev, clock, t0, 90.0)
        await _feed(ev, clock, t0 + duration, 90.0)
        assert _kinds(events) == [AlertEventKind.FIRED]
        persisted = ev.export_alerts()
        assert persisted[0].first_exceeded_at == t0

        # New process: fresh evaluator and clock, same rules.
        ev2, clock2, events2 = _make(registry=reg, clock=ManualClock(t0 + duration + 5_000))
        assert ev2.restore(persisted) == 1
        state = await _feed(ev2, clock2, t0 + duration + 5_001, 95.0)
        assert state == AlertState.FIRING
        assert events2 == []

    async def test_restore_recovering_keeps_timer(self) -> None:
        ev, clock, _ = _make(recovery_delay_ms=30_000)
        await _feed(ev, clock, 0, 90.0)
        await _feed(ev, clock, 10_000, 10.0)
        persisted = ev.export_alerts()

        ev2, clock2, events2 = _make(recovery_delay_ms=30_000, clock=ManualClock(20_000))
        ev2.restore(persisted)
        await ev2.sweep()
        assert events2 == []
        clock2.set(40_000)
        await ev2.sweep()
        assert _kinds(events2) == [AlertEventKind.RECOVERED]


# ── Per-key linearization ───────────────────────────────────────


def _states_on_persist(
    ev: AlertEvaluator, persisted: list[AlertState],
) -> Callable[[], Awaitable[None]]:
    async def hook() -> None:
        await asyncio.sleep(0)
        alert = ev.get(CPU101)
        persisted.append(alert.state if alert is not None else AlertState.OK)

    return hook


class TestConcurrency:
    async def test_concurrent_samples_fire_once(self) -> None:
        ev, clock, events = _make(duration=60_000)
        persisted: list[AlertState] = []
        ev.set_persist_hook(_states_on_persist(ev, persisted))
        await _feed(ev, clock, 0, 90.0)

        clock.set(60_000)
        states = await asyncio.gather(*(
            ev.submit_sample(MetricSample(
                entity=VM101, metric_kind=MetricKind.CPU, value=95.0, timestamp=60_000 + i,
            ))
            for i in range(50)
        ))
        assert _kinds(events) == [AlertEventKind.FIRED]
        assert persisted == [AlertState.PENDING, AlertState.FIRING]
        assert set(states) == {AlertState.FIRING}

    async def test_sweep_racing_samples_fire_once(self) -> None:
        ev, clock, events = _make(duration=60_000)
        persisted: list[AlertState] = []
        ev.set_persist_hook(_states_on_persist(ev, persisted))
        await _feed(ev, clock, 0, 90.0)

        clock.set(60_000)
        await asyncio.gather(
            ev.sweep(),
            *(
                ev.submit_sample(MetricSample(
                    entity=VM101, metric_kind=MetricKind.CPU, value=95.0, timestamp=60_000 + i,
                ))
                for i in range(20)
            ),
            ev.sweep(),
        )
        assert _kinds(events) == [AlertEventKind.FIRED]
        assert persisted == [AlertState.PENDING, AlertState.FIRING]

    async def test_concurrent_clears_recover_once(self) -> None:
        ev, clock, events = _make(recovery_delay_ms=0)
        persisted: list[AlertState] = []
        await _feed(ev, clock, 0, 90.0)
        ev.set_persist_hook(_states_on_persist(ev, persisted))

        clock.set(1_000)
        await asyncio.gather(*(
            ev.submit_sample(MetricSample(
                entity=VM101, metric_kind=MetricKind.CPU, value=10.0, timestamp=1_000 + i,
            ))
            for i in range(50)
        ))
        assert _kinds(events) == [AlertEventKind.FIRED, AlertEventKind.RECOVERED]
        assert persisted == [AlertState.OK]
        assert len(ev.history.entries()) == 1
