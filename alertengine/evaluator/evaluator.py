"""AlertEvaluator — per-key alert lifecycle state machine.

Lifecycle per (entity, metric kind)::

    OK ──breach──▶ PENDING ──sustained──▶ FIRING ──clear──▶ RECOVERING ──delay──▶ OK
                      │                     ▲                   │
                      └──clear──▶ OK        └─────breach────────┘

Only two transitions produce events: PENDING→FIRING (``fired``) and
RECOVERING→OK (``recovered``).  Entity removal, a disabled rule and manual
resolution close open alerts with a synthetic ``recovered``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

import structlog

from alertengine.core.clock import Clock
from alertengine.core.config import EvaluatorConfig
from alertengine.core.types import (
    Alert,
    AlertEvent,
    AlertEventKind,
    AlertKey,
    AlertState,
    EntityKey,
    EventReason,
    HistoryEntry,
    MetricKind,
    MetricSample,
    ThresholdRule,
)
from alertengine.evaluator.exceptions import UnknownAlertError
from alertengine.evaluator.history import AlertHistory
from alertengine.rules.registry import RuleSet, ThresholdRegistry

logger = structlog.get_logger(__name__)

AlertEventCallback = Callable[[AlertEvent], Awaitable[None] | None]
PersistHook = Callable[[], Awaitable[object]]
EntityRemovedCallback = Callable[[EntityKey], None]


@dataclass
class _Slot:
    """An alert plus its monotonic anchors (never persisted)."""

    alert: Alert
    first_exceeded_mono: float
    recovered_mono: float | None = None


class AlertEvaluator:
    """Turns metric samples and effective rules into alert transitions.

    Every transition for one alert key runs under that key's lock, and is
    persisted (through the persist hook) before its event is handed to the
    registered callbacks.

    Usage::

        evaluator = AlertEvaluator(registry, config)
        evaluator.on_event(router.publish)
        evaluator.set_persist_hook(engine.persist)

        await evaluator.submit_sample(sample)
        await evaluator.sweep()          # timers + rule changes
        await evaluator.remove_entity(entity)
    """

    def __init__(
        self,
        registry: ThresholdRegistry,
        config: EvaluatorConfig | None = None,
        clock: Clock | None = None,
        history: AlertHistory | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or EvaluatorConfig()
        self._clock = clock or Clock()
        self._history = history or AlertHistory(self._config.history_size)
        self._slots: dict[AlertKey, _Slot] = {}
        self._locks: dict[AlertKey, asyncio.Lock] = {}
        self._last_sample_ts: dict[AlertKey, float] = {}
        self._callbacks: list[AlertEventCallback] = []
        self._removal_callbacks: list[EntityRemovedCallback] = []
        self._persist_hook: PersistHook | None = None

        self._transitions = 0
        self._fired_total = 0
        self._recovered_total = 0
        self._samples_ignored = 0

    # ── Properties ───────────────────────────────────────────────

    @property
    def history(self) -> AlertHistory:
        return self._history

    @property
    def recovery_delay_ms(self) -> int:
        return self._config.recovery_delay_ms

    def __len__(self) -> int:
        return len(self._slots)

    # ── Wiring ───────────────────────────────────────────────────

    def on_event(self, callback: AlertEventCallback) -> None:
        """Register a callback for ``fired``/``recovered`` events."""
        self._callbacks.append(callback)

    def on_entity_removed(self, callback: EntityRemovedCallback) -> None:
        """Register a callback run after an entity leaves the inventory."""
        self._removal_callbacks.append(callback)

    def set_persist_hook(self, hook: PersistHook | None) -> None:
        """Install the coroutine awaited after every transition."""
        self._persist_hook = hook

    # ── Intake ───────────────────────────────────────────────────

    async def submit_sample(self, sample: MetricSample) -> AlertState:
        """Evaluate one sample and return the resulting alert state.

        Samples whose timestamp is not newer than the last accepted sample
        for the same (entity, metric kind) are ignored.
        """
        key = AlertKey(entity=sample.entity, metric_kind=sample.metric_kind)
        async with self._lock_for(key):
            last_ts = self._last_sample_ts.get(key)
            if last_ts is not None and sample.timestamp <= last_ts:
                self._samples_ignored += 1
                logger.debug(
                    "sample_ignored_stale",
                    alert_key=str(key),
                    timestamp=sample.timestamp,
                    last_timestamp=last_ts,
                )
                return self._state_of(key)
            self._last_sample_ts[key] = sample.timestamp

            resolution = self._registry.resolve(sample.entity, sample.metric_kind)
            slot = self._slots.get(key)
            if not resolution.active or resolution.rule is None:
                if slot is not None:
                    await self._close(key, EventReason.RULE_DISABLED)
                return AlertState.OK

            event = self._step(key, slot, resolution.rule, sample.value, sample.entity_name)
            await self._commit(event)
            return self._state_of(key)

    async def remove_entity(self, entity: EntityKey) -> int:
        """Stop tracking *entity*; open alerts close with ``recovered``.

        Returns the number of alerts removed.
        """
        keys = [k for k in list(self._slots) if k.entity == entity]
        removed = 0
        for key in keys:
            async with self._lock_for(key):
                if key in self._slots:
                    await self._close(key, EventReason.ENTITY_REMOVED)
                    removed += 1
        for key in [k for k in list(self._last_sample_ts) if k.entity == entity]:
            self._last_sample_ts.pop(key, None)
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]
        for cb in self._removal_callbacks:
            try:
                cb(entity)
            except Exception:
                logger.exception("entity_removed_callback_error", entity=str(entity))
        if removed:
            logger.info("entity_removed", entity=str(entity), alerts_closed=removed)
        return removed

    # ── Periodic sweep ───────────────────────────────────────────

    async def sweep(self) -> None:
        """Advance timers and apply rule changes for every tracked alert."""
        ruleset = self._registry.snapshot()
        keys = list(self._slots)
        if not keys:
            return
        results = await asyncio.gather(
            *(self._sweep_key(key, ruleset) for key in keys),
            return_exceptions=True,
        )
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                logger.error(
                    "sweep_key_error",
                    alert_key=str(key),
                    error=repr(result),
                )

    async def _sweep_key(self, key: AlertKey, ruleset: RuleSet) -> None:
        async with self._lock_for(key):
            slot = self._slots.get(key)
            if slot is None:
                return
            resolution = ruleset.resolve(key.entity, key.metric_kind)
            if not resolution.active or resolution.rule is None:
                await self._close(key, EventReason.RULE_DISABLED)
                return
            rule = resolution.rule
            alert = slot.alert
            now = self._clock.monotonic_ms()

            if alert.state == AlertState.RECOVERING:
                if self._recovery_elapsed(slot, now):
                    await self._close(key, EventReason.THRESHOLD)
                return

            if alert.state == AlertState.PENDING:
                still_breached = key.metric_kind.breached(alert.last_value, rule.threshold)
                if still_breached and now - slot.first_exceeded_mono >= rule.sustained_duration_ms:
                    await self._commit(self._fire(slot))

    # ── Operator actions ─────────────────────────────────────────

    async def acknowledge(self, key: AlertKey, user: str = "api-user", note: str = "") -> Alert:
        """Mark an open alert as acknowledged.

        Raises:
            UnknownAlertError: No open alert for *key*.
        """
        async with self._lock_for(key):
            slot = self._slots.get(key)
            if slot is None or not slot.alert.open:
                raise UnknownAlertError(f"No open alert for {key}")
            alert = slot.alert
            alert.acknowledged = True
            alert.acknowledged_by = user
            alert.acknowledged_at = self._clock.wall_ms()
            alert.ack_note = note
            logger.info("alert_acknowledged", alert_key=str(key), user=user)
            await self._persist()
            return alert.model_copy()

    async def resolve(self, key: AlertKey, resolved_by: str = "admin") -> None:
        """Close an alert immediately.

        Raises:
            UnknownAlertError: No alert is tracked for *key*.
        """
        async with self._lock_for(key):
            if key not in self._slots:
                raise UnknownAlertError(f"No alert for {key}")
            logger.info("alert_manually_resolved", alert_key=str(key), resolved_by=resolved_by)
            await self._close(key, EventReason.MANUAL)

    def mark_notified(self, key: AlertKey, wall_ms: float) -> None:
        """Record a successful delivery for an alert (any channel)."""
        slot = self._slots.get(key)
        if slot is None:
            return
        last = slot.alert.last_notified_at
        if last is None or wall_ms > last:
            slot.alert.last_notified_at = wall_ms

    # ── Queries ──────────────────────────────────────────────────

    def get(self, key: AlertKey) -> Alert | None:
        slot = self._slots.get(key)
        return slot.alert.model_copy() if slot is not None else None

    def entities(self, source: str | None = None) -> set[EntityKey]:
        """Entities with a tracked alert, optionally for one source."""
        return {
            key.entity for key in self._slots
            if source is None or key.entity.source == source
        }

    def active_alerts(
        self,
        state: AlertState | None = None,
        metric_kind: MetricKind | None = None,
        source: str | None = None,
    ) -> list[Alert]:
        """Copies of tracked alerts, optionally filtered."""
        result: list[Alert] = []
        for key, slot in self._slots.items():
            if state is not None and slot.alert.state != state:
                continue
            if metric_kind is not None and key.metric_kind != metric_kind:
                continue
            if source is not None and key.entity.source != source:
                continue
            result.append(slot.alert.model_copy())
        return result

    def stats(self) -> dict[str, object]:
        by_state = {s.value: 0 for s in AlertState if s != AlertState.OK}
        by_kind = {k.value: 0 for k in MetricKind}
        for key, slot in self._slots.items():
            by_state[slot.alert.state.value] += 1
            by_kind[key.metric_kind.value] += 1
        return {
            "tracked": len(self._slots),
            "by_state": by_state,
            "by_metric_kind": by_kind,
            "acknowledged": sum(1 for s in self._slots.values() if s.alert.acknowledged),
            "transitions": self._transitions,
            "fired_total": self._fired_total,
            "recovered_total": self._recovered_total,
            "samples_ignored": self._samples_ignored,
            "history_size": len(self._history),
        }

    # ── Persistence ──────────────────────────────────────────────

    def export_alerts(self) -> list[Alert]:
        return [slot.alert.model_copy() for slot in self._slots.values()]

    def restore(self, alerts: Iterable[Alert]) -> int:
        """Load persisted alerts, re-anchoring their timers on this process's
        monotonic clock.  Returns the number restored."""
        count = 0
        for alert in alerts:
            if alert.state == AlertState.OK:
                continue
            slot = _Slot(
                alert=alert.model_copy(),
                first_exceeded_mono=self._clock.to_monotonic(alert.first_exceeded_at),
            )
            if alert.state == AlertState.RECOVERING and alert.recovered_at is not None:
                slot.recovered_mono = self._clock.to_monotonic(alert.recovered_at)
            self._slots[alert.key] = slot
            count += 1
        if count:
            logger.info("alerts_restored", count=count)
        return count

    # ── State machine ────────────────────────────────────────────

    def _step(
        self,
        key: AlertKey,
        slot: _Slot | None,
        rule: ThresholdRule,
        value: float,
        entity_name: str,
    ) -> _Transition | None:
        breach = key.metric_kind.breached(value, rule.threshold)
        now = self._clock.monotonic_ms()

        if slot is None:
            if not breach:
                return None
            slot = _Slot(
                alert=Alert(
                    key=key,
                    state=AlertState.PENDING,
                    entity_name=entity_name,
                    threshold=rule.threshold,
                    last_value=value,
                    peak_value=value,
                    first_exceeded_at=self._clock.wall_ms(),
                ),
                first_exceeded_mono=now,
            )
            self._slots[key] = slot
            logger.debug("alert_pending", alert_key=str(key), value=value, threshold=rule.threshold)
            if rule.sustained_duration_ms <= 0:
                return self._fire(slot)
            return _Transition(key=key)

        alert = slot.alert
        alert.last_value = value
        alert.threshold = rule.threshold
        if entity_name:
            alert.entity_name = entity_name
        if breach and _worse(key.metric_kind, value, alert.peak_value):
            alert.peak_value = value

        if alert.state == AlertState.PENDING:
            if not breach:
                del self._slots[key]
                logger.debug("alert_pending_cleared", alert_key=str(key), value=value)
                return _Transition(key=key)
            if now - slot.first_exceeded_mono >= rule.sustained_duration_ms:
                return self._fire(slot)
            return None

        if alert.state == AlertState.FIRING:
            if breach:
                return None
            alert.state = AlertState.RECOVERING
            alert.recovered_at = self._clock.wall_ms()
            slot.recovered_mono = now
            logger.info("alert_recovering", alert_key=str(key), value=value)
            if self._recovery_elapsed(slot, now):
                return self._closing(key, EventReason.THRESHOLD)
            return _Transition(key=key)

        if alert.state == AlertState.RECOVERING:
            if breach:
                alert.state = AlertState.FIRING
                alert.recovered_at = None
                slot.recovered_mono = None
                logger.info("alert_flap_suppressed", alert_key=str(key), value=value)
                return _Transition(key=key)
            if self._recovery_elapsed(slot, now):
                return self._closing(key, EventReason.THRESHOLD)
        return None

    def _fire(self, slot: _Slot) -> _Transition:
        alert = slot.alert
        alert.state = AlertState.FIRING
        alert.firing_since = self._clock.wall_ms()
        self._fired_total += 1
        logger.info(
            "alert_fired",
            alert_key=str(alert.key),
            value=alert.last_value,
            threshold=alert.threshold,
        )
        event = AlertEvent(
            kind=AlertEventKind.FIRED,
            alert=alert.model_copy(),
            occurred_at=alert.firing_since,
        )
        return _Transition(key=alert.key, event=event)

    def _closing(self, key: AlertKey, reason: EventReason) -> _Transition:
        """Remove the slot; build a ``recovered`` event if it was announced."""
        slot = self._slots.pop(key)
        alert = slot.alert
        was_open = alert.open
        now_wall = self._clock.wall_ms()
        alert.state = AlertState.OK
        if not was_open:
            logger.debug("alert_discarded", alert_key=str(key), reason=reason)
            return _Transition(key=key)

        fired_at = alert.firing_since or alert.first_exceeded_at
        self._history.record(HistoryEntry(
            key=key,
            entity_name=alert.entity_name,
            threshold=alert.threshold,
            peak_value=alert.peak_value,
            fired_at=fired_at,
            resolved_at=now_wall,
            duration_ms=max(0.0, now_wall - fired_at),
            reason=reason,
            acknowledged_by=alert.acknowledged_by,
        ))
        self._recovered_total += 1
        logger.info("alert_recovered", alert_key=str(key), reason=reason)
        event = AlertEvent(
            kind=AlertEventKind.RECOVERED,
            alert=alert.model_copy(),
            occurred_at=now_wall,
            reason=reason,
        )
        return _Transition(key=key, event=event)

    async def _close(self, key: AlertKey, reason: EventReason) -> None:
        await self._commit(self._closing(key, reason))

    def _recovery_elapsed(self, slot: _Slot, now: float) -> bool:
        if slot.recovered_mono is None:
            return False
        return now - slot.recovered_mono >= self._config.recovery_delay_ms

    # ── Commit: persist, then hand off ───────────────────────────

    async def _commit(self, transition: _Transition | None) -> None:
        if transition is None:
            return
        self._transitions += 1
        await self._persist()
        if transition.event is not None:
            await self._emit(transition.event)

    async def _persist(self) -> None:
        if self._persist_hook is None:
            return
        try:
            await self._persist_hook()
        except Exception:
            logger.exception("alert_persist_hook_error")

    async def _emit(self, event: AlertEvent) -> None:
        for cb in self._callbacks:
            try:
                result = cb(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "alert_event_callback_error",
                    alert_key=str(event.key),
                    kind=event.kind,
                )

    # ── Helpers ──────────────────────────────────────────────────

    def _lock_for(self, key: AlertKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _state_of(self, key: AlertKey) -> AlertState:
        slot = self._slots.get(key)
        return slot.alert.state if slot is not None else AlertState.OK


@dataclass
class _Transition:
    key: AlertKey
    event: AlertEvent | None = None


def _worse(metric_kind: MetricKind, value: float, peak: float) -> bool:
    if metric_kind is MetricKind.LIVENESS:
        return value < peak
    return value > peak
