"""Notification router — fans lifecycle events out to channels with
debounce/batching, per-key cooldown, per-channel rate limits and retries."""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from alertengine.core.clock import Clock
from alertengine.core.config import ChannelPolicyConfig, RouterConfig
from alertengine.core.types import (
    AlertEvent,
    AlertEventKind,
    AlertKey,
    EntityKey,
    MetricKind,
    NotificationBatch,
    NotificationPayload,
)
from alertengine.notify.channels import NotificationChannel
from alertengine.notify.exceptions import UnknownChannelError
from alertengine.notify.metrics import RouterMetrics
from alertengine.notify.policy import ChannelPolicyState, NotificationEnvelope, PendingBatch

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger("decision_log")

logger = structlog.get_logger(__name__)

DeliveryCallback = Callable[[str, NotificationBatch, float], Awaitable[None] | None]


@dataclass
class _Registration:
    channel: NotificationChannel
    state: ChannelPolicyState
    enabled: bool = True


@dataclass
class Silence:
    """Notifications for *target* are suppressed until *until* (monotonic ms)."""

    target: AlertKey | EntityKey
    until: float
    reason: str = ""


def backoff_secs(policy: ChannelPolicyConfig, attempt: int) -> float:
    """Delay before retry number *attempt* (1-based), capped."""
    delay_ms = policy.backoff_base_ms * (2 ** max(0, attempt - 1))
    return min(delay_ms, policy.backoff_max_ms) / 1000.0


class NotificationRouter:
    """Routes ``fired``/``recovered`` events to registered channels.

    - ``publish()`` never blocks: it appends to a bounded in-memory queue.
      On overflow the oldest queued ``recovered`` is dropped; ``fired`` events
      are never dropped from the queue.
    - ``fired`` events open (or join) the channel's batch window and are
      suppressed while the same key is in cooldown on that channel.
    - ``recovered`` events go to a separate batch after the channel's
      recovery delay, and only for keys whose ``fired`` went out there.
      A ``fired`` still waiting in its window is sent first; its recovery
      follows as its own batch.
    - Each flushed batch takes one unit of the channel's hourly budget;
      over budget the batch is dropped and counted.
    - Sends run as background tasks with bounded retries and backoff.

    Usage::

        router = NotificationRouter(settings.router)
        router.register_channel(WebhookChannel("ops", cfg), policy)
        await router.start()
        router.publish(event)
        await router.stop(grace_secs=10)
    """

    def __init__(
        self,
        config: RouterConfig | None = None,
        clock: Clock | None = None,
        metrics: RouterMetrics | None = None,
    ) -> None:
        self._config = config or RouterConfig()
        self._clock = clock or Clock()
        self._metrics = metrics or RouterMetrics()
        self._queue: deque[AlertEvent] = deque()
        self._wake = asyncio.Event()
        self._channels: dict[str, _Registration] = {}
        self._silences: dict[AlertKey | EntityKey, Silence] = {}
        self._orphan_marks: dict[str, dict[AlertKey, float]] = {}
        self._callbacks: list[DeliveryCallback] = []
        self._sends: set[asyncio.Task[bool]] = set()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_sends)
        self._task: asyncio.Task[None] | None = None
        self._running = False

    # ── Properties ───────────────────────────────────────────────

    @property
    def metrics(self) -> RouterMetrics:
        return self._metrics

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def inflight(self) -> int:
        return len(self._sends)

    @property
    def cooldown_keys(self) -> int:
        """Cooldown marks held across all channels."""
        return sum(reg.state.tracked_keys() for reg in self._channels.values())

    # ── Channel registration ─────────────────────────────────────

    def register_channel(
        self,
        channel: NotificationChannel,
        policy: ChannelPolicyConfig | None = None,
        enabled: bool = True,
    ) -> str:
        """Register (or replace) a channel under ``channel.name``."""
        name = channel.name
        state = ChannelPolicyState(name, policy or ChannelPolicyConfig())
        previous = self._channels.get(name)
        if previous is not None:
            state.restore_marks(previous.state.announced_marks())
        orphan = self._orphan_marks.pop(name, None)
        if orphan:
            state.restore_marks(orphan)
        self._channels[name] = _Registration(channel=channel, state=state, enabled=enabled)
        logger.info("channel_registered", channel=name, enabled=enabled)
        return name

    def unregister_channel(self, name: str) -> NotificationChannel:
        reg = self._registration(name)
        del self._channels[name]
        logger.info("channel_unregistered", channel=name)
        return reg.channel

    def set_channel_enabled(self, name: str, enabled: bool) -> None:
        reg = self._registration(name)
        reg.enabled = enabled
        if not enabled:
            dropped = reg.state.take_due(self._clock.monotonic_ms(), force=True)
            for pending in dropped:
                if pending.kind == AlertEventKind.RECOVERED:
                    reg.state.mark_recovered(list(pending.envelopes))
            if dropped:
                logger.info(
                    "channel_disabled_batches_dropped",
                    channel=name,
                    batches=len(dropped),
                )
        logger.info("channel_enabled_changed", channel=name, enabled=enabled)

    def set_channel_policy(self, name: str, policy: ChannelPolicyConfig) -> None:
        """Replace a channel's policy; open windows keep their deadlines."""
        self._registration(name).state.policy = policy

    def channel_names(self) -> list[str]:
        return list(self._channels)

    def channel_state(self, name: str) -> ChannelPolicyState:
        return self._registration(name).state

    def _registration(self, name: str) -> _Registration:
        reg = self._channels.get(name)
        if reg is None:
            raise UnknownChannelError(f"No channel named {name!r}")
        return reg

    def on_delivered(self, callback: DeliveryCallback) -> None:
        """Register a callback invoked after each successful batch send."""
        self._callbacks.append(callback)

    # ── Hand-off (never blocks) ─────────────────────────────────

    def publish(self, event: AlertEvent) -> None:
        """Queue a lifecycle event for routing."""
        self._log_decision(event)
        self._metrics.events_published += 1
        self._queue.append(event)
        if len(self._queue) > self._config.queue_size:
            self._shed_low_priority()
        self._metrics.observe_queue_depth(len(self._queue))
        self._wake.set()

    def _shed_low_priority(self) -> None:
        for i, queued in enumerate(self._queue):
            if queued.kind == AlertEventKind.RECOVERED:
                del self._queue[i]
                self._metrics.queue_dropped += 1
                for reg in self._channels.values():
                    reg.state.mark_recovered([queued.key])
                logger.warning(
                    "notification_queue_dropped",
                    alert_key=str(queued.key),
                    kind=queued.kind,
                    depth=len(self._queue),
                )
                return
        logger.warning("notification_queue_over_capacity", depth=len(self._queue))

    def _log_decision(self, event: AlertEvent) -> None:
        alert = event.alert
        decision_logger.info(
            "decision",
            kind=event.kind.value,
            alert_key=str(alert.key),
            reason=event.reason.value,
            value=alert.last_value,
            threshold=alert.threshold,
            occurred_at=event.occurred_at,
            raw=event.model_dump(mode="json"),
        )

    # ── Inventory removal ────────────────────────────────────────

    def forget_entity(self, entity: EntityKey) -> None:
        """Release per-key channel state for a removed entity.

        Keys with an outstanding recovery are released once it is
        dispatched or dropped.
        """
        dropped = 0
        for reg in self._channels.values():
            dropped += reg.state.retire_entity(entity)
        for marks in self._orphan_marks.values():
            for key in [k for k in marks if k.entity == entity]:
                del marks[key]
                dropped += 1
        logger.debug("entity_notification_state_released", entity=str(entity), marks=dropped)

    # ── Silences ─────────────────────────────────────────────────

    def silence(
        self,
        target: AlertKey | EntityKey,
        duration_ms: float,
        reason: str = "",
    ) -> Silence:
        """Suppress notifications for an alert key or a whole entity."""
        entry = Silence(
            target=target,
            until=self._clock.monotonic_ms() + duration_ms,
            reason=reason,
        )
        self._silences[target] = entry
        logger.info(
            "notifications_silenced",
            target=str(target),
            duration_ms=duration_ms,
            reason=reason,
        )
        return entry

    def unsilence(self, target: AlertKey | EntityKey) -> bool:
        return self._silences.pop(target, None) is not None

    def silences(self) -> list[Silence]:
        self._purge_silences(self._clock.monotonic_ms())
        return list(self._silences.values())

    def is_silenced(self, key: AlertKey, now: float | None = None) -> bool:
        now = self._clock.monotonic_ms() if now is None else now
        for target in (key, key.entity):
            entry = self._silences.get(target)
            if entry is None:
                continue
            if entry.until > now:
                return True
            del self._silences[target]
        return False

    def _purge_silences(self, now: float) -> None:
        for target in [t for t, s in self._silences.items() if s.until <= now]:
            del self._silences[target]

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("router_started", channels=len(self._channels))

    async def stop(self, grace_secs: float = 10.0) -> None:
        """Flush open windows, give in-flight sends *grace_secs*, then close."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        await self.process_pending(force=True)

        if self._sends:
            _, pending = await asyncio.wait(set(self._sends), timeout=grace_secs)
            if pending:
                logger.warning("notification_sends_abandoned", count=len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        for reg in self._channels.values():
            try:
                await reg.channel.close()
            except Exception:
                logger.exception("channel_close_error", channel=reg.channel.name)
        logger.info("router_stopped")

    async def _loop(self) -> None:
        interval = self._config.flush_interval_ms / 1000.0
        while self._running:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except TimeoutError:
                pass
            self._wake.clear()
            try:
                await self.process_pending()
            except Exception:
                logger.exception("router_loop_error")

    async def process_pending(self, force: bool = False) -> None:
        """Route every queued event, then flush batches that are due.

        With *force*, every open window flushes regardless of its deadline.
        """
        now = self._clock.monotonic_ms()
        while self._queue:
            event = self._queue.popleft()
            try:
                self._route(event, now)
            except Exception:
                logger.exception("notification_route_error", alert_key=str(event.key))
        self._flush(now, force)

    async def wait_idle(self) -> None:
        """Wait until no send task is in flight."""
        while self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)

    # ── Routing ──────────────────────────────────────────────────

    def _route(self, event: AlertEvent, now: float) -> None:
        key = event.key
        silenced = self.is_silenced(key, now)
        for name, reg in self._channels.items():
            counters = self._metrics.channel(name)
            state = reg.state
            if not reg.enabled:
                if event.kind == AlertEventKind.RECOVERED:
                    state.mark_recovered([key])
                continue

            if silenced:
                counters.silenced += 1
                if event.kind == AlertEventKind.RECOVERED:
                    state.mark_recovered([key])
                continue

            if event.kind == AlertEventKind.FIRED:
                if event.alert.acknowledged:
                    counters.acknowledged_suppressed += 1
                    continue
                if state.cancel(key, AlertEventKind.RECOVERED):
                    counters.recoveries_cancelled += 1
                    logger.info("queued_recovery_cancelled", channel=name, alert_key=str(key))
                    if state.is_announced(key):
                        continue
                if state.in_cooldown(key, now):
                    counters.cooldown_suppressed += 1
                    logger.info(
                        "notification_cooldown_suppressed",
                        channel=name,
                        alert_key=str(key),
                        cooldown_ms=state.policy.cooldown_ms,
                    )
                    continue
                state.add(event, now)
                continue

            # A fired still in its window flushes first; the recovery follows
            # in its own batch.
            fired_due = state.queued_due(key, AlertEventKind.FIRED)
            if not state.policy.send_recovery or (
                fired_due is None and not state.is_announced(key)
            ):
                state.mark_recovered([key])
                counters.recoveries_skipped += 1
                continue
            state.add(event, now, not_before=fired_due)

    def _flush(self, now: float, force: bool) -> None:
        for reg in self._channels.values():
            for pending in reg.state.take_due(now, force=force):
                self._dispatch(reg, pending, now)

    def _dispatch(self, reg: _Registration, pending: PendingBatch, now: float) -> None:
        name = reg.channel.name
        state = reg.state
        envelopes = list(pending.envelopes.values())
        if pending.kind == AlertEventKind.RECOVERED:
            envelopes = self._gate_recoveries(reg, envelopes, now)
        if not envelopes:
            return
        keys = [env.key for env in envelopes]
        if not state.try_consume(now):
            self._metrics.channel(name).rate_limited += 1
            logger.warning(
                "notification_rate_limited",
                channel=name,
                kind=pending.kind,
                alerts=len(envelopes),
                max_per_hour=state.policy.max_per_hour,
            )
            if pending.kind == AlertEventKind.RECOVERED:
                state.mark_recovered(keys)
            return

        previous: dict[AlertKey, float | None] = {}
        if pending.kind == AlertEventKind.FIRED:
            previous = state.mark_fired(keys, now)
        else:
            state.mark_recovered(keys)

        count = len(envelopes)
        items = [
            NotificationPayload.from_event(env.event).model_copy(update={"batched_count": count})
            for env in envelopes
        ]
        batch = NotificationBatch(
            channel=name,
            kind=pending.kind,
            items=items,
            created_at=self._clock.wall_ms(),
        )
        task = asyncio.create_task(self._deliver(reg, batch, envelopes, previous, now))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    def _gate_recoveries(
        self,
        reg: _Registration,
        envelopes: list[NotificationEnvelope],
        now: float,
    ) -> list[NotificationEnvelope]:
        """Keep recoveries whose ``fired`` went out on this channel.

        A recovery whose ``fired`` is still waiting in its window goes back
        into the recovery batch, due no earlier than that window.
        """
        state = reg.state
        ready: list[NotificationEnvelope] = []
        for env in envelopes:
            if state.is_announced(env.key):
                ready.append(env)
                continue
            fired_due = state.queued_due(env.key, AlertEventKind.FIRED)
            if fired_due is not None:
                state.add(env.event, now, not_before=fired_due)
                continue
            state.mark_recovered([env.key])
            self._metrics.channel(reg.channel.name).recoveries_skipped += 1
        return ready

    async def _deliver(
        self,
        reg: _Registration,
        batch: NotificationBatch,
        envelopes: list[NotificationEnvelope],
        previous: dict[AlertKey, float | None],
        stamped_at: float,
    ) -> bool:
        name = reg.channel.name
        policy = reg.state.policy
        counters = self._metrics.channel(name)

        for attempt in range(1, policy.max_attempts + 1):
            for env in envelopes:
                env.attempt = attempt
            try:
                async with self._semaphore:
                    ok = await reg.channel.send(batch)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "notification_send_exception",
                    channel=name,
                    attempt=attempt,
                    exc_info=True,
                )
                ok = False

            if ok:
                counters.batches_sent += 1
                counters.alerts_sent += batch.count
                logger.info(
                    "notification_sent",
                    channel=name,
                    kind=batch.kind,
                    alerts=batch.count,
                    attempt=attempt,
                )
                await self._notify_delivered(name, batch)
                return True

            if attempt < policy.max_attempts:
                counters.retried += 1
                await asyncio.sleep(backoff_secs(policy, attempt))

        counters.failed += 1
        logger.error(
            "notification_failed_permanently",
            channel=name,
            kind=batch.kind,
            alerts=[item.alert_key for item in batch.items],
            attempts=policy.max_attempts,
        )
        if batch.kind == AlertEventKind.FIRED:
            reg.state.rollback_fired(previous, stamped_at)
        return False

    async def _notify_delivered(self, name: str, batch: NotificationBatch) -> None:
        sent_at = self._clock.wall_ms()
        for cb in self._callbacks:
            try:
                result = cb(name, batch, sent_at)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("delivery_callback_error", channel=name)

    # ── Direct test send ─────────────────────────────────────────

    async def send_test(self, name: str) -> bool:
        """Send a synthetic alert through one channel, bypassing batching,
        cooldown and rate limiting."""
        reg = self._registration(name)
        now = self._clock.wall_ms()
        item = NotificationPayload(
            alert_key="test/test-entity:cpu",
            entity_description="Test alert",
            metric_kind=MetricKind.CPU,
            value=95.0,
            threshold=85.0,
            state=AlertEventKind.FIRED,
            occurred_at=now,
        )
        batch = NotificationBatch(
            channel=name,
            kind=AlertEventKind.FIRED,
            items=[item],
            created_at=now,
            test=True,
        )
        try:
            ok = await reg.channel.send(batch)
        except Exception:
            logger.exception("test_notification_error", channel=name)
            ok = False
        logger.info("test_notification_sent", channel=name, success=ok)
        return ok

    # ── Persistence ──────────────────────────────────────────────

    def cooldown_snapshot(self) -> dict[str, dict[str, float]]:
        """Last-notified wall timestamps for keys still announced, per channel."""
        snap: dict[str, dict[str, float]] = {}
        for name, reg in self._channels.items():
            marks = reg.state.announced_marks()
            if marks:
                snap[name] = {
                    str(key): self._clock.to_wall(mark) for key, mark in marks.items()
                }
        for name, orphan in self._orphan_marks.items():
            if not orphan:
                continue
            snap.setdefault(name, {}).update(
                {str(key): self._clock.to_wall(mark) for key, mark in orphan.items()}
            )
        return snap

    def restore_cooldowns(self, data: dict[str, dict[str, float]]) -> None:
        """Load persisted marks; marks for unregistered channels wait for
        the channel to be registered."""
        for name, entries in data.items():
            marks: dict[AlertKey, float] = {}
            for key_text, wall_ms in entries.items():
                try:
                    key = AlertKey.parse(key_text)
                except ValueError:
                    logger.debug("cooldown_key_unparseable", channel=name, key=key_text)
                    continue
                marks[key] = self._clock.to_monotonic(wall_ms)
            reg = self._channels.get(name)
            if reg is not None:
                reg.state.restore_marks(marks)
            else:
                self._orphan_marks[name] = marks
