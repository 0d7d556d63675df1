"""AlertEngine — wires registry, evaluator, router, store and intake.

Startup order: restore persisted state, start the router, start metric
sources, then run the fast-tick sweep loop.  Shutdown reverses it and
gives in-flight sends the configured grace period.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterable

import structlog
from pydantic import ValidationError

from alertengine.core.clock import Clock
from alertengine.core.config import (
    ChannelConfig,
    ChannelPolicyConfig,
    EmailConfig,
    Settings,
    WebhookConfig,
)
from alertengine.core.types import (
    Alert,
    AlertEventKind,
    AlertKey,
    AlertState,
    ChannelKind,
    EntityKey,
    HistoryEntry,
    MetricKind,
    MetricSample,
    NotificationBatch,
    StateSnapshot,
    ThresholdRule,
)
from alertengine.evaluator.evaluator import AlertEvaluator
from alertengine.intake.base import MetricSource
from alertengine.intake.intake import MetricIntake
from alertengine.notify.channels import NotificationChannel, build_channel
from alertengine.notify.exceptions import ChannelError
from alertengine.notify.router import NotificationRouter, Silence
from alertengine.rules.exceptions import RuleError
from alertengine.rules.registry import RuleSet, ThresholdRegistry, parse_metric_kind
from alertengine.store.state_store import AlertStateStore

logger = structlog.get_logger(__name__)


class AlertEngine:
    """Single entry point for intake, rule changes, channels and operators.

    Usage::

        engine = AlertEngine(settings, store=AlertStateStore(path))
        engine.register_channel(ChannelKind.WEBHOOK, WebhookConfig(url=...))
        await engine.start()
        await engine.submit_sample(entity, "cpu", 91.0, timestamp)
        await engine.stop()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Clock | None = None,
        store: AlertStateStore | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._clock = clock or Clock()
        self._store = store

        self._registry = ThresholdRegistry.from_config(self._settings.thresholds)
        self._evaluator = AlertEvaluator(self._registry, self._settings.evaluator, self._clock)
        self._router = NotificationRouter(self._settings.router, self._clock)
        self._intake = MetricIntake(self._evaluator)
        self._sources: list[MetricSource] = []

        self._evaluator.on_event(self._router.publish)
        self._evaluator.set_persist_hook(self.persist)
        self._evaluator.on_entity_removed(self._router.forget_entity)
        self._router.on_delivered(self._on_delivered)
        self._registry.on_change(self._on_rules_changed)

        self._persist_lock = asyncio.Lock()
        self._dirty = False
        self._restored = False
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._ticks = 0

    # ── Properties ───────────────────────────────────────────────

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def registry(self) -> ThresholdRegistry:
        return self._registry

    @property
    def evaluator(self) -> AlertEvaluator:
        return self._evaluator

    @property
    def router(self) -> NotificationRouter:
        return self._router

    @property
    def intake(self) -> MetricIntake:
        return self._intake

    @property
    def running(self) -> bool:
        return self._running

    @property
    def dirty(self) -> bool:
        """True while the last save failed and a retry is pending."""
        return self._dirty

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        if not self._restored:
            await self.restore()
        await self._router.start()
        for source in self._sources:
            await source.start()
        self._running = True
        self._task = asyncio.create_task(self._tick_loop())
        logger.info(
            "engine_started",
            channels=len(self._router.channel_names()),
            sources=len(self._sources),
            fast_tick_ms=self._settings.engine.fast_tick_ms,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        for source in self._sources:
            try:
                await source.stop()
            except Exception:
                logger.exception("source_stop_error", source_id=source.source_id)

        await self._router.stop(grace_secs=self._settings.engine.shutdown_grace_secs)
        await self.persist()
        logger.info("engine_stopped", ticks=self._ticks)

    async def _tick_loop(self) -> None:
        interval = self._settings.engine.fast_tick_ms / 1000.0
        last_slow = self._clock.monotonic_ms()
        while self._running:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            try:
                await self.tick()
                now = self._clock.monotonic_ms()
                if now - last_slow >= self._settings.engine.slow_tick_ms:
                    last_slow = now
                    self.slow_tick()
            except Exception:
                logger.exception("engine_tick_error")

    def slow_tick(self) -> None:
        """Housekeeping: drop expired silences and log a status line."""
        silences = self._router.silences()
        alerts = self._evaluator.stats()
        logger.info(
            "engine_status",
            tracked=alerts["tracked"],
            by_state=alerts["by_state"],
            silences=len(silences),
            cooldown_keys=self._router.cooldown_keys,
            queue_depth=self._router.queue_depth,
            inflight=self._router.inflight,
            dirty=self._dirty,
        )

    async def tick(self) -> None:
        """One sweep: timers, rule changes, save retry."""
        self._ticks += 1
        await self._evaluator.sweep()
        if self._dirty:
            await self.persist()
        await self._router.process_pending()

    # ── Sources ──────────────────────────────────────────────────

    def add_source(self, source: MetricSource) -> None:
        """Attach a metric source; its snapshots flow through the intake."""
        source.on_snapshot(self._intake.handle_snapshot)
        self._intake.expect_source(source.source_id)
        self._sources.append(source)

    # ── Intake API ───────────────────────────────────────────────

    async def submit_sample(
        self,
        entity: EntityKey,
        metric_kind: str | MetricKind,
        value: float,
        timestamp: float | None = None,
        entity_name: str = "",
    ) -> AlertState:
        """Evaluate one reading. *timestamp* defaults to now (epoch ms).

        Raises:
            UnknownMetricKindError: *metric_kind* is not a known kind.
        """
        sample = MetricSample(
            entity=entity,
            metric_kind=parse_metric_kind(metric_kind),
            value=value,
            timestamp=self._clock.wall_ms() if timestamp is None else timestamp,
            entity_name=entity_name,
        )
        return await self._intake.submit_sample(sample)

    async def submit_snapshot(
        self,
        source_id: str,
        samples: Iterable[MetricSample],
        inventory: Iterable[EntityKey] | None = None,
    ) -> int:
        return await self._intake.submit_snapshot(source_id, samples, inventory)

    async def remove_entity(self, entity: EntityKey) -> int:
        return await self._evaluator.remove_entity(entity)

    # ── Rule configuration ───────────────────────────────────────

    async def set_global_rule(
        self, metric_kind: str | MetricKind, rule: ThresholdRule | None,
    ) -> None:
        """Replace (or with ``None`` remove) the global rule for a kind.

        Takes effect on the next tick.
        """
        self._registry.set_global_rule(metric_kind, rule)
        await self.persist()

    async def set_custom_rule(
        self,
        entity: EntityKey,
        metric_kind: str | MetricKind,
        rule: ThresholdRule | None,
    ) -> None:
        self._registry.set_custom_rule(entity, metric_kind, rule)
        await self.persist()

    def _on_rules_changed(self, ruleset: RuleSet) -> None:
        self._dirty = True
        logger.debug("rules_changed", version=ruleset.version)

    # ── Channels ─────────────────────────────────────────────────

    def register_channel(
        self,
        kind: ChannelKind,
        endpoint: WebhookConfig | EmailConfig,
        enabled: bool = True,
        policy: ChannelPolicyConfig | None = None,
        name: str | None = None,
    ) -> str:
        """Build a channel sender from endpoint settings and register it.

        Raises:
            ChannelError: The endpoint does not match *kind*.
        """
        kind = ChannelKind(kind)
        try:
            config = ChannelConfig(
                name=name or f"{kind.value}-{len(self._router.channel_names()) + 1}",
                kind=kind,
                enabled=enabled,
                webhook=endpoint if isinstance(endpoint, WebhookConfig) else None,
                email=endpoint if isinstance(endpoint, EmailConfig) else None,
                policy=policy,
            )
        except ValidationError as exc:
            raise ChannelError(str(exc)) from exc
        return self.add_channel(build_channel(config), config.policy, enabled)

    def add_channel(
        self,
        channel: NotificationChannel,
        policy: ChannelPolicyConfig | None = None,
        enabled: bool = True,
    ) -> str:
        """Register an already-built channel sender."""
        return self._router.register_channel(channel, policy, enabled)

    def unregister_channel(self, name: str) -> NotificationChannel:
        return self._router.unregister_channel(name)

    def set_channel_enabled(self, name: str, enabled: bool) -> None:
        self._router.set_channel_enabled(name, enabled)

    async def send_test(self, channel_name: str) -> bool:
        return await self._router.send_test(channel_name)

    async def _on_delivered(self, channel: str, batch: NotificationBatch, sent_at: float) -> None:
        if batch.test:
            return
        if batch.kind == AlertEventKind.FIRED:
            for item in batch.items:
                self._evaluator.mark_notified(AlertKey.parse(item.alert_key), sent_at)
        await self.persist()

    # ── Operator actions ─────────────────────────────────────────

    async def acknowledge(self, key: AlertKey, user: str = "api-user", note: str = "") -> Alert:
        return await self._evaluator.acknowledge(key, user, note)

    async def resolve(self, key: AlertKey, resolved_by: str = "admin") -> None:
        await self._evaluator.resolve(key, resolved_by)

    def silence(
        self, target: AlertKey | EntityKey, duration_ms: float, reason: str = "",
    ) -> Silence:
        return self._router.silence(target, duration_ms, reason)

    def unsilence(self, target: AlertKey | EntityKey) -> bool:
        return self._router.unsilence(target)

    def silences(self) -> list[Silence]:
        return self._router.silences()

    # ── Queries ──────────────────────────────────────────────────

    def active_alerts(
        self,
        state: AlertState | None = None,
        metric_kind: MetricKind | None = None,
        source: str | None = None,
    ) -> list[Alert]:
        return self._evaluator.active_alerts(state, metric_kind, source)

    def history(self, limit: int | None = None, key: AlertKey | None = None) -> list[HistoryEntry]:
        return self._evaluator.history.entries(limit, key)

    async def clear_history(self) -> int:
        count = self._evaluator.history.clear()
        await self.persist()
        return count

    def stats(self) -> dict[str, object]:
        return {
            "alerts": self._evaluator.stats(),
            "notifications": self._router.metrics.snapshot(),
            "intake": self._intake.stats(),
            "rules_version": self._registry.version,
            "persistence": {
                "enabled": self._store is not None,
                "dirty": self._dirty,
                "save_failures": self._store.save_failures if self._store else 0,
            },
            "ticks": self._ticks,
        }

    # ── Persistence ──────────────────────────────────────────────

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            saved_at=self._clock.wall_ms(),
            alerts=self._evaluator.export_alerts(),
            rules=self._registry.snapshot().to_record(),
            notifications=self._router.cooldown_snapshot(),
            history=self._evaluator.history.entries(),
        )

    async def persist(self) -> bool:
        """Save the current state; a failure leaves the engine dirty so the
        next transition or tick retries."""
        if self._store is None:
            self._dirty = False
            return True
        async with self._persist_lock:
            ok = await asyncio.to_thread(self._store.save, self.snapshot())
            self._dirty = not ok
            return ok

    async def restore(self) -> None:
        """Load persisted state into the registry, evaluator and router."""
        self._restored = True
        if self._store is None:
            return
        snapshot = await asyncio.to_thread(self._store.load)
        if snapshot.rules.global_rules or snapshot.rules.custom:
            try:
                self._registry.replace(RuleSet.from_record(snapshot.rules))
            except RuleError as exc:
                logger.warning("persisted_rules_invalid", error=str(exc))
        restored = self._evaluator.restore(snapshot.alerts)
        self._evaluator.history.restore(snapshot.history)
        self._router.restore_cooldowns(snapshot.notifications)
        if restored:
            self._intake.prune_restored()
        self._dirty = False
        logger.info(
            "engine_state_restored",
            alerts=restored,
            history=len(snapshot.history),
            channels=len(snapshot.notifications),
        )
