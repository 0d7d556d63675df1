"""Domain types for alert evaluation and notification dispatch.

All timestamps carried by these models are wall-clock epoch milliseconds.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

SNAPSHOT_VERSION = 1


# ── Entities & metrics ──────────────────────────────────────────


class MetricKind(StrEnum):
    """Kind of metric a threshold rule applies to."""

    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    LIVENESS = "liveness"

    def breached(self, value: float, threshold: float) -> bool:
        """Return True if *value* is past *threshold* for this metric.

        Comparisons are inclusive.  Liveness is inverted: samples report
        ``1`` for up and ``0`` for down, and a value at or below the
        threshold is a breach.
        """
        if self is MetricKind.LIVENESS:
            return value <= threshold
        return value >= threshold


class EntityKind(StrEnum):
    """Kind of monitored object."""

    NODE = "node"
    VM = "vm"
    CONTAINER = "container"
    DATASTORE = "datastore"


class EntityKey(BaseModel):
    """Stable composite identity: source cluster id + entity id."""

    model_config = ConfigDict(frozen=True)

    source: str
    entity_id: str

    def __str__(self) -> str:
        return f"{self.source}/{self.entity_id}"

    @classmethod
    def parse(cls, text: str) -> EntityKey:
        """Parse ``"<source>/<entity_id>"``."""
        source, sep, entity_id = text.partition("/")
        if not sep or not source or not entity_id:
            raise ValueError(f"Invalid entity key {text!r}; expected '<source>/<entity_id>'")
        return cls(source=source, entity_id=entity_id)


class AlertKey(BaseModel):
    """One alert per (entity, metric kind); liveness alerts are per entity."""

    model_config = ConfigDict(frozen=True)

    entity: EntityKey
    metric_kind: MetricKind

    def __str__(self) -> str:
        return f"{self.entity}:{self.metric_kind}"

    @classmethod
    def parse(cls, text: str) -> AlertKey:
        """Parse ``"<source>/<entity_id>:<metric_kind>"``."""
        entity, sep, kind = text.rpartition(":")
        if not sep:
            raise ValueError(f"Invalid alert key {text!r}")
        return cls(entity=EntityKey.parse(entity), metric_kind=MetricKind(kind))


class MetricSample(BaseModel):
    """A single metric reading for one entity."""

    entity: EntityKey
    metric_kind: MetricKind
    value: float
    timestamp: float
    entity_name: str = ""
    entity_kind: EntityKind | None = None


class MetricSnapshot(BaseModel):
    """One poll result from a metric source.

    ``inventory`` lists every entity the source currently knows about;
    ``None`` means the source reports samples only and never removes
    entities.
    """

    source_id: str
    samples: list[MetricSample] = Field(default_factory=list)
    inventory: list[EntityKey] | None = None
    collected_at: float = 0.0


# ── Rules ───────────────────────────────────────────────────────


class ThresholdRule(BaseModel):
    """Threshold configuration for one metric kind."""

    model_config = ConfigDict(frozen=True)

    metric_kind: MetricKind
    enabled: bool = True
    threshold: float
    sustained_duration_ms: int = 0


class RuleSource(StrEnum):
    """Where an effective rule came from."""

    CUSTOM = "CUSTOM"
    GLOBAL = "GLOBAL"
    NONE = "NONE"


class CustomRuleRecord(BaseModel):
    """Persisted per-entity override."""

    entity: EntityKey
    metric_kind: MetricKind
    rule: ThresholdRule


class RuleSetRecord(BaseModel):
    """Persisted rule set (global rules + per-entity overrides)."""

    model_config = ConfigDict(populate_by_name=True)

    global_rules: dict[MetricKind, ThresholdRule] = Field(
        default_factory=dict, alias="global",
    )
    custom: list[CustomRuleRecord] = Field(default_factory=list)


# ── Alerts ──────────────────────────────────────────────────────


class AlertState(StrEnum):
    """Alert lifecycle state."""

    OK = "OK"
    PENDING = "PENDING"
    FIRING = "FIRING"
    RECOVERING = "RECOVERING"


class Alert(BaseModel):
    """Notification state for one alert key."""

    key: AlertKey
    state: AlertState = AlertState.OK
    entity_name: str = ""
    threshold: float = 0.0
    last_value: float = 0.0
    peak_value: float = 0.0
    first_exceeded_at: float = 0.0
    firing_since: float | None = None
    recovered_at: float | None = None
    last_notified_at: float | None = None
    acknowledged: bool = False
    acknowledged_by: str = ""
    acknowledged_at: float | None = None
    ack_note: str = ""

    @property
    def entity(self) -> EntityKey:
        return self.key.entity

    @property
    def metric_kind(self) -> MetricKind:
        return self.key.metric_kind

    @property
    def description(self) -> str:
        if self.entity_name:
            return f"{self.entity_name} ({self.key.entity})"
        return str(self.key.entity)

    @property
    def open(self) -> bool:
        """True while the alert has been announced and not yet closed."""
        return self.state in (AlertState.FIRING, AlertState.RECOVERING)


class AlertEventKind(StrEnum):
    """Lifecycle event handed to the router."""

    FIRED = "fired"
    RECOVERED = "recovered"


class EventReason(StrEnum):
    """Why a lifecycle event was produced."""

    THRESHOLD = "threshold"
    ENTITY_REMOVED = "entity_removed"
    RULE_DISABLED = "rule_disabled"
    MANUAL = "manual"


class AlertEvent(BaseModel):
    """A ``fired`` or ``recovered`` transition for one alert."""

    kind: AlertEventKind
    alert: Alert
    occurred_at: float
    reason: EventReason = EventReason.THRESHOLD

    @property
    def key(self) -> AlertKey:
        return self.alert.key


class HistoryEntry(BaseModel):
    """A closed alert kept for operators."""

    key: AlertKey
    entity_name: str = ""
    threshold: float = 0.0
    peak_value: float = 0.0
    fired_at: float
    resolved_at: float
    duration_ms: float
    reason: EventReason = EventReason.THRESHOLD
    acknowledged_by: str = ""


# ── Outbound notifications ──────────────────────────────────────


class NotificationPayload(BaseModel):
    """Structured record handed to channel senders (one per alert)."""

    alert_key: str
    entity_description: str
    metric_kind: MetricKind
    value: float
    threshold: float
    state: AlertEventKind
    occurred_at: float
    batched_count: int = 1

    @classmethod
    def from_event(cls, event: AlertEvent) -> NotificationPayload:
        alert = event.alert
        return cls(
            alert_key=str(alert.key),
            entity_description=alert.description,
            metric_kind=alert.metric_kind,
            value=alert.last_value,
            threshold=alert.threshold,
            state=event.kind,
            occurred_at=event.occurred_at,
        )


class NotificationBatch(BaseModel):
    """One outbound send: fired and recovered items are never mixed."""

    channel: str
    kind: AlertEventKind
    items: list[NotificationPayload] = Field(default_factory=list)
    created_at: float = 0.0
    test: bool = False

    @property
    def count(self) -> int:
        return len(self.items)


# ── Persisted snapshot ──────────────────────────────────────────


class StateSnapshot(BaseModel):
    """Durable engine state.  Unknown fields are ignored on load."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    version: int = SNAPSHOT_VERSION
    saved_at: float = 0.0
    alerts: list[Alert] = Field(default_factory=list)
    rules: RuleSetRecord = Field(default_factory=RuleSetRecord)
    notifications: dict[str, dict[str, float]] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)


# ── Channels ────────────────────────────────────────────────────


class ChannelKind(StrEnum):
    """Supported notification channel kinds."""

    WEBHOOK = "webhook"
    EMAIL = "email"
