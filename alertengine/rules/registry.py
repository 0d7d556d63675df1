"""ThresholdRegistry — global rules, per-entity overrides, copy-on-write swaps."""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import structlog

from alertengine.core.config import RuleConfig, ThresholdsConfig
from alertengine.core.types import (
    CustomRuleRecord,
    EntityKey,
    MetricKind,
    RuleSetRecord,
    RuleSource,
    ThresholdRule,
)
from alertengine.rules.exceptions import RuleConfigError, UnknownMetricKindError

logger = structlog.get_logger(__name__)

RuleChangeCallback = Callable[["RuleSet"], None]


def parse_metric_kind(value: str | MetricKind) -> MetricKind:
    """Return the MetricKind for *value* or raise UnknownMetricKindError."""
    try:
        return MetricKind(value)
    except ValueError:
        valid = ", ".join(k.value for k in MetricKind)
        raise UnknownMetricKindError(
            f"Unknown metric kind {value!r} (expected one of: {valid})"
        ) from None


def validate_rule(metric_kind: MetricKind, rule: ThresholdRule) -> None:
    """Raise RuleConfigError if *rule* cannot be stored under *metric_kind*."""
    if rule.metric_kind != metric_kind:
        raise RuleConfigError(
            f"Rule for {rule.metric_kind} stored under {metric_kind}"
        )
    if not math.isfinite(rule.threshold):
        raise RuleConfigError(f"{metric_kind}: threshold must be finite")
    if rule.sustained_duration_ms < 0:
        raise RuleConfigError(f"{metric_kind}: sustained_duration_ms must be >= 0")


@dataclass(frozen=True)
class RuleResolution:
    """Outcome of a rule lookup: which level answered, and with what."""

    source: RuleSource
    rule: ThresholdRule | None = None

    @property
    def active(self) -> bool:
        """True if an alert can exist for this (entity, metric kind)."""
        return self.rule is not None and self.rule.enabled


_NO_RULE = RuleResolution(source=RuleSource.NONE)


@dataclass(frozen=True)
class RuleSet:
    """Immutable rule set.  Never mutated; replaced wholesale on change."""

    global_rules: Mapping[MetricKind, ThresholdRule] = field(
        default_factory=lambda: MappingProxyType({}),
    )
    custom_rules: Mapping[tuple[EntityKey, MetricKind], ThresholdRule] = field(
        default_factory=lambda: MappingProxyType({}),
    )
    version: int = 0

    def resolve(self, entity: EntityKey, metric_kind: MetricKind) -> RuleResolution:
        """Custom rule if one exists for the pair, else the global rule.

        A custom rule fully replaces the global one, including a custom rule
        with ``enabled=False``, which switches monitoring off for that entity.
        """
        custom = self.custom_rules.get((entity, metric_kind))
        if custom is not None:
            return RuleResolution(source=RuleSource.CUSTOM, rule=custom)
        rule = self.global_rules.get(metric_kind)
        if rule is not None:
            return RuleResolution(source=RuleSource.GLOBAL, rule=rule)
        return _NO_RULE

    def with_global(self, metric_kind: MetricKind, rule: ThresholdRule | None) -> RuleSet:
        rules = dict(self.global_rules)
        if rule is None:
            rules.pop(metric_kind, None)
        else:
            rules[metric_kind] = rule
        return RuleSet(
            global_rules=MappingProxyType(rules),
            custom_rules=self.custom_rules,
            version=self.version + 1,
        )

    def with_custom(
        self,
        entity: EntityKey,
        metric_kind: MetricKind,
        rule: ThresholdRule | None,
    ) -> RuleSet:
        rules = dict(self.custom_rules)
        if rule is None:
            rules.pop((entity, metric_kind), None)
        else:
            rules[(entity, metric_kind)] = rule
        return RuleSet(
            global_rules=self.global_rules,
            custom_rules=MappingProxyType(rules),
            version=self.version + 1,
        )

    # ── Persistence ───────────────────────────────────────────────

    def to_record(self) -> RuleSetRecord:
        return RuleSetRecord(
            global_rules=dict(self.global_rules),
            custom=[
                CustomRuleRecord(entity=entity, metric_kind=kind, rule=rule)
                for (entity, kind), rule in self.custom_rules.items()
            ],
        )

    @classmethod
    def from_record(cls, record: RuleSetRecord) -> RuleSet:
        global_rules: dict[MetricKind, ThresholdRule] = {}
        for kind, rule in record.global_rules.items():
            validate_rule(kind, rule)
            global_rules[kind] = rule
        custom: dict[tuple[EntityKey, MetricKind], ThresholdRule] = {}
        for entry in record.custom:
            validate_rule(entry.metric_kind, entry.rule)
            custom[(entry.entity, entry.metric_kind)] = entry.rule
        return cls(
            global_rules=MappingProxyType(global_rules),
            custom_rules=MappingProxyType(custom),
        )


def _rule_from_config(kind_name: str, cfg: RuleConfig) -> tuple[MetricKind, ThresholdRule]:
    kind = parse_metric_kind(kind_name)
    rule = ThresholdRule(
        metric_kind=kind,
        enabled=cfg.enabled,
        threshold=cfg.threshold,
        sustained_duration_ms=cfg.sustained_duration_ms,
    )
    validate_rule(kind, rule)
    return kind, rule


class ThresholdRegistry:
    """Holds the current RuleSet and swaps it atomically on every update.

    Readers call ``resolve()``/``effective_rule()`` or grab ``snapshot()``
    once per tick; writers never touch a published RuleSet, so a reader can
    never see a half-applied change.

    Usage::

        registry = ThresholdRegistry.from_config(settings.thresholds)
        registry.set_custom_rule(entity, MetricKind.CPU, None)
        rule = registry.effective_rule(entity, MetricKind.CPU)
    """

    def __init__(self, ruleset: RuleSet | None = None) -> None:
        self._ruleset = ruleset or RuleSet()
        self._callbacks: list[RuleChangeCallback] = []

    @classmethod
    def from_config(cls, config: ThresholdsConfig) -> ThresholdRegistry:
        """Build a registry from YAML config.

        Raises:
            UnknownMetricKindError: A metric kind name is not recognised.
            RuleConfigError: A rule or entity key is malformed.
        """
        global_rules: dict[MetricKind, ThresholdRule] = {}
        for kind_name, rule_cfg in config.global_rules.items():
            kind, rule = _rule_from_config(kind_name, rule_cfg)
            global_rules[kind] = rule

        custom: dict[tuple[EntityKey, MetricKind], ThresholdRule] = {}
        for entity_text, rules in config.custom.items():
            try:
                entity = EntityKey.parse(entity_text)
            except ValueError as exc:
                raise RuleConfigError(str(exc)) from exc
            for kind_name, rule_cfg in rules.items():
                kind, rule = _rule_from_config(kind_name, rule_cfg)
                custom[(entity, kind)] = rule

        return cls(RuleSet(
            global_rules=MappingProxyType(global_rules),
            custom_rules=MappingProxyType(custom),
        ))

    # ── Properties ───────────────────────────────────────────────

    @property
    def version(self) -> int:
        return self._ruleset.version

    def snapshot(self) -> RuleSet:
        """The current RuleSet (immutable, safe to hold across awaits)."""
        return self._ruleset

    def on_change(self, callback: RuleChangeCallback) -> None:
        """Register a callback invoked with the new RuleSet after each swap."""
        self._callbacks.append(callback)

    # ── Lookup ───────────────────────────────────────────────────

    def resolve(self, entity: EntityKey, metric_kind: MetricKind) -> RuleResolution:
        return self._ruleset.resolve(entity, metric_kind)

    def effective_rule(
        self, entity: EntityKey, metric_kind: MetricKind,
    ) -> ThresholdRule | None:
        """The enabled rule for the pair, or None if monitoring is off."""
        resolution = self._ruleset.resolve(entity, metric_kind)
        return resolution.rule if resolution.active else None

    # ── Updates ──────────────────────────────────────────────────

    def set_global_rule(
        self, metric_kind: str | MetricKind, rule: ThresholdRule | None,
    ) -> None:
        kind = parse_metric_kind(metric_kind)
        if rule is not None:
            validate_rule(kind, rule)
        self._swap(self._ruleset.with_global(kind, rule))
        logger.info(
            "global_rule_updated",
            metric_kind=kind,
            enabled=rule.enabled if rule else None,
            threshold=rule.threshold if rule else None,
        )

    def set_custom_rule(
        self,
        entity: EntityKey,
        metric_kind: str | MetricKind,
        rule: ThresholdRule | None,
    ) -> None:
        """Set (or with ``None`` remove) the override for one entity."""
        kind = parse_metric_kind(metric_kind)
        if rule is not None:
            validate_rule(kind, rule)
        self._swap(self._ruleset.with_custom(entity, kind, rule))
        logger.info(
            "custom_rule_updated",
            entity=str(entity),
            metric_kind=kind,
            removed=rule is None,
        )

    def replace(self, ruleset: RuleSet) -> None:
        """Install a complete RuleSet (e.g. reloaded configuration)."""
        self._swap(RuleSet(
            global_rules=ruleset.global_rules,
            custom_rules=ruleset.custom_rules,
            version=self._ruleset.version + 1,
        ))

    def _swap(self, ruleset: RuleSet) -> None:
        self._ruleset = ruleset
        for cb in self._callbacks:
            try:
                cb(ruleset)
            except Exception:
                logger.exception("rule_change_callback_error")
