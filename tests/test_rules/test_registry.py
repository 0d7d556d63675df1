"""Tests for ThresholdRegistry — resolution order, validation, atomic swaps."""

from __future__ import annotations

import pytest

from alertengine.core.config import RuleConfig, ThresholdsConfig
from alertengine.core.types import EntityKey, MetricKind, RuleSource, ThresholdRule
from alertengine.rules.exceptions import RuleConfigError, UnknownMetricKindError
from alertengine.rules.registry import RuleSet, ThresholdRegistry, parse_metric_kind

VM101 = EntityKey(source="pve-1", entity_id="vm-101")
VM102 = EntityKey(source="pve-1", entity_id="vm-102")


def _cpu(threshold: float = 85.0, enabled: bool = True, duration: int = 0) -> ThresholdRule:
    return ThresholdRule(
        metric_kind=MetricKind.CPU,
        enabled=enabled,
        threshold=threshold,
        sustained_duration_ms=duration,
    )


# ── Parsing / validation ────────────────────────────────────────


class TestParsing:
    def test_parse_known_kind(self) -> None:
        assert parse_metric_kind("memory") is MetricKind.MEMORY

    def test_parse_unknown_kind(self) -> None:
        with pytest.raises(UnknownMetricKindError):
            parse_metric_kind("gpu")

    def test_unknown_kind_is_config_error(self) -> None:
        with pytest.raises(RuleConfigError):
            parse_metric_kind("temperature")


class TestValidation:
    def test_negative_duration_rejected(self) -> None:
        reg = ThresholdRegistry()
        with pytest.raises(RuleConfigError):
            reg.set_global_rule(MetricKind.CPU, _cpu(duration=-1))

    def test_non_finite_threshold_rejected(self) -> None:
        reg = ThresholdRegistry()
        with pytest.raises(RuleConfigError):
            reg.set_global_rule(MetricKind.CPU, _cpu(threshold=float("nan")))

    def test_mismatched_kind_rejected(self) -> None:
        reg = ThresholdRegistry()
        with pytest.raises(RuleConfigError):
            reg.set_custom_rule(VM101, MetricKind.MEMORY, _cpu())

    def test_rejected_update_leaves_ruleset_untouched(self) -> None:
        reg = ThresholdRegistry()
        before = reg.snapshot()
        with pytest.raises(RuleConfigError):
            reg.set_global_rule(MetricKind.CPU, _cpu(duration=-5))
        assert reg.snapshot() is before


# ── Resolution ──────────────────────────────────────────────────


class TestResolution:
    def test_no_rule(self) -> None:
        reg = ThresholdRegistry()
        res = reg.resolve(VM101, MetricKind.CPU)
        assert res.source == RuleSource.NONE
        assert not res.active
        assert reg.effective_rule(VM101, MetricKind.CPU) is None

    def test_global_rule(self) -> None:
        reg = ThresholdRegistry()
        reg.set_global_rule(MetricKind.CPU, _cpu(85.0))
        res = reg.resolve(VM101, MetricKind.CPU)
        assert res.source == RuleSource.GLOBAL
        assert res.rule is not None and res.rule.threshold == 85.0

    def test_custom_overrides_global_entirely(self) -> None:
        reg = ThresholdRegistry()
        reg.set_global_rule(MetricKind.CPU, _cpu(85.0, duration=300000))
        reg.set_custom_rule(VM101, MetricKind.CPU, _cpu(95.0))
        rule = reg.effective_rule(VM101, MetricKind.CPU)
        assert rule is not None
        assert rule.threshold == 95.0
        # not merged field-by-field with the global rule
        assert rule.sustained_duration_ms == 0
        assert reg.effective_rule(VM102, MetricKind.CPU).threshold == 85.0  # type: ignore[union-attr]

    def test_disabled_custom_rule_turns_monitoring_off(self) -> None:
        reg = ThresholdRegistry()
        reg.set_global_rule(MetricKind.CPU, _cpu(85.0))
        reg.set_custom_rule(VM101, MetricKind.CPU, _cpu(enabled=False))
        res = reg.resolve(VM101, MetricKind.CPU)
        assert res.source == RuleSource.CUSTOM
        assert not res.active
        assert reg.effective_rule(VM101, MetricKind.CPU) is None
        assert reg.effective_rule(VM102, MetricKind.CPU) is not None

    def test_removing_custom_falls_back_to_global(self) -> None:
        reg = ThresholdRegistry()
        reg.set_global_rule(MetricKind.CPU, _cpu(85.0))
        reg.set_custom_rule(VM101, MetricKind.CPU, _cpu(99.0))
        reg.set_custom_rule(VM101, MetricKind.CPU, None)
        assert reg.resolve(VM101, MetricKind.CPU).source == RuleSource.GLOBAL


# ── Copy-on-write ───────────────────────────────────────────────


class TestCopyOnWrite:
    def test_old_snapshot_unaffected(self) -> None:
        reg = ThresholdRegistry()
        reg.set_global_rule(MetricKind.CPU, _cpu(85.0))
        old = reg.snapshot()
        reg.set_global_rule(MetricKind.CPU, _cpu(70.0))
        assert old.resolve(VM101, MetricKind.CPU).rule.threshold == 85.0  # type: ignore[union-attr]
        assert reg.snapshot().resolve(VM101, MetricKind.CPU).rule.threshold == 70.0  # type: ignore[union-attr]

    def test_version_increments(self) -> None:
        reg = ThresholdRegistry()
        v0 = reg.version
        reg.set_global_rule(MetricKind.CPU, _cpu())
        reg.set_custom_rule(VM101, MetricKind.CPU, _cpu(90.0))
        assert reg.version == v0 + 2
        reg.replace(RuleSet())
        assert reg.version == v0 + 3

    def test_snapshot_mappings_are_read_only(self) -> None:
        reg = ThresholdRegistry()
        reg.set_global_rule(MetricKind.CPU, _cpu())
        with pytest.raises(TypeError):
            reg.snapshot().global_rules[MetricKind.DISK] = _cpu()  # type: ignore[index]

    def test_change_callback(self) -> None:
        reg = ThresholdRegistry()
        seen: list[RuleSet] = []
        reg.on_change(seen.append)
        reg.set_global_rule(MetricKind.CPU, _cpu())
        assert len(seen) == 1
        assert seen[0] is reg.snapshot()

    def test_failing_callback_does_not_block_swap(self) -> None:
        reg = ThresholdRegistry()

        def boom(_: RuleSet) -> None:
            raise RuntimeError("callback failure")

        reg.on_change(boom)
        reg.set_global_rule(MetricKind.CPU, _cpu(77.0))
        assert reg.effective_rule(VM101, MetricKind.CPU).threshold == 77.0  # type: ignore[union-attr]


# ── Config / persistence ────────────────────────────────────────


class TestFromConfig:
    def test_defaults(self) -> None:
        reg = ThresholdRegistry.from_config(ThresholdsConfig())
        rule = reg.effective_rule(VM101, MetricKind.CPU)
        assert rule is not None
        assert rule.threshold == 85.0
        assert rule.sustained_duration_ms == 300000
        liveness = reg.effective_rule(VM101, MetricKind.LIVENESS)
        assert liveness is not None and liveness.threshold == 0.0

    def test_custom_from_config(self) -> None:
        cfg = ThresholdsConfig(
            custom={"pve-1/vm-101": {"cpu": RuleConfig(enabled=False, threshold=85)}},
        )
        reg = ThresholdRegistry.from_config(cfg)
        assert reg.effective_rule(VM101, MetricKind.CPU) is None
        assert reg.effective_rule(VM102, MetricKind.CPU) is not None

    def test_unknown_kind_in_config(self) -> None:
        cfg = ThresholdsConfig(global_rules={"gpu": RuleConfig(threshold=1)})
        with pytest.raises(UnknownMetricKindError):
            ThresholdRegistry.from_config(cfg)

    def test_bad_entity_key_in_config(self) -> None:
        cfg = ThresholdsConfig(custom={"no-slash": {"cpu": RuleConfig(threshold=1)}})
        with pytest.raises(RuleConfigError):
            ThresholdRegistry.from_config(cfg)

    def test_record_round_trip(self) -> None:
        reg = ThresholdRegistry()
        reg.set_global_rule(MetricKind.CPU, _cpu(85.0))
        reg.set_custom_rule(VM101, MetricKind.CPU, _cpu(enabled=False))
        restored = RuleSet.from_record(reg.snapshot().to_record())
        assert restored.resolve(VM101, MetricKind.CPU).source == RuleSource.CUSTOM
        assert not restored.resolve(VM101, MetricKind.CPU).active
        assert restored.resolve(VM102, MetricKind.CPU).rule == _cpu(85.0)
