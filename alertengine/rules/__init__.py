"""Threshold rules — global defaults and per-entity overrides."""

from alertengine.rules.exceptions import RuleConfigError, RuleError, UnknownMetricKindError
from alertengine.rules.registry import (
    RuleResolution,
    RuleSet,
    ThresholdRegistry,
    parse_metric_kind,
)

__all__ = [
    "RuleConfigError",
    "RuleError",
    "RuleResolution",
    "RuleSet",
    "ThresholdRegistry",
    "UnknownMetricKindError",
    "parse_metric_kind",
]
