"""Threshold rule configuration exceptions."""

from __future__ import annotations


class RuleError(Exception):
    """Base exception for threshold rule errors."""


class RuleConfigError(RuleError):
    """A rule is malformed (bad threshold, negative duration, mismatched kind)."""


class UnknownMetricKindError(RuleConfigError):
    """A rule names a metric kind the engine does not evaluate."""
