"""Alert evaluator exceptions."""

from __future__ import annotations


class EvaluatorError(Exception):
    """Base exception for alert evaluator errors."""


class UnknownAlertError(EvaluatorError):
    """No open alert exists for the requested key."""
