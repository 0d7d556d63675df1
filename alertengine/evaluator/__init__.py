"""Alert evaluation — per-key lifecycle state machine and alert history."""

from alertengine.evaluator.evaluator import AlertEvaluator, AlertEventCallback
from alertengine.evaluator.exceptions import EvaluatorError, UnknownAlertError
from alertengine.evaluator.history import AlertHistory

__all__ = [
    "AlertEvaluator",
    "AlertEventCallback",
    "AlertHistory",
    "EvaluatorError",
    "UnknownAlertError",
]
