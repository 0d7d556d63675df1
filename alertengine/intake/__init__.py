"""Metric intake — sources, inventory tracking and recorded replay."""

from alertengine.intake.base import MetricSource, SnapshotCallback
from alertengine.intake.exceptions import IntakeError, ReplayFormatError
from alertengine.intake.intake import MetricIntake
from alertengine.intake.replay import JsonlReplaySource

__all__ = [
    "IntakeError",
    "JsonlReplaySource",
    "MetricIntake",
    "MetricSource",
    "ReplayFormatError",
    "SnapshotCallback",
]
