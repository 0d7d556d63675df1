"""Core module — config, types, clock, logging."""

from alertengine.core.clock import Clock, ManualClock
from alertengine.core.config import (
    ConfigError,
    Settings,
    get_settings,
    load_settings,
    reset_settings,
)
from alertengine.core.logging import setup_logging
from alertengine.core.types import (
    Alert,
    AlertEvent,
    AlertEventKind,
    AlertKey,
    AlertState,
    ChannelKind,
    EntityKey,
    MetricKind,
    MetricSample,
    NotificationBatch,
    NotificationPayload,
    ThresholdRule,
)

__all__ = [
    "Alert",
    "AlertEvent",
    "AlertEventKind",
    "AlertKey",
    "AlertState",
    "ChannelKind",
    "Clock",
    "ConfigError",
    "EntityKey",
    "ManualClock",
    "MetricKind",
    "MetricSample",
    "NotificationBatch",
    "NotificationPayload",
    "Settings",
    "ThresholdRule",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
