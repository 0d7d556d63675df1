"""Notification routing, policies and channel senders."""

from alertengine.notify.channels import (
    EmailChannel,
    NotificationChannel,
    WebhookChannel,
    build_channel,
)
from alertengine.notify.exceptions import ChannelError, NotifyError, UnknownChannelError
from alertengine.notify.formatters import format_subject, format_text, webhook_body
from alertengine.notify.metrics import ChannelCounters, RouterMetrics
from alertengine.notify.policy import ChannelPolicyState, NotificationEnvelope, PendingBatch
from alertengine.notify.router import NotificationRouter, Silence

__all__ = [
    "ChannelCounters",
    "ChannelError",
    "ChannelPolicyState",
    "EmailChannel",
    "NotificationChannel",
    "NotificationEnvelope",
    "NotificationRouter",
    "NotifyError",
    "PendingBatch",
    "RouterMetrics",
    "Silence",
    "UnknownChannelError",
    "WebhookChannel",
    "build_channel",
    "format_subject",
    "format_text",
    "webhook_body",
]
