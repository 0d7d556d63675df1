"""Notification routing and delivery exceptions."""

from __future__ import annotations


class NotifyError(Exception):
    """Base exception for notification errors."""


class ChannelError(NotifyError):
    """A channel is misconfigured or cannot be built."""


class UnknownChannelError(NotifyError):
    """No channel is registered under the requested name."""
