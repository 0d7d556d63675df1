"""Convenience factory for wiring the alert engine from settings."""

from __future__ import annotations

import structlog

from alertengine.core.clock import Clock
from alertengine.core.config import Settings
from alertengine.engine import AlertEngine
from alertengine.notify.channels import build_channel
from alertengine.store.state_store import AlertStateStore

logger = structlog.get_logger(__name__)


def create_engine(
    settings: Settings,
    clock: Clock | None = None,
    persist: bool = True,
) -> AlertEngine:
    """Build an engine with its state store and configured channels.

    An empty ``engine.state_path`` (or ``persist=False``) runs without a
    state store.

    Raises:
        ChannelError: A configured channel cannot be built.
    """
    store: AlertStateStore | None = None
    if persist and settings.engine.state_path:
        store = AlertStateStore(settings.engine.state_path)

    engine = AlertEngine(settings, clock=clock, store=store)

    for channel_cfg in settings.channels:
        engine.add_channel(
            build_channel(channel_cfg),
            channel_cfg.policy,
            enabled=channel_cfg.enabled,
        )
        logger.info(
            "channel_configured",
            channel=channel_cfg.name,
            kind=channel_cfg.kind,
            enabled=channel_cfg.enabled,
        )

    return engine
