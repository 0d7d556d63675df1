"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, model_validator

from alertengine.core.types import ChannelKind

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class ConfigError(Exception):
    """Configuration file is unreadable or fails validation."""


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    decision_log_path: str = ""


class EngineConfig(BaseModel):
    """Tick intervals, shutdown behaviour and state location."""

    fast_tick_ms: int = 2000
    slow_tick_ms: int = 30000
    shutdown_grace_secs: float = 10.0
    state_path: str = "data/alert_state.json"


class EvaluatorConfig(BaseModel):
    """Alert evaluator configuration."""

    recovery_delay_ms: int = Field(default=30000, ge=0)
    history_size: int = Field(default=500, ge=0)


class RuleConfig(BaseModel):
    """A threshold rule as written in YAML (metric kind comes from the key)."""

    enabled: bool = True
    threshold: float
    sustained_duration_ms: int = 0


class ThresholdsConfig(BaseModel):
    """Global rules per metric kind and per-entity overrides.

    ``custom`` is keyed by ``"<source>/<entity_id>"`` then metric kind.
    """

    model_config = ConfigDict(populate_by_name=True)

    global_rules: dict[str, RuleConfig] = Field(
        default_factory=lambda: {
            "cpu": RuleConfig(threshold=85.0, sustained_duration_ms=300000),
            "memory": RuleConfig(threshold=90.0, sustained_duration_ms=300000),
            "disk": RuleConfig(threshold=90.0, sustained_duration_ms=300000),
            "liveness": RuleConfig(threshold=0.0, sustained_duration_ms=10000),
        },
        alias="global",
    )
    custom: dict[str, dict[str, RuleConfig]] = Field(default_factory=dict)


class ChannelPolicyConfig(BaseModel):
    """Per-channel debounce, cooldown, rate limit and retry policy."""

    batch_window_ms: int = Field(default=5000, ge=0)
    batch_max_size: int = Field(default=10, ge=1)
    cooldown_ms: int = Field(default=300000, ge=0)
    max_per_hour: int = Field(default=100, ge=0)
    recovery_delay_ms: int = Field(default=0, ge=0)
    send_recovery: bool = True
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_ms: int = Field(default=1000, ge=0)
    backoff_max_ms: int = Field(default=30000, ge=0)


# Batch windows used when a channel does not configure its own policy.
_DEFAULT_BATCH_WINDOW_MS: dict[ChannelKind, int] = {
    ChannelKind.WEBHOOK: 5000,
    ChannelKind.EMAIL: 30000,
}


class WebhookConfig(BaseModel):
    """HTTP webhook endpoint."""

    url: SecretStr
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_secs: float = 10.0


class EmailConfig(BaseModel):
    """SMTP delivery settings."""

    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: SecretStr = SecretStr("")
    use_tls: bool = False
    start_tls: bool = True
    sender: str = "alerts@localhost"
    recipients: list[str] = Field(default_factory=list)
    timeout_secs: float = 30.0


class ChannelConfig(BaseModel):
    """One notification channel."""

    name: str
    kind: ChannelKind
    enabled: bool = True
    webhook: WebhookConfig | None = None
    email: EmailConfig | None = None
    policy: ChannelPolicyConfig | None = None

    @model_validator(mode="after")
    def _check_endpoint(self) -> ChannelConfig:
        if self.kind == ChannelKind.WEBHOOK and self.webhook is None:
            raise ValueError(f"channel {self.name!r}: webhook channels need a 'webhook' section")
        if self.kind == ChannelKind.EMAIL and self.email is None:
            raise ValueError(f"channel {self.name!r}: email channels need an 'email' section")
        if self.policy is None:
            self.policy = ChannelPolicyConfig(
                batch_window_ms=_DEFAULT_BATCH_WINDOW_MS[self.kind],
            )
        return self


class RouterConfig(BaseModel):
    """Notification router hand-off queue and worker settings."""

    queue_size: int = Field(default=1000, ge=1)
    max_concurrent_sends: int = Field(default=8, ge=1)
    flush_interval_ms: int = Field(default=250, ge=1)


class Settings(BaseModel):
    """Root settings container."""

    logging: LoggingConfig = LoggingConfig()
    engine: EngineConfig = EngineConfig()
    evaluator: EvaluatorConfig = EvaluatorConfig()
    thresholds: ThresholdsConfig = ThresholdsConfig()
    router: RouterConfig = RouterConfig()
    channels: list[ChannelConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_channel_names(self) -> Settings:
        names = [ch.name for ch in self.channels]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate channel names: {', '.join(dupes)}")
        return self


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.

    Raises:
        ConfigError: The file is not valid YAML or fails validation.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"{config_path}: invalid YAML: {exc}") from exc
        if isinstance(raw, dict):
            data = raw
        elif raw is not None:
            raise ConfigError(f"{config_path}: top level must be a mapping")

    try:
        _settings = Settings(**data)
    except ValidationError as exc:
        raise ConfigError(f"{config_path}: {exc}") from exc
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
