"""Notification channels — webhook and email delivery."""

from __future__ import annotations

import abc
from email.message import EmailMessage

import aiohttp
import aiosmtplib
import structlog

from alertengine.core.config import ChannelConfig, EmailConfig, WebhookConfig
from alertengine.core.types import ChannelKind, NotificationBatch
from alertengine.notify.exceptions import ChannelError
from alertengine.notify.formatters import format_subject, format_text, webhook_body

logger = structlog.get_logger(__name__)


class NotificationChannel(abc.ABC):
    """Base class for alert delivery channels.

    ``send`` returns True on success and False on a rejected or failed
    delivery; the router owns retries.
    """

    name: str = "channel"

    @abc.abstractmethod
    async def send(self, batch: NotificationBatch) -> bool:
        """Deliver one batch. Returns True on success."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""


class WebhookChannel(NotificationChannel):
    """POSTs the batch as JSON to a webhook URL; any 2xx is success."""

    def __init__(self, name: str, config: WebhookConfig) -> None:
        self.name = name
        self._url = config.url.get_secret_value()
        self._headers = dict(config.headers)
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_secs)
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def send(self, batch: NotificationBatch) -> bool:
        payload = webhook_body(batch)
        try:
            session = self._get_session()
            async with session.post(self._url, json=payload, headers=self._headers) as resp:
                if 200 <= resp.status < 300:
                    return True
                body = await resp.text()
                logger.warning(
                    "webhook_send_failed",
                    channel=self.name,
                    status=resp.status,
                    body=body[:200],
                )
                return False
        except Exception:
            logger.exception("webhook_send_error", channel=self.name)
            return False

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class EmailChannel(NotificationChannel):
    """Sends a plain-text email per batch through SMTP."""

    def __init__(self, name: str, config: EmailConfig) -> None:
        if not config.recipients:
            raise ChannelError(f"email channel {name!r} has no recipients")
        self.name = name
        self._config = config

    def build_message(self, batch: NotificationBatch) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._config.sender
        msg["To"] = ", ".join(self._config.recipients)
        msg["Subject"] = format_subject(batch)
        msg.set_content(format_text(batch))
        return msg

    async def send(self, batch: NotificationBatch) -> bool:
        cfg = self._config
        try:
            await aiosmtplib.send(
                self.build_message(batch),
                hostname=cfg.host,
                port=cfg.port,
                username=cfg.username or None,
                password=cfg.password.get_secret_value() or None,
                use_tls=cfg.use_tls,
                start_tls=cfg.start_tls and not cfg.use_tls,
                timeout=cfg.timeout_secs,
            )
            return True
        except aiosmtplib.SMTPException as exc:
            logger.warning("email_send_failed", channel=self.name, error=str(exc))
            return False
        except Exception:
            logger.exception("email_send_error", channel=self.name)
            return False

    async def close(self) -> None:
        """SMTP connections are per-send; nothing to release."""


def build_channel(config: ChannelConfig) -> NotificationChannel:
    """Construct the channel sender described by *config*.

    Raises:
        ChannelError: The endpoint section for the channel kind is missing.
    """
    if config.kind == ChannelKind.WEBHOOK:
        if config.webhook is None:
            raise ChannelError(f"channel {config.name!r}: missing webhook settings")
        return WebhookChannel(config.name, config.webhook)
    if config.kind == ChannelKind.EMAIL:
        if config.email is None:
            raise ChannelError(f"channel {config.name!r}: missing email settings")
        return EmailChannel(config.name, config.email)
    raise ChannelError(f"channel {config.name!r}: unsupported kind {config.kind!r}")
