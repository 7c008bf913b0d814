"""
Notification dispatcher port.

The core never delivers email, SMS or chat messages itself. The
error-notification path (dead letters) and the alert evaluator hand a
:class:`Notification` to a :class:`NotificationDispatcher`; delivery and
delivery retries belong to whoever implements it.

Two implementations ship with the core:

* :class:`LoggingNotificationDispatcher` writes every notification to
  the structured log (default; development and tests).
* :class:`ChannelRouter` routes by channel name to registered
  dispatchers, falling back to a default.

Tags:
    conduit-core, notifications, port, protocol
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from conduit.core.logging import get_logger
from conduit.core.timestamps import utc_now

logger = get_logger(__name__)


@dataclass
class Notification:
    """A message for the notification port: (channel, template, data, recipients)."""

    channel: str
    template: str
    data: dict[str, Any] = field(default_factory=dict)
    recipients: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "template": self.template,
            "data": self.data,
            "recipients": list(self.recipients),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DeliveryResult:
    """Result of handing a notification to a dispatcher."""

    channel: str
    success: bool
    message: str | None = None

    @classmethod
    def ok(cls, channel: str, message: str | None = None) -> DeliveryResult:
        return cls(channel=channel, success=True, message=message)

    @classmethod
    def fail(cls, channel: str, error: Exception) -> DeliveryResult:
        return cls(channel=channel, success=False, message=str(error))


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Protocol for notification delivery."""

    async def send(self, notification: Notification) -> DeliveryResult:
        """Accept a notification for delivery."""
        ...


class LoggingNotificationDispatcher:
    """Writes notifications to the structured log."""

    async def send(self, notification: Notification) -> DeliveryResult:
        logger.info(
            "notification_dispatched",
            channel=notification.channel,
            template=notification.template,
            recipients=notification.recipients,
            data=notification.data,
        )
        return DeliveryResult.ok(notification.channel)


class ChannelRouter:
    """Route notifications to per-channel dispatchers."""

    def __init__(self, default: NotificationDispatcher | None = None) -> None:
        self._channels: dict[str, NotificationDispatcher] = {}
        self._default = default or LoggingNotificationDispatcher()

    def register(self, channel: str, dispatcher: NotificationDispatcher) -> None:
        self._channels[channel] = dispatcher

    async def send(self, notification: Notification) -> DeliveryResult:
        dispatcher = self._channels.get(notification.channel, self._default)
        try:
            return await dispatcher.send(notification)
        except Exception as e:
            logger.warning(
                "notification_delivery_failed",
                channel=notification.channel,
                template=notification.template,
                error=str(e),
            )
            return DeliveryResult.fail(notification.channel, e)


__all__ = [
    "Notification",
    "DeliveryResult",
    "NotificationDispatcher",
    "LoggingNotificationDispatcher",
    "ChannelRouter",
]
