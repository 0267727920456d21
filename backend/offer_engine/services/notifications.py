"""
Post-commit notification dispatch.

WHAT: Tell counterparties about created, countered, accepted and rejected offers
WHY: Notification delivery has weaker guarantees than the negotiation itself
HOW: Sinks are called only after commit; every failure is logged and swallowed
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ..core.config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class NotificationEvent:
    """One notification to deliver after a transaction commits."""
    event_type: str
    catalog_offer_id: str
    recipient_user_ids: List[str]
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "catalog_offer_id": self.catalog_offer_id,
            "recipient_user_ids": self.recipient_user_ids,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


class NotificationSink:
    """Interface for notification delivery."""

    def send(self, event: NotificationEvent) -> None:
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    """Writes events to the application log."""

    def send(self, event: NotificationEvent) -> None:
        logger.info(
            f"Notification {event.event_type} for offer {event.catalog_offer_id} "
            f"-> {', '.join(event.recipient_user_ids)}"
        )


class WebhookNotificationSink(NotificationSink):
    """
    Posts events as JSON to a webhook.

    WHAT: Hand events to an external notification service
    WHY: Email/push delivery lives outside this service
    HOW: httpx POST with a short timeout; non-2xx raises
    """

    def __init__(self, url: str, timeout: Optional[float] = None, client: Optional[httpx.Client] = None):
        self.url = url
        self.client = client or httpx.Client(timeout=timeout or settings.NOTIFICATION_TIMEOUT)

    def send(self, event: NotificationEvent) -> None:
        response = self.client.post(self.url, json=event.to_dict())
        response.raise_for_status()

    def close(self) -> None:
        self.client.close()


class RecordingNotificationSink(NotificationSink):
    """Keeps events in memory (tests, dry runs)."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def send(self, event: NotificationEvent) -> None:
        self.events.append(event)


def dispatch_notifications(sink: Optional[NotificationSink], events: Iterable[NotificationEvent]) -> int:
    """
    Deliver events, never raising.

    Args:
        sink: Destination (None disables delivery)
        events: Events produced by a committed operation

    Returns:
        Number of events delivered successfully
    """
    if sink is None:
        return 0

    delivered = 0
    for event in events:
        try:
            sink.send(event)
            delivered += 1
        except Exception as e:
            logger.error(f"Notification {event.event_type} for offer {event.catalog_offer_id} failed: {e}")
    return delivered


# Singleton instance
_sink_instance: Optional[NotificationSink] = None


def get_notification_sink() -> Optional[NotificationSink]:
    """
    Get the configured notification sink singleton.

    Returns:
        Webhook sink when NOTIFICATION_WEBHOOK_URL is set, logging sink otherwise,
        None when notifications are disabled
    """
    global _sink_instance

    if not settings.NOTIFICATIONS_ENABLED:
        return None

    if _sink_instance is None:
        if settings.NOTIFICATION_WEBHOOK_URL:
            _sink_instance = WebhookNotificationSink(settings.NOTIFICATION_WEBHOOK_URL)
            logger.info(f"Notification sink initialized: webhook {settings.NOTIFICATION_WEBHOOK_URL}")
        else:
            _sink_instance = LoggingNotificationSink()
            logger.info("Notification sink initialized: logging")

    return _sink_instance


def close_notification_sink() -> None:
    """Release the sink's HTTP client (if any) and drop the singleton."""
    global _sink_instance

    if isinstance(_sink_instance, WebhookNotificationSink):
        _sink_instance.close()
        logger.info("Notification webhook client closed")
    _sink_instance = None


def reset_notification_sink() -> None:
    """Reset the sink singleton (useful for testing)."""
    global _sink_instance
    _sink_instance = None
