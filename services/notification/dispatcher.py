"""
services/notification/dispatcher.py
Delivery boundary: (recipient, channel, message, context) -> DeliveryResult.
The production dispatcher only enqueues a Celery task, so callers never
wait on a message provider.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from tasks.notification_tasks import deliver_notification

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    channel: str
    recipient: str
    reference: Optional[str] = None
    error: Optional[str] = None


class NotificationDispatcher(Protocol):
    def dispatch(
        self,
        recipient: str,
        channel: str,
        subject: Optional[str],
        message: str,
        context: dict,
    ) -> DeliveryResult:
        ...


class CeleryNotificationDispatcher:
    """Hands each message to the notifications queue."""

    def dispatch(
        self,
        recipient: str,
        channel: str,
        subject: Optional[str],
        message: str,
        context: dict,
    ) -> DeliveryResult:
        try:
            result = deliver_notification.delay(
                channel=channel,
                recipient=recipient,
                subject=subject,
                message=message,
                user_id=context.get("user_id"),
                booking_id=context.get("booking_id"),
                data=context,
            )
        except Exception as e:
            # Broker unreachable; the caller decides whether that matters
            logger.warning(f"Could not enqueue {channel} notification to {recipient}: {e}")
            return DeliveryResult(False, channel, recipient, error=str(e))
        return DeliveryResult(True, channel, recipient, reference=result.id)


_dispatcher = CeleryNotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency; tests override it with a recording dispatcher."""
    return _dispatcher
