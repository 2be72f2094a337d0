"""
tasks/notification_tasks.py
Celery tasks for multi-channel notification delivery.

Each message gets one Notification row that moves pending -> sent|failed.
Provider failures are logged and retried with backoff; they never reach
the API request that produced the message.

Usage (via services.notification.dispatcher):
    deliver_notification.delay(channel="whatsapp", recipient="+919999999999", ...)
"""

import logging
from functools import lru_cache
from typing import Callable, Dict, Optional
from uuid import UUID

from celery import Task
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Base Task with DB session ──────────────────────────────────────────────────

def sync_database_url(url: str) -> str:
    """Convert the async URL (postgresql+asyncpg://) to a sync one (postgresql+psycopg2://)."""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


@lru_cache()
def _session_factory() -> sessionmaker:
    engine = create_engine(sync_database_url(settings.DATABASE_URL), pool_pre_ping=True)
    return sessionmaker(bind=engine)


class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True

    def get_session(self) -> Session:
        """Get a synchronous SQLAlchemy session (Celery runs sync by default)."""
        return _session_factory()()


# ── Core Delivery Functions ────────────────────────────────────────────────────

def _international(phone: str) -> str:
    return phone if phone.startswith("+") else f"+91{phone}"


def _send_whatsapp(phone: str, subject: Optional[str], body: str) -> bool:
    """Send a WhatsApp message via Twilio. Returns True on success."""
    try:
        from twilio.rest import Client
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        client.messages.create(
            body=body,
            from_=f"whatsapp:{settings.TWILIO_WHATSAPP_FROM}",
            to=f"whatsapp:{_international(phone)}",
        )
        return True
    except Exception as e:
        logger.warning(f"WhatsApp send failed: {e}")
        return False


def _send_sms(phone: str, subject: Optional[str], body: str) -> bool:
    """Send SMS via Twilio. Returns True on success."""
    try:
        from twilio.rest import Client
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        client.messages.create(
            body=body,
            from_=settings.TWILIO_FROM_NUMBER,
            to=_international(phone),
        )
        return True
    except Exception as e:
        logger.warning(f"SMS send failed: {e}")
        return False


def _send_email(to_email: str, subject: Optional[str], body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": to_email,
            "subject": subject or settings.EMAIL_FROM_NAME,
            "html": "<p>" + body.replace("\n", "<br>") + "</p>",
        })
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


CHANNEL_SENDERS: Dict[str, Callable[[str, Optional[str], str], bool]] = {
    "whatsapp": _send_whatsapp,
    "sms": _send_sms,
    "email": _send_email,
}


def record_and_deliver(
    db: Session,
    channel: str,
    recipient: str,
    subject: Optional[str],
    message: str,
    user_id: Optional[str] = None,
    booking_id: Optional[str] = None,
    data: Optional[dict] = None,
    notification_id: Optional[str] = None,
):
    """
    Create (or reload, on retry) the Notification row, try the provider once,
    and persist the outcome. Returns the row.
    """
    from shared.models.models import Notification, NotificationChannel, NotificationStatus
    from shared.utils.timeutils import utcnow

    notification = db.get(Notification, UUID(notification_id)) if notification_id else None
    if notification is None:
        notification = Notification(
            user_id=UUID(user_id) if user_id else None,
            booking_id=UUID(booking_id) if booking_id else None,
            channel=NotificationChannel(channel),
            recipient=recipient,
            subject=subject,
            message="[redacted]" if (data or {}).get("redact") else message,
            status=NotificationStatus.PENDING,
            data=data,
        )
        db.add(notification)
        db.flush()

    sender = CHANNEL_SENDERS.get(channel)
    sent = sender(recipient, subject, message) if sender else False
    if sent:
        notification.status = NotificationStatus.SENT
        notification.sent_at = utcnow()
        notification.error = None
    else:
        notification.status = NotificationStatus.FAILED
        notification.error = f"{channel} delivery failed"
    db.commit()
    return notification


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def deliver_notification(
    self,
    channel: str,
    recipient: str,
    subject: Optional[str],
    message: str,
    user_id: Optional[str] = None,
    booking_id: Optional[str] = None,
    data: Optional[dict] = None,
    notification_id: Optional[str] = None,
):
    """Deliver one message on one channel, retrying with exponential backoff."""
    db = self.get_session()
    try:
        notification = record_and_deliver(
            db, channel, recipient, subject, message,
            user_id=user_id, booking_id=booking_id, data=data,
            notification_id=notification_id,
        )
        notification_id = str(notification.id)
        failed = notification.error is not None
    except Exception as e:
        db.rollback()
        logger.exception(f"deliver_notification failed: {e}")
        raise self.retry(exc=e, countdown=60)
    finally:
        db.close()

    if failed:
        raise self.retry(
            kwargs={
                "channel": channel,
                "recipient": recipient,
                "subject": subject,
                "message": message,
                "user_id": user_id,
                "booking_id": booking_id,
                "data": data,
                "notification_id": notification_id,
            },
            countdown=60 * (2 ** self.request.retries),
        )
    return notification_id
