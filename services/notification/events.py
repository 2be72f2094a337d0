"""
services/notification/events.py
Booking domain events and their consumer.

Lifecycle code only emits events into a per-request Outbox. Routers flush
the outbox through BackgroundTasks after the transaction commits, so
delivery problems can never roll back or delay a state transition.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Union

from config.settings import settings
from services.notification.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

BRAND = "Home Services"


@dataclass(frozen=True)
class Party:
    id: Optional[str]
    name: Optional[str]
    phone: Optional[str]
    email: Optional[str] = None


@dataclass(frozen=True)
class BookingSnapshot:
    """What the messages need, captured inside the transaction."""
    booking_id: str
    service_name: str
    booking_date: str
    booking_time: str
    total_price: Decimal
    customer: Party
    employee: Optional[Party] = None
    cancellation_reason: Optional[str] = None
    address: str = ""


@dataclass(frozen=True)
class BookingCreated:
    booking: BookingSnapshot


@dataclass(frozen=True)
class BookingStatusChanged:
    booking: BookingSnapshot
    old_status: Optional[str]
    new_status: str


@dataclass(frozen=True)
class WorkerAssigned:
    booking: BookingSnapshot


BookingEvent = Union[BookingCreated, BookingStatusChanged, WorkerAssigned]


# ── Templates ─────────────────────────────────────────────────

STATUS_SUBJECTS = {
    "assigned": "Worker Assigned to Your Booking",
    "accepted": "Worker Accepted Your Booking",
    "reached": "Worker Reached Your Location",
    "in_progress": "Service Started",
    "completed": "Service Completed",
    "cancelled": "Booking Cancelled",
    "pending": "Booking Rescheduled",
}

STATUS_MESSAGES = {
    "assigned": "Great news! {employee} has been assigned to your {service} booking. They will contact you soon.",
    "accepted": "{employee} has accepted your {service} booking. They will reach your location soon.",
    "reached": "{employee} has reached your location for your {service} service.",
    "in_progress": "{employee} has started your {service} service. They are working on it now.",
    "completed": "Your {service} service has been completed! Please rate your experience in your dashboard.",
    "cancelled": "Your {service} booking has been cancelled. If you have any questions, please contact us.",
    "pending": "Your {service} booking has been moved to {date} ({time}). We will assign a professional shortly.",
}

WORKER_ASSIGNED_MESSAGE = (
    "New booking assigned!\n\nService: {service}\nCustomer: {customer}\n"
    "Phone: {customer_phone}\nDate: {date}\nTime: {time}\nAddress: {address}"
)

ADMIN_NEW_BOOKING_MESSAGE = (
    "New booking received!\n\nService: {service}\nCustomer: {customer} ({customer_phone})\n"
    "Date: {date}\nTime: {time}\nAmount: Rs.{amount}"
)


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


def _vars(snapshot: BookingSnapshot) -> dict:
    return {
        "service": snapshot.service_name,
        "customer": snapshot.customer.name or "Customer",
        "customer_phone": snapshot.customer.phone or "-",
        "employee": (snapshot.employee.name if snapshot.employee else None) or "Our professional",
        "date": snapshot.booking_date,
        "time": snapshot.booking_time,
        "address": snapshot.address or "-",
        "amount": snapshot.total_price,
    }


@dataclass
class Message:
    recipient: str
    channel: str
    subject: Optional[str]
    body: str
    context: dict


def _direct(party: Party, subject: str, body: str, context: dict) -> Optional[Message]:
    """One message per party: phone on the configured channel, else email."""
    if party.phone:
        return Message(party.phone, settings.NOTIFICATION_CHANNEL, subject, body, context)
    if party.email:
        return Message(party.email, "email", subject, body, context)
    return None


def render_messages(event: BookingEvent) -> List[Message]:
    snapshot = event.booking
    values = _vars(snapshot)
    base_context = {"booking_id": snapshot.booking_id}

    if isinstance(event, BookingStatusChanged):
        template = STATUS_MESSAGES.get(event.new_status)
        if template is None:
            return []
        body = f"Hello! {values['customer']}\n\n{_render(template, **values)}\n\nThank you for choosing {BRAND}!"
        context = {**base_context, "user_id": snapshot.customer.id, "status": event.new_status}
        message = _direct(snapshot.customer, STATUS_SUBJECTS[event.new_status], body, context)
        return [message] if message else []

    if isinstance(event, WorkerAssigned):
        if snapshot.employee is None:
            return []
        context = {**base_context, "user_id": snapshot.employee.id, "kind": "worker_assigned"}
        message = _direct(
            snapshot.employee, "New Booking Assigned", _render(WORKER_ASSIGNED_MESSAGE, **values), context
        )
        return [message] if message else []

    if isinstance(event, BookingCreated):
        if not settings.ADMIN_NOTIFICATION_PHONE:
            return []
        return [
            Message(
                settings.ADMIN_NOTIFICATION_PHONE,
                settings.NOTIFICATION_CHANNEL,
                "New Booking",
                _render(ADMIN_NEW_BOOKING_MESSAGE, **values),
                {**base_context, "kind": "admin_new_booking"},
            )
        ]

    return []


# ── Outbox ────────────────────────────────────────────────────

@dataclass
class Outbox:
    events: List[BookingEvent] = field(default_factory=list)

    def emit(self, event: BookingEvent) -> None:
        self.events.append(event)

    def flush(self, dispatcher: NotificationDispatcher) -> int:
        """
        Deliver every pending event. Returns the number of messages the
        dispatcher accepted; failures are logged and dropped.
        """
        delivered = 0
        events, self.events = self.events, []
        for event in events:
            for message in render_messages(event):
                try:
                    result = dispatcher.dispatch(
                        message.recipient,
                        message.channel,
                        message.subject,
                        message.body,
                        message.context,
                    )
                except Exception as e:
                    logger.warning(
                        f"Notification for booking {event.booking.booking_id} failed: {e}"
                    )
                    continue
                if result.success:
                    delivered += 1
                else:
                    logger.warning(
                        f"Notification for booking {event.booking.booking_id} "
                        f"not accepted: {result.error}"
                    )
        return delivered
