"""
services/slot/capacity.py
Per (service, date, time window) capacity accounting.

A missing Slot row means unlimited capacity. Increments are guarded in
SQL (booked_count < total_capacity), so two concurrent reservations can
never push a slot past its capacity.
"""

import logging
from datetime import date
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import Booking, BookingStatus, Slot
from shared.utils.errors import ServiceError

logger = logging.getLogger(__name__)


class SlotUnavailable(ServiceError):
    code = "slot_unavailable"
    message = "Selected time slot is fully booked"


def resolve_window(booking_time: str) -> str:
    """morning/afternoon/evening map to fixed ranges; raw ranges pass through."""
    return settings.TIME_SLOT_WINDOWS.get(booking_time.lower(), booking_time)


async def find_slot(
    db: AsyncSession,
    service_id: UUID,
    day: date,
    booking_time: str,
) -> Optional[Slot]:
    result = await db.execute(
        select(Slot).where(
            Slot.service_id == service_id,
            Slot.date == day,
            Slot.time_slot == resolve_window(booking_time),
        )
    )
    return result.scalar_one_or_none()


async def count_live_bookings(
    db: AsyncSession,
    service_id: UUID,
    day: date,
    booking_time: str,
) -> int:
    """Non-cancelled, non-deleted bookings already holding this window."""
    window = resolve_window(booking_time)
    result = await db.execute(
        select(Booking.booking_time).where(
            Booking.service_id == service_id,
            Booking.booking_date == day,
            Booking.status != BookingStatus.CANCELLED,
            Booking.is_deleted.is_(False),
        )
    )
    return sum(1 for held in result.scalars() if resolve_window(held) == window)


async def ensure_available(
    db: AsyncSession,
    service_id: UUID,
    day: date,
    booking_time: str,
) -> Optional[Slot]:
    """Read-only pre-check used before any write of a multi-step operation."""
    slot = await find_slot(db, service_id, day, booking_time)
    if slot is not None and slot.booked_count >= slot.total_capacity:
        raise SlotUnavailable()
    return slot


async def reserve(
    db: AsyncSession,
    service_id: UUID,
    day: date,
    booking_time: str,
) -> Optional[Slot]:
    """Take one unit. Returns the slot, or None when the window is unconstrained."""
    slot = await find_slot(db, service_id, day, booking_time)
    if slot is None:
        return None

    result = await db.execute(
        update(Slot)
        .where(Slot.id == slot.id, Slot.booked_count < Slot.total_capacity)
        .values(
            booked_count=Slot.booked_count + 1,
            is_available=Slot.booked_count + 1 < Slot.total_capacity,
        )
    )
    if result.rowcount == 0:
        raise SlotUnavailable()
    await db.refresh(slot)
    return slot


async def release(
    db: AsyncSession,
    service_id: UUID,
    day: date,
    booking_time: str,
) -> Optional[Slot]:
    """Give one unit back (floor 0)."""
    slot = await find_slot(db, service_id, day, booking_time)
    if slot is None:
        return None

    result = await db.execute(
        update(Slot)
        .where(Slot.id == slot.id, Slot.booked_count > 0)
        .values(
            booked_count=Slot.booked_count - 1,
            is_available=Slot.booked_count - 1 < Slot.total_capacity,
        )
    )
    if result.rowcount == 0:
        logger.warning(f"Release on empty slot {slot.id}; booked_count already 0")
    await db.refresh(slot)
    return slot


async def move(
    db: AsyncSession,
    service_id: UUID,
    old_day: date,
    old_time: str,
    new_day: date,
    new_time: str,
) -> None:
    """
    All-or-nothing: the new unit is reserved before the old one is released,
    so a full target slot leaves the original reservation untouched.
    """
    if old_day == new_day and resolve_window(old_time) == resolve_window(new_time):
        return
    await reserve(db, service_id, new_day, new_time)
    await release(db, service_id, old_day, old_time)
