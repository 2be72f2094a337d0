"""
services/slot/router.py
Slot capacity administration. Slots are optional: a booking window with
no Slot row is unconstrained.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.slot.capacity import count_live_bookings, find_slot, resolve_window
from shared.middleware.auth import require_admin
from shared.models.models import Service, Slot
from shared.schemas.schemas import SlotCreateRequest, SlotResponse, SlotUpdateRequest
from shared.utils.errors import ConflictError, NotFoundError, ServiceError

router = APIRouter(prefix="/slots", tags=["Slots"])


class SlotExists(ConflictError):
    code = "slot_exists"
    message = "A slot already exists for this service, date and time"


class CapacityBelowBooked(ServiceError):
    code = "capacity_below_booked"


@router.get("", response_model=List[SlotResponse])
async def list_slots(
    service_id: Optional[UUID] = None,
    day: Optional[date] = Query(None, alias="date"),
    db: AsyncSession = Depends(get_db),
):
    query = select(Slot)
    if service_id:
        query = query.where(Slot.service_id == service_id)
    if day:
        query = query.where(Slot.date == day)
    result = await db.execute(query.order_by(Slot.date, Slot.time_slot))
    return result.scalars().all()


@router.post("", response_model=SlotResponse, status_code=status.HTTP_201_CREATED)
async def create_slot(
    data: SlotCreateRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if await db.get(Service, data.service_id) is None:
        raise NotFoundError("Service not found", code="service_not_found")
    if await find_slot(db, data.service_id, data.date, data.time_slot) is not None:
        raise SlotExists()

    # Bookings made before the slot existed already hold units in it
    booked = await count_live_bookings(db, data.service_id, data.date, data.time_slot)
    if booked > data.total_capacity:
        raise CapacityBelowBooked(
            f"Capacity cannot be lower than the {booked} units already booked",
            booked_count=booked,
        )

    slot = Slot(
        service_id=data.service_id,
        date=data.date,
        time_slot=resolve_window(data.time_slot),
        total_capacity=data.total_capacity,
        booked_count=booked,
        is_available=booked < data.total_capacity,
    )
    db.add(slot)
    try:
        await db.flush()
    except IntegrityError:
        raise SlotExists()
    await db.commit()
    return slot


@router.patch("/{slot_id}", response_model=SlotResponse)
async def update_slot(
    slot_id: UUID,
    data: SlotUpdateRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    slot = await db.get(Slot, slot_id)
    if slot is None:
        raise NotFoundError("Slot not found", code="slot_not_found")
    if data.total_capacity < slot.booked_count:
        raise CapacityBelowBooked(
            f"Capacity cannot be lower than the {slot.booked_count} units already booked",
            booked_count=slot.booked_count,
        )
    slot.total_capacity = data.total_capacity
    slot.is_available = slot.booked_count < slot.total_capacity
    await db.commit()
    return slot
