"""
services/booking/router.py
Booking endpoints: create, assignment, worker actions, cancel/reschedule,
soft delete. State changes live in services/booking/lifecycle.py; this
module only authorises, commits and schedules notification delivery.
"""

from typing import List, Optional, Tuple
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking import lifecycle
from services.notification.dispatcher import NotificationDispatcher, get_dispatcher
from services.notification.events import Outbox
from services.worker.matching import customer_location, find_eligible
from shared.middleware.auth import (
    TokenData,
    ensure_acting_for,
    get_admin_flag,
    get_optional_token,
    require_admin,
)
from shared.models.models import Booking, BookingStatus
from shared.schemas.schemas import (
    AssignRequest,
    BookingActionRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingRescheduleRequest,
    BookingResponse,
    EligibleWorkerResponse,
    MessageResponse,
    PartnerRequest,
)
from shared.utils.errors import ForbiddenError, ServiceError, UnauthorizedError
from shared.utils.timeutils import utcnow

router = APIRouter(prefix="/bookings", tags=["Bookings"])


class AlreadyDeleted(ServiceError):
    code = "already_deleted"
    message = "Booking is already deleted"


class NotDeleted(ServiceError):
    code = "not_deleted"
    message = "Booking is not deleted"


class NotInTrash(ServiceError):
    code = "not_in_trash"
    message = "Only soft-deleted bookings can be permanently deleted"


# ── Helpers ───────────────────────────────────────────────────

def _actor(token: Optional[TokenData], is_admin: bool) -> Tuple[str, Optional[UUID]]:
    """Audit label plus the profile the caller must be acting as, if any."""
    if is_admin:
        return "admin", None
    if token is not None:
        return f"{token.role.value}:{token.profile_id}", token.profile_id
    return "anonymous", None


async def _commit_and_notify(
    db: AsyncSession,
    booking: Booking,
    outbox: Outbox,
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
) -> BookingResponse:
    await db.commit()
    if outbox.events:
        background_tasks.add_task(outbox.flush, dispatcher)
    return BookingResponse.model_validate(booking)


def _ensure_can_read(booking: Booking, token: Optional[TokenData], is_admin: bool) -> None:
    if is_admin:
        return
    if token is None:
        raise UnauthorizedError("Admin key or bearer token required")
    if token.profile_id not in (booking.customer_id, booking.employee_id, booking.partner_id):
        raise ForbiddenError("Not allowed to view this booking")


# ── Create / read ─────────────────────────────────────────────

@router.post("", response_model=BookingResponse)
async def create_booking(
    data: BookingCreateRequest,
    background_tasks: BackgroundTasks,
    token: Optional[TokenData] = Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Create a pending booking. Server-side pricing:
    total = max(0, base + addon - discount) - wallet.
    Reserves one slot unit, debits the wallet and counts promo usage.
    """
    ensure_acting_for(token, data.customer_id, is_admin)
    actor, _ = _actor(token, is_admin)
    outbox = Outbox()
    booking = await lifecycle.create_booking(
        db, data, outbox, actor=None if actor == "anonymous" else actor
    )
    return await _commit_and_notify(db, booking, outbox, background_tasks, dispatcher)


@router.get("", response_model=List[BookingResponse])
async def list_bookings(
    customer_id: Optional[UUID] = None,
    employee_id: Optional[UUID] = None,
    status: Optional[BookingStatus] = None,
    include_deleted: bool = False,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    token: Optional[TokenData] = Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
):
    """Admins see everything; token holders only their own bookings."""
    query = select(Booking)
    if not is_admin:
        if token is None:
            raise UnauthorizedError("Admin key or bearer token required")
        query = query.where(
            or_(Booking.customer_id == token.profile_id, Booking.employee_id == token.profile_id)
        )
    if customer_id:
        query = query.where(Booking.customer_id == customer_id)
    if employee_id:
        query = query.where(Booking.employee_id == employee_id)
    if status:
        query = query.where(Booking.status == status)
    if not include_deleted:
        query = query.where(Booking.is_deleted.is_(False))

    query = query.order_by(Booking.created_at.desc()).offset((page - 1) * per_page).limit(per_page)
    result = await db.execute(query)
    return [BookingResponse.model_validate(b) for b in result.scalars().all()]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    token: Optional[TokenData] = Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
):
    booking = await lifecycle.get_booking_or_404(db, booking_id)
    _ensure_can_read(booking, token, is_admin)
    return BookingResponse.model_validate(booking)


# ── Assignment (admin) ────────────────────────────────────────

@router.get("/{booking_id}/eligible-workers", response_model=List[EligibleWorkerResponse])
async def eligible_workers(
    booking_id: UUID,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Ranked candidates auto-assign would choose from, best first."""
    booking = await lifecycle.get_booking_or_404(db, booking_id)
    candidates = await find_eligible(db, booking.service_id, customer_location(booking))
    return [
        EligibleWorkerResponse(
            id=c.worker.id,
            full_name=c.worker.full_name,
            phone=c.worker.phone,
            location=c.worker.location,
            rating=c.worker.rating,
            experience_years=c.worker.experience_years,
            current_jobs=c.worker.current_jobs,
            max_capacity=c.worker.max_capacity,
            priority_score=c.score,
            location_match=c.location_match,
        )
        for c in candidates
    ]


@router.patch("/{booking_id}/auto-assign", response_model=BookingResponse)
async def auto_assign_booking(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    outbox = Outbox()
    booking = await lifecycle.auto_assign(db, booking_id, outbox, actor=admin)
    return await _commit_and_notify(db, booking, outbox, background_tasks, dispatcher)


@router.patch("/{booking_id}/assign", response_model=BookingResponse)
async def assign_booking(
    booking_id: UUID,
    data: AssignRequest,
    background_tasks: BackgroundTasks,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Manual assignment. Only worker verification is enforced."""
    outbox = Outbox()
    booking = await lifecycle.manual_assign(db, booking_id, data.employee_id, outbox, actor=admin)
    return await _commit_and_notify(db, booking, outbox, background_tasks, dispatcher)


@router.post("/{booking_id}/add-partner", response_model=BookingResponse)
async def add_partner(
    booking_id: UUID,
    data: PartnerRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    booking = await lifecycle.add_partner(db, booking_id, data.partner_id)
    await db.commit()
    return BookingResponse.model_validate(booking)


# ── Worker actions ────────────────────────────────────────────

@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    token: Optional[TokenData] = Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    actor, actor_id = _actor(token, is_admin)
    outbox = Outbox()
    booking = await lifecycle.accept(db, booking_id, outbox, actor=actor, actor_id=actor_id)
    return await _commit_and_notify(db, booking, outbox, background_tasks, dispatcher)


@router.post("/{booking_id}/mark-reached", response_model=BookingResponse)
async def mark_reached(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    token: Optional[TokenData] = Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    actor, actor_id = _actor(token, is_admin)
    outbox = Outbox()
    booking = await lifecycle.mark_reached(db, booking_id, outbox, actor=actor, actor_id=actor_id)
    return await _commit_and_notify(db, booking, outbox, background_tasks, dispatcher)


@router.post("/{booking_id}/start-work", response_model=BookingResponse)
async def start_work(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    data: Optional[BookingActionRequest] = None,
    token: Optional[TokenData] = Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    actor, actor_id = _actor(token, is_admin)
    outbox = Outbox()
    booking = await lifecycle.start_work(
        db,
        booking_id,
        outbox,
        actor=actor,
        actor_id=actor_id,
        before_photos=data.before_photos if data else None,
    )
    return await _commit_and_notify(db, booking, outbox, background_tasks, dispatcher)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    data: Optional[BookingActionRequest] = None,
    token: Optional[TokenData] = Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Cash-on-delivery bookings are marked paid here."""
    actor, actor_id = _actor(token, is_admin)
    outbox = Outbox()
    booking = await lifecycle.complete(
        db,
        booking_id,
        outbox,
        actor=actor,
        actor_id=actor_id,
        before_photos=data.before_photos if data else None,
        after_photos=data.after_photos if data else None,
    )
    return await _commit_and_notify(db, booking, outbox, background_tasks, dispatcher)


# ── Cancel / reschedule ───────────────────────────────────────

@router.patch("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    background_tasks: BackgroundTasks,
    token: Optional[TokenData] = Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Releases the slot, refunds wallet money and frees the worker."""
    current = await lifecycle.get_booking_or_404(db, booking_id)
    ensure_acting_for(token, current.customer_id, is_admin)
    actor, _ = _actor(token, is_admin)
    outbox = Outbox()
    booking = await lifecycle.cancel(
        db,
        booking_id,
        outbox,
        reason=data.reason,
        cancelled_by=data.cancelled_by,
        actor=actor,
    )
    return await _commit_and_notify(db, booking, outbox, background_tasks, dispatcher)


@router.patch("/{booking_id}/reschedule", response_model=BookingResponse)
async def reschedule_booking(
    booking_id: UUID,
    data: BookingRescheduleRequest,
    background_tasks: BackgroundTasks,
    token: Optional[TokenData] = Depends(get_optional_token),
    is_admin: bool = Depends(get_admin_flag),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    current = await lifecycle.get_booking_or_404(db, booking_id)
    ensure_acting_for(token, current.customer_id, is_admin)
    actor, _ = _actor(token, is_admin)
    outbox = Outbox()
    booking = await lifecycle.reschedule(
        db, booking_id, data.booking_date, data.booking_time, outbox, actor=actor
    )
    return await _commit_and_notify(db, booking, outbox, background_tasks, dispatcher)


# ── Soft delete (admin) ───────────────────────────────────────

@router.patch("/{booking_id}/delete", response_model=BookingResponse)
async def soft_delete_booking(
    booking_id: UUID,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    booking = await lifecycle.get_booking_or_404(db, booking_id)
    if booking.is_deleted:
        raise AlreadyDeleted()
    booking.is_deleted = True
    booking.deleted_at = utcnow()
    booking.deleted_by = admin
    await db.commit()
    return BookingResponse.model_validate(booking)


@router.patch("/{booking_id}/restore", response_model=BookingResponse)
async def restore_booking(
    booking_id: UUID,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    booking = await lifecycle.get_booking_or_404(db, booking_id)
    if not booking.is_deleted:
        raise NotDeleted()
    booking.is_deleted = False
    booking.deleted_at = None
    booking.deleted_by = None
    await db.commit()
    return BookingResponse.model_validate(booking)


@router.delete("/{booking_id}", response_model=MessageResponse)
async def delete_booking(
    booking_id: UUID,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Permanent delete, only from the trash."""
    booking = await lifecycle.get_booking_or_404(db, booking_id)
    if not booking.is_deleted:
        raise NotInTrash()
    await db.delete(booking)
    await db.commit()
    return MessageResponse(message="Booking permanently deleted")
