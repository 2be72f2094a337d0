"""
services/booking/lifecycle.py
Booking state machine.

    pending → assigned → accepted → reached → in_progress → completed
    cancelled from any non-terminal state

Every status change is one conditional UPDATE (status IN allowed_from), so
two concurrent transitions on the same booking cannot both win. Side effects
(slot, wallet, promo, worker load) run in the caller's transaction and
notifications are only emitted into the Outbox, never sent from here.

STRICT_BOOKING_WORKFLOW=true enforces the linear chain for worker actions;
the default table accepts them from any non-terminal state.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Dict, FrozenSet, List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.events import (
    BookingCreated,
    BookingSnapshot,
    BookingStatusChanged,
    Outbox,
    Party,
    WorkerAssigned,
)
from services.promo.resolver import (
    ZERO,
    compute_discount,
    compute_total,
    increment_usage,
    money,
    resolve_promo,
)
from services.slot import capacity
from services.wallet import ledger
from services.worker.matching import (
    claim_capacity,
    customer_location,
    find_eligible,
    recompute_current_jobs,
)
from shared.models.models import (
    ASSIGNABLE_ROLES,
    Booking,
    BookingAuditLog,
    BookingStatus,
    CancelledBy,
    PaymentMethod,
    PaymentStatus,
    Profile,
    Service,
)
from shared.schemas.schemas import BookingCreateRequest
from shared.utils.errors import (
    ForbiddenError,
    InvalidStatusError,
    NotFoundError,
    ServiceError,
)
from shared.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


# ── Errors ────────────────────────────────────────────────────

class BookingNotFound(NotFoundError):
    code = "booking_not_found"
    message = "Booking not found"


class CustomerNotFound(NotFoundError):
    code = "customer_not_found"
    message = "Customer not found"


class ServiceNotFound(NotFoundError):
    code = "service_not_found"
    message = "Service not found"


class PhoneNotVerified(ForbiddenError):
    code = "phone_not_verified"
    message = "Phone number must be verified before booking"


class InsufficientWalletBalance(ServiceError):
    code = "insufficient_wallet_balance"
    message = "Insufficient wallet balance"


class AlreadyAssigned(ServiceError):
    code = "already_assigned"
    message = "Booking already has an assigned worker"


class NoEligibleWorkers(NotFoundError):
    code = "no_eligible_workers"
    message = "No eligible workers available for this booking"


class WorkerNotFound(NotFoundError):
    code = "worker_not_found"
    message = "Worker not found"


class WorkerNotVerified(ServiceError):
    code = "worker_not_verified"
    message = "Worker has not completed verification"


class NotAssignedWorker(ForbiddenError):
    code = "not_assigned"
    message = "Only the assigned worker can perform this action"


class CannotCancelCompleted(ServiceError):
    code = "cannot_cancel_completed"
    message = "Completed bookings cannot be cancelled"


class AlreadyCancelled(ServiceError):
    code = "already_cancelled"
    message = "Booking is already cancelled"


class CannotRescheduleCompleted(ServiceError):
    code = "cannot_reschedule_completed"
    message = "Completed bookings cannot be rescheduled"


class CannotRescheduleCancelled(ServiceError):
    code = "cannot_reschedule_cancelled"
    message = "Cancelled bookings cannot be rescheduled"


class InvalidPartner(ServiceError):
    code = "invalid_partner"
    message = "Partner must be a verified worker other than the assigned one"


# ── Transition table ──────────────────────────────────────────

class BookingEvent(str, PyEnum):
    CREATE = "create"
    ASSIGN = "assign"
    ACCEPT = "accept"
    MARK_REACHED = "mark_reached"
    START_WORK = "start_work"
    COMPLETE = "complete"
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"


@dataclass(frozen=True)
class Transition:
    allowed_from: FrozenSet[BookingStatus]
    target: Optional[BookingStatus]
    stamp: Optional[str] = None


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})
OPEN_STATUSES = frozenset(BookingStatus) - TERMINAL_STATUSES

PERMISSIVE_TRANSITIONS: Dict[BookingEvent, Transition] = {
    BookingEvent.ASSIGN: Transition(
        frozenset({BookingStatus.PENDING, BookingStatus.ASSIGNED}),
        BookingStatus.ASSIGNED,
        "assigned_at",
    ),
    BookingEvent.ACCEPT: Transition(OPEN_STATUSES, BookingStatus.ACCEPTED, "accepted_at"),
    BookingEvent.MARK_REACHED: Transition(OPEN_STATUSES, BookingStatus.REACHED, "reached_at"),
    BookingEvent.START_WORK: Transition(OPEN_STATUSES, BookingStatus.IN_PROGRESS, "started_at"),
    BookingEvent.COMPLETE: Transition(
        OPEN_STATUSES | {BookingStatus.COMPLETED}, BookingStatus.COMPLETED, "completed_at"
    ),
    BookingEvent.CANCEL: Transition(OPEN_STATUSES, BookingStatus.CANCELLED, "cancelled_at"),
    BookingEvent.RESCHEDULE: Transition(OPEN_STATUSES, None),
}

STRICT_TRANSITIONS: Dict[BookingEvent, Transition] = {
    **PERMISSIVE_TRANSITIONS,
    BookingEvent.ACCEPT: Transition(
        frozenset({BookingStatus.ASSIGNED}), BookingStatus.ACCEPTED, "accepted_at"
    ),
    BookingEvent.MARK_REACHED: Transition(
        frozenset({BookingStatus.ACCEPTED}), BookingStatus.REACHED, "reached_at"
    ),
    BookingEvent.START_WORK: Transition(
        frozenset({BookingStatus.REACHED}), BookingStatus.IN_PROGRESS, "started_at"
    ),
    BookingEvent.COMPLETE: Transition(
        frozenset({BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED}),
        BookingStatus.COMPLETED,
        "completed_at",
    ),
}


def transition_table(strict: Optional[bool] = None) -> Dict[BookingEvent, Transition]:
    if strict is None:
        strict = settings.STRICT_BOOKING_WORKFLOW
    return STRICT_TRANSITIONS if strict else PERMISSIVE_TRANSITIONS


def _rejection(event: BookingEvent, current: BookingStatus) -> ServiceError:
    if event == BookingEvent.CANCEL:
        if current == BookingStatus.COMPLETED:
            return CannotCancelCompleted()
        if current == BookingStatus.CANCELLED:
            return AlreadyCancelled()
    if event == BookingEvent.RESCHEDULE:
        if current == BookingStatus.COMPLETED:
            return CannotRescheduleCompleted()
        if current == BookingStatus.CANCELLED:
            return CannotRescheduleCancelled()
    return InvalidStatusError(current.value, event.value)


# ── Helpers ───────────────────────────────────────────────────

async def get_booking_or_404(db: AsyncSession, booking_id: UUID) -> Booking:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise BookingNotFound()
    return booking


def _party(profile: Optional[Profile], name: Optional[str] = None, phone: Optional[str] = None) -> Party:
    if profile is None:
        return Party(id=None, name=name, phone=phone)
    return Party(
        id=str(profile.id),
        name=name or profile.full_name,
        phone=phone or profile.phone,
        email=profile.email,
    )


def _format_address(address: Optional[dict]) -> str:
    if not address:
        return ""
    parts = [
        address.get(key)
        for key in ("address_line1", "address_line2", "landmark", "city", "state", "pincode")
    ]
    return ", ".join(str(p) for p in parts if p)


async def build_snapshot(db: AsyncSession, booking: Booking) -> BookingSnapshot:
    customer = await db.get(Profile, booking.customer_id)
    service = await db.get(Service, booking.service_id)
    employee = await db.get(Profile, booking.employee_id) if booking.employee_id else None
    return BookingSnapshot(
        booking_id=str(booking.id),
        service_name=service.name if service else "Service",
        booking_date=booking.booking_date.isoformat(),
        booking_time=booking.booking_time,
        total_price=money(booking.total_price),
        customer=_party(customer, booking.customer_name, booking.customer_phone),
        employee=_party(employee) if employee else None,
        cancellation_reason=booking.cancellation_reason,
        address=_format_address(booking.customer_address),
    )


def _audit(
    db: AsyncSession,
    booking: Booking,
    event: BookingEvent,
    from_status: Optional[BookingStatus],
    actor: Optional[str],
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append an immutable audit log entry for every state change."""
    db.add(
        BookingAuditLog(
            booking_id=booking.id,
            event=event.value,
            from_status=from_status.value if from_status else None,
            to_status=booking.status.value,
            actor=actor,
            reason=reason,
            audit_metadata=metadata,
        )
    )


async def _transition(
    db: AsyncSession,
    booking: Booking,
    event: BookingEvent,
    values: Optional[dict] = None,
    guard=None,
) -> BookingStatus:
    """
    Apply event to booking with a conditional UPDATE. Returns the previous
    status. Raises the event's rejection if the booking is (or concurrently
    became) ineligible.
    """
    rule = transition_table()[event]
    previous = booking.status
    if previous not in rule.allowed_from:
        raise _rejection(event, previous)

    changes = dict(values or {})
    if rule.target is not None:
        changes["status"] = rule.target
    if rule.stamp is not None:
        changes[rule.stamp] = utcnow()

    stmt = update(Booking).where(
        Booking.id == booking.id,
        Booking.status.in_(rule.allowed_from),
    )
    if guard is not None:
        stmt = stmt.where(guard)
    result = await db.execute(stmt.values(**changes))
    await db.refresh(booking)

    if result.rowcount == 0:
        if event == BookingEvent.ASSIGN and booking.employee_id is not None:
            raise AlreadyAssigned()
        raise _rejection(event, booking.status)
    return previous


def _check_actor(booking: Booking, actor_id: Optional[UUID]) -> None:
    if actor_id is not None and booking.employee_id != actor_id:
        raise NotAssignedWorker()


# ── Create ────────────────────────────────────────────────────

def _initial_payment(total: Decimal, wallet: Decimal, method: PaymentMethod):
    if wallet > ZERO and total == ZERO:
        return PaymentStatus.PAID, PaymentMethod.WALLET
    if method == PaymentMethod.COD:
        return PaymentStatus.PENDING, method
    return PaymentStatus.UNPAID, method


async def create_booking(
    db: AsyncSession,
    data: BookingCreateRequest,
    outbox: Outbox,
    actor: Optional[str] = None,
) -> Booking:
    """
    All checks run before the first write. Writes, in order: slot unit,
    booking row, wallet debit, promo usage. The caller's transaction makes
    them all-or-nothing; the slot is also given back explicitly if a later
    step fails so the session stays consistent for the rollback path.
    """
    customer = await db.get(Profile, data.customer_id)
    if customer is None:
        raise CustomerNotFound()
    if not customer.phone_verified:
        raise PhoneNotVerified()

    service = await db.get(Service, data.service_id)
    if service is None or not service.is_active:
        raise ServiceNotFound()

    base = money(data.base_price)
    addon = money(data.addon_price)
    discount = money(data.discount_amount)
    wallet = money(data.wallet_amount)

    promo = None
    if data.promo_code:
        gross = base + addon
        promo = await resolve_promo(db, data.promo_code, gross)
        discount = compute_discount(promo, gross)

    await capacity.ensure_available(db, service.id, data.booking_date, data.booking_time)

    if wallet > money(customer.wallet_balance):
        raise InsufficientWalletBalance(
            available=str(money(customer.wallet_balance)),
            requested=str(wallet),
        )
    total = compute_total(base, addon, discount, wallet)
    payment_status, payment_method = _initial_payment(
        total, wallet, PaymentMethod(data.payment_method)
    )

    await capacity.reserve(db, service.id, data.booking_date, data.booking_time)

    address = data.customer_address.model_dump(exclude_none=True)
    booking = Booking(
        customer_id=customer.id,
        service_id=service.id,
        booking_date=data.booking_date,
        booking_time=data.booking_time,
        status=BookingStatus.PENDING,
        customer_name=data.customer_name or customer.full_name,
        customer_phone=data.customer_phone or customer.phone,
        customer_address=address,
        customer_pincode=data.customer_pincode or address.get("pincode"),
        notes=data.notes,
        base_price=base,
        addon_price=addon,
        discount_amount=discount,
        wallet_amount=wallet,
        platform_fee=ZERO,
        total_price=total,
        promo_code=promo.code if promo else None,
        payment_status=payment_status,
        payment_method=payment_method,
        before_photos=[],
        after_photos=[],
    )
    db.add(booking)
    await db.flush()

    try:
        if wallet > ZERO:
            await ledger.debit(
                db, customer.id, wallet, f"Payment for booking {booking.id}", booking.id
            )
        if promo is not None:
            await increment_usage(db, promo.id)
    except ServiceError as e:
        await capacity.release(db, service.id, data.booking_date, data.booking_time)
        if isinstance(e, ledger.InsufficientBalance):
            raise InsufficientWalletBalance() from e
        raise

    _audit(db, booking, BookingEvent.CREATE, None, actor or f"customer:{customer.id}")
    outbox.emit(BookingCreated(await build_snapshot(db, booking)))
    logger.info(f"Booking {booking.id} created for customer {customer.id}, total {total}")
    return booking


# ── Assignment ────────────────────────────────────────────────

async def _assign(
    db: AsyncSession,
    booking: Booking,
    worker: Profile,
    outbox: Outbox,
    actor: str,
    unassigned_only: bool,
    metadata: Optional[dict] = None,
) -> Booking:
    previous_worker = booking.employee_id
    guard = Booking.employee_id.is_(None) if unassigned_only else None
    previous = await _transition(
        db, booking, BookingEvent.ASSIGN, {"employee_id": worker.id}, guard=guard
    )

    await recompute_current_jobs(db, worker.id)
    if previous_worker is not None and previous_worker != worker.id:
        await recompute_current_jobs(db, previous_worker)

    _audit(db, booking, BookingEvent.ASSIGN, previous, actor, metadata=metadata)
    snapshot = await build_snapshot(db, booking)
    outbox.emit(BookingStatusChanged(snapshot, previous.value, booking.status.value))
    outbox.emit(WorkerAssigned(snapshot))
    return booking


async def auto_assign(
    db: AsyncSession,
    booking_id: UUID,
    outbox: Outbox,
    actor: str = "admin",
) -> Booking:
    """Assign the highest-scoring eligible worker that still has capacity."""
    booking = await get_booking_or_404(db, booking_id)
    if booking.employee_id is not None:
        raise AlreadyAssigned()
    if booking.status not in transition_table()[BookingEvent.ASSIGN].allowed_from:
        raise _rejection(BookingEvent.ASSIGN, booking.status)

    candidates = await find_eligible(db, booking.service_id, customer_location(booking))
    for candidate in candidates:
        if await claim_capacity(db, candidate.worker.id):
            logger.info(
                f"Auto-assigning booking {booking.id} to {candidate.worker.id} "
                f"(score {candidate.score:.2f}, location_match={candidate.location_match})"
            )
            return await _assign(
                db,
                booking,
                candidate.worker,
                outbox,
                actor,
                unassigned_only=True,
                metadata={"mode": "auto", "score": candidate.score},
            )
    raise NoEligibleWorkers()


async def manual_assign(
    db: AsyncSession,
    booking_id: UUID,
    worker_id: UUID,
    outbox: Outbox,
    actor: str = "admin",
) -> Booking:
    """
    Admin override: only verification is enforced. Availability and capacity
    are not checked, and an existing assignment may be replaced.
    """
    booking = await get_booking_or_404(db, booking_id)
    worker = await db.get(Profile, worker_id)
    if worker is None or worker.role not in ASSIGNABLE_ROLES:
        raise WorkerNotFound()
    if not worker.is_verified_worker:
        raise WorkerNotVerified()

    if not worker.is_available or worker.current_jobs >= worker.max_capacity:
        logger.warning(
            f"Admin override: assigning booking {booking.id} to {worker.id} "
            f"(available={worker.is_available}, jobs={worker.current_jobs}/{worker.max_capacity})"
        )
    return await _assign(
        db, booking, worker, outbox, actor, unassigned_only=False, metadata={"mode": "manual"}
    )


async def add_partner(
    db: AsyncSession,
    booking_id: UUID,
    partner_id: UUID,
    actor_id: Optional[UUID] = None,
) -> Booking:
    booking = await get_booking_or_404(db, booking_id)
    _check_actor(booking, actor_id)
    if booking.status in TERMINAL_STATUSES:
        raise InvalidStatusError(booking.status.value, "add partner to")
    partner = await db.get(Profile, partner_id)
    if (
        partner is None
        or partner.role not in ASSIGNABLE_ROLES
        or not partner.is_verified_worker
        or partner.id == booking.employee_id
    ):
        raise InvalidPartner()
    booking.partner_id = partner.id
    await db.flush()
    return booking


# ── Worker actions ────────────────────────────────────────────

async def _worker_action(
    db: AsyncSession,
    booking_id: UUID,
    event: BookingEvent,
    outbox: Outbox,
    actor: str,
    actor_id: Optional[UUID],
    values: Optional[dict] = None,
) -> Booking:
    booking = await get_booking_or_404(db, booking_id)
    _check_actor(booking, actor_id)
    previous = await _transition(db, booking, event, values)
    _audit(db, booking, event, previous, actor)
    if previous != booking.status:
        outbox.emit(
            BookingStatusChanged(await build_snapshot(db, booking), previous.value, booking.status.value)
        )
    return booking


async def accept(db, booking_id, outbox, actor="worker", actor_id=None) -> Booking:
    return await _worker_action(db, booking_id, BookingEvent.ACCEPT, outbox, actor, actor_id)


async def mark_reached(db, booking_id, outbox, actor="worker", actor_id=None) -> Booking:
    return await _worker_action(db, booking_id, BookingEvent.MARK_REACHED, outbox, actor, actor_id)


async def start_work(
    db: AsyncSession,
    booking_id: UUID,
    outbox: Outbox,
    actor: str = "worker",
    actor_id: Optional[UUID] = None,
    before_photos: Optional[List[str]] = None,
) -> Booking:
    values = {"before_photos": before_photos} if before_photos else None
    return await _worker_action(
        db, booking_id, BookingEvent.START_WORK, outbox, actor, actor_id, values
    )


async def complete(
    db: AsyncSession,
    booking_id: UUID,
    outbox: Outbox,
    actor: str = "worker",
    actor_id: Optional[UUID] = None,
    before_photos: Optional[List[str]] = None,
    after_photos: Optional[List[str]] = None,
) -> Booking:
    """
    Completing twice is a no-op apart from photo updates. Cash-on-delivery
    bookings are marked paid on completion.
    """
    booking = await get_booking_or_404(db, booking_id)
    _check_actor(booking, actor_id)

    values = {}
    if before_photos:
        values["before_photos"] = before_photos
    if after_photos:
        values["after_photos"] = after_photos
    if booking.status == BookingStatus.COMPLETED:
        if values:
            for key, value in values.items():
                setattr(booking, key, value)
            await db.flush()
        return booking

    if (
        booking.payment_method == PaymentMethod.COD
        and booking.payment_status == PaymentStatus.PENDING
    ):
        values["payment_status"] = PaymentStatus.PAID

    previous = await _transition(db, booking, BookingEvent.COMPLETE, values)
    if booking.employee_id is not None:
        await recompute_current_jobs(db, booking.employee_id)
    _audit(db, booking, BookingEvent.COMPLETE, previous, actor)
    outbox.emit(
        BookingStatusChanged(await build_snapshot(db, booking), previous.value, booking.status.value)
    )
    return booking


# ── Cancel / reschedule ───────────────────────────────────────

async def cancel(
    db: AsyncSession,
    booking_id: UUID,
    outbox: Outbox,
    reason: Optional[str] = None,
    cancelled_by: CancelledBy = CancelledBy.CUSTOMER,
    actor: str = "customer",
) -> Booking:
    """Releases the slot unit, refunds any wallet payment and frees the worker."""
    cancelled_by = CancelledBy(cancelled_by)
    booking = await get_booking_or_404(db, booking_id)
    reason = reason or "No reason provided"
    previous = await _transition(
        db,
        booking,
        BookingEvent.CANCEL,
        {"cancellation_reason": reason, "cancelled_by": cancelled_by},
    )

    await capacity.release(db, booking.service_id, booking.booking_date, booking.booking_time)
    if money(booking.wallet_amount) > ZERO:
        await ledger.refund(
            db,
            booking.customer_id,
            booking.wallet_amount,
            f"Refund for cancelled booking {booking.id}",
            booking.id,
        )
    if booking.employee_id is not None:
        await recompute_current_jobs(db, booking.employee_id)

    _audit(db, booking, BookingEvent.CANCEL, previous, actor, reason=reason)
    outbox.emit(
        BookingStatusChanged(await build_snapshot(db, booking), previous.value, booking.status.value)
    )
    logger.info(f"Booking {booking.id} cancelled by {cancelled_by.value}: {reason}")
    return booking


async def reschedule(
    db: AsyncSession,
    booking_id: UUID,
    booking_date,
    booking_time: str,
    outbox: Outbox,
    actor: str = "customer",
) -> Booking:
    """
    Moves the slot unit (new one reserved first). An assigned booking drops
    back to pending without a worker so it can be re-assigned.
    """
    booking = await get_booking_or_404(db, booking_id)
    rule = transition_table()[BookingEvent.RESCHEDULE]
    if booking.status not in rule.allowed_from:
        raise _rejection(BookingEvent.RESCHEDULE, booking.status)

    old_date, old_time = booking.booking_date, booking.booking_time
    previous = booking.status
    previous_worker = booking.employee_id

    await capacity.move(db, booking.service_id, old_date, old_time, booking_date, booking_time)

    values = {"booking_date": booking_date, "booking_time": booking_time}
    if previous == BookingStatus.ASSIGNED:
        values.update(status=BookingStatus.PENDING, employee_id=None, assigned_at=None)

    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == previous)
        .values(**values)
    )
    await db.refresh(booking)
    if result.rowcount == 0:
        raise _rejection(BookingEvent.RESCHEDULE, booking.status)

    if previous == BookingStatus.ASSIGNED and previous_worker is not None:
        await recompute_current_jobs(db, previous_worker)

    _audit(
        db,
        booking,
        BookingEvent.RESCHEDULE,
        previous,
        actor,
        metadata={
            "from": {"date": old_date.isoformat(), "time": old_time},
            "to": {"date": booking_date.isoformat(), "time": booking_time},
        },
    )
    if previous != booking.status:
        outbox.emit(
            BookingStatusChanged(await build_snapshot(db, booking), previous.value, booking.status.value)
        )
    return booking
