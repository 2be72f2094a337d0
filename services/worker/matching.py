"""
services/worker/matching.py
Eligibility filter and priority scoring for auto-assignment.

score = 100 * location_match + 10 * rating + 5 * experience_years
        + 2 * (max_capacity - current_jobs)

Ties keep the store's order (oldest profile first).
"""

import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    ASSIGNABLE_ROLES,
    Booking,
    Profile,
    ReviewStatus,
    Service,
)

logger = logging.getLogger(__name__)

LOCATION_WEIGHT = 100
RATING_WEIGHT = 10
EXPERIENCE_WEIGHT = 5
SLACK_WEIGHT = 2


@dataclass
class Candidate:
    worker: Profile
    score: float
    location_match: bool


def customer_location(booking: Booking) -> str:
    address = booking.customer_address or {}
    return booking.customer_pincode or address.get("pincode") or ""


def priority_score(worker: Profile, location: Optional[str]) -> Candidate:
    location_match = bool(worker.location) and worker.location == location
    score = (
        (LOCATION_WEIGHT if location_match else 0)
        + RATING_WEIGHT * float(worker.rating or 0)
        + EXPERIENCE_WEIGHT * (worker.experience_years or 0)
        + SLACK_WEIGHT * (worker.max_capacity - worker.current_jobs)
    )
    return Candidate(worker=worker, score=score, location_match=location_match)


def eligibility_filter(service_id: UUID):
    """SQL form of the eligibility predicate."""
    return (
        Profile.role.in_(ASSIGNABLE_ROLES),
        Profile.approval_status == ReviewStatus.APPROVED,
        Profile.id_verified.is_(True),
        Profile.skills_verified.is_(True),
        Profile.background_check_status == ReviewStatus.APPROVED,
        Profile.is_available.is_(True),
        Profile.current_jobs < Profile.max_capacity,
        or_(Profile.skills.any(Service.id == service_id), ~Profile.skills.any()),
    )


async def find_eligible(
    db: AsyncSession,
    service_id: UUID,
    location: Optional[str],
) -> List[Candidate]:
    """Eligible workers for service_id, best first."""
    result = await db.execute(
        select(Profile)
        .where(*eligibility_filter(service_id))
        .order_by(Profile.created_at.asc(), Profile.id.asc())
    )
    candidates = [priority_score(worker, location) for worker in result.scalars().all()]
    # list.sort is stable, so equal scores keep store order
    candidates.sort(key=lambda c: c.score, reverse=True)
    return candidates


async def claim_capacity(db: AsyncSession, worker_id: UUID) -> bool:
    """
    Take one unit of a worker's capacity if any is left. Guards against two
    concurrent auto-assigns both picking a worker with one free slot.
    """
    result = await db.execute(
        update(Profile)
        .where(Profile.id == worker_id, Profile.current_jobs < Profile.max_capacity)
        .values(current_jobs=Profile.current_jobs + 1)
    )
    return result.rowcount == 1


async def recompute_current_jobs(db: AsyncSession, worker_id: UUID) -> int:
    """current_jobs = number of active bookings assigned to the worker."""
    count = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.employee_id == worker_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
    )
    await db.execute(
        update(Profile).where(Profile.id == worker_id).values(current_jobs=count or 0)
    )
    return count or 0
