"""
services/worker/router.py
Worker onboarding and the admin verification queue.

A worker becomes eligible for auto-assignment only once approved, with
id_verified, skills_verified and background_check_status=approved.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.notification.dispatcher import NotificationDispatcher, get_dispatcher
from shared.middleware.auth import require_admin
from shared.models.models import ASSIGNABLE_ROLES, Profile, ProfileRole, ReviewStatus, Service
from shared.schemas.schemas import (
    WorkerApplyRequest,
    WorkerAvailabilityRequest,
    WorkerRejectRequest,
    WorkerResponse,
    WorkerVerificationRequest,
)
from shared.utils.errors import ConflictError, NotFoundError, ServiceError

router = APIRouter(prefix="/workers", tags=["Workers"])
admin_router = APIRouter(prefix="/admin/workers", tags=["Admin"])


class UnknownSkill(ServiceError):
    code = "invalid_skills"
    message = "One or more skills do not match an active service"


class AlreadyApproved(ConflictError):
    code = "already_approved"
    message = "Worker is already approved"


async def _get_worker_or_404(db: AsyncSession, worker_id: UUID) -> Profile:
    worker = await db.get(Profile, worker_id)
    if worker is None or worker.role not in ASSIGNABLE_ROLES:
        raise NotFoundError("Worker not found", code="worker_not_found")
    return worker


async def _load_skills(db: AsyncSession, skill_ids: List[UUID]) -> List[Service]:
    if not skill_ids:
        return []
    result = await db.execute(
        select(Service).where(Service.id.in_(set(skill_ids)), Service.is_active.is_(True))
    )
    services = list(result.scalars().all())
    if len(services) != len(set(skill_ids)):
        raise UnknownSkill()
    return services


def _notify_worker(
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
    worker: Profile,
    subject: str,
    message: str,
) -> None:
    background_tasks.add_task(
        dispatcher.dispatch,
        worker.phone,
        settings.NOTIFICATION_CHANNEL,
        subject,
        message,
        {"user_id": str(worker.id), "kind": "worker_review"},
    )


# ── Public ────────────────────────────────────────────────────

@router.post("/apply", response_model=WorkerResponse, status_code=status.HTTP_201_CREATED)
async def apply_as_worker(
    data: WorkerApplyRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Create or update the profile behind the phone as a pending worker
    application. Approved workers cannot re-apply.
    """
    skills = await _load_skills(db, data.skills)

    result = await db.execute(select(Profile).where(Profile.phone == data.phone))
    profile = result.scalar_one_or_none()
    if profile is not None and profile.approval_status == ReviewStatus.APPROVED and (
        profile.role in ASSIGNABLE_ROLES
    ):
        raise AlreadyApproved()

    if profile is None:
        profile = Profile(phone=data.phone, skills=skills)
        db.add(profile)
    else:
        profile.skills = skills

    profile.full_name = data.full_name
    profile.email = str(data.email) if data.email else profile.email
    profile.city = data.city
    profile.location = data.location
    profile.experience_years = data.experience_years
    profile.max_capacity = data.max_capacity
    profile.role = ProfileRole.WORKER
    profile.approval_status = ReviewStatus.PENDING
    profile.rejection_reason = None
    profile.is_available = False

    await db.commit()
    return WorkerResponse.model_validate(profile)


# ── Admin ─────────────────────────────────────────────────────

@admin_router.get("/pending", response_model=List[WorkerResponse])
async def list_pending_workers(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Applications awaiting review, oldest first (FIFO queue)."""
    result = await db.execute(
        select(Profile)
        .where(
            Profile.role.in_(ASSIGNABLE_ROLES),
            Profile.approval_status == ReviewStatus.PENDING,
        )
        .order_by(Profile.created_at.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [WorkerResponse.model_validate(w) for w in result.scalars().all()]


@admin_router.post("/{worker_id}/approve", response_model=WorkerResponse)
async def approve_worker(
    worker_id: UUID,
    background_tasks: BackgroundTasks,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Approve an application: role becomes employee and the worker goes available."""
    worker = await _get_worker_or_404(db, worker_id)
    if worker.approval_status == ReviewStatus.APPROVED:
        raise AlreadyApproved()

    worker.approval_status = ReviewStatus.APPROVED
    worker.role = ProfileRole.EMPLOYEE
    worker.rejection_reason = None
    worker.is_available = True
    await db.commit()

    _notify_worker(
        background_tasks,
        dispatcher,
        worker,
        "Application Approved",
        "Congratulations! Your application has been approved. You can now receive bookings.",
    )
    return WorkerResponse.model_validate(worker)


@admin_router.post("/{worker_id}/reject", response_model=WorkerResponse)
async def reject_worker(
    worker_id: UUID,
    background_tasks: BackgroundTasks,
    data: Optional[WorkerRejectRequest] = None,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Reject with an optional reason. The worker may re-apply after fixing issues."""
    worker = await _get_worker_or_404(db, worker_id)
    reason = data.reason if data else None

    worker.approval_status = ReviewStatus.REJECTED
    worker.rejection_reason = reason
    worker.is_available = False
    await db.commit()

    _notify_worker(
        background_tasks,
        dispatcher,
        worker,
        "Application Update",
        f"Your application was not approved. Reason: {reason or 'not specified'}",
    )
    return WorkerResponse.model_validate(worker)


@admin_router.patch("/{worker_id}/verification", response_model=WorkerResponse)
async def update_verification(
    worker_id: UUID,
    data: WorkerVerificationRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    worker = await _get_worker_or_404(db, worker_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(worker, field, value)
    await db.commit()
    return WorkerResponse.model_validate(worker)


@admin_router.patch("/{worker_id}/availability", response_model=WorkerResponse)
async def update_availability(
    worker_id: UUID,
    data: WorkerAvailabilityRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    worker = await _get_worker_or_404(db, worker_id)
    worker.is_available = data.is_available
    await db.commit()
    return WorkerResponse.model_validate(worker)
