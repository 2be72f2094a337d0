"""
services/notification/router.py
Read access to notification delivery records (admin).
Delivery itself happens in tasks/notification_tasks.py.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import require_admin
from shared.models.models import Notification, NotificationStatus
from shared.schemas.schemas import NotificationResponse
from shared.utils.errors import NotFoundError

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    user_id: Optional[UUID] = None,
    booking_id: Optional[UUID] = None,
    status: Optional[NotificationStatus] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Notification)
    if user_id:
        query = query.where(Notification.user_id == user_id)
    if booking_id:
        query = query.where(Notification.booking_id == booking_id)
    if status:
        query = query.where(Notification.status == status)

    result = await db.execute(
        query.order_by(Notification.created_at.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return result.scalars().all()


@router.get("/{notification_id}", response_model=NotificationResponse)
async def get_notification(
    notification_id: UUID,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    notification = await db.get(Notification, notification_id)
    if notification is None:
        raise NotFoundError("Notification not found", code="notification_not_found")
    return notification
