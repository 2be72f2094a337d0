"""
services/promo/router.py
Promo code administration and a read-only validation preview.
"""

from decimal import Decimal
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.promo.resolver import (
    compute_discount,
    get_promo_by_code,
    normalize_code,
    resolve_promo,
)
from shared.middleware.auth import require_admin
from shared.models.models import PromoCode
from shared.schemas.schemas import (
    MessageResponse,
    PromoCreateRequest,
    PromoResponse,
    PromoUpdateRequest,
    PromoValidationResponse,
)
from shared.utils.errors import ConflictError, NotFoundError
from shared.utils.timeutils import utcnow

router = APIRouter(prefix="/promo", tags=["Promo Codes"])


class PromoCodeExists(ConflictError):
    code = "code_exists"
    message = "Promo code already exists"


async def _get_promo_or_404(db: AsyncSession, promo_id: UUID) -> PromoCode:
    promo = await db.get(PromoCode, promo_id)
    if promo is None:
        raise NotFoundError("Promo code not found", code="promo_not_found")
    return promo


@router.get("", response_model=List[PromoResponse])
async def list_promos(
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(PromoCode).order_by(PromoCode.created_at.desc()))
    return result.scalars().all()


@router.get("/active", response_model=List[PromoResponse])
async def list_active_promos(db: AsyncSession = Depends(get_db)):
    """Codes that are active and inside their validity window right now."""
    now = utcnow()
    result = await db.execute(
        select(PromoCode)
        .where(
            PromoCode.is_active.is_(True),
            or_(PromoCode.valid_from.is_(None), PromoCode.valid_from <= now),
            or_(PromoCode.valid_until.is_(None), PromoCode.valid_until >= now),
        )
        .order_by(PromoCode.created_at.desc())
    )
    return [
        p for p in result.scalars().all()
        if p.max_usage is None or p.usage_count < p.max_usage
    ]


@router.get("/validate", response_model=PromoValidationResponse)
async def validate_promo(
    code: str = Query(..., min_length=1, max_length=50),
    subtotal: Decimal = Query(..., ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Preview a discount. Never counts as a use of the code."""
    promo = await resolve_promo(db, code, subtotal)
    return PromoValidationResponse(
        code=promo.code,
        discount_type=promo.discount_type,
        discount_value=promo.discount_value,
        discount_amount=compute_discount(promo, subtotal),
    )


@router.post("", response_model=PromoResponse, status_code=status.HTTP_201_CREATED)
async def create_promo(
    data: PromoCreateRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if await get_promo_by_code(db, data.code) is not None:
        raise PromoCodeExists()

    promo = PromoCode(**data.model_dump(exclude={"code"}), code=normalize_code(data.code))
    db.add(promo)
    try:
        await db.flush()
    except IntegrityError:
        raise PromoCodeExists()
    await db.commit()
    return promo


@router.patch("/{promo_id}", response_model=PromoResponse)
async def update_promo(
    promo_id: UUID,
    data: PromoUpdateRequest,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    promo = await _get_promo_or_404(db, promo_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(promo, field, value)
    await db.commit()
    return promo


@router.delete("/{promo_id}", response_model=MessageResponse)
async def delete_promo(
    promo_id: UUID,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    promo = await _get_promo_or_404(db, promo_id)
    await db.delete(promo)
    await db.commit()
    return MessageResponse(message="Promo code deleted")
