"""
services/promo/resolver.py
Promo validation and authoritative price computation.

resolve_promo() only reads; usage_count is bumped exactly once, by
increment_usage(), when a booking that applied the code is created.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import DiscountType, PromoCode
from shared.utils.errors import NotFoundError, ServiceError
from shared.utils.timeutils import as_utc, utcnow

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


# ── Errors ────────────────────────────────────────────────────

class PromoInvalid(NotFoundError):
    code = "invalid_code"
    message = "Invalid promo code"


class PromoExpired(ServiceError):
    code = "expired"
    message = "Promo code has expired"


class PromoNotYetValid(ServiceError):
    code = "not_yet_valid"
    message = "Promo code is not yet valid"


class PromoMinOrderValue(ServiceError):
    code = "min_order_value"


class PromoUsageLimitExceeded(ServiceError):
    code = "usage_limit_exceeded"
    message = "Promo code usage limit reached"


class InvalidWalletAmount(ServiceError):
    code = "invalid_wallet_amount"
    message = "Wallet amount cannot exceed the order amount"


# ── Pricing ───────────────────────────────────────────────────

def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def subtotal_after_discount(base: Decimal, addon: Decimal, discount: Decimal) -> Decimal:
    return max(ZERO, money(base) + money(addon) - money(discount))


def compute_total(base: Decimal, addon: Decimal, discount: Decimal, wallet: Decimal) -> Decimal:
    """
    subtotal = max(0, base + addon - discount); wallet may not exceed it.
    total = max(0, subtotal - wallet).
    """
    subtotal = subtotal_after_discount(base, addon, discount)
    wallet = money(wallet)
    if wallet > subtotal:
        raise InvalidWalletAmount()
    return max(ZERO, subtotal - wallet)


def compute_discount(promo: PromoCode, subtotal: Decimal) -> Decimal:
    """Percentage discounts are capped by max_discount; never exceeds subtotal."""
    subtotal = money(subtotal)
    if promo.discount_type == DiscountType.PERCENTAGE:
        discount = subtotal * Decimal(promo.discount_value) / Decimal(100)
        if promo.max_discount is not None:
            discount = min(discount, Decimal(promo.max_discount))
    else:
        discount = Decimal(promo.discount_value)
    return min(money(discount), subtotal)


# ── Promo resolution ──────────────────────────────────────────

def normalize_code(code: str) -> str:
    return code.strip().upper()


async def get_promo_by_code(db: AsyncSession, code: str) -> Optional[PromoCode]:
    result = await db.execute(select(PromoCode).where(PromoCode.code == normalize_code(code)))
    return result.scalar_one_or_none()


async def resolve_promo(
    db: AsyncSession,
    code: str,
    subtotal: Decimal,
    now: Optional[datetime] = None,
) -> PromoCode:
    """Return the promo if it can be applied to subtotal, else raise."""
    now = now or utcnow()
    promo = await get_promo_by_code(db, code)

    if promo is None or not promo.is_active:
        raise PromoInvalid()
    if promo.valid_until is not None and as_utc(promo.valid_until) < now:
        raise PromoExpired()
    if promo.valid_from is not None and as_utc(promo.valid_from) > now:
        raise PromoNotYetValid()
    if money(subtotal) < Decimal(promo.min_order_value):
        raise PromoMinOrderValue(
            f"Minimum order value of {money(promo.min_order_value)} required",
            min=str(money(promo.min_order_value)),
        )
    if promo.max_usage is not None and promo.usage_count >= promo.max_usage:
        raise PromoUsageLimitExceeded()
    return promo


async def increment_usage(db: AsyncSession, promo_id: UUID) -> None:
    """
    Atomic +1 that refuses to pass max_usage, so concurrent bookings
    cannot overshoot the cap.
    """
    result = await db.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promo_id,
            or_(PromoCode.max_usage.is_(None), PromoCode.usage_count < PromoCode.max_usage),
        )
        .values(usage_count=PromoCode.usage_count + 1)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        raise PromoUsageLimitExceeded()
