"""
services/payment/router.py
Razorpay integration for the online part of a booking's total:
order creation, checkout verification and the payment webhook.

Gateway calls go through the "razorpay" circuit breaker; an open circuit
answers 503 without touching the gateway.
"""

import json
import logging
from decimal import Decimal

import razorpay
from fastapi import APIRouter, Depends, Request
from pybreaker import CircuitBreakerError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.lifecycle import get_booking_or_404
from services.promo.resolver import money
from shared.models.models import Booking, BookingStatus, PaymentStatus
from shared.schemas.schemas import (
    BookingResponse,
    PaymentOrderRequest,
    PaymentOrderResponse,
    PaymentVerifyRequest,
)
from shared.utils.errors import InvalidStatusError, ServiceError, UpstreamUnavailableError
from shared.utils.resilience import circuit_breaker_manager, retry_gateway_read
from shared.utils.security import (
    verify_razorpay_signature,
    verify_razorpay_webhook_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

CURRENCY = "INR"
CAPTURED_STATES = ("captured", "authorized")

_gateway = circuit_breaker_manager.get_breaker("razorpay")


class AmountMismatch(ServiceError):
    code = "amount_mismatch"
    message = "Amount does not match the booking total"


class AlreadyPaid(ServiceError):
    code = "already_paid"
    message = "Booking is already paid"


class InvalidSignature(ServiceError):
    code = "invalid_signature"
    message = "Invalid payment signature"


class PaymentNotCaptured(ServiceError):
    code = "payment_not_captured"
    message = "Payment has not been captured"


class OrderMismatch(ServiceError):
    code = "order_mismatch"
    message = "Payment does not belong to this booking's order"


class InvalidPayload(ServiceError):
    code = "invalid_payload"
    message = "Webhook body is not valid JSON"


class PaymentGatewayUnavailable(UpstreamUnavailableError):
    code = "payment_gateway_unavailable"
    message = "Payment service unavailable, please retry shortly"


class PaymentGatewayError(ServiceError):
    status_code = 502
    code = "payment_gateway_error"


def get_razorpay_client() -> razorpay.Client:
    return razorpay.Client(auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET))


def to_paise(amount: Decimal) -> int:
    return int(money(amount) * 100)


def _call_gateway(func, *args):
    try:
        return _gateway.call(func, *args)
    except CircuitBreakerError:
        raise PaymentGatewayUnavailable()
    except Exception as e:
        logger.error(f"Razorpay call {getattr(func, '__name__', func)} failed: {e}")
        raise PaymentGatewayError(f"Payment gateway error: {e}")


@retry_gateway_read
def _fetch_payment(client, payment_id: str) -> dict:
    return client.payment.fetch(payment_id)


# ── Create order ──────────────────────────────────────────────

@router.post("/create-order", response_model=PaymentOrderResponse)
async def create_order(
    data: PaymentOrderRequest,
    db: AsyncSession = Depends(get_db),
    client=Depends(get_razorpay_client),
):
    """
    Create a Razorpay order for the booking's total. Client uses
    order_id + key_id to open checkout.
    """
    booking = await get_booking_or_404(db, data.booking_id)
    if booking.payment_status == PaymentStatus.PAID:
        raise AlreadyPaid()
    if booking.status == BookingStatus.CANCELLED:
        raise InvalidStatusError(booking.status.value, "pay for")
    if money(data.amount) != money(booking.total_price):
        raise AmountMismatch(expected=str(money(booking.total_price)))

    amount_paise = to_paise(booking.total_price)
    order = _call_gateway(
        client.order.create,
        {
            "amount": amount_paise,
            "currency": CURRENCY,
            "receipt": str(booking.id),
            "notes": {"booking_id": str(booking.id), "customer_id": str(booking.customer_id)},
        },
    )

    booking.razorpay_order_id = order["id"]
    await db.commit()

    return PaymentOrderResponse(
        razorpay_order_id=order["id"],
        razorpay_key_id=settings.RAZORPAY_KEY_ID,
        amount=amount_paise,
        currency=CURRENCY,
        booking_id=str(booking.id),
    )


# ── Verify (called from client after checkout) ────────────────

@router.post("/verify", response_model=BookingResponse)
async def verify_payment(
    data: PaymentVerifyRequest,
    db: AsyncSession = Depends(get_db),
    client=Depends(get_razorpay_client),
):
    """Checks the checkout signature, then the captured amount with the gateway."""
    if not verify_razorpay_signature(
        data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature
    ):
        raise InvalidSignature()

    booking = await get_booking_or_404(db, data.booking_id)
    if booking.payment_status == PaymentStatus.PAID:
        raise AlreadyPaid()
    if not booking.razorpay_order_id or booking.razorpay_order_id != data.razorpay_order_id:
        raise OrderMismatch()

    payment = _call_gateway(_fetch_payment, client, data.razorpay_payment_id)
    if payment.get("order_id") != booking.razorpay_order_id:
        raise OrderMismatch()
    if payment.get("status") not in CAPTURED_STATES:
        raise PaymentNotCaptured(gateway_status=payment.get("status"))
    if int(payment.get("amount", 0)) != to_paise(booking.total_price):
        raise AmountMismatch(expected=to_paise(booking.total_price), received=payment.get("amount"))

    booking.payment_status = PaymentStatus.PAID
    booking.payment_id = data.razorpay_payment_id
    await db.commit()
    logger.info(f"Payment {data.razorpay_payment_id} verified for booking {booking.id}")
    return BookingResponse.model_validate(booking)


# ── Razorpay Webhook ──────────────────────────────────────────

@router.post("/webhook", include_in_schema=False)
async def razorpay_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Razorpay webhook handler. Validates HMAC signature.
    Handles: payment.captured, payment.failed.
    """
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature", "")
    if not verify_razorpay_webhook_signature(body, signature):
        raise InvalidSignature("Invalid webhook signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise InvalidPayload()
    event = payload.get("event")
    entity = payload.get("payload", {}).get("payment", {}).get("entity", {})
    order_id = entity.get("order_id")
    if not order_id:
        return {"status": "ignored"}

    result = await db.execute(select(Booking).where(Booking.razorpay_order_id == order_id))
    booking = result.scalar_one_or_none()
    if booking is None:
        logger.warning(f"Webhook {event} for unknown order {order_id}")
        return {"status": "not_found"}

    if event == "payment.captured":
        booking.payment_status = PaymentStatus.PAID
        booking.payment_id = entity.get("id")
    elif event == "payment.failed":
        if booking.payment_status != PaymentStatus.PAID:
            booking.payment_status = PaymentStatus.PENDING
        logger.warning(f"Payment failed for booking {booking.id}: {entity.get('error_description')}")
    else:
        return {"status": "ignored"}

    await db.commit()
    return {"status": "ok"}
