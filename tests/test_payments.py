"""
tests/test_payments.py
Tests for Razorpay order creation, checkout verification and the webhook.
"""

import hashlib
import hmac
import json
import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.payment.router import _gateway
from shared.models.models import Booking, Profile, Service
from tests.conftest import ADMIN_HEADERS, booking_payload

KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "rzp_webhook_secret"


def checkout_signature(order_id: str, payment_id: str) -> str:
    return hmac.new(
        KEY_SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256
    ).hexdigest()


def webhook_headers(body: bytes) -> dict:
    signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return {"X-Razorpay-Signature": signature, "Content-Type": "application/json"}


def webhook_body(event: str, order_id: str, payment_id: str = "pay_hook") -> bytes:
    return json.dumps(
        {
            "event": event,
            "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id}}},
        }
    ).encode()


async def _booking(client: AsyncClient, service: Service, customer: Profile, **overrides) -> dict:
    response = await client.post(
        "/bookings", json=booking_payload(service, customer, **overrides), headers=ADMIN_HEADERS
    )
    assert response.status_code == 200, response.text
    return response.json()


async def _order(client: AsyncClient, booking: dict) -> str:
    response = await client.post(
        "/payments/create-order",
        json={"booking_id": booking["id"], "amount": booking["total_price"]},
    )
    assert response.status_code == 200, response.text
    return response.json()["razorpay_order_id"]


async def _reload(db: AsyncSession, booking: dict) -> Booking:
    db.expire_all()
    return await db.get(Booking, uuid.UUID(booking["id"]))


# ── Create order ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_order_in_paise(
    client: AsyncClient, db: AsyncSession, service: Service, customer: Profile, razorpay_client
):
    booking = await _booking(client, service, customer, base_price="499.50")
    response = await client.post(
        "/payments/create-order", json={"booking_id": booking["id"], "amount": "499.50"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["amount"] == 49950
    assert data["currency"] == "INR"
    assert data["razorpay_key_id"] == "rzp_test_key"
    assert razorpay_client.order.created[0]["receipt"] == booking["id"]

    assert (await _reload(db, booking)).razorpay_order_id == data["razorpay_order_id"]


@pytest.mark.asyncio
async def test_create_order_amount_must_match(client: AsyncClient, service: Service, customer: Profile):
    booking = await _booking(client, service, customer)
    response = await client.post(
        "/payments/create-order", json={"booking_id": booking["id"], "amount": "1.00"}
    )
    assert response.status_code == 400
    assert response.json()["code"] == "amount_mismatch"
    assert response.json()["expected"] == "500.00"


@pytest.mark.asyncio
async def test_create_order_for_paid_or_cancelled_booking(
    client: AsyncClient, service: Service, customer: Profile
):
    paid = await _booking(client, service, customer, base_price="100.00", wallet_amount="100.00")
    response = await client.post(
        "/payments/create-order", json={"booking_id": paid["id"], "amount": "0.01"}
    )
    assert response.json()["code"] == "already_paid"

    cancelled = await _booking(client, service, customer)
    await client.patch(f"/bookings/{cancelled['id']}/cancel", json={}, headers=ADMIN_HEADERS)
    response = await client.post(
        "/payments/create-order", json={"booking_id": cancelled["id"], "amount": "500.00"}
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_status"


@pytest.mark.asyncio
async def test_open_circuit_answers_503(client: AsyncClient, service: Service, customer: Profile):
    booking = await _booking(client, service, customer)
    _gateway.open()
    try:
        response = await client.post(
            "/payments/create-order", json={"booking_id": booking["id"], "amount": "500.00"}
        )
    finally:
        _gateway.close()
    assert response.status_code == 503
    assert response.json()["code"] == "payment_gateway_unavailable"


# ── Verify ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_verify_marks_paid(
    client: AsyncClient, db: AsyncSession, service: Service, customer: Profile, razorpay_client
):
    booking = await _booking(client, service, customer)
    order_id = await _order(client, booking)
    razorpay_client.payment.payments["pay_1"] = {
        "id": "pay_1", "order_id": order_id, "status": "captured", "amount": 50000
    }
    # Transient gateway errors on the read are retried
    razorpay_client.payment.fetch_failures = 1

    response = await client.post(
        "/payments/verify",
        json={
            "booking_id": booking["id"],
            "razorpay_order_id": order_id,
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": checkout_signature(order_id, "pay_1"),
        },
    )
    assert response.status_code == 200
    assert response.json()["payment_status"] == "paid"
    assert response.json()["payment_id"] == "pay_1"


@pytest.mark.asyncio
async def test_verify_rejects_bad_signature(client: AsyncClient, service: Service, customer: Profile):
    booking = await _booking(client, service, customer)
    order_id = await _order(client, booking)
    response = await client.post(
        "/payments/verify",
        json={
            "booking_id": booking["id"],
            "razorpay_order_id": order_id,
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": "0" * 64,
        },
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_signature"


@pytest.mark.asyncio
async def test_verify_checks_gateway_state_and_amount(
    client: AsyncClient, db: AsyncSession, service: Service, customer: Profile, razorpay_client
):
    booking = await _booking(client, service, customer)
    order_id = await _order(client, booking)
    razorpay_client.payment.payments["pay_new"] = {"order_id": order_id, "status": "created", "amount": 50000}
    razorpay_client.payment.payments["pay_short"] = {"order_id": order_id, "status": "captured", "amount": 100}

    def verify(payment_id):
        return client.post(
            "/payments/verify",
            json={
                "booking_id": booking["id"],
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": checkout_signature(order_id, payment_id),
            },
        )

    response = await verify("pay_new")
    assert response.json()["code"] == "payment_not_captured"
    assert response.json()["gateway_status"] == "created"

    response = await verify("pay_short")
    assert response.json()["code"] == "amount_mismatch"
    assert (await _reload(db, booking)).payment_status.value == "unpaid"


@pytest.mark.asyncio
async def test_verify_ties_payment_to_the_booking_order(
    client: AsyncClient, db: AsyncSession, service: Service, customer: Profile, razorpay_client
):
    first = await _booking(client, service, customer)
    second = await _booking(client, service, customer)
    order_id = await _order(client, first)
    razorpay_client.payment.payments["pay_1"] = {
        "id": "pay_1", "order_id": order_id, "status": "captured", "amount": 50000
    }
    signed = {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": checkout_signature(order_id, "pay_1"),
    }

    # A booking without an order of its own cannot claim another booking's payment
    response = await client.post("/payments/verify", json={"booking_id": second["id"], **signed})
    assert response.status_code == 400
    assert response.json()["code"] == "order_mismatch"
    assert (await _reload(db, second)).payment_status.value == "unpaid"

    # Nor can one whose order differs
    other_order = await _order(client, second)
    response = await client.post("/payments/verify", json={"booking_id": second["id"], **signed})
    assert response.json()["code"] == "order_mismatch"

    # A payment captured against a different order is rejected too
    razorpay_client.payment.payments["pay_2"] = {
        "id": "pay_2", "order_id": order_id, "status": "captured", "amount": 50000
    }
    response = await client.post(
        "/payments/verify",
        json={
            "booking_id": second["id"],
            "razorpay_order_id": other_order,
            "razorpay_payment_id": "pay_2",
            "razorpay_signature": checkout_signature(other_order, "pay_2"),
        },
    )
    assert response.json()["code"] == "order_mismatch"

    response = await client.post("/payments/verify", json={"booking_id": first["id"], **signed})
    assert response.status_code == 200
    assert response.json()["payment_status"] == "paid"


# ── Webhook ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_webhook_captured_marks_paid(
    client: AsyncClient, db: AsyncSession, service: Service, customer: Profile
):
    booking = await _booking(client, service, customer)
    order_id = await _order(client, booking)

    body = webhook_body("payment.captured", order_id)
    response = await client.post("/payments/webhook", content=body, headers=webhook_headers(body))
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}

    stored = await _reload(db, booking)
    assert stored.payment_status.value == "paid"
    assert stored.payment_id == "pay_hook"


@pytest.mark.asyncio
async def test_webhook_failure_never_unpays(
    client: AsyncClient, db: AsyncSession, service: Service, customer: Profile
):
    booking = await _booking(client, service, customer)
    order_id = await _order(client, booking)

    body = webhook_body("payment.failed", order_id)
    await client.post("/payments/webhook", content=body, headers=webhook_headers(body))
    assert (await _reload(db, booking)).payment_status.value == "pending"

    body = webhook_body("payment.captured", order_id)
    await client.post("/payments/webhook", content=body, headers=webhook_headers(body))
    body = webhook_body("payment.failed", order_id)
    await client.post("/payments/webhook", content=body, headers=webhook_headers(body))
    assert (await _reload(db, booking)).payment_status.value == "paid"


@pytest.mark.asyncio
async def test_webhook_signature_and_unknown_orders(client: AsyncClient):
    body = webhook_body("payment.captured", "order_missing")
    response = await client.post(
        "/payments/webhook", content=body, headers={"X-Razorpay-Signature": "bad"}
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_signature"

    response = await client.post("/payments/webhook", content=body, headers=webhook_headers(body))
    assert response.json() == {"status": "not_found"}

    body = json.dumps({"event": "refund.created", "payload": {}}).encode()
    response = await client.post("/payments/webhook", content=body, headers=webhook_headers(body))
    assert response.json() == {"status": "ignored"}


@pytest.mark.asyncio
async def test_webhook_rejects_malformed_body(client: AsyncClient):
    body = b"{not json"
    response = await client.post("/payments/webhook", content=body, headers=webhook_headers(body))
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_payload"
