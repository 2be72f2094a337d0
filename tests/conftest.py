"""
tests/conftest.py
Shared fixtures: a fresh in-memory SQLite database per test, an httpx
client bound to the real app, and recording fakes for the notification
dispatcher and the Razorpay client.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["ADMIN_KEY"] = "test-admin-key"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp_webhook_secret"

import re
import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from main import app
from services.notification.dispatcher import DeliveryResult, get_dispatcher
from services.payment.router import get_razorpay_client
from shared.models.models import Profile, ProfileRole, ReviewStatus, Service
from shared.utils.security import create_access_token

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


# ── Fakes ─────────────────────────────────────────────────────

class RecordingDispatcher:
    """Stands in for the Celery dispatcher and keeps every message."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def dispatch(self, recipient, channel, subject, message, context):
        if self.fail:
            raise RuntimeError("provider unreachable")
        self.sent.append(
            {
                "recipient": recipient,
                "channel": channel,
                "subject": subject,
                "message": message,
                "context": context,
            }
        )
        return DeliveryResult(True, channel, recipient, reference=f"test-{len(self.sent)}")

    def to(self, recipient: str):
        return [m for m in self.sent if m["recipient"] == recipient]

    def last_code(self) -> Optional[str]:
        for m in reversed(self.sent):
            match = re.search(r"\b(\d{6})\b", m["message"])
            if match:
                return match.group(1)
        return None


class _Orders:
    def __init__(self):
        self.created = []

    def create(self, data):
        self.created.append(data)
        return {"id": f"order_{len(self.created)}", "amount": data["amount"], "currency": data["currency"]}


class _Payments:
    def __init__(self):
        self.payments = {}
        self.fetch_failures = 0

    def fetch(self, payment_id):
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise ConnectionError("gateway timeout")
        return self.payments[payment_id]


class FakeRazorpay:
    def __init__(self):
        self.order = _Orders()
        self.payment = _Payments()


# ── Database / client ─────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def razorpay_client():
    return FakeRazorpay()


@pytest_asyncio.fixture
async def client(session_factory, dispatcher, razorpay_client):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_razorpay_client] = lambda: razorpay_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test/api/v1") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Domain fixtures ───────────────────────────────────────────

def auth_headers(profile: Profile) -> dict:
    token, _ = create_access_token(str(profile.id), profile.role.value, profile.phone)
    return {"Authorization": f"Bearer {token}"}


def future_date(days: int = 3) -> date:
    return date.today() + timedelta(days=days)


def booking_payload(service: Service, customer: Profile, **overrides) -> dict:
    payload = {
        "service_id": str(service.id),
        "customer_id": str(customer.id),
        "booking_date": future_date().isoformat(),
        "booking_time": "morning",
        "customer_address": {
            "address_line1": "12 MG Road",
            "city": "Bengaluru",
            "pincode": "560001",
        },
        "base_price": "500.00",
        "addon_price": "0.00",
        "discount_amount": "0.00",
        "wallet_amount": "0.00",
    }
    payload.update(overrides)
    return payload


async def make_worker(db: AsyncSession, service: Optional[Service] = None, **overrides) -> Profile:
    """A fully verified, available worker. Overrides win."""
    fields = {
        "phone": f"+91{uuid.uuid4().int % 10**10:010d}",
        "full_name": "Test Worker",
        "role": ProfileRole.EMPLOYEE,
        "phone_verified": True,
        "approval_status": ReviewStatus.APPROVED,
        "id_verified": True,
        "skills_verified": True,
        "background_check_status": ReviewStatus.APPROVED,
        "is_available": True,
        "location": "560001",
        "rating": Decimal("4.00"),
        "experience_years": 3,
        "max_capacity": 5,
        "current_jobs": 0,
    }
    fields.update(overrides)
    worker = Profile(**fields, skills=[service] if service is not None else [])
    db.add(worker)
    await db.commit()
    return worker


@pytest_asyncio.fixture
async def service(db: AsyncSession) -> Service:
    service = Service(name="AC Repair", is_active=True)
    db.add(service)
    await db.commit()
    return service


@pytest_asyncio.fixture
async def customer(db: AsyncSession) -> Profile:
    customer = Profile(
        phone="+919800000001",
        full_name="Asha Rao",
        email="asha@example.com",
        role=ProfileRole.CUSTOMER,
        phone_verified=True,
        wallet_balance=Decimal("300.00"),
    )
    db.add(customer)
    await db.commit()
    return customer


@pytest_asyncio.fixture
async def worker(db: AsyncSession, service: Service) -> Profile:
    return await make_worker(db, service, phone="+919800000100", full_name="Ravi Kumar")
