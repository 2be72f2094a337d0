"""
tests/test_matching.py
Tests for worker eligibility, priority scoring and capacity claims.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.worker.matching import (
    claim_capacity,
    customer_location,
    find_eligible,
    priority_score,
    recompute_current_jobs,
)
from shared.models.models import Booking, Profile, ProfileRole, ReviewStatus, Service
from shared.utils.timeutils import utcnow
from tests.conftest import ADMIN_HEADERS, booking_payload, make_worker


def test_priority_score_weights():
    worker = Profile(
        location="560001",
        rating=Decimal("4.5"),
        experience_years=2,
        max_capacity=5,
        current_jobs=1,
    )
    near = priority_score(worker, "560001")
    far = priority_score(worker, "110001")
    assert near.score == 100 + 45 + 10 + 8
    assert near.location_match is True
    assert far.score == near.score - 100
    assert far.location_match is False


def test_empty_location_never_matches():
    worker = Profile(location=None, rating=None, experience_years=0, max_capacity=1, current_jobs=0)
    assert priority_score(worker, "").location_match is False


def test_customer_location_prefers_pincode_column():
    assert customer_location(Booking(customer_pincode="560002", customer_address={"pincode": "1"})) == "560002"
    assert customer_location(Booking(customer_pincode=None, customer_address={"pincode": "560003"})) == "560003"
    assert customer_location(Booking(customer_pincode=None, customer_address={})) == ""


@pytest.mark.asyncio
async def test_eligibility_excludes_unverified_and_busy(db: AsyncSession, service: Service):
    good = await make_worker(db, service, full_name="Good")
    await make_worker(db, service, full_name="Unapproved", approval_status=ReviewStatus.PENDING)
    await make_worker(db, service, full_name="No ID", id_verified=False)
    await make_worker(db, service, full_name="Skills", skills_verified=False)
    await make_worker(db, service, full_name="BG", background_check_status=ReviewStatus.REJECTED)
    await make_worker(db, service, full_name="Off", is_available=False)
    await make_worker(db, service, full_name="Full", max_capacity=2, current_jobs=2)
    await make_worker(db, service, full_name="Customer", role=ProfileRole.CUSTOMER)

    candidates = await find_eligible(db, service.id, "560001")
    assert [c.worker.id for c in candidates] == [good.id]


@pytest.mark.asyncio
async def test_skills_must_include_service_unless_empty(db: AsyncSession, service: Service):
    other = Service(name="Plumbing", is_active=True)
    db.add(other)
    await db.commit()

    skilled = await make_worker(db, service, full_name="Skilled")
    generalist = await make_worker(db, None, full_name="Generalist")
    await make_worker(db, other, full_name="Plumber")

    ids = {c.worker.id for c in await find_eligible(db, service.id, "560001")}
    assert ids == {skilled.id, generalist.id}


@pytest.mark.asyncio
async def test_ranking_prefers_location_then_score(db: AsyncSession, service: Service):
    local = await make_worker(db, service, full_name="Local", rating=Decimal("3.0"))
    star = await make_worker(db, service, full_name="Star", location="110001", rating=Decimal("5.0"))
    local_star = await make_worker(db, service, full_name="Local Star", rating=Decimal("4.8"))

    candidates = await find_eligible(db, service.id, "560001")
    assert [c.worker.id for c in candidates] == [local_star.id, local.id, star.id]
    assert candidates[0].location_match is True
    assert candidates[-1].location_match is False


@pytest.mark.asyncio
async def test_ties_keep_oldest_first(db: AsyncSession, service: Service):
    now = utcnow()
    newer = await make_worker(db, service, full_name="Newer", created_at=now)
    older = await make_worker(db, service, full_name="Older", created_at=now - timedelta(days=30))

    candidates = await find_eligible(db, service.id, "560001")
    assert candidates[0].score == candidates[1].score
    assert [c.worker.id for c in candidates] == [older.id, newer.id]


@pytest.mark.asyncio
async def test_claim_capacity_stops_at_max(db: AsyncSession, service: Service):
    worker = await make_worker(db, service, max_capacity=1)
    assert await claim_capacity(db, worker.id) is True
    assert await claim_capacity(db, worker.id) is False
    await db.commit()
    await db.refresh(worker)
    assert worker.current_jobs == 1


@pytest.mark.asyncio
async def test_recompute_current_jobs_counts_active_bookings(db: AsyncSession, worker: Profile):
    worker.current_jobs = 4
    await db.commit()
    assert await recompute_current_jobs(db, worker.id) == 0
    await db.commit()
    await db.refresh(worker)
    assert worker.current_jobs == 0


@pytest.mark.asyncio
async def test_eligible_workers_route(
    client: AsyncClient, db: AsyncSession, service: Service, customer: Profile, worker: Profile
):
    far = await make_worker(db, service, full_name="Far Away", location="110001")
    created = await client.post(
        "/bookings", json=booking_payload(service, customer), headers=ADMIN_HEADERS
    )
    booking_id = created.json()["id"]

    response = await client.get(f"/bookings/{booking_id}/eligible-workers", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    ranked = response.json()
    assert [w["id"] for w in ranked] == [str(worker.id), str(far.id)]
    assert ranked[0]["location_match"] is True
    assert ranked[0]["priority_score"] > ranked[1]["priority_score"]

    assert (await client.get(f"/bookings/{booking_id}/eligible-workers")).status_code == 401
