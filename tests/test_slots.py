"""
tests/test_slots.py
Tests for slot capacity accounting and slot administration.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.slot import capacity
from shared.models.models import Profile, Service, Slot
from tests.conftest import ADMIN_HEADERS, booking_payload, future_date


async def _slot(db: AsyncSession, service: Service, window="09:00-12:00", days=3, **overrides) -> Slot:
    fields = {"total_capacity": 2, "booked_count": 0, "is_available": True}
    fields.update(overrides)
    slot = Slot(service_id=service.id, date=future_date(days), time_slot=window, **fields)
    db.add(slot)
    await db.commit()
    return slot


def test_named_windows_resolve_to_ranges():
    assert capacity.resolve_window("Morning") == "09:00-12:00"
    assert capacity.resolve_window("evening") == "15:00-18:00"
    assert capacity.resolve_window("10:00-11:30") == "10:00-11:30"


# ── reserve / release ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_missing_slot_is_unconstrained(db: AsyncSession, service: Service):
    assert await capacity.reserve(db, service.id, future_date(), "morning") is None
    assert await capacity.release(db, service.id, future_date(), "morning") is None


@pytest.mark.asyncio
async def test_reserve_until_full(db: AsyncSession, service: Service):
    await _slot(db, service)

    slot = await capacity.reserve(db, service.id, future_date(), "morning")
    assert slot.booked_count == 1 and slot.is_available is True

    slot = await capacity.reserve(db, service.id, future_date(), "morning")
    assert slot.booked_count == 2 and slot.is_available is False
    await db.commit()

    with pytest.raises(capacity.SlotUnavailable):
        await capacity.reserve(db, service.id, future_date(), "morning")
    with pytest.raises(capacity.SlotUnavailable):
        await capacity.ensure_available(db, service.id, future_date(), "morning")


@pytest.mark.asyncio
async def test_reserve_guard_checks_the_row_not_the_read(db: AsyncSession, service: Service):
    """A stale in-memory count cannot push the slot past capacity."""
    slot = await _slot(db, service, total_capacity=1)
    # Another writer fills the slot behind this session's back
    await db.execute(
        Slot.__table__.update().where(Slot.id == slot.id).values(booked_count=1)
    )
    await db.commit()

    with pytest.raises(capacity.SlotUnavailable):
        await capacity.reserve(db, service.id, future_date(), "morning")


@pytest.mark.asyncio
async def test_release_floors_at_zero(db: AsyncSession, service: Service):
    await _slot(db, service, total_capacity=1, booked_count=1, is_available=False)

    slot = await capacity.release(db, service.id, future_date(), "morning")
    assert slot.booked_count == 0 and slot.is_available is True

    slot = await capacity.release(db, service.id, future_date(), "morning")
    assert slot.booked_count == 0


@pytest.mark.asyncio
async def test_move_is_all_or_nothing(db: AsyncSession, service: Service):
    old = await _slot(db, service, booked_count=1)
    full = await _slot(db, service, window="15:00-18:00", total_capacity=1, booked_count=1, is_available=False)

    with pytest.raises(capacity.SlotUnavailable):
        await capacity.move(db, service.id, future_date(), "morning", future_date(), "evening")
    await db.rollback()

    await db.refresh(old)
    await db.refresh(full)
    assert old.booked_count == 1
    assert full.booked_count == 1


@pytest.mark.asyncio
async def test_move_transfers_one_unit(db: AsyncSession, service: Service):
    old = await _slot(db, service, booked_count=1)
    new = await _slot(db, service, days=5)

    await capacity.move(db, service.id, future_date(), "morning", future_date(5), "09:00-12:00")
    await db.commit()
    await db.refresh(old)
    await db.refresh(new)
    assert old.booked_count == 0
    assert new.booked_count == 1


@pytest.mark.asyncio
async def test_move_to_same_window_is_noop(db: AsyncSession, service: Service):
    slot = await _slot(db, service, total_capacity=1, booked_count=1, is_available=False)
    await capacity.move(db, service.id, future_date(), "morning", future_date(), "09:00-12:00")
    await db.refresh(slot)
    assert slot.booked_count == 1


# ── HTTP ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_creates_slot_once(client: AsyncClient, service: Service):
    payload = {
        "service_id": str(service.id),
        "date": future_date().isoformat(),
        "time_slot": "afternoon",
        "total_capacity": 3,
    }
    response = await client.post("/slots", json=payload, headers=ADMIN_HEADERS)
    assert response.status_code == 201
    assert response.json()["time_slot"] == "12:00-15:00"
    assert response.json()["booked_count"] == 0

    response = await client.post(
        "/slots", json={**payload, "time_slot": "12:00-15:00"}, headers=ADMIN_HEADERS
    )
    assert response.status_code == 409
    assert response.json()["code"] == "slot_exists"


@pytest.mark.asyncio
async def test_new_slot_counts_existing_bookings(client: AsyncClient, service: Service, customer: Profile):
    async def book():
        return await client.post(
            "/bookings", json=booking_payload(service, customer), headers=ADMIN_HEADERS
        )

    early = (await book()).json()
    await book()
    payload = {
        "service_id": str(service.id),
        "date": future_date().isoformat(),
        "time_slot": "morning",
        "total_capacity": 1,
    }
    response = await client.post("/slots", json=payload, headers=ADMIN_HEADERS)
    assert response.status_code == 400
    assert response.json()["code"] == "capacity_below_booked"
    assert response.json()["booked_count"] == 2

    await client.patch(f"/bookings/{early['id']}/cancel", json={}, headers=ADMIN_HEADERS)
    response = await client.post("/slots", json=payload, headers=ADMIN_HEADERS)
    assert response.status_code == 201
    assert response.json()["booked_count"] == 1
    assert response.json()["is_available"] is False

    # The remaining booking already fills the slot
    assert (await book()).json()["code"] == "slot_unavailable"


@pytest.mark.asyncio
async def test_create_slot_unknown_service(client: AsyncClient):
    payload = {
        "service_id": "00000000-0000-0000-0000-000000000001",
        "date": future_date().isoformat(),
        "time_slot": "morning",
    }
    response = await client.post("/slots", json=payload, headers=ADMIN_HEADERS)
    assert response.status_code == 404
    assert response.json()["code"] == "service_not_found"


@pytest.mark.asyncio
async def test_list_slots_by_date(client: AsyncClient, db: AsyncSession, service: Service):
    await _slot(db, service)
    await _slot(db, service, days=6)

    response = await client.get(
        "/slots", params={"service_id": str(service.id), "date": future_date().isoformat()}
    )
    assert response.status_code == 200
    assert len(response.json()) == 1
    assert response.json()[0]["time_slot"] == "09:00-12:00"


@pytest.mark.asyncio
async def test_capacity_cannot_drop_below_booked(client: AsyncClient, db: AsyncSession, service: Service):
    slot = await _slot(db, service, total_capacity=3, booked_count=2)

    response = await client.patch(f"/slots/{slot.id}", json={"total_capacity": 1}, headers=ADMIN_HEADERS)
    assert response.status_code == 400
    assert response.json()["code"] == "capacity_below_booked"
    assert response.json()["booked_count"] == 2

    response = await client.patch(f"/slots/{slot.id}", json={"total_capacity": 2}, headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert response.json()["is_available"] is False
