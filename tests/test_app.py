"""
tests/test_app.py
Tests for the application shell: health probes, request ids, the rate
limiter and error rendering.
"""

import pytest
from httpx import AsyncClient

from config.settings import settings
from main import app
from shared.utils.rate_limit import InMemoryCounter


@pytest.mark.asyncio
async def test_liveness(client: AsyncClient):
    response = await client.get("http://test/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_readiness_without_redis(client: AsyncClient):
    response = await client.get("http://test/health/ready")
    assert response.status_code == 200
    assert response.json()["database"] == "ok"
    assert response.json()["redis"] == "disabled"


@pytest.mark.asyncio
async def test_request_id_echoed_or_generated(client: AsyncClient):
    response = await client.get("http://test/health", headers={"X-Request-ID": "abc-123"})
    assert response.headers["X-Request-ID"] == "abc-123"
    assert response.headers["X-Process-Time"].endswith("ms")

    response = await client.get("http://test/health")
    assert len(response.headers["X-Request-ID"]) == 36


@pytest.mark.asyncio
async def test_rate_limit_per_client(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(settings, "RATE_LIMIT_UNAUTH_PER_MINUTE", 2)
    monkeypatch.setattr(app.state, "rate_counter", InMemoryCounter(), raising=False)

    assert (await client.get("/promo/active")).status_code == 200
    assert (await client.get("/promo/active")).status_code == 200
    response = await client.get("/promo/active")
    assert response.status_code == 429
    assert response.json()["code"] == "rate_limited"
    assert response.headers["Retry-After"] == "60"

    # Probes are never limited
    assert (await client.get("http://test/health")).status_code == 200


@pytest.mark.asyncio
async def test_in_memory_counter_window_resets():
    now = [0.0]
    counter = InMemoryCounter(clock=lambda: now[0])
    assert await counter.hit("ip:1", 60) == 1
    assert await counter.hit("ip:1", 60) == 2
    now[0] = 61.0
    assert await counter.hit("ip:1", 60) == 1


@pytest.mark.asyncio
async def test_unknown_route_and_bad_uuid(client: AsyncClient):
    assert (await client.get("/nowhere")).status_code == 404
    response = await client.get("/bookings/not-a-uuid", headers={"X-Admin-Key": "test-admin-key"})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_failed"
