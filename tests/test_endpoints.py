from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from rewards_api.app import create_app
from rewards_api.core.settings import settings


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_and_readiness(app_with_services):
    app, _ = app_with_services

    async with _client(app) as client:
        health = await client.get("/healthz")
        assert health.status_code == 200
        assert health.json()["status"] == "ok"

        ready = await client.get("/api/v1/readyz")
        assert ready.status_code == 200
        payload = ready.json()
        assert payload["status"] == "ready"
        assert payload["components"]["store"]["status"] == "ready"
        assert payload["components"]["chat_transport"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_broadcast_lifecycle(app_with_services, make_user):
    app, services = app_with_services
    for user_id in ("1", "2", "3"):
        await make_user(user_id)

    async with _client(app) as client:
        start_response = await client.post("/api/v1/broadcast", json={"segment": "all", "message": "Hello"})
        assert start_response.status_code == 202
        started = start_response.json()
        assert started["status"] == "sending"
        assert started["total"] == 3

        await services.broadcasts.wait(started["jobId"])

        job_response = await client.get(f"/api/v1/broadcast/{started['jobId']}")
        assert job_response.status_code == 200
        job = job_response.json()
        assert job["status"] == "completed"
        assert job["sent"] == job["delivered"] + job["failed"] == 3

        listing = await client.get("/api/v1/broadcast")
        assert [entry["jobId"] for entry in listing.json()] == [started["jobId"]]

        cancel_response = await client.post(f"/api/v1/broadcast/{started['jobId']}/cancel")
        assert cancel_response.status_code == 200
        assert cancel_response.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_broadcast_validation_and_missing_jobs(app_with_services):
    app, _ = app_with_services

    async with _client(app) as client:
        bad_segment = await client.post("/api/v1/broadcast", json={"segment": "everyone", "message": "Hi"})
        assert bad_segment.status_code == 422

        blank = await client.post("/api/v1/broadcast", json={"segment": "all", "message": "   "})
        assert blank.status_code == 400

        missing = await client.get("/api/v1/broadcast/unknown")
        assert missing.status_code == 404

        missing_cancel = await client.post("/api/v1/broadcast/unknown/cancel")
        assert missing_cancel.status_code == 404


@pytest.mark.asyncio
async def test_catalog_management_flow(app_with_services):
    app, _ = app_with_services

    async with _client(app) as client:
        created = await client.post("/api/v1/products", json={"name": "ProA", "prices": {"7": 10, "30": 20}})
        assert created.status_code == 201
        product_id = created.json()["id"]
        assert created.json()["prices"] == {"7": 10, "30": 20}

        upload = await client.post(
            f"/api/v1/products/{product_id}/keys",
            json={"durationDays": 7, "keys": "K-1\nK-2\n\nK-3"},
        )
        assert upload.status_code == 201
        assert upload.json() == {"added": 3}

        unpriced = await client.post(f"/api/v1/products/{product_id}/keys", json={"durationDays": 3, "keys": "K-9"})
        assert unpriced.status_code == 400

        stock = await client.get(f"/api/v1/products/{product_id}/stock")
        assert stock.json() == {"7": 3, "30": 0}

        deactivated = await client.put(f"/api/v1/products/{product_id}/active", json={"active": False})
        assert deactivated.json()["active"] is False

        deleted = await client.delete(f"/api/v1/products/{product_id}")
        assert deleted.json() == {"removedKeys": 3}

        gone = await client.get(f"/api/v1/products/{product_id}/stock")
        assert gone.status_code == 404


@pytest.mark.asyncio
async def test_runtime_toggles_round_trip(app_with_services):
    app, services = app_with_services

    async with _client(app) as client:
        defaults = await client.get("/api/v1/settings/runtime")
        assert defaults.json()["claimingEnabled"] is True

        updated = await client.patch("/api/v1/settings/runtime", json={"maintenanceMode": True})
        assert updated.status_code == 200
        assert updated.json()["maintenanceMode"] is True

    toggles = await services.runtime_settings.load()
    assert toggles.maintenance_mode is True
    assert toggles.claiming_enabled is True


@pytest.mark.asyncio
async def test_observability_snapshot_reflects_activity(app_with_services, make_user):
    app, services = app_with_services
    await make_user("1", balance=0)
    await services.daily_rewards.claim("1")

    async with _client(app) as client:
        response = await client.get("/api/v1/observability/rewards")

    assert response.status_code == 200
    assert response.json()["ledger"]["credit"] == 1


@pytest.mark.asyncio
async def test_admin_api_key_is_enforced_when_configured(app_with_services, monkeypatch):
    app, _ = app_with_services
    monkeypatch.setattr(settings, "admin_api_key", "secret")

    async with _client(app) as client:
        rejected = await client.get("/api/v1/broadcast")
        assert rejected.status_code == 401

        accepted = await client.get("/api/v1/broadcast", headers={"X-API-Key": "secret"})
        assert accepted.status_code == 200


@pytest.mark.asyncio
async def test_services_unavailable_before_startup():
    app = create_app()

    async with _client(app) as client:
        response = await client.get("/api/v1/products")

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_admin_point_adjustments_go_through_the_ledger(app_with_services, make_user):
    app, services = app_with_services
    await make_user("1", balance=5)

    async with _client(app) as client:
        added = await client.post("/api/v1/users/1/points", json={"delta": 10, "note": "support goodwill"})
        assert added.status_code == 200
        assert added.json()["balanceAfter"] == 15
        assert added.json()["reason"] == "admin_adjustment"

        deducted = await client.post("/api/v1/users/1/points", json={"delta": -4})
        assert deducted.json()["balanceAfter"] == 11

        overdraft = await client.post("/api/v1/users/1/points", json={"delta": -50})
        assert overdraft.status_code == 409

        zero = await client.post("/api/v1/users/1/points", json={"delta": 0})
        assert zero.status_code == 400

        missing = await client.post("/api/v1/users/404/points", json={"delta": 1})
        assert missing.status_code == 404

        profile = await client.get("/api/v1/users/1")
        assert profile.json()["balance"] == 11
        assert profile.json()["totalSpent"] == 4

    record = await services.store.get("users/1")
    assert record["balance"] == 11
    assert record["total_earned"] == 15


@pytest.mark.asyncio
async def test_admin_ban_and_vip_flags(app_with_services, make_user):
    app, services = app_with_services
    await make_user("1", balance=7)

    async with _client(app) as client:
        banned = await client.put("/api/v1/users/1/ban", json={"banned": True})
        assert banned.json()["banned"] is True
        assert banned.json()["balance"] == 7

        vip = await client.put("/api/v1/users/1/vip", json={"tier": "gold"})
        assert vip.json()["vipTier"] == "gold"

        cleared = await client.put("/api/v1/users/1/vip", json={"tier": None})
        assert cleared.json()["vipTier"] is None

        pre_emptive = await client.put("/api/v1/users/77/ban", json={"banned": True})
        assert pre_emptive.status_code == 200
        assert pre_emptive.json()["banned"] is True

        unknown_unban = await client.put("/api/v1/users/78/ban", json={"banned": False})
        assert unknown_unban.status_code == 404

        unknown_vip = await client.put("/api/v1/users/78/vip", json={"tier": "silver"})
        assert unknown_vip.status_code == 404

    assert (await services.users.require("77")).banned is True
