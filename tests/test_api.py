"""HTTP API tests."""

import httpx
import pytest

from lastmile.api.deps import get_database, get_sync_service, get_webhook_processor
from lastmile.db.models import ALERT_PENDING, ALERT_READY_NOT_SHIPPED, ShipmentAlert
from lastmile.main import app
from lastmile.sync.webhooks import WebhookProcessor
from tests.conftest import OWNER, shipment_payload

HEADERS = {"X-Owner-Id": OWNER}


@pytest.fixture
async def api(session_factory, service):
    """ASGI client without the lifespan, wired to the test database."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_database] = override_get_db
    app.dependency_overrides[get_sync_service] = lambda: service
    app.dependency_overrides[get_webhook_processor] = lambda: WebhookProcessor(session_factory, service)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(api):
    response = await api.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_owner_header_required(api):
    assert (await api.get("/api/accounts")).status_code == 422
    assert (await api.get("/api/accounts", headers={"X-Owner-Id": "  "})).status_code == 400


@pytest.mark.asyncio
async def test_scan_flow_status_codes(api, make_account, make_driver, marketplace):
    account = await make_account(nickname="store")
    first = await make_driver(name="Ana")
    second = await make_driver(name="Bruno")
    marketplace.add_shipment(account.access_token, shipment_payload(41234567890))

    response = await api.post(
        "/api/scans", json={"driver_id": first.id, "code": "41234567890"}, headers=HEADERS
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "assigned"
    assert body["account_nickname"] == "store"

    response = await api.post(
        "/api/scans", json={"driver_id": second.id, "code": "41234567890"}, headers=HEADERS
    )
    assert response.status_code == 409
    assert response.json()["holder_name"] == "Ana"

    response = await api.post("/api/scans", json={"driver_id": first.id, "code": "???"}, headers=HEADERS)
    assert response.status_code == 422
    assert response.json()["status"] == "invalid_code"

    response = await api.post("/api/scans", json={"driver_id": first.id, "code": "999"}, headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["attempts"] == 1


@pytest.mark.asyncio
async def test_shipment_get_refresh_and_return(api, make_account, make_driver, marketplace):
    account = await make_account()
    driver = await make_driver()
    marketplace.add_shipment(account.access_token, shipment_payload(500, status="shipped"))

    assert (await api.get("/api/shipments/500", headers=HEADERS)).status_code == 404

    response = await api.post("/api/shipments/500/refresh", json={"account_id": account.id}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["shipment_status"] == "shipped"

    response = await api.get("/api/shipments/500", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["account_id"] == account.id

    assert (await api.post("/api/shipments/404/refresh", headers=HEADERS)).status_code == 404
    assert (await api.post("/api/shipments/500/return", headers=HEADERS)).status_code == 404

    await api.post("/api/scans", json={"driver_id": driver.id, "code": "500"}, headers=HEADERS)
    response = await api.post("/api/shipments/500/return", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["driver_id"] == driver.id


@pytest.mark.asyncio
async def test_accounts_list_and_sync(api, make_account, marketplace):
    older = await make_account()
    newer = await make_account()
    await make_account(owner_id="owner-2")
    marketplace.order_search[newer.access_token] = []

    response = await api.get("/api/accounts", headers=HEADERS)
    assert [a["id"] for a in response.json()] == [newer.id, older.id]
    assert "access_token" not in response.json()[0]

    response = await api.post(
        f"/api/accounts/{newer.id}/sync",
        json={"since": "2024-05-01T00:00:00-03:00"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert marketplace.calls_to("/orders/search") != []

    assert (await api.post("/api/accounts/999/sync", headers=HEADERS)).status_code == 404


@pytest.mark.asyncio
async def test_alert_endpoints(api, session_factory):
    async with session_factory() as db:
        db.add(
            ShipmentAlert(
                shipment_id="700",
                alert_type=ALERT_READY_NOT_SHIPPED,
                status=ALERT_PENDING,
                owner_id=OWNER,
            )
        )
        await db.commit()

    response = await api.get("/api/alerts", params={"status": "pending"}, headers=HEADERS)
    assert [a["shipment_id"] for a in response.json()] == ["700"]
    assert (await api.get("/api/alerts", headers={"X-Owner-Id": "owner-2"})).json() == []

    response = await api.post("/api/alerts/check")
    assert response.status_code == 200
    assert response.json()["alerts_created"] == 0

    report = (await api.get("/api/alerts/diagnostics")).json()
    assert [a["shipment_id"] for a in report["orphaned_alerts"]] == ["700"]

    response = await api.post("/api/alerts/cleanup")
    assert response.json()["orphaned_removed"] == 1
    assert response.json()["total_cleaned"] == 1


@pytest.mark.asyncio
async def test_webhook_always_acknowledges(api, make_account, marketplace, session_factory):
    account = await make_account()
    marketplace.add_shipment(account.access_token, shipment_payload(800))

    response = await api.post(
        "/api/webhooks/marketplace",
        json={"topic": "shipments", "resource": "/shipments/800", "user_id": account.external_user_id},
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    # Background task has run once the ASGI call returns
    assert (await api.get("/api/shipments/800", headers=HEADERS)).status_code == 200

    response = await api.post("/api/webhooks/marketplace", json={"topic": "questions", "resource": "/q/1"})
    assert response.json() == {"ok": True, "skipped": True}

    response = await api.post("/api/webhooks/marketplace", content=b"not json")
    assert response.status_code == 200
    assert response.json()["skipped"] is True


@pytest.mark.asyncio
async def test_shipment_history_route(api, make_account, marketplace):
    account = await make_account()
    marketplace.add_history(
        account.access_token, 600, [{"date_created": "2026-10-01T10:00:00Z", "status": "shipped"}]
    )

    response = await api.get("/api/shipments/600/history", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["account_id"] == account.id
    assert body["total"] == 1
    assert body["events"][0]["status"] == "shipped"
    assert body["events"][0]["location"] is None

    assert (await api.get("/api/shipments/601/history", headers=HEADERS)).status_code == 404


@pytest.mark.asyncio
async def test_shipment_cleanup_route(api):
    response = await api.post("/api/shipments/cleanup", json={"dry_run": True}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == {
        "slimmed": 0,
        "deleted_shipments": 0,
        "deleted_scan_logs": 0,
        "dry_run": True,
    }

    response = await api.post("/api/shipments/cleanup", json={"delete_after_days": -1}, headers=HEADERS)
    assert response.status_code == 400
