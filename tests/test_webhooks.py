"""Tests for marketplace notification processing."""

import uuid

import pytest
import redis.asyncio as redis

from lastmile.config import settings
from lastmile.sync.reconciler import CacheReconciler
from lastmile.sync.webhooks import Notification, WebhookDeduper, WebhookProcessor
from tests.conftest import shipment_payload


@pytest.fixture
def processor(session_factory, service):
    return WebhookProcessor(session_factory, service)


@pytest.fixture
async def deduper():
    deduper = WebhookDeduper(settings.redis_url, window_seconds=5)
    try:
        await (await deduper._get_redis()).ping()
    except redis.RedisError:
        await deduper.close()
        pytest.skip("Redis not available")
    yield deduper
    await deduper.close()


async def _cached(service, shipment_id):
    async with service.session_factory() as db:
        return await CacheReconciler(db).get(shipment_id)


def test_notification_from_payload():
    notification = Notification.from_payload(
        {"topic": "shipments", "resource": "/shipments/301", "user_id": "1001", "attempts": 1}
    )

    assert notification.user_id == 1001
    assert notification.resource_id == "301"
    assert Notification.from_payload({"user_id": "abc"}).user_id is None
    assert Notification.from_payload({}).resource_id is None


@pytest.mark.asyncio
async def test_accept_filters_topics(processor):
    assert await processor.accept(Notification("questions", "/questions/1", 1)) == "skipped"
    assert await processor.accept(Notification(None, "/shipments/1", 1)) == "skipped"
    assert await processor.accept(Notification("shipments", None, 1)) == "skipped"
    assert await processor.accept(Notification("shipments", "/shipments/1", None)) == "skipped"
    assert await processor.accept(Notification("shipments", "/shipments/1", 1)) == "accepted"


@pytest.mark.asyncio
async def test_shipment_notification_caches_with_buyer(processor, service, make_account, marketplace):
    account = await make_account()
    token = account.access_token
    marketplace.add_shipment(token, shipment_payload(301, order_id=3000))
    marketplace.add_order(token, {"id": 3000, "pack_id": None, "buyer": {"nickname": "ana"}})

    processed = await processor.process(
        Notification("shipments", "/shipments/301", account.external_user_id)
    )

    assert processed == 1
    cached = await _cached(service, "301")
    assert cached.order_id == "3000"
    assert cached.account_id == account.id
    assert cached.raw_payload["buyer_info"]["nickname"] == "ana"


@pytest.mark.asyncio
async def test_non_self_service_shipment_is_ignored(processor, service, make_account, marketplace):
    account = await make_account()
    marketplace.add_shipment(
        account.access_token, shipment_payload(302, order_id=3001, logistic_type="cross_docking")
    )

    processed = await processor.process(
        Notification("shipments", "/shipments/302", account.external_user_id)
    )

    assert processed == 0
    assert await _cached(service, "302") is None
    assert marketplace.calls_to("/orders/3001") == []


@pytest.mark.asyncio
async def test_order_notification_expands_pack(processor, service, make_account, marketplace):
    account = await make_account()
    token = account.access_token
    marketplace.add_order(token, {"id": 10, "pack_id": 500, "shipping": {"id": 310}})
    marketplace.add_order(token, {"id": 11, "pack_id": 500, "shipping": {"id": 311}})
    marketplace.add_pack(token, {"id": 500, "orders": [{"id": 10}, {"id": 11}]})
    marketplace.add_shipment(token, shipment_payload(310))
    marketplace.add_shipment(token, shipment_payload(311))

    processed = await processor.process(Notification("orders", "/orders/10", account.external_user_id))

    assert processed == 2
    for shipment_id, order_id in (("310", "10"), ("311", "11")):
        cached = await _cached(service, shipment_id)
        assert cached.pack_id == "500"
        assert cached.order_id == order_id


@pytest.mark.asyncio
async def test_unknown_user_and_missing_resource(processor, make_account, marketplace):
    account = await make_account()

    assert await processor.process(Notification("shipments", "/shipments/1", 424242)) == 0
    assert await processor.process(Notification("orders", "/orders/999", account.external_user_id)) == 0
    assert marketplace.calls_to("/orders/999") != []


@pytest.mark.asyncio
async def test_deduper_drops_repeats(deduper):
    notification = Notification("shipments", f"/shipments/{uuid.uuid4().int}", 1)

    assert await deduper.seen_recently(notification) is False
    assert await deduper.seen_recently(notification) is True


@pytest.mark.asyncio
async def test_deduper_fails_open_without_redis():
    deduper = WebhookDeduper("redis://127.0.0.1:1/0", window_seconds=5)
    try:
        assert await deduper.seen_recently(Notification("shipments", "/shipments/1", 1)) is False
    finally:
        await deduper.close()
