"""Tests for scanned-code decoding and multi-account resolution."""

import httpx
import pytest

from lastmile.errors import InvalidCode, NotFoundAcrossAccounts
from lastmile.sync.resolver import (
    RESOLVED_JSON,
    RESOLVED_NUMERIC,
    RESOLVED_ORDER,
    RESOLVED_PACK,
    RESOLVED_URL,
    MultiAccountResolver,
    decode_scanned_code,
)
from tests.conftest import shipment_payload


@pytest.mark.parametrize(
    "code,expected,strategy",
    [
        ('{"id": "41234567890", "sender_id": 12}', "41234567890", RESOLVED_JSON),
        ('{"id": 41234567890}', "41234567890", RESOLVED_JSON),
        ("https://example.com/shipments/41234567890/label", "41234567890", RESOLVED_URL),
        ("shipment_id=41234567890", "41234567890", RESOLVED_URL),
        ("  41234567890\n", "41234567890", RESOLVED_NUMERIC),
    ],
)
def test_decode_scanned_code(code, expected, strategy):
    decoded = decode_scanned_code(code)
    assert decoded.shipment_id == expected
    assert decoded.strategy == strategy


@pytest.mark.parametrize("code", ["", "   ", "hello world", '{"id": "abc"}', "12a34", "١٢٣"])
def test_decode_rejects_unreadable_codes(code):
    with pytest.raises(InvalidCode):
        decode_scanned_code(code)


@pytest.mark.asyncio
async def test_stops_at_first_account_holding_shipment(marketplace_client, make_account, marketplace):
    first = await make_account()
    second = await make_account()
    third = await make_account()
    marketplace.add_shipment(second.access_token, shipment_payload(777))
    marketplace.add_shipment(third.access_token, shipment_payload(777))

    resolution = await MultiAccountResolver(marketplace_client).resolve("777", [first, second, third])

    assert resolution.account.id == second.id
    assert resolution.attempts == 2
    assert resolution.resolved_from == RESOLVED_NUMERIC
    assert len(marketplace.calls_to("/shipments/777")) == 2
    assert third.access_token not in [c[2] for c in marketplace.calls]


@pytest.mark.asyncio
async def test_not_found_in_any_account(marketplace_client, make_account, marketplace):
    accounts = [await make_account(), await make_account()]

    with pytest.raises(NotFoundAcrossAccounts) as exc_info:
        await MultiAccountResolver(marketplace_client).resolve("1234567890", accounts)

    assert exc_info.value.attempted == 2
    assert exc_info.value.shipment_id == "1234567890"
    assert len(marketplace.calls_to("/shipments/1234567890")) == 2


@pytest.mark.asyncio
async def test_no_candidate_accounts(marketplace_client, marketplace):
    with pytest.raises(NotFoundAcrossAccounts) as exc_info:
        await MultiAccountResolver(marketplace_client).resolve("888", [])

    assert exc_info.value.attempted == 0
    assert marketplace.calls == []


@pytest.mark.asyncio
async def test_invalid_code_calls_no_account(marketplace_client, make_account, marketplace):
    account = await make_account()

    with pytest.raises(InvalidCode):
        await MultiAccountResolver(marketplace_client).resolve("not a label", [account])

    assert marketplace.calls == []


@pytest.mark.asyncio
async def test_failing_account_does_not_stop_search(marketplace_client, make_account, marketplace):
    broken = await make_account()
    healthy = await make_account()
    marketplace.queue("/shipments/999", httpx.Response(403, json={"message": "forbidden"}))
    marketplace.add_shipment(healthy.access_token, shipment_payload(999))

    resolution = await MultiAccountResolver(marketplace_client).resolve("999", [broken, healthy])

    assert resolution.account.id == healthy.id
    assert resolution.attempts == 2


@pytest.mark.asyncio
async def test_numeric_order_id_resolves_to_its_shipment(marketplace_client, make_account, marketplace):
    first = await make_account()
    second = await make_account()
    marketplace.add_order(
        second.access_token, {"id": 2000001, "pack_id": 3000001, "shipping": {"id": 41000001}}
    )
    marketplace.add_shipment(second.access_token, shipment_payload(41000001, status="shipped"))

    resolution = await MultiAccountResolver(marketplace_client).resolve("2000001", [first, second])

    assert resolution.shipment_id == "41000001"
    assert resolution.account.id == second.id
    assert resolution.resolved_from == RESOLVED_ORDER
    assert resolution.extra == {"order_id": 2000001, "pack_id": 3000001}
    # two shipment lookups, then the order in each account
    assert resolution.attempts == 4


@pytest.mark.asyncio
async def test_numeric_pack_id_resolves_through_first_order(marketplace_client, make_account, marketplace):
    account = await make_account()
    marketplace.add_pack(account.access_token, {"id": 3000002, "orders": [{"id": 2000002}, {"id": 2000003}]})
    marketplace.add_order(account.access_token, {"id": 2000002, "shipping": {"id": 41000002}})
    marketplace.add_shipment(account.access_token, shipment_payload(41000002))

    resolution = await MultiAccountResolver(marketplace_client).resolve("3000002", [account])

    assert resolution.shipment_id == "41000002"
    assert resolution.resolved_from == RESOLVED_PACK
    assert resolution.extra == {"order_id": 2000002, "pack_id": 3000002}
    assert marketplace.calls_to("/orders/2000003") == []


@pytest.mark.asyncio
async def test_order_without_shipment_is_skipped(marketplace_client, make_account, marketplace):
    account = await make_account()
    marketplace.add_order(account.access_token, {"id": 2000004, "shipping": {}})

    with pytest.raises(NotFoundAcrossAccounts) as exc_info:
        await MultiAccountResolver(marketplace_client).resolve("2000004", [account])

    assert exc_info.value.attempted == 1
    assert len(marketplace.calls_to("/packs/2000004")) == 1


@pytest.mark.asyncio
async def test_url_codes_never_fall_back_to_orders(marketplace_client, make_account, marketplace):
    account = await make_account()
    marketplace.add_order(account.access_token, {"id": 2000005, "shipping": {"id": 41000005}})

    with pytest.raises(NotFoundAcrossAccounts):
        await MultiAccountResolver(marketplace_client).resolve(
            "https://example.com/shipments/2000005/label", [account]
        )

    assert marketplace.calls_to("/orders/2000005") == []


@pytest.mark.asyncio
async def test_order_fallback_can_be_disabled(marketplace_client, make_account, marketplace):
    account = await make_account()
    marketplace.add_order(account.access_token, {"id": 2000006, "shipping": {"id": 41000006}})
    marketplace.add_shipment(account.access_token, shipment_payload(41000006))

    with pytest.raises(NotFoundAcrossAccounts):
        await MultiAccountResolver(marketplace_client, fallback_to_orders=False).resolve("2000006", [account])

    assert marketplace.calls_to("/orders/2000006") == []
