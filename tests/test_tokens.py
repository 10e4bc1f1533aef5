"""Tests for the token manager."""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import select, update

from lastmile.db.models import ACCOUNT_ACTIVE, ACCOUNT_NEEDS_RECONNECT, MarketplaceAccount
from lastmile.errors import (
    AccountNotFoundError,
    RetryableTransportError,
    TokenExpiredNeedsReconnect,
)
from lastmile.marketplace.tokens import TokenManager
from tests.conftest import BASE_URL, OWNER


async def _reload(session_factory, account_id):
    async with session_factory() as db:
        return (
            await db.execute(select(MarketplaceAccount).where(MarketplaceAccount.id == account_id))
        ).scalar_one()


@pytest.mark.asyncio
async def test_valid_token_returned_without_refresh(token_manager, make_account, marketplace):
    account = await make_account(expires_in=timedelta(hours=5))

    credential = await token_manager.get_valid_credential(OWNER, account.id)

    assert credential.access_token == account.access_token
    assert marketplace.calls_to("/oauth/token") == []


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_persisted(
    token_manager, make_account, marketplace, session_factory
):
    account = await make_account(expires_in=timedelta(minutes=2))

    credential = await token_manager.get_valid_credential(OWNER, account.id)

    assert credential.access_token == "refreshed-token"
    assert credential.expires_at > datetime.utcnow() + timedelta(hours=5)
    assert marketplace.token_requests[0]["grant_type"] == ["refresh_token"]
    assert marketplace.token_requests[0]["refresh_token"] == ["refresh-token"]

    stored = await _reload(session_factory, account.id)
    assert stored.access_token == "refreshed-token"
    assert stored.refresh_token == "refreshed-refresh"
    assert stored.expires_at == credential.expires_at


@pytest.mark.asyncio
async def test_unknown_account_or_foreign_owner(token_manager, make_account):
    account = await make_account(owner_id="someone-else")

    with pytest.raises(AccountNotFoundError):
        await token_manager.get_valid_credential(OWNER, account.id)
    with pytest.raises(AccountNotFoundError):
        await token_manager.get_valid_credential(OWNER, 999)


@pytest.mark.asyncio
async def test_invalid_grant_marks_account_for_reconnect(
    token_manager, make_account, marketplace, session_factory
):
    account = await make_account(expires_in=timedelta(minutes=-10))
    marketplace.token_responses.append(
        httpx.Response(400, json={"error": "invalid_grant", "message": "Invalid refresh token"})
    )

    with pytest.raises(TokenExpiredNeedsReconnect):
        await token_manager.get_valid_credential(OWNER, account.id)

    stored = await _reload(session_factory, account.id)
    assert stored.status == ACCOUNT_NEEDS_RECONNECT
    assert "invalid_grant" in stored.last_error

    # Later calls fail fast without hitting the token endpoint again
    with pytest.raises(TokenExpiredNeedsReconnect):
        await token_manager.get_valid_credential(OWNER, account.id)
    assert len(marketplace.calls_to("/oauth/token")) == 1


@pytest.mark.asyncio
async def test_token_endpoint_outage_is_retryable(
    token_manager, make_account, marketplace, session_factory
):
    account = await make_account(expires_in=timedelta(minutes=1))
    marketplace.token_responses.append(httpx.Response(503, text="unavailable"))

    with pytest.raises(RetryableTransportError) as exc_info:
        await token_manager.get_valid_credential(OWNER, account.id)

    assert exc_info.value.status == 503
    stored = await _reload(session_factory, account.id)
    assert stored.status == "active"
    assert stored.access_token == account.access_token


@pytest.mark.asyncio
async def test_missing_refresh_token_needs_reconnect(token_manager, make_account, session_factory):
    account = await make_account(refresh_token=None, expires_in=timedelta(minutes=1))

    with pytest.raises(TokenExpiredNeedsReconnect):
        await token_manager.get_valid_credential(OWNER, account.id)

    stored = await _reload(session_factory, account.id)
    assert stored.status == ACCOUNT_NEEDS_RECONNECT


@pytest.mark.asyncio
async def test_force_refresh_ignores_expiry(token_manager, make_account, marketplace):
    account = await make_account(expires_in=timedelta(hours=6))

    credential = await token_manager.force_refresh(OWNER, account.id)

    assert credential.access_token == "refreshed-token"
    assert len(marketplace.calls_to("/oauth/token")) == 1


@pytest.mark.asyncio
async def test_refresh_expiring_continues_past_failures(token_manager, make_account, marketplace):
    healthy = await make_account(expires_in=timedelta(hours=2))
    broken = await make_account(expires_in=timedelta(hours=1))
    await make_account(expires_in=timedelta(days=10))

    # Oldest expiry goes first, so the broken account sees the failure
    marketplace.token_responses.append(httpx.Response(400, json={"error": "invalid_grant"}))

    results = await token_manager.refresh_expiring(within=timedelta(hours=24))

    by_account = {r.account_id: r for r in results}
    assert set(by_account) == {healthy.id, broken.id}
    assert by_account[broken.id].needs_reconnect is True
    assert by_account[broken.id].success is False
    assert by_account[healthy.id].success is True


@pytest.mark.asyncio
async def test_concurrent_requests_spend_refresh_token_once(
    token_manager, make_account, marketplace, session_factory
):
    account = await make_account(expires_in=timedelta(minutes=1))
    marketplace.single_use_refresh = True

    first, second = await asyncio.gather(
        token_manager.get_valid_credential(OWNER, account.id),
        token_manager.get_valid_credential(OWNER, account.id),
    )

    assert first.access_token == second.access_token == "rotated-token-1"
    assert len(marketplace.calls_to("/oauth/token")) == 1

    stored = await _reload(session_factory, account.id)
    assert stored.status == ACCOUNT_ACTIVE
    assert stored.refresh_token == "rotated-refresh-1"


@pytest.mark.asyncio
async def test_force_refresh_skips_when_token_already_replaced(token_manager, make_account, marketplace):
    account = await make_account(expires_in=timedelta(hours=6))
    marketplace.single_use_refresh = True

    first, second = await asyncio.gather(
        token_manager.force_refresh(OWNER, account.id, stale_access_token=account.access_token),
        token_manager.force_refresh(OWNER, account.id, stale_access_token=account.access_token),
    )

    assert first.access_token == second.access_token == "rotated-token-1"
    assert len(marketplace.calls_to("/oauth/token")) == 1


@pytest.mark.asyncio
async def test_invalid_grant_after_refresh_elsewhere_keeps_account_active(make_account, session_factory):
    account = await make_account(expires_in=timedelta(minutes=1))

    async def token_endpoint(request: httpx.Request) -> httpx.Response:
        # Another worker spends the refresh token first and stores its result
        async with session_factory() as db:
            await db.execute(
                update(MarketplaceAccount)
                .where(MarketplaceAccount.id == account.id)
                .values(
                    access_token="other-worker-token",
                    refresh_token="other-worker-refresh",
                    expires_at=datetime.utcnow() + timedelta(hours=6),
                )
            )
            await db.commit()
        return httpx.Response(400, json={"error": "invalid_grant", "message": "Invalid refresh token"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint)) as client:
        manager = TokenManager(session_factory, client, base_url=BASE_URL, client_id="id", client_secret="secret")
        credential = await manager.get_valid_credential(OWNER, account.id)

    assert credential.access_token == "other-worker-token"
    stored = await _reload(session_factory, account.id)
    assert stored.status == ACCOUNT_ACTIVE
    assert stored.last_error is None
