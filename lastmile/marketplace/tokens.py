"""OAuth token lifecycle for connected marketplace accounts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lastmile import metrics
from lastmile.config import settings
from lastmile.db.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_NEEDS_RECONNECT,
    MarketplaceAccount,
)
from lastmile.errors import (
    AccountNotFoundError,
    RetryableTransportError,
    TokenExpiredNeedsReconnect,
)
from lastmile.logging_config import get_logger

logger = logging.getLogger(__name__)

# Markers the token endpoint uses for a dead refresh token
INVALID_GRANT_MARKERS = ("invalid_grant", "expired", "Invalid refresh token")


@dataclass(frozen=True)
class Credential:
    """Access credential for one marketplace account."""

    account_id: int
    owner_id: str
    external_user_id: int
    site_id: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime

    def expires_within(self, now: datetime, margin: timedelta) -> bool:
        return self.expires_at - now <= margin


@dataclass
class TokenRefreshResult:
    """Outcome of refreshing one account in the scheduled token job."""

    account_id: int
    nickname: Optional[str]
    success: bool
    needs_reconnect: bool = False
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


def _to_credential(account: MarketplaceAccount) -> Credential:
    return Credential(
        account_id=account.id,
        owner_id=account.owner_id,
        external_user_id=account.external_user_id,
        site_id=account.site_id,
        access_token=account.access_token or "",
        refresh_token=account.refresh_token,
        expires_at=account.expires_at,
    )


class TokenManager:
    """
    Guarantees a non-expired access token before any marketplace call.

    Every call is scoped by an explicit owner and account; no credential is cached
    in memory, the database row is the only source of truth.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_margin: Optional[timedelta] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.base_url = (base_url or settings.marketplace_api_base_url).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.marketplace_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.marketplace_client_secret
        )
        self.refresh_margin = refresh_margin or timedelta(
            seconds=settings.token_refresh_margin_seconds
        )
        self.clock = clock
        # One in-flight refresh per account within this process
        self._refresh_locks: dict[int, asyncio.Lock] = {}

    async def get_valid_credential(self, owner_id: str, account_id: int) -> Credential:
        """
        Return a credential that stays valid for at least the refresh margin.

        Raises:
            AccountNotFoundError: No such account for this owner
            TokenExpiredNeedsReconnect: Refresh token rejected, operator must reconnect
            RetryableTransportError: Token endpoint unreachable or failing
        """
        async with self.session_factory() as db:
            credential = _to_credential(await self._load(db, owner_id, account_id))
        if not credential.expires_within(self.clock(), self.refresh_margin):
            return credential

        async with self._lock_for(account_id):
            async with self.session_factory() as db:
                # Refreshed by another request while this one waited
                credential = _to_credential(await self._load(db, owner_id, account_id))
                if not credential.expires_within(self.clock(), self.refresh_margin):
                    return credential

                logger.info(
                    "Token for account %s expires at %s, refreshing",
                    account_id,
                    credential.expires_at.isoformat(),
                )
                return await self._refresh(db, credential)

    async def force_refresh(
        self, owner_id: str, account_id: int, stale_access_token: Optional[str] = None
    ) -> Credential:
        """
        Refresh the token regardless of its expiry (used after an HTTP 401).

        When ``stale_access_token`` is given and the stored token already
        differs from it, the stored credential is returned without a refresh.
        """
        async with self._lock_for(account_id):
            async with self.session_factory() as db:
                credential = _to_credential(await self._load(db, owner_id, account_id))
                if stale_access_token is not None and credential.access_token != stale_access_token:
                    return credential
                return await self._refresh(db, credential)

    async def refresh_expiring(
        self, within: Optional[timedelta] = None
    ) -> list[TokenRefreshResult]:
        """
        Refresh every active account whose token expires inside the window.

        One failing account never stops the others.
        """
        window = within or timedelta(hours=settings.token_expiring_window_hours)
        cutoff = self.clock() + window

        async with self.session_factory() as db:
            result = await db.execute(
                select(MarketplaceAccount.id, MarketplaceAccount.owner_id)
                .where(
                    MarketplaceAccount.status == ACCOUNT_ACTIVE,
                    MarketplaceAccount.expires_at < cutoff,
                )
                .order_by(MarketplaceAccount.expires_at.asc())
            )
            due = [(row[0], row[1]) for row in result.all()]

        if not due:
            logger.info("No marketplace tokens expiring before %s", cutoff.isoformat())
            return []

        logger.info("Refreshing %d marketplace token(s) expiring before %s", len(due), cutoff.isoformat())

        results: list[TokenRefreshResult] = []
        for account_id, owner_id in due:
            async with self._lock_for(account_id), self.session_factory() as db:
                try:
                    account = await self._load(db, owner_id, account_id)
                    nickname = account.nickname
                    credential = await self._refresh(db, _to_credential(account))
                    results.append(
                        TokenRefreshResult(
                            account_id=account_id,
                            nickname=nickname,
                            success=True,
                            expires_at=credential.expires_at,
                        )
                    )
                except TokenExpiredNeedsReconnect as e:
                    results.append(
                        TokenRefreshResult(
                            account_id=account_id,
                            nickname=None,
                            success=False,
                            needs_reconnect=True,
                            error=str(e),
                        )
                    )
                except (RetryableTransportError, AccountNotFoundError) as e:
                    logger.warning("Token refresh failed for account %s: %s", account_id, e)
                    results.append(
                        TokenRefreshResult(
                            account_id=account_id,
                            nickname=None,
                            success=False,
                            error=str(e),
                        )
                    )

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            "Token refresh complete: %d succeeded, %d failed", succeeded, len(results) - succeeded
        )
        return results

    def _lock_for(self, account_id: int) -> asyncio.Lock:
        if account_id not in self._refresh_locks:
            self._refresh_locks[account_id] = asyncio.Lock()
        return self._refresh_locks[account_id]

    async def _load(
        self, db: AsyncSession, owner_id: str, account_id: int
    ) -> MarketplaceAccount:
        result = await db.execute(
            select(MarketplaceAccount)
            .where(
                MarketplaceAccount.id == account_id,
                MarketplaceAccount.owner_id == owner_id,
            )
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(owner_id, account_id)
        if account.status == ACCOUNT_NEEDS_RECONNECT:
            raise TokenExpiredNeedsReconnect(account_id, account.last_error or "")
        return account

    async def _refresh(self, db: AsyncSession, credential: Credential) -> Credential:
        account_id = credential.account_id
        log = get_logger(__name__, account_id=account_id, owner_id=credential.owner_id)
        if not credential.refresh_token:
            await self._mark_needs_reconnect(db, account_id, "missing refresh token")
            metrics.record_token_refresh("needs_reconnect")
            raise TokenExpiredNeedsReconnect(account_id, "missing refresh token")

        try:
            response = await self.http_client.post(
                f"{self.base_url}/oauth/token",
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": credential.refresh_token,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as e:
            metrics.record_token_refresh("transient")
            raise RetryableTransportError(
                f"Token endpoint unreachable for account {account_id}: {type(e).__name__}"
            ) from e

        if response.status_code >= 300:
            body = response.text
            # Full body stays in server logs only
            log.error(
                "Token refresh for account %s failed with HTTP %d: %s",
                account_id,
                response.status_code,
                body[:500],
            )
            if response.status_code in (400, 401) and any(
                marker in body for marker in INVALID_GRANT_MARKERS
            ):
                # Refresh tokens are single use: a worker in another process
                # may have spent this one a moment ago
                rotated = await self._rotated_since(db, credential)
                if rotated is not None:
                    metrics.record_token_refresh("superseded")
                    log.info("Token for account %s was already refreshed elsewhere", account_id)
                    return rotated

                await self._mark_needs_reconnect(db, account_id, body[:500])
                metrics.record_token_refresh("needs_reconnect")
                raise TokenExpiredNeedsReconnect(account_id, body[:500])

            metrics.record_token_refresh("transient")
            raise RetryableTransportError(
                f"Token refresh failed for account {account_id}",
                status=response.status_code,
                body=body,
            )

        try:
            data = response.json()
            access_token = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            metrics.record_token_refresh("transient")
            raise RetryableTransportError(
                f"Token endpoint returned an unusable body for account {account_id}",
                status=response.status_code,
                body=response.text[:500],
            ) from e

        now = self.clock()
        expires_at = now + timedelta(seconds=int(data.get("expires_in", 0)))
        refresh_token = data.get("refresh_token") or credential.refresh_token

        # Token and expiry always change together
        await db.execute(
            update(MarketplaceAccount)
            .where(MarketplaceAccount.id == account_id)
            .values(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                status=ACCOUNT_ACTIVE,
                last_error=None,
                updated_at=now,
            )
        )
        await db.commit()
        metrics.record_token_refresh("success")
        log.info("Token refreshed for account %s, expires at %s", account_id, expires_at.isoformat())

        return Credential(
            account_id=account_id,
            owner_id=credential.owner_id,
            external_user_id=credential.external_user_id,
            site_id=credential.site_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    async def _rotated_since(self, db: AsyncSession, credential: Credential) -> Optional[Credential]:
        """The stored credential if it changed after ``credential`` was read, else ``None``."""
        await db.rollback()
        account = (
            await db.execute(
                select(MarketplaceAccount)
                .where(MarketplaceAccount.id == credential.account_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if account is None or account.status != ACCOUNT_ACTIVE:
            return None
        if account.refresh_token == credential.refresh_token and account.expires_at == credential.expires_at:
            return None
        return _to_credential(account)

    async def _mark_needs_reconnect(self, db: AsyncSession, account_id: int, detail: str) -> None:
        logger.error("Refresh token rejected for account %s; manual reconnection required", account_id)
        await db.execute(
            update(MarketplaceAccount)
            .where(MarketplaceAccount.id == account_id)
            .values(
                status=ACCOUNT_NEEDS_RECONNECT,
                last_error=detail,
                updated_at=self.clock(),
            )
        )
        await db.commit()
