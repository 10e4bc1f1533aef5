"""Marketplace API client with bounded retries and 429-aware backoff."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from lastmile import metrics
from lastmile.config import settings
from lastmile.errors import ApiError, NotFoundError, RetryableTransportError
from lastmile.marketplace.tokens import TokenManager

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
    httpx.WriteTimeout,
    httpx.ReadError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for marketplace calls."""

    max_attempts: int = 3
    default_retry_after: float = 5.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.api_max_attempts,
            default_retry_after=settings.api_default_retry_after_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Exponential backoff after a failed attempt (1-based)."""
        return float(2 ** attempt)

    def retry_after(self, response: httpx.Response) -> float:
        value = response.headers.get("Retry-After")
        if value:
            try:
                return float(value)
            except (TypeError, ValueError):
                pass
        return self.default_retry_after


class MarketplaceClient:
    """
    Authenticated marketplace calls scoped to one owner and account.

    4xx responses other than 401 and 429 are never retried: a 404 raises
    ``NotFoundError`` and anything else raises ``ApiError``.
    """

    def __init__(
        self,
        tokens: TokenManager,
        http_client: httpx.AsyncClient,
        base_url: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.tokens = tokens
        self.http_client = http_client
        self.base_url = (base_url or settings.marketplace_api_base_url).rstrip("/")
        self.policy = policy or RetryPolicy.from_settings()

    async def call(
        self,
        method: str,
        path: str,
        owner_id: str,
        account_id: int,
        params: Optional[dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """
        Perform an API call and return the decoded JSON body.

        Args:
            method: HTTP method
            path: API path, e.g. ``/shipments/123``
            owner_id: Owner the account belongs to
            account_id: Local account id whose token is used
            params: Optional query parameters
            json: Optional JSON body
            headers: Optional extra headers

        Raises:
            NotFoundError: HTTP 404
            ApiError: Other non-retryable 4xx
            RetryableTransportError: Network, 5xx or 429 after all attempts
            TokenExpiredNeedsReconnect: Account must be reconnected
        """
        url = f"{self.base_url}{path}"
        method = method.upper()
        policy = self.policy
        force_refreshed = False
        rejected_token: Optional[str] = None
        last_status: Optional[int] = None
        last_body = ""

        for attempt in range(1, policy.max_attempts + 1):
            if force_refreshed and attempt > 1 and last_status == 401:
                credential = await self.tokens.force_refresh(
                    owner_id, account_id, stale_access_token=rejected_token
                )
            else:
                credential = await self.tokens.get_valid_credential(owner_id, account_id)

            hdrs = {
                "Authorization": f"Bearer {credential.access_token}",
                "Accept": "application/json",
            }
            if headers:
                hdrs.update(headers)

            started = time.monotonic()
            try:
                resp = await self.http_client.request(
                    method, url, params=params, json=json, headers=hdrs
                )
            except RETRYABLE_EXC as e:
                metrics.record_api_request(method, "transport_error", time.monotonic() - started)
                last_status = None
                last_body = f"{type(e).__name__}: {e}"
                if attempt < policy.max_attempts:
                    sleep_s = policy.backoff(attempt)
                    metrics.record_retry("transport")
                    logger.warning(
                        "%s %s: %s, retrying in %.1fs (attempt %d/%d)",
                        method, path, type(e).__name__, sleep_s, attempt, policy.max_attempts,
                    )
                    await policy.sleep(sleep_s)
                    continue
                raise RetryableTransportError(
                    f"{method} {path} failed after {policy.max_attempts} attempts: {type(e).__name__}",
                    body=last_body,
                ) from e

            sc = resp.status_code
            metrics.record_api_request(method, sc, time.monotonic() - started)
            last_status = sc
            last_body = resp.text

            if 200 <= sc < 300:
                if not resp.content:
                    return None
                try:
                    return resp.json()
                except ValueError as e:
                    # e.g. an HTML maintenance page served with 200
                    raise ApiError(
                        f"{method} {path}: response body is not JSON", status=sc, body=last_body[:500]
                    ) from e

            if sc == 404:
                raise NotFoundError(f"{method} {path}: not found", status=sc, body=last_body)

            if sc == 401:
                # One forced refresh per call
                if not force_refreshed and attempt < policy.max_attempts:
                    force_refreshed = True
                    rejected_token = credential.access_token
                    metrics.record_retry("unauthorized")
                    logger.info("%s %s: 401, forcing token refresh for account %s", method, path, account_id)
                    continue
                raise ApiError(f"{method} {path}: unauthorized", status=sc, body=last_body)

            if sc == 429:
                if attempt < policy.max_attempts:
                    sleep_s = policy.retry_after(resp)
                    metrics.record_retry("rate_limited")
                    logger.warning(
                        "%s %s: rate limited (429), retrying in %.1fs (attempt %d/%d)",
                        method, path, sleep_s, attempt, policy.max_attempts,
                    )
                    await policy.sleep(sleep_s)
                    continue
                break

            if 400 <= sc < 500:
                raise ApiError(f"{method} {path}: HTTP {sc}", status=sc, body=last_body)

            # 5xx and anything unexpected
            if attempt < policy.max_attempts:
                sleep_s = policy.backoff(attempt)
                metrics.record_retry("server_error")
                logger.warning(
                    "%s %s: server error %d, retrying in %.1fs (attempt %d/%d)",
                    method, path, sc, sleep_s, attempt, policy.max_attempts,
                )
                await policy.sleep(sleep_s)
                continue

        raise RetryableTransportError(
            f"{method} {path}: status {last_status} after {policy.max_attempts} attempts",
            status=last_status,
            body=last_body,
        )

    async def get_object(
        self,
        path: str,
        owner_id: str,
        account_id: int,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict:
        """GET a single resource; anything but a JSON object raises ``ApiError``."""
        payload = await self.call("GET", path, owner_id, account_id, params=params, headers=headers)
        if not isinstance(payload, dict):
            raise ApiError(
                f"GET {path}: expected a JSON object, got {type(payload).__name__}",
                status=200,
                body=repr(payload)[:500],
            )
        return payload

    async def get_shipment(self, owner_id: str, account_id: int, shipment_id: str) -> dict:
        return await self.get_object(
            f"/shipments/{shipment_id}", owner_id, account_id, headers={"x-format-new": "true"}
        )

    async def get_shipment_history(
        self, owner_id: str, account_id: int, shipment_id: str
    ) -> list[dict]:
        """Status events of a shipment, oldest first as returned by the API."""
        payload = await self.call("GET", f"/shipments/{shipment_id}/history", owner_id, account_id)
        if payload is None:
            return []
        if isinstance(payload, dict):
            # Some sites wrap the list
            payload = payload.get("results") or payload.get("history") or []
        if not isinstance(payload, list):
            raise ApiError(
                f"GET /shipments/{shipment_id}/history: expected a list",
                status=200,
                body=repr(payload)[:500],
            )
        return [event for event in payload if isinstance(event, dict)]

    async def get_order(self, owner_id: str, account_id: int, order_id: str) -> dict:
        return await self.get_object(f"/orders/{order_id}", owner_id, account_id)

    async def get_pack(self, owner_id: str, account_id: int, pack_id: str) -> dict:
        return await self.get_object(f"/packs/{pack_id}", owner_id, account_id)

    async def search_orders(
        self,
        owner_id: str,
        account_id: int,
        seller_id: int,
        offset: int = 0,
        limit: int = 50,
        date_from: Optional[str] = None,
    ) -> dict:
        """Page through paid orders of a seller, newest first."""
        params: dict[str, Any] = {
            "seller": seller_id,
            "order.status": "paid",
            "sort": "date_desc",
            "offset": offset,
            "limit": limit,
        }
        if date_from:
            params["order.date_created.from"] = date_from
        return await self.get_object("/orders/search", owner_id, account_id, params=params)
