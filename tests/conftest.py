"""Shared fixtures: per-test SQLite database and a fake marketplace API."""

import json
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from lastmile.db.models import Base, Driver, MarketplaceAccount
from lastmile.marketplace.client import MarketplaceClient, RetryPolicy
from lastmile.marketplace.tokens import TokenManager
from lastmile.sync.service import SyncService

OWNER = "owner-1"
BASE_URL = "https://api.marketplace.test"


class FakeMarketplace:
    """In-memory marketplace answering through httpx.MockTransport."""

    def __init__(self):
        self.shipments: dict[str, dict[str, dict]] = {}
        self.orders: dict[str, dict[str, dict]] = {}
        self.packs: dict[str, dict[str, dict]] = {}
        self.history: dict[str, dict[str, list]] = {}
        self.order_search: dict[str, list[dict]] = {}
        self.queued: dict[str, list[httpx.Response]] = {}
        self.token_responses: list[httpx.Response] = []
        self.calls: list[tuple[str, str, Optional[str]]] = []
        self.token_requests: list[dict[str, list[str]]] = []
        # Rotate refresh tokens and reject reuse, like the real token endpoint
        self.single_use_refresh = False
        self.spent_refresh_tokens: set[str] = set()

    def add_shipment(self, token: str, payload: dict) -> None:
        self.shipments.setdefault(token, {})[str(payload["id"])] = payload

    def add_order(self, token: str, payload: dict) -> None:
        self.orders.setdefault(token, {})[str(payload["id"])] = payload

    def add_pack(self, token: str, payload: dict) -> None:
        self.packs.setdefault(token, {})[str(payload["id"])] = payload

    def add_history(self, token: str, shipment_id: Any, events: list) -> None:
        self.history.setdefault(token, {})[str(shipment_id)] = events

    def queue(self, path: str, *responses: httpx.Response) -> None:
        self.queued.setdefault(path, []).extend(responses)

    def calls_to(self, path: str) -> list[tuple[str, str, Optional[str]]]:
        return [c for c in self.calls if c[1] == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        auth = request.headers.get("Authorization", "")
        token = auth[len("Bearer "):] if auth.startswith("Bearer ") else None
        self.calls.append((request.method, path, token))

        if path == "/oauth/token":
            form = parse_qs(request.content.decode())
            self.token_requests.append(form)
            if self.token_responses:
                return self.token_responses.pop(0)
            if self.single_use_refresh:
                return self._rotate(form.get("refresh_token", [""])[0])
            return httpx.Response(
                200,
                json={
                    "access_token": "refreshed-token",
                    "refresh_token": "refreshed-refresh",
                    "expires_in": 21600,
                },
            )

        if self.queued.get(path):
            return self.queued[path].pop(0)

        parts = path.strip("/").split("/")
        if parts[0] == "shipments" and len(parts) == 2:
            return self._lookup(self.shipments, token, parts[1])
        if parts[0] == "shipments" and parts[2:] == ["history"]:
            return self._lookup(self.history, token, parts[1])
        if parts[0] == "orders" and parts[1:] == ["search"]:
            orders = self.order_search.get(token, [])
            offset = int(request.url.params.get("offset", 0))
            limit = int(request.url.params.get("limit", 50))
            return httpx.Response(
                200,
                json={
                    "results": orders[offset:offset + limit],
                    "paging": {"total": len(orders), "offset": offset, "limit": limit},
                },
            )
        if parts[0] == "orders" and len(parts) == 2:
            return self._lookup(self.orders, token, parts[1])
        if parts[0] == "packs" and len(parts) == 2:
            return self._lookup(self.packs, token, parts[1])
        return httpx.Response(404, json={"message": "resource not found"})

    def _rotate(self, refresh_token: str) -> httpx.Response:
        if refresh_token in self.spent_refresh_tokens:
            return httpx.Response(400, json={"error": "invalid_grant", "message": "Invalid refresh token"})
        self.spent_refresh_tokens.add(refresh_token)
        n = len(self.spent_refresh_tokens)
        return httpx.Response(
            200,
            json={"access_token": f"rotated-token-{n}", "refresh_token": f"rotated-refresh-{n}", "expires_in": 21600},
        )

    def _lookup(self, store: dict[str, dict[str, dict]], token: Optional[str], key: str) -> httpx.Response:
        payload = store.get(token or "", {}).get(key)
        if payload is None:
            return httpx.Response(404, json={"message": "not_found", "error": "not_found"})
        return httpx.Response(200, content=json.dumps(payload).encode(), headers={"Content-Type": "application/json"})


def shipment_payload(shipment_id: Any, status: str = "ready_to_ship", **extra: Any) -> dict:
    payload = {
        "id": int(shipment_id),
        "status": status,
        "substatus": extra.pop("substatus", None),
        "logistic": {"type": extra.pop("logistic_type", "self_service"), "mode": "me2"},
    }
    payload.update(extra)
    return payload


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions get separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def marketplace():
    return FakeMarketplace()


@pytest.fixture
async def http_client(marketplace):
    async with httpx.AsyncClient(transport=httpx.MockTransport(marketplace.handler)) as client:
        yield client


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return RetryPolicy(max_attempts=3, default_retry_after=5.0, sleep=fake_sleep)


@pytest.fixture
def token_manager(session_factory, http_client):
    return TokenManager(
        session_factory,
        http_client,
        base_url=BASE_URL,
        client_id="client-id",
        client_secret="client-secret",
    )


@pytest.fixture
def marketplace_client(token_manager, http_client, policy):
    return MarketplaceClient(token_manager, http_client, base_url=BASE_URL, policy=policy)


@pytest.fixture
def service(session_factory, marketplace_client):
    async def no_sleep(seconds: float) -> None:
        return None

    return SyncService(session_factory, marketplace_client, sleep=no_sleep, per_account_delay=0)


@pytest.fixture
def make_account(session_factory):
    counter = {"n": 0}

    async def make(
        owner_id: str = OWNER,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = "refresh-token",
        expires_in: timedelta = timedelta(hours=6),
        connected_at: Optional[datetime] = None,
        status: str = "active",
        nickname: Optional[str] = None,
    ) -> MarketplaceAccount:
        counter["n"] += 1
        n = counter["n"]
        now = datetime.utcnow()
        account = MarketplaceAccount(
            owner_id=owner_id,
            external_user_id=1000 + n,
            site_id="MLB",
            nickname=nickname or f"seller-{n}",
            access_token=access_token or f"token-{n}",
            refresh_token=refresh_token,
            expires_at=now + expires_in,
            status=status,
            connected_at=connected_at or now - timedelta(days=30) + timedelta(minutes=n),
            updated_at=now,
        )
        async with session_factory() as db:
            db.add(account)
            await db.commit()
        return account

    return make


@pytest.fixture
def make_driver(session_factory):
    async def make(
        name: str = "Driver", phone: Optional[str] = None, owner_id: str = OWNER, active: bool = True
    ) -> Driver:
        driver = Driver(owner_id=owner_id, name=name, phone=phone, active=active)
        async with session_factory() as db:
            db.add(driver)
            await db.commit()
        return driver

    return make
