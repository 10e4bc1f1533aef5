"""Marketplace notification handling."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lastmile.config import settings
from lastmile.db.models import MarketplaceAccount
from lastmile.errors import LastMileError
from lastmile.sync.service import SyncService, buyer_info, logistic_type

logger = logging.getLogger(__name__)

SHIPMENT_TOPICS = {"shipments"}
ORDER_TOPICS = {"orders", "marketplace_orders"}


@dataclass
class Notification:
    topic: Optional[str]
    resource: Optional[str]
    user_id: Optional[int]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Notification":
        user_id = payload.get("user_id")
        try:
            user_id = int(user_id) if user_id is not None else None
        except (TypeError, ValueError):
            user_id = None
        return cls(topic=payload.get("topic"), resource=payload.get("resource"), user_id=user_id)

    @property
    def resource_id(self) -> Optional[str]:
        if not self.resource:
            return None
        return self.resource.rstrip("/").split("/")[-1] or None


class WebhookDeduper:
    """Drops repeat notifications for the same resource inside a short window."""

    def __init__(self, redis_url: str, window_seconds: Optional[int] = None):
        self.redis_url = redis_url
        self.window_seconds = window_seconds or settings.webhook_dedupe_window_seconds
        self._redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _key(self, notification: Notification) -> str:
        return f"webhook:{notification.user_id}:{notification.resource}"

    async def seen_recently(self, notification: Notification) -> bool:
        """
        Record the notification and report whether it was already seen.

        Returns:
            True if the same resource was notified inside the window
        """
        redis_client = await self._get_redis()
        try:
            created = await redis_client.set(
                self._key(notification), "1", nx=True, ex=self.window_seconds
            )
        except redis.RedisError as e:
            logger.warning("Webhook dedupe unavailable, processing anyway: %s", e)
            return False
        return not created


class WebhookProcessor:
    """Routes marketplace notifications to shipment refreshes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        service: SyncService,
        deduper: Optional[WebhookDeduper] = None,
        allowed_topics: Optional[list[str]] = None,
    ):
        self.session_factory = session_factory
        self.service = service
        self.client = service.client
        self.deduper = deduper
        self.allowed_topics = set(allowed_topics or settings.webhook_allowed_topics)

    async def accept(self, notification: Notification) -> str:
        """
        Decide whether a notification should be processed.

        Returns:
            ``accepted``, ``skipped`` (topic not handled) or ``deduplicated``
        """
        if not notification.topic or notification.topic not in self.allowed_topics:
            logger.debug("Webhook topic ignored: %s", notification.topic)
            return "skipped"
        if not notification.resource or notification.user_id is None:
            return "skipped"
        if self.deduper is not None and await self.deduper.seen_recently(notification):
            logger.info("Webhook deduplicated: %s", notification.resource)
            return "deduplicated"
        return "accepted"

    async def process(self, notification: Notification) -> int:
        """
        Refresh every shipment the notification refers to.

        Returns:
            Number of shipments cached
        """
        async with self.session_factory() as db:
            account = (
                await db.execute(
                    select(MarketplaceAccount).where(
                        MarketplaceAccount.external_user_id == notification.user_id
                    )
                )
            ).scalar_one_or_none()

        if account is None:
            logger.warning("Webhook for unknown marketplace user %s", notification.user_id)
            return 0

        resource_id = notification.resource_id
        if resource_id is None:
            return 0

        try:
            if notification.topic in SHIPMENT_TOPICS:
                return await self._process_shipment(account, resource_id)
            if notification.topic in ORDER_TOPICS:
                return await self._process_order(account, resource_id)
        except LastMileError as e:
            logger.error(
                "Webhook %s %s for account %s failed: %s",
                notification.topic,
                notification.resource,
                account.id,
                e,
            )
        return 0

    async def _process_shipment(
        self, account: MarketplaceAccount, shipment_id: str, order: Optional[dict] = None
    ) -> int:
        shipment = await self.client.get_shipment(account.owner_id, account.id, shipment_id)
        if logistic_type(shipment) != self.service.settings.sync_logistic_type:
            logger.debug("Shipment %s is not self-service, skipped", shipment_id)
            return 0

        order_id = shipment.get("order_id")
        if order is None and order_id:
            try:
                order = await self.client.get_order(account.owner_id, account.id, str(order_id))
            except LastMileError as e:
                logger.warning("Buyer lookup for order %s failed: %s", order_id, e)
        if order is not None:
            shipment["buyer_info"] = buyer_info(order)

        extra = {"order_id": order.get("id"), "pack_id": order.get("pack_id")} if order else None
        cached = await self.service.fetch_and_reconcile(
            account,
            shipment_id,
            extra=extra,
            source="webhook",
            payload=shipment,
            self_service_only=True,
        )
        return 0 if cached is None else 1

    async def _process_order(self, account: MarketplaceAccount, order_id: str) -> int:
        order = await self.client.get_order(account.owner_id, account.id, order_id)

        if not order.get("pack_id"):
            shipment_id = (order.get("shipping") or {}).get("id")
            if not shipment_id:
                return 0
            return await self._process_shipment(account, str(shipment_id), order)

        pack = await self.client.get_pack(account.owner_id, account.id, str(order["pack_id"]))
        processed = 0
        for entry in pack.get("orders") or []:
            shipment_id = (entry.get("shipping") or {}).get("id")
            pack_order = entry
            if not shipment_id and entry.get("id"):
                pack_order = await self.client.get_order(account.owner_id, account.id, str(entry["id"]))
                shipment_id = (pack_order.get("shipping") or {}).get("id")
            if shipment_id:
                pack_order.setdefault("pack_id", order["pack_id"])
                processed += await self._process_shipment(account, str(shipment_id), pack_order)
        return processed
