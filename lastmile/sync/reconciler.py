"""Merge fresh marketplace shipment state into the local cache."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile import metrics
from lastmile.db.models import CachedShipment

logger = logging.getLogger(__name__)

STICKY_FIELDS = ("order_id", "pack_id", "tracking_number")


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _as_id(value: Any) -> Optional[str]:
    if not _present(value):
        return None
    return str(value)


def merge_shipment(
    previous: Optional[dict[str, Any]],
    fresh: dict[str, Any],
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """
    Compute the cached column values for a shipment.

    Sticky fields take the fresh value when present, else ``extra``, else the
    previous value. Status fields always follow the fresh payload, even when
    that is a regression. The raw payload is a shallow merge with fresh keys
    winning.

    Args:
        previous: Current cached values (``None`` when not cached yet)
        fresh: Shipment payload just fetched from the marketplace
        extra: Sticky values learned outside the payload, e.g. the order id

    Returns:
        Dict of column values (without timestamps or ownership)
    """
    previous = previous or {}
    extra = extra or {}

    merged: dict[str, Any] = {}
    for name in STICKY_FIELDS:
        for candidate in (fresh.get(name), extra.get(name), previous.get(name)):
            if _present(candidate):
                merged[name] = _as_id(candidate)
                break
        else:
            merged[name] = None

    substatus = fresh.get("substatus") or None
    merged["status"] = fresh.get("status") or substatus or "unknown"
    merged["substatus"] = substatus

    raw = dict(previous.get("raw_payload") or {})
    raw.update(fresh)
    merged["raw_payload"] = raw
    return merged


class CacheReconciler:
    """Upserts shipments into ``shipments_cache`` keyed on ``shipment_id``."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    async def get(self, shipment_id: str, owner_id: Optional[str] = None) -> Optional[CachedShipment]:
        stmt = select(CachedShipment).where(CachedShipment.shipment_id == str(shipment_id))
        if owner_id is not None:
            stmt = stmt.where(CachedShipment.owner_id == owner_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def reconcile(
        self,
        shipment_id: str,
        fresh_payload: dict[str, Any],
        account_id: Optional[int],
        owner_id: str,
        extra: Optional[dict[str, Any]] = None,
        source: str = "refresh",
    ) -> CachedShipment:
        """
        Merge ``fresh_payload`` into the cached row and return the stored row.

        The write is a single ``INSERT ... ON CONFLICT DO UPDATE`` so concurrent
        reconciles of the same shipment never fail; the last writer wins on
        status fields.
        """
        shipment_id = str(shipment_id)
        current = await self.get(shipment_id)
        previous = None
        if current is not None:
            previous = {
                "order_id": current.order_id,
                "pack_id": current.pack_id,
                "tracking_number": current.tracking_number,
                "raw_payload": current.raw_payload,
            }

        values = merge_shipment(previous, fresh_payload, extra)
        now = self.clock()
        values.update(
            shipment_id=shipment_id,
            account_id=account_id if account_id is not None else (current.account_id if current else None),
            owner_id=owner_id,
            last_update_at=now,
        )

        stmt = self._insert().values(created_at=now, **values)
        update_cols = {k: stmt.excluded[k] for k in values if k != "shipment_id"}
        # Sticky columns stay sticky even against a concurrent writer
        for name in STICKY_FIELDS:
            if values[name] is None:
                update_cols.pop(name)
        stmt = stmt.on_conflict_do_update(index_elements=["shipment_id"], set_=update_cols)

        await self.db.execute(stmt)
        await self.db.commit()
        metrics.shipments_reconciled_total.labels(source=source).inc()

        if current is not None and current.status != values["status"]:
            logger.info(
                "Shipment %s status %s -> %s", shipment_id, current.status, values["status"]
            )

        result = await self.db.execute(
            select(CachedShipment)
            .where(CachedShipment.shipment_id == shipment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite.insert(CachedShipment)
        return postgresql.insert(CachedShipment)
