"""Retention for the shipment cache and scan log."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.config import Settings, settings as default_settings
from lastmile.db.models import CachedShipment, ScanLog

logger = logging.getLogger(__name__)

# Final states the marketplace never moves a shipment out of
FINISHED_STATUSES = ("delivered", "not_delivered", "cancelled")

# Keys kept in raw_payload once a shipment is finished
SLIM_KEYS = (
    "id",
    "status",
    "substatus",
    "logistic",
    "tracking_number",
    "order_id",
    "pack_id",
    "buyer_info",
    "date_created",
    "last_updated",
)


def slim_payload(payload: dict) -> dict:
    return {k: payload[k] for k in SLIM_KEYS if k in payload}


@dataclass
class RetentionResult:
    slimmed: int = 0
    deleted_shipments: int = 0
    deleted_scan_logs: int = 0
    dry_run: bool = False

    @property
    def total(self) -> int:
        return self.slimmed + self.deleted_shipments + self.deleted_scan_logs


class ShipmentRetention:
    """
    Keeps the cache small.

    Finished shipments older than ``shipment_slim_after_days`` lose everything
    in ``raw_payload`` but ``SLIM_KEYS``. With ``shipment_delete_after_days``
    above zero, finished shipments older than that are deleted. Scan log rows
    older than ``scan_log_retention_days`` are deleted. Assignments and alerts
    are never touched here.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = datetime.utcnow,
        settings: Settings | None = None,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or default_settings

    async def run(
        self,
        owner_id: str | None = None,
        delete_after_days: int | None = None,
        dry_run: bool = False,
    ) -> RetentionResult:
        """
        Apply retention, or only count what would change when ``dry_run``.

        Args:
            owner_id: Restrict shipment retention to one owner (scan logs too)
            delete_after_days: Overrides ``shipment_delete_after_days``
            dry_run: Count without writing
        """
        now = self.clock()
        if delete_after_days is None:
            delete_after_days = self.settings.shipment_delete_after_days
        result = RetentionResult(dry_run=dry_run)

        result.slimmed = await self._slim(
            now - timedelta(days=self.settings.shipment_slim_after_days), owner_id, dry_run
        )
        if delete_after_days > 0:
            result.deleted_shipments = await self._delete_shipments(
                now - timedelta(days=delete_after_days), owner_id, dry_run
            )
        result.deleted_scan_logs = await self._delete_scan_logs(
            now - timedelta(days=self.settings.scan_log_retention_days), owner_id, dry_run
        )

        if not dry_run:
            await self.db.commit()
        logger.info(
            "Retention%s: %d slimmed, %d shipment(s) deleted, %d scan log(s) deleted",
            " (dry run)" if dry_run else "",
            result.slimmed,
            result.deleted_shipments,
            result.deleted_scan_logs,
        )
        return result

    def _finished_before(self, cutoff: datetime, owner_id: str | None) -> list:
        conditions = [
            CachedShipment.status.in_(FINISHED_STATUSES),
            CachedShipment.last_update_at < cutoff,
        ]
        if owner_id is not None:
            conditions.append(CachedShipment.owner_id == owner_id)
        return conditions

    async def _slim(self, cutoff: datetime, owner_id: str | None, dry_run: bool) -> int:
        rows = await self.db.execute(
            select(CachedShipment.id, CachedShipment.raw_payload).where(
                *self._finished_before(cutoff, owner_id)
            )
        )
        slimmed = 0
        for row_id, payload in rows.all():
            payload = payload or {}
            slim = slim_payload(payload)
            if len(slim) == len(payload):
                continue
            slimmed += 1
            if not dry_run:
                await self.db.execute(
                    update(CachedShipment)
                    .where(CachedShipment.id == row_id)
                    .values(raw_payload=slim)
                )
        return slimmed

    async def _delete_shipments(self, cutoff: datetime, owner_id: str | None, dry_run: bool) -> int:
        conditions = self._finished_before(cutoff, owner_id)
        if dry_run:
            count = await self.db.execute(
                select(func.count()).select_from(CachedShipment).where(*conditions)
            )
            return count.scalar_one()
        deleted = await self.db.execute(delete(CachedShipment).where(*conditions))
        return deleted.rowcount or 0

    async def _delete_scan_logs(self, cutoff: datetime, owner_id: str | None, dry_run: bool) -> int:
        conditions = [ScanLog.scanned_at < cutoff]
        if owner_id is not None:
            conditions.append(ScanLog.owner_id == owner_id)
        if dry_run:
            count = await self.db.execute(select(func.count()).select_from(ScanLog).where(*conditions))
            return count.scalar_one()
        deleted = await self.db.execute(delete(ScanLog).where(*conditions))
        return deleted.rowcount or 0
