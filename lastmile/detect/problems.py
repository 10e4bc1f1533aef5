"""Stuck and orphaned shipment detection."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from lastmile import metrics
from lastmile.config import Settings, settings as default_settings
from lastmile.db.models import (
    ALERT_NOT_DELIVERED_NO_RETURN,
    ALERT_NOT_RETURNED,
    ALERT_PENDING,
    ALERT_READY_NOT_SHIPPED,
    ALERT_RESOLVED,
    ALERT_STUCK_SHIPMENT,
    CachedShipment,
    DriverAssignment,
    ShipmentAlert,
)

logger = logging.getLogger(__name__)

ALERT_TYPES = (
    ALERT_NOT_DELIVERED_NO_RETURN,
    ALERT_STUCK_SHIPMENT,
    ALERT_READY_NOT_SHIPPED,
    ALERT_NOT_RETURNED,
)

DELIVERY_CONFIRMED_NOTE = "Resolved automatically: delivery confirmed"


@dataclass
class AlertCandidate:
    shipment_id: str
    alert_type: str
    owner_id: str
    account_id: Optional[int]
    driver_id: Optional[int]
    reason: str


@dataclass
class DetectionSummary:
    """Result of one detector run."""

    created: dict[str, int] = field(default_factory=lambda: {t: 0 for t in ALERT_TYPES})
    candidates: dict[str, int] = field(default_factory=lambda: {t: 0 for t in ALERT_TYPES})
    skipped_existing: int = 0
    errors: int = 0

    @property
    def total_created(self) -> int:
        return sum(self.created.values())

    def to_dict(self) -> dict:
        return {
            "alerts_created": self.total_created,
            "created": dict(self.created),
            "candidates": dict(self.candidates),
            "skipped_existing": self.skipped_existing,
            "errors": self.errors,
        }


def _active_assignment_join():
    return and_(
        DriverAssignment.shipment_id == CachedShipment.shipment_id,
        DriverAssignment.owner_id == CachedShipment.owner_id,
        DriverAssignment.returned_at.is_(None),
    )


class ProblemDetector:
    """
    Batch scan raising the four alert classes.

    Each check is idempotent: a shipment never gets a second pending alert of
    the same type. The partial unique index ``uq_shipment_alert_pending``
    settles races with a concurrent run.
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

    async def run(self) -> DetectionSummary:
        """
        Run every check and insert the missing alerts.

        Returns:
            DetectionSummary with per-type counts
        """
        now = self.clock()
        summary = DetectionSummary()

        candidates: list[AlertCandidate] = []
        candidates += await self.find_not_delivered_no_return()
        candidates += await self.find_stuck(now)
        candidates += await self.find_ready_not_shipped(now)
        candidates += await self.find_not_returned(now)

        for candidate in candidates:
            summary.candidates[candidate.alert_type] += 1

        pending = await self._pending_keys()

        for candidate in candidates:
            key = (candidate.shipment_id, candidate.alert_type)
            if key in pending:
                summary.skipped_existing += 1
                continue

            self.db.add(
                ShipmentAlert(
                    shipment_id=candidate.shipment_id,
                    alert_type=candidate.alert_type,
                    status=ALERT_PENDING,
                    detected_at=now,
                    driver_id=candidate.driver_id,
                    account_id=candidate.account_id,
                    owner_id=candidate.owner_id,
                    notes=candidate.reason,
                )
            )
            try:
                await self.db.commit()
            except IntegrityError:
                # Another run inserted it first
                await self.db.rollback()
                summary.skipped_existing += 1
                pending.add(key)
                continue
            except SQLAlchemyError:
                await self.db.rollback()
                summary.errors += 1
                logger.error(
                    "Failed to create %s alert for shipment %s",
                    candidate.alert_type,
                    candidate.shipment_id,
                    exc_info=True,
                )
                continue

            pending.add(key)
            summary.created[candidate.alert_type] += 1
            metrics.alerts_created_total.labels(alert_type=candidate.alert_type).inc()

        logger.info(
            "Problem check complete: %d alert(s) created, %d already pending, %d error(s)",
            summary.total_created,
            summary.skipped_existing,
            summary.errors,
        )
        return summary

    async def find_not_delivered_no_return(self) -> list[AlertCandidate]:
        """Failed deliveries that no driver has brought back."""
        past = aliased(DriverAssignment)
        returned = exists().where(
            past.shipment_id == CachedShipment.shipment_id,
            past.returned_at.is_not(None),
        )
        query = (
            select(CachedShipment, DriverAssignment.driver_id)
            .outerjoin(DriverAssignment, _active_assignment_join())
            .where(CachedShipment.status == "not_delivered", ~returned)
        )
        result = await self.db.execute(query)
        return [
            AlertCandidate(
                shipment_id=shipment.shipment_id,
                alert_type=ALERT_NOT_DELIVERED_NO_RETURN,
                owner_id=shipment.owner_id,
                account_id=shipment.account_id,
                driver_id=driver_id,
                reason="Delivery failed and the package has not been returned",
            )
            for shipment, driver_id in result.all()
        ]

    async def find_stuck(self, now: datetime) -> list[AlertCandidate]:
        hours = self.settings.stuck_shipment_hours
        cutoff = now - timedelta(hours=hours)
        query = (
            select(CachedShipment, DriverAssignment.driver_id)
            .outerjoin(DriverAssignment, _active_assignment_join())
            .where(
                CachedShipment.status.not_in(self.settings.terminal_statuses),
                CachedShipment.last_update_at < cutoff,
            )
        )
        result = await self.db.execute(query)
        return [
            AlertCandidate(
                shipment_id=shipment.shipment_id,
                alert_type=ALERT_STUCK_SHIPMENT,
                owner_id=shipment.owner_id,
                account_id=shipment.account_id,
                driver_id=driver_id,
                reason=(
                    f"No update for more than {hours} hours "
                    f"(last update: {shipment.last_update_at.isoformat()})"
                ),
            )
            for shipment, driver_id in result.all()
        ]

    async def find_ready_not_shipped(self, now: datetime) -> list[AlertCandidate]:
        hours = self.settings.ready_not_shipped_hours
        cutoff = now - timedelta(hours=hours)
        has_active = exists().where(_active_assignment_join())
        query = select(CachedShipment).where(
            CachedShipment.status == "ready_to_ship",
            CachedShipment.created_at < cutoff,
            ~has_active,
        )
        result = await self.db.execute(query)
        return [
            AlertCandidate(
                shipment_id=shipment.shipment_id,
                alert_type=ALERT_READY_NOT_SHIPPED,
                owner_id=shipment.owner_id,
                account_id=shipment.account_id,
                driver_id=None,
                reason=(
                    f"Ready to ship for more than {hours} hours with no driver assigned "
                    f"(created: {shipment.created_at.isoformat()})"
                ),
            )
            for shipment in result.scalars().all()
        ]

    async def find_not_returned(self, now: datetime) -> list[AlertCandidate]:
        hours = self.settings.not_returned_hours
        cutoff = now - timedelta(hours=hours)
        query = (
            select(DriverAssignment)
            .outerjoin(
                CachedShipment,
                CachedShipment.shipment_id == DriverAssignment.shipment_id,
            )
            .where(
                DriverAssignment.returned_at.is_(None),
                DriverAssignment.assigned_at < cutoff,
                or_(
                    CachedShipment.status.is_(None),
                    CachedShipment.status.not_in(self.settings.terminal_statuses),
                ),
            )
        )
        result = await self.db.execute(query)
        return [
            AlertCandidate(
                shipment_id=assignment.shipment_id,
                alert_type=ALERT_NOT_RETURNED,
                owner_id=assignment.owner_id,
                account_id=assignment.account_id,
                driver_id=assignment.driver_id,
                reason=(
                    f"With driver for more than {hours} hours and not returned "
                    f"(assigned: {assignment.assigned_at.isoformat()})"
                ),
            )
            for assignment in result.scalars().all()
        ]

    async def _pending_keys(self) -> set[tuple[str, str]]:
        result = await self.db.execute(
            select(ShipmentAlert.shipment_id, ShipmentAlert.alert_type).where(
                ShipmentAlert.status == ALERT_PENDING
            )
        )
        return {(row[0], row[1]) for row in result.all()}


async def resolve_delivered_alerts(
    db: AsyncSession, shipment_id: str, now: Optional[datetime] = None
) -> int:
    """Resolve every pending alert of a shipment confirmed as delivered."""
    result = await db.execute(
        update(ShipmentAlert)
        .where(
            ShipmentAlert.shipment_id == str(shipment_id),
            ShipmentAlert.status == ALERT_PENDING,
        )
        .values(
            status=ALERT_RESOLVED,
            resolved_at=now or datetime.utcnow(),
            notes=DELIVERY_CONFIRMED_NOTE,
        )
    )
    await db.commit()
    if result.rowcount:
        logger.info("Resolved %d pending alert(s) for delivered shipment %s", result.rowcount, shipment_id)
    return result.rowcount or 0
