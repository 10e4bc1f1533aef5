"""Driver to package assignment with at most one active holder per package."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile import metrics
from lastmile.db.models import Driver, DriverAssignment, ScanLog
from lastmile.errors import ConflictError, PersistenceConflict

logger = logging.getLogger(__name__)

OUTCOME_ASSIGNED = "assigned"
OUTCOME_RESCANNED = "rescanned"
OUTCOME_CONFLICT = "conflict"


@dataclass
class AssignmentResult:
    """Outcome of an assignment attempt. Conflicts are results, not exceptions."""

    outcome: str
    shipment_id: str
    assignment: Optional[DriverAssignment] = None
    conflict: Optional[ConflictError] = None

    @property
    def ok(self) -> bool:
        return self.outcome != OUTCOME_CONFLICT


class AssignmentCoordinator:
    """Binds scanned packages to drivers.

    The partial unique index ``uq_driver_assignment_active`` is the only
    arbiter between concurrent scans; the loser of an insert race re-reads
    the winner instead of failing.
    """

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    async def get_active(self, shipment_id: str, owner_id: str) -> Optional[DriverAssignment]:
        result = await self.db.execute(
            select(DriverAssignment).where(
                DriverAssignment.shipment_id == str(shipment_id),
                DriverAssignment.owner_id == owner_id,
                DriverAssignment.returned_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def assign(
        self,
        driver_id: int,
        shipment_id: str,
        owner_id: str,
        account_id: Optional[int] = None,
        scanned_code: Optional[str] = None,
        resolved_from: Optional[str] = None,
    ) -> AssignmentResult:
        """
        Make ``driver_id`` the active holder of the package.

        Returns:
            AssignmentResult with outcome ``assigned``, ``rescanned`` or ``conflict``
        """
        shipment_id = str(shipment_id)
        now = self.clock()

        active = await self.get_active(shipment_id, owner_id)
        if active is None:
            assignment = DriverAssignment(
                driver_id=driver_id,
                shipment_id=shipment_id,
                account_id=account_id,
                owner_id=owner_id,
                assigned_at=now,
                scanned_at=now,
            )
            self.db.add(assignment)
            try:
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                logger.info(
                    "Concurrent assignment for shipment %s detected, re-reading holder",
                    shipment_id,
                )
                active = await self.get_active(shipment_id, owner_id)
                if active is None:
                    raise PersistenceConflict(
                        f"Assignment for shipment {shipment_id} rejected without a visible holder"
                    ) from e
            else:
                result = AssignmentResult(OUTCOME_ASSIGNED, shipment_id, assignment=assignment)
                await self._log(result, driver_id, owner_id, account_id, scanned_code, resolved_from)
                return result

        if active.driver_id == driver_id:
            active.scanned_at = now
            await self.db.commit()
            result = AssignmentResult(OUTCOME_RESCANNED, shipment_id, assignment=active)
        else:
            holder = await self.db.get(Driver, active.driver_id)
            conflict = ConflictError(
                shipment_id,
                active.driver_id,
                holder_name=holder.name if holder else None,
                holder_phone=holder.phone if holder else None,
            )
            logger.info(
                "Driver %s scanned shipment %s held by driver %s",
                driver_id,
                shipment_id,
                active.driver_id,
            )
            result = AssignmentResult(OUTCOME_CONFLICT, shipment_id, assignment=active, conflict=conflict)

        await self._log(result, driver_id, owner_id, account_id, scanned_code, resolved_from)
        return result

    async def mark_returned(self, shipment_id: str, owner_id: str) -> Optional[DriverAssignment]:
        """Close the active assignment. Returns ``None`` when nothing is active."""
        active = await self.get_active(shipment_id, owner_id)
        if active is None:
            return None
        active.returned_at = self.clock()
        await self.db.commit()
        logger.info("Shipment %s returned by driver %s", shipment_id, active.driver_id)
        return active

    async def _log(
        self,
        result: AssignmentResult,
        driver_id: int,
        owner_id: str,
        account_id: Optional[int],
        scanned_code: Optional[str],
        resolved_from: Optional[str],
    ) -> None:
        self.db.add(
            ScanLog(
                driver_id=driver_id,
                shipment_id=result.shipment_id,
                scanned_code=scanned_code or result.shipment_id,
                resolved_from=resolved_from,
                outcome=result.outcome,
                account_id=account_id,
                owner_id=owner_id,
                scanned_at=self.clock(),
            )
        )
        await self.db.commit()
        metrics.record_scan(result.outcome)
