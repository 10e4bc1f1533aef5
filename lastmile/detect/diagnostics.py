"""Alert table audit and repair."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import delete, distinct, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile import metrics
from lastmile.config import Settings, settings as default_settings
from lastmile.db.models import (
    ALERT_NOT_DELIVERED_NO_RETURN,
    ALERT_PENDING,
    ALERT_RESOLVED,
    CachedShipment,
    ShipmentAlert,
)

logger = logging.getLogger(__name__)


@dataclass
class AlertRef:
    id: int
    shipment_id: str
    alert_type: str
    detected_at: datetime
    shipment_status: Optional[str] = None


@dataclass
class DuplicateGroup:
    """Pending alerts sharing (shipment_id, alert_type); the first one is kept."""

    shipment_id: str
    alert_type: str
    keep_id: int
    duplicate_ids: list[int]


@dataclass
class DiagnosticReport:
    total_alerts: int = 0
    pending_alerts: int = 0
    resolved_alerts: int = 0
    shipments_with_alerts: int = 0
    divergence: int = 0
    orphaned_alerts: list[AlertRef] = field(default_factory=list)
    duplicate_groups: list[DuplicateGroup] = field(default_factory=list)
    terminal_alerts: list[AlertRef] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not (self.orphaned_alerts or self.duplicate_groups or self.terminal_alerts)


@dataclass
class CleanupResult:
    orphaned_removed: int = 0
    duplicates_consolidated: int = 0
    terminal_resolved: int = 0

    @property
    def total_cleaned(self) -> int:
        return self.orphaned_removed + self.duplicates_consolidated + self.terminal_resolved


class AlertDiagnostics:
    """Finds orphaned, duplicated and stale pending alerts and repairs them."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = datetime.utcnow,
        settings: Settings | None = None,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or default_settings

    async def diagnose(self) -> DiagnosticReport:
        """Read-only pass over the alert table."""
        report = DiagnosticReport()

        counts = await self.db.execute(
            select(ShipmentAlert.status, func.count(ShipmentAlert.id)).group_by(ShipmentAlert.status)
        )
        by_status = {status: count for status, count in counts.all()}
        report.total_alerts = sum(by_status.values())
        report.pending_alerts = by_status.get(ALERT_PENDING, 0)
        report.resolved_alerts = by_status.get(ALERT_RESOLVED, 0)

        report.shipments_with_alerts = (
            await self.db.execute(
                select(func.count(distinct(ShipmentAlert.shipment_id))).where(
                    ShipmentAlert.status == ALERT_PENDING
                )
            )
        ).scalar_one()
        report.divergence = report.pending_alerts - report.shipments_with_alerts

        report.orphaned_alerts = await self._orphaned()
        report.duplicate_groups = await self._duplicates()
        report.terminal_alerts = await self._on_terminal_shipments()
        report.recommendations = self._recommend(report)

        logger.info(
            "Alert diagnostics: %d pending over %d shipment(s), %d orphaned, %d duplicate group(s), %d on terminal shipments",
            report.pending_alerts,
            report.shipments_with_alerts,
            len(report.orphaned_alerts),
            len(report.duplicate_groups),
            len(report.terminal_alerts),
        )
        return report

    async def cleanup(self) -> CleanupResult:
        """
        Repair the issues ``diagnose`` reports.

        Orphans are deleted first, then extra duplicates, then pending alerts
        on terminal shipments are resolved with a note.
        """
        result = CleanupResult()

        orphan_ids = [a.id for a in await self._orphaned()]
        if orphan_ids:
            deleted = await self.db.execute(
                delete(ShipmentAlert).where(ShipmentAlert.id.in_(orphan_ids))
            )
            result.orphaned_removed = deleted.rowcount or 0

        duplicate_ids = [i for g in await self._duplicates() for i in g.duplicate_ids]
        if duplicate_ids:
            deleted = await self.db.execute(
                delete(ShipmentAlert).where(ShipmentAlert.id.in_(duplicate_ids))
            )
            result.duplicates_consolidated = deleted.rowcount or 0

        terminal = await self._on_terminal_shipments()
        now = self.clock()
        for alert in terminal:
            await self.db.execute(
                update(ShipmentAlert)
                .where(ShipmentAlert.id == alert.id, ShipmentAlert.status == ALERT_PENDING)
                .values(
                    status=ALERT_RESOLVED,
                    resolved_at=now,
                    notes=f"Resolved by cleanup: shipment already {alert.shipment_status}",
                )
            )
        result.terminal_resolved = len(terminal)

        await self.db.commit()

        metrics.alerts_repaired_total.labels(category="orphaned").inc(result.orphaned_removed)
        metrics.alerts_repaired_total.labels(category="duplicate").inc(result.duplicates_consolidated)
        metrics.alerts_repaired_total.labels(category="terminal").inc(result.terminal_resolved)
        logger.info(
            "Alert cleanup: %d orphaned removed, %d duplicates consolidated, %d resolved on terminal shipments",
            result.orphaned_removed,
            result.duplicates_consolidated,
            result.terminal_resolved,
        )
        return result

    async def _orphaned(self) -> list[AlertRef]:
        cached = exists().where(CachedShipment.shipment_id == ShipmentAlert.shipment_id)
        rows = await self.db.execute(
            select(
                ShipmentAlert.id,
                ShipmentAlert.shipment_id,
                ShipmentAlert.alert_type,
                ShipmentAlert.detected_at,
            )
            .where(ShipmentAlert.status == ALERT_PENDING, ~cached)
            .order_by(ShipmentAlert.id)
        )
        return [AlertRef(*row) for row in rows.all()]

    async def _duplicates(self) -> list[DuplicateGroup]:
        rows = await self.db.execute(
            select(
                ShipmentAlert.id,
                ShipmentAlert.shipment_id,
                ShipmentAlert.alert_type,
            )
            .where(ShipmentAlert.status == ALERT_PENDING)
            .order_by(
                ShipmentAlert.shipment_id,
                ShipmentAlert.alert_type,
                ShipmentAlert.detected_at.asc(),
                ShipmentAlert.id.asc(),
            )
        )
        groups: dict[tuple[str, str], list[int]] = {}
        for alert_id, shipment_id, alert_type in rows.all():
            groups.setdefault((shipment_id, alert_type), []).append(alert_id)

        return [
            DuplicateGroup(shipment_id, alert_type, keep_id=ids[0], duplicate_ids=ids[1:])
            for (shipment_id, alert_type), ids in groups.items()
            if len(ids) > 1
        ]

    async def _on_terminal_shipments(self) -> list[AlertRef]:
        # not_delivered_no_return is raised because the status is terminal
        rows = await self.db.execute(
            select(
                ShipmentAlert.id,
                ShipmentAlert.shipment_id,
                ShipmentAlert.alert_type,
                ShipmentAlert.detected_at,
                CachedShipment.status,
            )
            .join(CachedShipment, CachedShipment.shipment_id == ShipmentAlert.shipment_id)
            .where(
                ShipmentAlert.status == ALERT_PENDING,
                ShipmentAlert.alert_type != ALERT_NOT_DELIVERED_NO_RETURN,
                CachedShipment.status.in_(self.settings.terminal_statuses),
            )
            .order_by(ShipmentAlert.id)
        )
        return [AlertRef(*row) for row in rows.all()]

    def _recommend(self, report: DiagnosticReport) -> list[str]:
        recommendations = []
        if report.orphaned_alerts:
            recommendations.append(
                f"Remove {len(report.orphaned_alerts)} orphaned alert(s) with no cached shipment"
            )
        if report.duplicate_groups:
            recommendations.append(
                f"Consolidate {len(report.duplicate_groups)} group(s) of duplicate alerts (keep the oldest)"
            )
        if report.terminal_alerts:
            recommendations.append(
                f"Resolve {len(report.terminal_alerts)} alert(s) on shipments already finalized"
            )
        if report.divergence > self.settings.diagnostic_divergence_warning:
            recommendations.append(
                f"WARNING: divergence of {report.divergence} between pending alerts and shipments; run a full cleanup"
            )
        if not recommendations:
            recommendations.append("No critical inconsistencies detected")
        return recommendations
