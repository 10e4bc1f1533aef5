"""Shipment alert routes."""

from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.api.deps import get_database, get_owner_id, get_sync_service
from lastmile.db.models import ShipmentAlert
from lastmile.sync.service import SyncService

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


class AlertResponse(BaseModel):
    id: int
    shipment_id: str
    alert_type: str
    status: str
    detected_at: datetime
    resolved_at: datetime | None
    driver_id: int | None
    account_id: int | None
    notes: str | None

    class Config:
        from_attributes = True


class DetectionResponse(BaseModel):
    alerts_created: int
    created: dict[str, int]
    candidates: dict[str, int]
    skipped_existing: int
    errors: int


class AlertRefResponse(BaseModel):
    id: int
    shipment_id: str
    alert_type: str
    detected_at: datetime
    shipment_status: str | None = None


class DuplicateGroupResponse(BaseModel):
    shipment_id: str
    alert_type: str
    keep_id: int
    duplicate_ids: List[int]


class DiagnosticResponse(BaseModel):
    total_alerts: int
    pending_alerts: int
    resolved_alerts: int
    shipments_with_alerts: int
    divergence: int
    orphaned_alerts: List[AlertRefResponse]
    duplicate_groups: List[DuplicateGroupResponse]
    terminal_alerts: List[AlertRefResponse]
    recommendations: List[str]


class CleanupResponse(BaseModel):
    orphaned_removed: int
    duplicates_consolidated: int
    terminal_resolved: int
    total_cleaned: int


@router.get("", response_model=List[AlertResponse])
async def list_alerts(
    status: Optional[str] = None,
    alert_type: Optional[str] = None,
    limit: int = 50,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_database),
):
    """List recent alerts of the owner."""
    query = select(ShipmentAlert).where(ShipmentAlert.owner_id == owner_id)
    if status:
        query = query.where(ShipmentAlert.status == status)
    if alert_type:
        query = query.where(ShipmentAlert.alert_type == alert_type)
    result = await db.execute(
        query.order_by(ShipmentAlert.detected_at.desc(), ShipmentAlert.id.desc()).limit(limit)
    )
    return result.scalars().all()


@router.post("/check", response_model=DetectionResponse)
async def check_for_problems(service: SyncService = Depends(get_sync_service)):
    """Run the stuck/orphan detector now."""
    summary = await service.check_for_problems()
    return DetectionResponse(**summary.to_dict())


@router.get("/diagnostics", response_model=DiagnosticResponse)
async def diagnose(service: SyncService = Depends(get_sync_service)):
    """Audit the alert table without changing it."""
    report = await service.diagnose()
    return DiagnosticResponse(**asdict(report))


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(service: SyncService = Depends(get_sync_service)):
    """Repair orphaned, duplicated and stale alerts."""
    result = await service.cleanup()
    return CleanupResponse(**asdict(result), total_cleaned=result.total_cleaned)
