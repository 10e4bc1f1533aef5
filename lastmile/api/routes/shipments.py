"""Shipment refresh and return routes."""

from dataclasses import asdict
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.api.deps import get_database, get_owner_id, get_sync_service
from lastmile.db.models import CachedShipment
from lastmile.sync.service import HISTORY_NOT_FOUND, REFRESH_NOT_FOUND, SyncService

router = APIRouter(prefix="/api/shipments", tags=["shipments"])


class ShipmentResponse(BaseModel):
    shipment_id: str
    order_id: str | None
    pack_id: str | None
    tracking_number: str | None
    status: str
    substatus: str | None
    account_id: int | None
    created_at: datetime
    last_update_at: datetime

    class Config:
        from_attributes = True


class RefreshRequest(BaseModel):
    account_id: Optional[int] = None


class RefreshResponse(BaseModel):
    status: str
    shipment_id: str
    message: str = ""
    account_id: Optional[int] = None
    previous_status: Optional[str] = None
    shipment_status: Optional[str] = None
    substatus: Optional[str] = None
    alerts_resolved: int = 0


class ShipmentEventResponse(BaseModel):
    date: Optional[str] = None
    status: Optional[str] = None
    substatus: Optional[str] = None
    description: Optional[str] = None
    location: Any = None


class HistoryResponse(BaseModel):
    shipment_id: str
    account_id: Optional[int] = None
    events: List[ShipmentEventResponse]
    total: int


class RetentionRequest(BaseModel):
    delete_after_days: Optional[int] = None
    dry_run: bool = False


class RetentionResponse(BaseModel):
    slimmed: int
    deleted_shipments: int
    deleted_scan_logs: int
    dry_run: bool


class ReturnResponse(BaseModel):
    shipment_id: str
    driver_id: int
    assigned_at: datetime
    returned_at: datetime

    class Config:
        from_attributes = True


@router.get("/{shipment_id}", response_model=ShipmentResponse)
async def get_shipment(
    shipment_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_database),
):
    """Get the cached state of a shipment."""
    result = await db.execute(
        select(CachedShipment).where(
            CachedShipment.shipment_id == shipment_id,
            CachedShipment.owner_id == owner_id,
        )
    )
    shipment = result.scalar_one_or_none()
    if not shipment:
        raise HTTPException(status_code=404, detail="Shipment not found")
    return shipment


@router.post("/{shipment_id}/refresh", response_model=RefreshResponse)
async def refresh_shipment(
    shipment_id: str,
    request: RefreshRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    service: SyncService = Depends(get_sync_service),
):
    """Re-fetch a shipment from the marketplace."""
    hint = request.account_id if request else None
    result = await service.refresh_shipment(owner_id, shipment_id, account_hint=hint)
    if result.status == REFRESH_NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.message)
    return RefreshResponse(**asdict(result))


@router.post("/{shipment_id}/return", response_model=ReturnResponse)
async def mark_returned(
    shipment_id: str,
    owner_id: str = Depends(get_owner_id),
    service: SyncService = Depends(get_sync_service),
):
    """Close the active driver assignment of a package."""
    assignment = await service.mark_returned(owner_id, shipment_id)
    if assignment is None:
        raise HTTPException(status_code=404, detail="No active assignment for this package")
    return assignment


@router.get("/{shipment_id}/history", response_model=HistoryResponse)
async def shipment_history(
    shipment_id: str,
    account_id: Optional[int] = None,
    owner_id: str = Depends(get_owner_id),
    service: SyncService = Depends(get_sync_service),
):
    """Status events of a shipment, read live from the marketplace."""
    result = await service.shipment_history(owner_id, shipment_id, account_hint=account_id)
    if result.status == HISTORY_NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.message)
    return HistoryResponse(
        shipment_id=result.shipment_id,
        account_id=result.account_id,
        events=[ShipmentEventResponse(**asdict(event)) for event in result.events],
        total=result.total,
    )


@router.post("/cleanup", response_model=RetentionResponse)
async def cleanup_old_shipments(
    request: RetentionRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    service: SyncService = Depends(get_sync_service),
):
    """Slim finished shipments and expire old scan logs of the caller."""
    request = request or RetentionRequest()
    if request.delete_after_days is not None and request.delete_after_days < 0:
        raise HTTPException(status_code=400, detail="delete_after_days must be 0 or more")
    result = await service.cleanup_old_shipments(
        owner_id=owner_id,
        delete_after_days=request.delete_after_days,
        dry_run=request.dry_run,
    )
    return RetentionResponse(**asdict(result))
