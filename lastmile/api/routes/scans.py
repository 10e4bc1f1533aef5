"""Driver scan endpoint."""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lastmile.api.deps import get_owner_id, get_sync_service
from lastmile.sync.service import (
    SCAN_CONFLICT,
    SCAN_DRIVER_NOT_FOUND,
    SCAN_INVALID_CODE,
    SCAN_NOT_FOUND,
    SyncService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scans", tags=["scans"])

STATUS_CODES = {
    SCAN_CONFLICT: 409,
    SCAN_NOT_FOUND: 404,
    SCAN_DRIVER_NOT_FOUND: 404,
    SCAN_INVALID_CODE: 422,
}


class ScanRequest(BaseModel):
    """Request model for a driver scan."""
    driver_id: int
    code: str = Field(..., min_length=1, max_length=2048)


class ScanResponse(BaseModel):
    """Response model for a driver scan."""
    success: bool
    status: str
    message: str
    shipment_id: Optional[str] = None
    resolved_from: Optional[str] = None
    account_id: Optional[int] = None
    account_nickname: Optional[str] = None
    shipment_status: Optional[str] = None
    substatus: Optional[str] = None
    tracking_number: Optional[str] = None
    order_id: Optional[str] = None
    attempts: int = 0
    holder_driver_id: Optional[int] = None
    holder_name: Optional[str] = None
    holder_phone: Optional[str] = None


@router.post("", response_model=ScanResponse)
async def scan_package(
    request: ScanRequest,
    owner_id: str = Depends(get_owner_id),
    service: SyncService = Depends(get_sync_service),
):
    """Resolve a scanned label and bind the package to the driver."""
    result = await service.resolve_and_assign(owner_id, request.driver_id, request.code)
    body = ScanResponse(success=result.success, **asdict(result))
    return JSONResponse(
        status_code=STATUS_CODES.get(result.status, 200),
        content=body.model_dump(),
    )
