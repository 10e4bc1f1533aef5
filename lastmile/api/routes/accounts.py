"""Marketplace account routes."""

from dataclasses import asdict
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.api.deps import get_database, get_owner_id, get_sync_service
from lastmile.db.models import MarketplaceAccount
from lastmile.sync.service import SYNC_ACCOUNT_NOT_FOUND, SyncService

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


class AccountResponse(BaseModel):
    id: int
    external_user_id: int
    site_id: str
    nickname: str | None
    status: str
    expires_at: datetime
    connected_at: datetime

    class Config:
        from_attributes = True


class SyncRequest(BaseModel):
    since: Optional[datetime] = None


class SyncResponse(BaseModel):
    account_id: int
    status: str
    orders_seen: int
    imported: int
    skipped: int
    errors: int
    message: str
    error_details: List[str]


@router.get("", response_model=List[AccountResponse])
async def list_accounts(
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_database),
):
    """List connected accounts, most recently connected first."""
    result = await db.execute(
        select(MarketplaceAccount)
        .where(MarketplaceAccount.owner_id == owner_id)
        .order_by(MarketplaceAccount.connected_at.desc(), MarketplaceAccount.id.desc())
    )
    return result.scalars().all()


@router.post("/{account_id}/sync", response_model=SyncResponse)
async def sync_account(
    account_id: int,
    request: SyncRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    service: SyncService = Depends(get_sync_service),
):
    """Import recent orders of one account."""
    since = request.since if request else None
    if since is not None and since.tzinfo is not None:
        since = since.astimezone(timezone.utc).replace(tzinfo=None)
    result = await service.sync_account(owner_id, account_id, since)
    if result.status == SYNC_ACCOUNT_NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.message)
    return SyncResponse(**asdict(result))
