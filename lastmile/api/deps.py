"""FastAPI dependencies."""

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.db.session import get_db
from lastmile.sync.service import SyncService
from lastmile.sync.webhooks import WebhookProcessor
from lastmile.worker.tasks import task_runner


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


async def get_owner_id(x_owner_id: str = Header(..., alias="X-Owner-Id")) -> str:
    """
    Owner scope of the request, supplied by the authentication layer in front.

    Raises:
        HTTPException: 400 if the header is blank
    """
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Owner-Id header is empty",
        )
    return owner_id


def get_sync_service() -> SyncService:
    """Engine façade built by the task runner at startup."""
    if task_runner.service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return task_runner.service


def get_webhook_processor() -> WebhookProcessor:
    if task_runner.webhooks is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return task_runner.webhooks
