"""Marketplace notification endpoint."""

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.exc import SQLAlchemyError

from lastmile.api.deps import get_webhook_processor
from lastmile.errors import LastMileError
from lastmile.sync.webhooks import Notification, WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _process(processor: WebhookProcessor, notification: Notification) -> None:
    try:
        processed = await processor.process(notification)
        logger.info("Webhook %s processed: %d shipment(s)", notification.resource, processed)
    except (LastMileError, SQLAlchemyError) as e:
        logger.error("Webhook %s failed: %s", notification.resource, e, exc_info=True)


@router.post("/marketplace")
async def receive_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Accept a marketplace notification.

    Always answers 200; the marketplace retries anything else. Processing
    happens after the response is sent.
    """
    try:
        payload: Any = await request.json()
    except ValueError:
        return {"ok": True, "skipped": True}
    if not isinstance(payload, dict):
        return {"ok": True, "skipped": True}

    notification = Notification.from_payload(payload)
    decision = await processor.accept(notification)
    if decision == "skipped":
        return {"ok": True, "skipped": True}
    if decision == "deduplicated":
        return {"ok": True, "deduplicated": True}

    background_tasks.add_task(_process, processor, notification)
    return {"ok": True}
