"""
Gateway webhook endpoint.

No tenant header here: the gateway calls it directly and messages are
routed by phone number. The response is always 200 so the gateway does not
retry; processing runs after the response is sent.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from replyflow.api.deps import get_webhook_router
from replyflow.services.webhook_router import WebhookRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.post("")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Ignoring webhook with a malformed body")
        return {"status": "ok"}

    background_tasks.add_task(webhook_router.ingest, payload)
    return {"status": "ok"}
