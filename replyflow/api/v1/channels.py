"""
Channels API endpoints.

Provides endpoints for:
- Provisioning a new channel (returns while provisioning continues)
- Listing channels and getting channel details
- Polling live status and fetching the pairing QR
- Cancelling / retrying provisioning
- Logging out and deleting channels

The gateway token is never part of a response.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from replyflow.api.deps import get_orchestrator, get_reconciler, get_tenant_id, http_error
from replyflow.db.database import get_db
from replyflow.db.models import ChannelDB
from replyflow.errors import ReplyFlowError
from replyflow.services.provisioning import ProvisioningOrchestrator
from replyflow.services.reconciler import StatusReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/channels", tags=["channels"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class ChannelCreate(BaseModel):
    """Request model for provisioning a channel."""
    name: Optional[str] = Field(None, min_length=1, max_length=128, description="Gateway-side channel name")


class ProvisioningResponse(BaseModel):
    channel_id: str
    status: str


class ChannelResponse(BaseModel):
    """Response model for a channel."""
    id: str
    name: str
    status: str
    phone_number: Optional[str] = None
    webhook_registered: bool
    provisioning: Optional[str] = None  # in_flight / ready / timeout / cancelled / failed
    created_at: datetime
    updated_at: datetime


class ChannelListResponse(BaseModel):
    channels: List[ChannelResponse]
    total: int


class ChannelStatusResponse(BaseModel):
    channel_id: str
    status: str
    phone_number: Optional[str] = None
    webhook_registered: bool


class QRResponse(BaseModel):
    qr: Optional[str] = None
    expire: Optional[int] = None
    connected: bool
    phone_number: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_channel_response(
    channel: ChannelDB,
    orchestrator: ProvisioningOrchestrator,
) -> ChannelResponse:
    attempt = orchestrator.get_attempt(channel.id)
    provisioning = None
    if attempt is not None:
        provisioning = "in_flight" if attempt.in_flight else attempt.outcome
    return ChannelResponse(
        id=channel.id,
        name=channel.name,
        status=channel.status,
        phone_number=channel.phone_number,
        webhook_registered=channel.webhook_registered,
        provisioning=provisioning,
        created_at=channel.created_at,
        updated_at=channel.updated_at,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("", response_model=ProvisioningResponse)
async def create_channel(
    data: Optional[ChannelCreate] = None,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    """
    Create and fund a gateway channel.

    Returns as soon as the channel is stored as pending; poll
    ``GET /channels/{id}/status`` to follow provisioning.
    """
    try:
        attempt = await orchestrator.provision(tenant_id, name=data.name if data else None)
    except ReplyFlowError as e:
        logger.warning(f"Provisioning for tenant {tenant_id} failed: {e}")
        raise http_error(e)
    return ProvisioningResponse(channel_id=attempt.channel_id, status="pending")


@router.get("", response_model=ChannelListResponse)
async def list_channels(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    """List the tenant's channels, newest first."""
    result = await db.execute(
        select(ChannelDB)
        .where(ChannelDB.tenant_id == tenant_id)
        .order_by(desc(ChannelDB.created_at))
    )
    channels = result.scalars().all()
    return ChannelListResponse(
        channels=[_build_channel_response(c, orchestrator) for c in channels],
        total=len(channels),
    )


@router.post("/cancel-provisioning")
async def cancel_provisioning(
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    """
    Cancel every pending channel of the tenant.

    Used when the client aborted a create request and never learned the
    channel id.
    """
    deleted = await orchestrator.cancel_pending(tenant_id)
    return {"deleted": deleted}


@router.get("/{channel_id}", response_model=ChannelResponse)
async def get_channel(
    channel_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    result = await db.execute(
        select(ChannelDB).where(ChannelDB.id == channel_id, ChannelDB.tenant_id == tenant_id)
    )
    channel = result.scalar_one_or_none()
    if not channel:
        raise HTTPException(status_code=404, detail="Channel not found")
    return _build_channel_response(channel, orchestrator)


@router.get("/{channel_id}/status", response_model=ChannelStatusResponse)
async def get_channel_status(
    channel_id: str,
    tenant_id: str = Depends(get_tenant_id),
    reconciler: StatusReconciler = Depends(get_reconciler),
):
    """Reconcile the channel with the gateway and return the result."""
    try:
        status = await reconciler.check_status(channel_id, tenant_id)
    except ReplyFlowError as e:
        raise http_error(e)
    return ChannelStatusResponse(
        channel_id=status.channel_id,
        status=status.status,
        phone_number=status.phone_number,
        webhook_registered=status.webhook_registered,
    )


@router.get("/{channel_id}/qr", response_model=QRResponse)
async def get_channel_qr(
    channel_id: str,
    tenant_id: str = Depends(get_tenant_id),
    reconciler: StatusReconciler = Depends(get_reconciler),
):
    """
    Fetch the pairing QR.

    ``connected=true`` (and no QR) means the phone is already paired.
    """
    try:
        qr = await reconciler.get_qr(channel_id, tenant_id)
    except ReplyFlowError as e:
        raise http_error(e)
    return QRResponse(
        qr=qr.qr,
        expire=qr.expire,
        connected=qr.connected,
        phone_number=qr.phone_number,
    )


@router.post("/{channel_id}/cancel")
async def cancel_channel(
    channel_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.cancel(channel_id, tenant_id)
    except ReplyFlowError as e:
        raise http_error(e)
    return {"status": "cancelled"}


@router.post("/{channel_id}/retry", response_model=ProvisioningResponse)
async def retry_channel(
    channel_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    """Restart the readiness wait of a pending channel (e.g. after a timeout)."""
    try:
        attempt = await orchestrator.retry(channel_id, tenant_id)
    except ReplyFlowError as e:
        raise http_error(e)
    return ProvisioningResponse(channel_id=attempt.channel_id, status="pending")


@router.post("/{channel_id}/logout", response_model=ChannelStatusResponse)
async def logout_channel(
    channel_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    try:
        status = await orchestrator.logout(channel_id, tenant_id)
    except ReplyFlowError as e:
        raise http_error(e)
    return ChannelStatusResponse(
        channel_id=status.channel_id,
        status=status.status,
        phone_number=status.phone_number,
        webhook_registered=status.webhook_registered,
    )


@router.delete("/{channel_id}")
async def delete_channel(
    channel_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ProvisioningOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.delete_channel(channel_id, tenant_id)
    except ReplyFlowError as e:
        raise http_error(e)
    return {"status": "deleted"}
