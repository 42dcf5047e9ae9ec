"""FastAPI dependencies: tenant resolution, service lookup and error mapping."""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from replyflow.errors import (
    ChannelStateError,
    GatewayRejected,
    GatewayUnavailable,
    NotFoundError,
    ProvisioningCancelled,
    ProvisioningInProgress,
    ReplyFlowError,
)
from replyflow.services.provisioning import ProvisioningOrchestrator
from replyflow.services.reconciler import StatusReconciler
from replyflow.services.reply_gate import ReplyGate
from replyflow.services.webhook_router import WebhookRouter


async def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    """Tenant the request acts for; authentication happens upstream."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Tenant-ID header",
        )
    return x_tenant_id


def get_orchestrator(request: Request) -> ProvisioningOrchestrator:
    return request.app.state.orchestrator


def get_reconciler(request: Request) -> StatusReconciler:
    return request.app.state.reconciler


def get_reply_gate(request: Request) -> ReplyGate:
    return request.app.state.reply_gate


def get_webhook_router(request: Request) -> WebhookRouter:
    return request.app.state.webhook_router


def http_error(exc: ReplyFlowError) -> HTTPException:
    """Translate a service error into the HTTP error returned to clients."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ProvisioningInProgress, ProvisioningCancelled, ChannelStateError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, GatewayUnavailable):
        return HTTPException(status_code=503, detail=f"Messaging gateway unavailable: {exc}")
    if isinstance(exc, GatewayRejected):
        return HTTPException(status_code=502, detail=f"Messaging gateway rejected the request: {exc}")
    return HTTPException(status_code=500, detail=str(exc))
