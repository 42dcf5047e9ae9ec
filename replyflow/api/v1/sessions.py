"""Operator controls for automated replies on a session (pause / resume)."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from replyflow.api.deps import get_reply_gate, get_tenant_id, http_error
from replyflow.db.models import ChatSessionDB
from replyflow.errors import ReplyFlowError
from replyflow.services.reply_gate import ReplyGate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


class PauseRequest(BaseModel):
    duration_minutes: Optional[int] = Field(
        None, ge=1, description="Resume automatically after this many minutes; omit to pause indefinitely"
    )


class TakeoverResponse(BaseModel):
    session_id: str
    human_takeover: bool
    auto_resume_at: Optional[datetime] = None


def _takeover_response(session: ChatSessionDB) -> TakeoverResponse:
    return TakeoverResponse(
        session_id=session.id,
        human_takeover=session.human_takeover,
        auto_resume_at=session.auto_resume_at,
    )


@router.post("/{session_id}/pause", response_model=TakeoverResponse)
async def pause_session(
    session_id: str,
    data: Optional[PauseRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    gate: ReplyGate = Depends(get_reply_gate),
):
    try:
        session = await gate.pause(
            session_id,
            duration_minutes=data.duration_minutes if data else None,
            tenant_id=tenant_id,
        )
    except ReplyFlowError as e:
        raise http_error(e)
    return _takeover_response(session)


@router.post("/{session_id}/resume", response_model=TakeoverResponse)
async def resume_session(
    session_id: str,
    tenant_id: str = Depends(get_tenant_id),
    gate: ReplyGate = Depends(get_reply_gate),
):
    try:
        session = await gate.resume(session_id, tenant_id=tenant_id)
    except ReplyFlowError as e:
        raise http_error(e)
    return _takeover_response(session)
