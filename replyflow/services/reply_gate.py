"""
Reply Gate.

Decides, for one inbound message, whether an automated reply is produced.
Checks run in a fixed order and the first one that says "skip" wins:

    disabled -> human takeover -> schedule -> scenario / fallback

Also owns the operator pause/resume of automated replies on a session.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select

from replyflow.db.database import AsyncSessionLocal
from replyflow.db.models import ChatSessionDB
from replyflow.errors import NotFoundError
from replyflow.services.completion import CompletionProvider
from replyflow.services.profile import (
    CommunicationStyle,
    ReplyProfile,
    Scenario,
    WeeklySchedule,
)

logger = logging.getLogger(__name__)

SKIP = "skip"
REPLY = "reply"

HANDOFF_NOTICE = "Thanks for your message! A member of our team will get back to you shortly."


@dataclass
class GateDecision:
    action: str  # skip / reply
    reason: str
    scenario: Optional[Scenario] = None
    style: Optional[CommunicationStyle] = None
    notice: Optional[str] = None  # fixed text to send instead of a reply

    @property
    def should_reply(self) -> bool:
        return self.action == REPLY


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _naive_utc(now: datetime) -> datetime:
    return _as_utc(now).replace(tzinfo=None)


def _zone(name: Optional[str]):
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, evaluating schedule in UTC")
        return timezone.utc


def local_date(now: datetime, tz_name: Optional[str]) -> date:
    return _as_utc(now).astimezone(_zone(tz_name)).date()


def is_within_schedule(schedule: WeeklySchedule, now: datetime, tz_name: Optional[str]) -> bool:
    """Whether ``now`` falls inside the weekly window in zone ``tz_name``.

    Windows that cross midnight (close < open) belong to the day they open
    on, so 01:00 on Tuesday is checked against Monday's 22:00-02:00.
    """
    local = _as_utc(now).astimezone(_zone(tz_name))
    t = local.time().replace(tzinfo=None)

    today = schedule.for_weekday(local.weekday())
    if today.enabled:
        if today.overnight:
            if t >= today.open:
                return True
        elif today.open <= t < today.close:
            return True

    yesterday = schedule.for_weekday((local.weekday() - 1) % 7)
    return yesterday.enabled and yesterday.overnight and t < yesterday.close


def _first_today(last_sent: Optional[datetime], now: datetime, tz_name: Optional[str]) -> bool:
    """Whether a notice stamped at ``last_sent`` may go out again: once per local day."""
    return last_sent is None or local_date(last_sent, tz_name) != local_date(now, tz_name)


def handoff_notice(human_phone: Optional[str]) -> str:
    if human_phone:
        return f"{HANDOFF_NOTICE} You can also reach us directly at {human_phone}."
    return HANDOFF_NOTICE


class ReplyGate:
    """Pre-conditions for automated replies plus operator pause/resume."""

    def __init__(self, completion: Optional[CompletionProvider] = None, session_factory=None):
        self._completion = completion
        self._session_factory = session_factory or AsyncSessionLocal

    async def should_auto_reply(
        self,
        session: ChatSessionDB,
        profile: ReplyProfile,
        now: Optional[datetime] = None,
        message_text: Optional[str] = None,
    ) -> GateDecision:
        """Decide whether to reply to the latest inbound message.

        May mutate ``session`` (clearing an expired takeover, stamping the
        outside-hours or handoff notice); the caller commits.
        """
        now = _naive_utc(now or datetime.utcnow())

        if not profile.is_enabled:
            return GateDecision(SKIP, "disabled")

        if session.human_takeover:
            if session.auto_resume_at is None or now < session.auto_resume_at:
                return GateDecision(SKIP, "human_takeover")
            logger.info(f"Auto-resuming AI for session {session.id}")
            session.human_takeover = False
            session.auto_resume_at = None

        schedule = profile.active_schedule
        if schedule is not None and not is_within_schedule(schedule, now, profile.timezone):
            notice = None
            if profile.outside_hours_message and _first_today(session.outside_hours_notified_at, now, profile.timezone):
                session.outside_hours_notified_at = now
                notice = profile.outside_hours_message
            return GateDecision(SKIP, "outside_hours", notice=notice)

        flow = profile.flow
        scenario = None
        if flow.scenarios and self._completion is not None and message_text:
            scenario = await self._completion.select_scenario(message_text, flow.scenarios)

        if scenario is not None:
            return GateDecision(REPLY, "scenario", scenario=scenario, style=scenario.style(flow.default_style))

        if flow.fallback_mode == "human_handle":
            notice = None
            if _first_today(session.handoff_notified_at, now, profile.timezone):
                session.handoff_notified_at = now
                notice = handoff_notice(profile.profile.human_phone)
            return GateDecision(SKIP, "human_handle", notice=notice)

        return GateDecision(REPLY, "fallback", style=flow.default_style)

    # ------------------------------------------------------------------
    # Operator pause / resume
    # ------------------------------------------------------------------

    async def _load_session(self, db, session_id: str, tenant_id: Optional[str]) -> ChatSessionDB:
        query = select(ChatSessionDB).where(ChatSessionDB.id == session_id)
        if tenant_id is not None:
            query = query.where(ChatSessionDB.tenant_id == tenant_id)
        result = await db.execute(query)
        session = result.scalar_one_or_none()
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    async def pause(
        self,
        session_id: str,
        duration_minutes: Optional[int] = None,
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ChatSessionDB:
        """Hand the session to a human. Without a duration the pause is indefinite."""
        now = _naive_utc(now or datetime.utcnow())
        async with self._session_factory() as db:
            session = await self._load_session(db, session_id, tenant_id)
            session.human_takeover = True
            session.auto_resume_at = (
                now + timedelta(minutes=duration_minutes) if duration_minutes else None
            )
            await db.commit()
            logger.info(
                f"AI paused for session {session_id}"
                + (f" until {session.auto_resume_at.isoformat()}" if session.auto_resume_at else "")
            )
            return session

    async def resume(self, session_id: str, tenant_id: Optional[str] = None) -> ChatSessionDB:
        async with self._session_factory() as db:
            session = await self._load_session(db, session_id, tenant_id)
            session.human_takeover = False
            session.auto_resume_at = None
            await db.commit()
            logger.info(f"AI resumed for session {session_id}")
            return session
