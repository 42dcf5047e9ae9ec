"""
Tests for the Reply Gate.

Scenario matching itself is delegated to the completion provider, so these
tests use a keyword fake and check the deterministic parts: disabled
profiles, takeover, schedule, notices and fallback.
"""
from datetime import datetime, timedelta

import pytest

from replyflow.errors import NotFoundError
from replyflow.services.profile import ReplyProfile, WeeklySchedule, migrate_profile
from replyflow.services.reply_gate import HANDOFF_NOTICE, ReplyGate, is_within_schedule
from tests.factories import make_channel, make_session, pricing_flow
from tests.fakes import FakeCompletion

# 2024-01-15 is a Monday
MONDAY_NOON = datetime(2024, 1, 15, 12, 0)
MONDAY_EVENING = datetime(2024, 1, 15, 20, 0)
SATURDAY_NOON = datetime(2024, 1, 20, 12, 0)


def _profile(fallback_mode="respond_basics", **kwargs) -> ReplyProfile:
    return ReplyProfile(profile=migrate_profile(pricing_flow(fallback_mode=fallback_mode)), **kwargs)


def _session(**kwargs):
    return make_session("channel-1", **kwargs)


@pytest.fixture
def gate():
    return ReplyGate(FakeCompletion(routes={"cost": "pricing"}))


@pytest.mark.asyncio
class TestShouldAutoReply:

    async def test_scenario_match(self, gate):
        decision = await gate.should_auto_reply(_session(), _profile(), MONDAY_NOON, "how much does it cost?")

        assert decision.should_reply
        assert decision.reason == "scenario"
        assert decision.scenario.label == "Pricing"
        assert decision.style.response_length == "concise"

    async def test_no_match_respond_basics(self, gate):
        decision = await gate.should_auto_reply(_session(), _profile(), MONDAY_NOON, "hello")

        assert decision.should_reply
        assert decision.reason == "fallback"
        assert decision.scenario is None
        assert decision.style.tone == "friendly"

    async def test_disabled_profile(self, gate):
        decision = await gate.should_auto_reply(
            _session(), _profile(is_enabled=False), MONDAY_NOON, "how much does it cost?"
        )
        assert not decision.should_reply
        assert decision.reason == "disabled"

    async def test_takeover_without_resume_never_replies(self, gate):
        session = _session(human_takeover=True)

        for text in ("how much does it cost?", "hello"):
            decision = await gate.should_auto_reply(session, _profile(), MONDAY_NOON, text)
            assert not decision.should_reply
            assert decision.reason == "human_takeover"
            assert decision.scenario is None
        assert session.human_takeover is True

    async def test_takeover_until_future_resume(self, gate):
        session = _session(human_takeover=True, auto_resume_at=MONDAY_NOON + timedelta(minutes=30))

        decision = await gate.should_auto_reply(session, _profile(), MONDAY_NOON, "hello")

        assert not decision.should_reply
        assert session.human_takeover is True

    async def test_expired_takeover_is_cleared(self, gate):
        session = _session(human_takeover=True, auto_resume_at=MONDAY_NOON - timedelta(minutes=1))

        decision = await gate.should_auto_reply(session, _profile(), MONDAY_NOON, "how much does it cost?")

        assert decision.should_reply
        assert session.human_takeover is False
        assert session.auto_resume_at is None

    async def test_outside_business_hours_skips(self, gate):
        profile = _profile(schedule_mode="business_hours")

        for now in (MONDAY_EVENING, SATURDAY_NOON):
            decision = await gate.should_auto_reply(_session(), profile, now, "how much does it cost?")
            assert not decision.should_reply
            assert decision.reason == "outside_hours"
            assert decision.notice is None

    async def test_inside_business_hours_replies(self, gate):
        decision = await gate.should_auto_reply(
            _session(), _profile(schedule_mode="business_hours"), MONDAY_NOON, "hello"
        )
        assert decision.should_reply

    async def test_always_on_ignores_schedule(self, gate):
        decision = await gate.should_auto_reply(_session(), _profile(), SATURDAY_NOON, "hello")
        assert decision.should_reply

    async def test_outside_hours_notice_once_per_local_day(self, gate):
        profile = _profile(schedule_mode="business_hours", outside_hours_message="We're closed, back at 9am.")
        session = _session()

        first = await gate.should_auto_reply(session, profile, MONDAY_EVENING, "hi")
        second = await gate.should_auto_reply(session, profile, MONDAY_EVENING + timedelta(hours=1), "hi again")
        next_day = await gate.should_auto_reply(session, profile, datetime(2024, 1, 16, 19, 0), "still there?")

        assert first.notice == "We're closed, back at 9am."
        assert second.notice is None
        assert next_day.notice == "We're closed, back at 9am."

    async def test_schedule_uses_profile_timezone(self, gate):
        # 12:00 UTC is 21:00 in Tokyo
        profile = _profile(schedule_mode="custom", timezone="Asia/Tokyo")
        decision = await gate.should_auto_reply(_session(), profile, MONDAY_NOON, "hello")
        assert decision.reason == "outside_hours"

    async def test_business_hours_and_custom_read_their_own_schedule(self, gate):
        evenings = WeeklySchedule.model_validate({
            day: {"enabled": True, "open": "18:00", "close": "23:00"}
            for day in ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
        })
        business = _profile(schedule_mode="business_hours", schedule=evenings)
        custom = _profile(schedule_mode="custom", schedule=evenings)

        # default business hours are 09:00-17:00, the AI-only schedule is evenings
        assert (await gate.should_auto_reply(_session(), business, MONDAY_NOON, "hello")).should_reply
        assert (await gate.should_auto_reply(_session(), custom, MONDAY_NOON, "hello")).reason == "outside_hours"
        assert (await gate.should_auto_reply(_session(), business, MONDAY_EVENING, "hello")).reason == "outside_hours"
        assert (await gate.should_auto_reply(_session(), custom, MONDAY_EVENING, "hello")).should_reply

    async def test_handoff_notice_once_per_local_day(self):
        gate = ReplyGate(FakeCompletion())
        profile = _profile(fallback_mode="human_handle")
        session = _session()

        first = await gate.should_auto_reply(session, profile, MONDAY_NOON, "hello")
        repeats = [
            await gate.should_auto_reply(session, profile, MONDAY_NOON + timedelta(minutes=m), "anyone there?")
            for m in (1, 2, 3, 4)
        ]
        next_day = await gate.should_auto_reply(session, profile, MONDAY_NOON + timedelta(days=1), "hello again")

        assert first.notice.startswith(HANDOFF_NOTICE)
        assert all(d.reason == "human_handle" and d.notice is None for d in repeats)
        assert session.handoff_notified_at == MONDAY_NOON + timedelta(days=1)
        assert next_day.notice.startswith(HANDOFF_NOTICE)

    async def test_human_handle_without_scenarios(self):
        gate = ReplyGate(FakeCompletion())
        data = pricing_flow(fallback_mode="human_handle", human_phone="+1 555 0100")
        data["response_flow"]["scenarios"] = []
        profile = ReplyProfile(profile=migrate_profile(data))

        for text in ("hello", "how much does it cost?", ""):
            decision = await gate.should_auto_reply(_session(), profile, MONDAY_NOON, text)
            assert not decision.should_reply
            assert decision.reason == "human_handle"
            assert decision.notice.startswith(HANDOFF_NOTICE)
            assert "+1 555 0100" in decision.notice

    async def test_human_handle_still_answers_matched_scenario(self, gate):
        decision = await gate.should_auto_reply(
            _session(), _profile(fallback_mode="human_handle"), MONDAY_NOON, "what's the cost?"
        )
        assert decision.should_reply
        assert decision.scenario.id == "pricing"

    async def test_without_provider_falls_back(self):
        decision = await ReplyGate(None).should_auto_reply(
            _session(), _profile(), MONDAY_NOON, "how much does it cost?"
        )
        assert decision.reason == "fallback"


class TestSchedule:

    def test_overnight_window(self):
        schedule = WeeklySchedule.model_validate({
            "monday": {"enabled": True, "open": "22:00", "close": "02:00"},
            "tuesday": {"enabled": False},
        })
        assert is_within_schedule(schedule, datetime(2024, 1, 15, 23, 0), "UTC")
        # Tuesday 01:00 belongs to Monday's window
        assert is_within_schedule(schedule, datetime(2024, 1, 16, 1, 0), "UTC")
        assert not is_within_schedule(schedule, datetime(2024, 1, 16, 2, 0), "UTC")
        assert not is_within_schedule(schedule, datetime(2024, 1, 15, 21, 59), "UTC")

    def test_close_is_exclusive(self):
        schedule = WeeklySchedule()
        assert is_within_schedule(schedule, datetime(2024, 1, 15, 9, 0), "UTC")
        assert not is_within_schedule(schedule, datetime(2024, 1, 15, 17, 0), "UTC")

    def test_unknown_timezone_falls_back_to_utc(self):
        assert is_within_schedule(WeeklySchedule(), MONDAY_NOON, "Not/AZone")


@pytest.mark.asyncio
class TestPauseResume:

    async def test_pause_with_duration(self, session_factory, db_session):
        channel = make_channel()
        session = make_session(channel.id)
        db_session.add_all([channel, session])
        await db_session.commit()
        gate = ReplyGate(session_factory=session_factory)

        paused = await gate.pause(session.id, duration_minutes=30, tenant_id=session.tenant_id, now=MONDAY_NOON)

        assert paused.human_takeover is True
        assert paused.auto_resume_at == MONDAY_NOON + timedelta(minutes=30)

    async def test_pause_indefinitely_then_resume(self, session_factory, db_session):
        channel = make_channel()
        session = make_session(channel.id)
        db_session.add_all([channel, session])
        await db_session.commit()
        gate = ReplyGate(session_factory=session_factory)

        paused = await gate.pause(session.id)
        assert paused.human_takeover is True
        assert paused.auto_resume_at is None

        resumed = await gate.resume(session.id)
        assert resumed.human_takeover is False
        assert resumed.auto_resume_at is None

    async def test_pause_other_tenant_not_found(self, session_factory, db_session):
        channel = make_channel()
        session = make_session(channel.id)
        db_session.add_all([channel, session])
        await db_session.commit()
        gate = ReplyGate(session_factory=session_factory)

        with pytest.raises(NotFoundError):
            await gate.pause(session.id, tenant_id="someone-else")
        with pytest.raises(NotFoundError):
            await gate.resume("missing-session")
