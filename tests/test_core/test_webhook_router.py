"""
Tests for the Webhook Router: payload parsing, routing, dedup and the
gate -> composer handoff.
"""
import asyncio
import gc
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from replyflow.db.models import ChatMessageDB, ChatSessionDB
from replyflow.services.composer import ReplyComposer
from replyflow.services.reply_gate import ReplyGate
from replyflow.services.webhook_router import (
    WebhookRouter,
    extract_message_body,
    parse_payload,
)
from tests.factories import (
    make_channel,
    make_kb_entry,
    make_message,
    make_profile,
    make_session,
    pricing_flow,
    webhook_message,
)


@pytest.fixture
def router(gateway, completion, session_factory):
    gate = ReplyGate(completion, session_factory=session_factory)
    composer = ReplyComposer(gateway, completion)
    return WebhookRouter(gate, composer, session_factory=session_factory)


async def _connected_channel(db_session, profile_data=None, with_profile=True, **profile_kwargs):
    channel = make_channel(status="connected", phone_number="15550001111")
    db_session.add(channel)
    if with_profile:
        db_session.add(make_profile(channel.id, profile_data=profile_data or pricing_flow(), **profile_kwargs))
    await db_session.commit()
    return channel


async def _count(session_factory, model) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def _sessions(session_factory):
    async with session_factory() as db:
        return list((await db.execute(select(ChatSessionDB))).scalars().all())


class TestParsing:

    def test_extract_body_variants(self):
        assert extract_message_body({"text": {"body": "hi"}}) == "hi"
        assert extract_message_body({"image": {"caption": "look"}}) == "look"
        assert extract_message_body({"image": {"id": "x"}}) == "[Image]"
        assert extract_message_body({"document": {"filename": "menu.pdf"}}) == "[Document: menu.pdf]"
        assert extract_message_body({"audio": {"id": "a"}}) == "[Audio message]"
        assert extract_message_body({"type": "sticker"}) == "[sticker message]"

    def test_parse_payload(self):
        payload = {
            "messages": [webhook_message(body="hello"), {"id": "broken"}, "junk"],
            "statuses": [{"id": "OUT-1", "status": "delivered"}, {"status": "read"}],
        }

        messages, statuses = parse_payload(payload)

        assert len(messages) == 1
        msg = messages[0]
        assert msg.body == "hello"
        assert msg.chat_id == "15559990000@s.whatsapp.net"
        assert msg.timestamp == datetime(2023, 11, 14, 22, 13, 20)
        assert [s.external_message_id for s in statuses] == ["OUT-1"]

    def test_parse_malformed(self):
        assert parse_payload(None) == ([], [])
        assert parse_payload(["not", "a", "dict"]) == ([], [])
        assert parse_payload({"messages": None}) == ([], [])


@pytest.mark.asyncio
class TestIngest:

    async def test_self_sent_skipped(self, router, db_session, session_factory):
        await _connected_channel(db_session)

        results = await router.ingest({"messages": [webhook_message(sender="15550001111", to="15550001111")]})

        assert results == ["self_sent"]
        assert await _count(session_factory, ChatMessageDB) == 0

    async def test_unrouted_dropped(self, router, db_session, session_factory):
        await _connected_channel(db_session)

        results = await router.ingest({"messages": [webhook_message(to="19998887777")]})

        assert results == ["unrouted"]
        assert await _count(session_factory, ChatSessionDB) == 0

    async def test_only_connected_channels_receive(self, router, db_session, session_factory):
        channel = make_channel(status="disconnected", phone_number="15550001111")
        db_session.add(channel)
        await db_session.commit()

        results = await router.ingest({"messages": [webhook_message()]})

        assert results == ["unrouted"]

    async def test_first_contact_creates_session(self, router, db_session, session_factory):
        channel = await _connected_channel(db_session)

        await router.ingest({"messages": [webhook_message(body="hello", to="15550001111@s.whatsapp.net")]})

        sessions = await _sessions(session_factory)
        assert len(sessions) == 1
        session = sessions[0]
        assert session.channel_id == channel.id
        assert session.tenant_id == channel.tenant_id
        assert session.chat_id == "15559990000"
        assert session.contact_name == "Jane"

    async def test_duplicate_delivery_stored_once(self, router, gateway, db_session, session_factory):
        await _connected_channel(db_session, with_profile=False)
        payload = {"messages": [webhook_message(body="hello", msg_id="MSG-42")]}

        first = await router.ingest(payload)
        sessions_before = await _sessions(session_factory)
        second = await router.ingest(payload)
        sessions_after = await _sessions(session_factory)

        assert first == ["stored"]
        assert second == ["duplicate"]
        assert await _count(session_factory, ChatMessageDB) == 1
        assert sessions_after[0].updated_at == sessions_before[0].updated_at
        assert sessions_after[0].last_message == "hello"

    async def test_duplicate_does_not_reply_twice(self, router, gateway, db_session):
        await _connected_channel(db_session)
        payload = {"messages": [webhook_message(body="hello", msg_id="MSG-43")]}

        await router.ingest(payload)
        await router.ingest(payload)

        assert len(gateway.sent) == 1

    async def test_reopens_resolved_session(self, router, db_session, session_factory):
        channel = await _connected_channel(db_session, with_profile=False)
        db_session.add(make_session(channel.id, status="resolved"))
        await db_session.commit()

        await router.ingest({"messages": [webhook_message(body="one more thing")]})

        session = (await _sessions(session_factory))[0]
        assert session.status == "open"
        assert session.last_message == "one more thing"
        assert session.last_message_direction == "inbound"
        assert session.last_message_sender == "contact"

    async def test_message_from_paired_phone_recorded_as_human(self, router, gateway, completion, db_session, session_factory):
        await _connected_channel(db_session)

        results = await router.ingest({"messages": [
            webhook_message(
                body="I'll call you later",
                sender="15550001111",
                to="15559990000",
                chat_id="15559990000@s.whatsapp.net",
                msg_id="MSG-H",
            ),
        ]})

        assert results == ["recorded"]
        async with session_factory() as db:
            message = (await db.execute(select(ChatMessageDB))).scalar_one()
        assert message.direction == "outbound"
        assert message.sender_type == "human"
        assert gateway.sent == []
        assert completion.generate_calls == []

    async def test_no_profile_means_no_reply(self, router, gateway, db_session):
        await _connected_channel(db_session, with_profile=False)

        results = await router.ingest({"messages": [webhook_message(body="how much does it cost?")]})

        assert results == ["stored"]
        assert gateway.sent == []

    async def test_concurrent_messages_same_chat(self, router, db_session, session_factory):
        await _connected_channel(db_session, with_profile=False)

        results = await asyncio.gather(
            router.ingest({"messages": [webhook_message(body="one", msg_id="A")]}),
            router.ingest({"messages": [webhook_message(body="two", msg_id="B")]}),
        )
        gc.collect()

        assert results == [["stored"], ["stored"]]
        assert len(await _sessions(session_factory)) == 1
        assert len(router._chat_locks) == 0

    async def test_status_update(self, router, db_session, session_factory):
        channel = await _connected_channel(db_session, with_profile=False)
        session = make_session(channel.id)
        db_session.add(session)
        db_session.add(make_message(session.id, direction="outbound", sender_type="ai", external_message_id="OUT-9"))
        await db_session.commit()

        await router.ingest({"statuses": [{"id": "OUT-9", "status": "read"}]})

        async with session_factory() as db:
            message = (await db.execute(select(ChatMessageDB))).scalar_one()
        assert message.status == "read"

    async def test_errors_are_contained(self, router, gateway, db_session, session_factory):
        await _connected_channel(db_session)

        async def broken_send(token, to, body):
            raise RuntimeError("gateway exploded")

        gateway.send_text = broken_send

        results = await router.ingest({"messages": [
            webhook_message(body="hello", msg_id="A"),
            webhook_message(body="hello again", msg_id="B"),
        ]})

        assert results == ["error", "error"]
        assert await _count(session_factory, ChatMessageDB) == 2


@pytest.mark.asyncio
class TestReplyHandoff:

    async def test_end_to_end_scenario_and_fallback(self, router, gateway, completion, db_session):
        channel = await _connected_channel(db_session)

        await router.ingest({"messages": [webhook_message(body="how much does it cost?", msg_id="M1")]})
        await router.ingest({"messages": [webhook_message(body="hello", msg_id="M2")]})

        assert len(completion.generate_calls) == 2
        pricing_prompt = completion.generate_calls[0]["system_prompt"]
        fallback_prompt = completion.generate_calls[1]["system_prompt"]
        assert "## Current Scenario: Pricing" in pricing_prompt
        assert "Share the price list and mention the spring discount." in pricing_prompt
        assert "Current Scenario" not in fallback_prompt
        assert "Keep responses short and to the point." in fallback_prompt
        assert [s[1] for s in gateway.sent] == ["15559990000@s.whatsapp.net"] * 2
        assert all(s[0] == channel.external_token for s in gateway.sent)

    async def test_takeover_never_composes(self, router, gateway, completion, db_session):
        channel = await _connected_channel(db_session)
        db_session.add(make_session(channel.id, human_takeover=True))
        await db_session.commit()

        results = await router.ingest({"messages": [webhook_message(body="how much does it cost?")]})

        assert results == ["skipped"]
        assert completion.generate_calls == []
        assert gateway.sent == []

    async def test_expired_takeover_resumes(self, router, gateway, completion, db_session, session_factory):
        channel = await _connected_channel(db_session)
        db_session.add(make_session(
            channel.id, human_takeover=True, auto_resume_at=datetime.utcnow() - timedelta(minutes=5)
        ))
        await db_session.commit()

        results = await router.ingest({"messages": [webhook_message(body="hello")]})

        assert results == ["replied"]
        session = (await _sessions(session_factory))[0]
        assert session.human_takeover is False

    async def test_outside_hours_never_composes(self, router, gateway, completion, db_session):
        closed_all_week = {day: {"enabled": False} for day in (
            "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"
        )}
        await _connected_channel(
            db_session,
            schedule_mode="business_hours",
            business_hours=closed_all_week,
            outside_hours_message="We're closed right now.",
        )

        await router.ingest({"messages": [webhook_message(body="how much does it cost?", msg_id="M1")]})
        await router.ingest({"messages": [webhook_message(body="hello?", msg_id="M2")]})

        assert completion.generate_calls == []
        assert [s[2] for s in gateway.sent] == ["We're closed right now."]

    async def test_human_handle_sends_handoff_notice(self, router, gateway, completion, db_session):
        data = pricing_flow(fallback_mode="human_handle", human_phone="+1 555 0100")
        await _connected_channel(db_session, profile_data=data)

        results = await router.ingest({"messages": [
            webhook_message(body="hello", msg_id="M1"),
            webhook_message(body="hello?", msg_id="M2"),
            webhook_message(body="is anyone there?", msg_id="M3"),
        ]})

        assert results == ["skipped"] * 3
        assert completion.generate_calls == []
        assert len(gateway.sent) == 1
        assert "+1 555 0100" in gateway.sent[0][2]

    async def test_knowledge_base_included(self, router, completion, db_session):
        channel = await _connected_channel(db_session)
        db_session.add(make_kb_entry(channel.id, title="Prices", content="City bike: 499 EUR"))
        await db_session.commit()

        await router.ingest({"messages": [webhook_message(body="price of the city bike?")]})

        prompt = completion.generate_calls[0]["system_prompt"]
        assert "## Knowledge Base" in prompt
        assert "City bike: 499 EUR" in prompt

    async def test_disabled_profile_stores_without_reply(self, router, gateway, db_session, session_factory):
        await _connected_channel(db_session, is_enabled=False)

        results = await router.ingest({"messages": [webhook_message(body="hello")]})

        assert results == ["skipped"]
        assert gateway.sent == []
        assert await _count(session_factory, ChatMessageDB) == 1
