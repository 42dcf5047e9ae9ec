"""
Webhook Router.

Turns gateway webhook payloads into stored messages and, for inbound
messages, runs the Reply Gate and the Reply Composer.

The HTTP layer has already acknowledged the request when ingest() runs, so
nothing raised here reaches the gateway: each message is processed on its
own and failures are logged.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from replyflow.channels.base import InboundMessage, StatusUpdate, normalize_chat_id
from replyflow.db.database import AsyncSessionLocal
from replyflow.db.models import (
    CHANNEL_CONNECTED,
    ChannelDB,
    ChatMessageDB,
    ChatSessionDB,
    KnowledgeBaseEntryDB,
    ReplyProfileDB,
)
from replyflow.services.composer import ReplyComposer
from replyflow.services.profile import KnowledgeEntry, load_reply_profile
from replyflow.services.reply_gate import ReplyGate

logger = logging.getLogger(__name__)

_MEDIA_KEYS = ("image", "video", "document", "audio")

# Results of handle_message
RESULT_SELF_SENT = "self_sent"
RESULT_UNROUTED = "unrouted"
RESULT_DUPLICATE = "duplicate"
RESULT_RECORDED = "recorded"
RESULT_STORED = "stored"
RESULT_SKIPPED = "skipped"
RESULT_REPLIED = "replied"


def extract_message_body(msg: dict) -> str:
    """Text for a message of any type; media without a caption gets a placeholder."""
    text = msg.get("text") or {}
    if text.get("body"):
        return text["body"]
    image = msg.get("image")
    video = msg.get("video")
    document = msg.get("document")
    if image and image.get("caption"):
        return image["caption"]
    if video and video.get("caption"):
        return video["caption"]
    if document and document.get("filename"):
        return f"[Document: {document['filename']}]"
    if msg.get("audio"):
        return "[Audio message]"
    if image:
        return "[Image]"
    if video:
        return "[Video]"
    return f"[{msg.get('type') or 'Unknown'} message]"


def _parse_timestamp(value) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.utcnow()


def parse_message(msg: dict) -> Optional[InboundMessage]:
    sender = msg.get("from")
    chat_id = msg.get("chat_id")
    if not sender or not chat_id:
        return None
    media = next((msg[key] for key in _MEDIA_KEYS if msg.get(key)), None)
    return InboundMessage(
        external_message_id=msg.get("id"),
        sender=str(sender),
        recipient=str(msg.get("to") or ""),
        chat_id=str(chat_id),
        body=extract_message_body(msg),
        message_type=msg.get("type") or "text",
        from_name=msg.get("from_name"),
        metadata={"media": media} if media else None,
        timestamp=_parse_timestamp(msg.get("timestamp")),
    )


def parse_payload(payload) -> Tuple[List[InboundMessage], List[StatusUpdate]]:
    """Pull messages and delivery statuses out of a webhook body.

    Anything that is not a well-formed entry is dropped.
    """
    if not isinstance(payload, dict):
        return [], []

    messages = []
    for raw in payload.get("messages") or []:
        if not isinstance(raw, dict):
            continue
        parsed = parse_message(raw)
        if parsed is None:
            logger.debug(f"Dropping malformed webhook message: {raw!r}")
            continue
        messages.append(parsed)

    statuses = []
    for raw in payload.get("statuses") or []:
        if isinstance(raw, dict) and raw.get("id") and raw.get("status"):
            statuses.append(
                StatusUpdate(
                    external_message_id=str(raw["id"]),
                    status=str(raw["status"]),
                    chat_id=raw.get("chat_id"),
                )
            )
    return messages, statuses


class WebhookRouter:
    """Routes gateway events to channels and sessions."""

    def __init__(
        self,
        gate: ReplyGate,
        composer: ReplyComposer,
        session_factory=None,
        default_timezone: str = "UTC",
    ):
        self._gate = gate
        self._composer = composer
        self._session_factory = session_factory or AsyncSessionLocal
        self._default_timezone = default_timezone
        # Entries vanish once no handler holds or waits on the lock
        self._chat_locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _chat_lock(self, channel_id: str, chat_id: str) -> asyncio.Lock:
        key = (channel_id, chat_id)
        lock = self._chat_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._chat_locks[key] = lock
        return lock

    async def ingest(self, payload) -> List[str]:
        """Process a webhook body. Never raises; returns one result per message."""
        messages, statuses = parse_payload(payload)
        results = []
        for msg in messages:
            try:
                results.append(await self.handle_message(msg))
            except Exception as e:
                logger.error(f"Webhook message {msg.external_message_id} failed: {e}", exc_info=True)
                results.append("error")
        for status in statuses:
            try:
                await self.handle_status(status)
            except Exception as e:
                logger.error(f"Webhook status {status.external_message_id} failed: {e}", exc_info=True)
        return results

    async def _find_connected(self, db: AsyncSession, phone: str) -> Optional[ChannelDB]:
        if not phone:
            return None
        result = await db.execute(
            select(ChannelDB)
            .where(ChannelDB.phone_number == phone, ChannelDB.status == CHANNEL_CONNECTED)
            .limit(1)
        )
        return result.scalars().first()

    async def handle_message(self, msg: InboundMessage) -> str:
        if msg.is_self_sent:
            return RESULT_SELF_SENT

        to_phone = normalize_chat_id(msg.recipient)
        from_phone = normalize_chat_id(msg.sender)

        async with self._session_factory() as db:
            channel = await self._find_connected(db, to_phone)
            direction = "inbound"
            if channel is None:
                # Sent from the paired phone itself by a human operator
                channel = await self._find_connected(db, from_phone)
                direction = "outbound"
            if channel is None:
                logger.warning(f"No connected channel found for incoming message to {to_phone}")
                return RESULT_UNROUTED
            channel_id = channel.id

        chat_id = normalize_chat_id(msg.chat_id)
        async with self._chat_lock(channel_id, chat_id):
            async with self._session_factory() as db:
                channel = await db.get(ChannelDB, channel_id)
                if channel is None:
                    return RESULT_UNROUTED
                contact_phone = from_phone if direction == "inbound" else chat_id
                contact_name = msg.from_name if direction == "inbound" else None
                session = await self._get_or_create_session(db, channel, chat_id, contact_phone, contact_name)

                if msg.external_message_id and await self._is_duplicate(db, session.id, msg.external_message_id):
                    logger.info(f"Duplicate message skipped: {msg.external_message_id}")
                    return RESULT_DUPLICATE

                if not await self._store(db, session, msg, direction, contact_phone):
                    return RESULT_DUPLICATE

                if direction == "outbound":
                    return RESULT_RECORDED
                return await self._reply(db, channel, session, msg)

    async def _get_or_create_session(
        self,
        db: AsyncSession,
        channel: ChannelDB,
        chat_id: str,
        contact_phone: str,
        contact_name: Optional[str],
    ) -> ChatSessionDB:
        result = await db.execute(
            select(ChatSessionDB).where(
                ChatSessionDB.channel_id == channel.id,
                ChatSessionDB.chat_id == chat_id,
            )
        )
        session = result.scalar_one_or_none()
        if session is not None:
            return session

        session = ChatSessionDB(
            tenant_id=channel.tenant_id,
            channel_id=channel.id,
            chat_id=chat_id,
            phone_number=contact_phone,
            contact_name=contact_name or contact_phone,
            status="open",
        )
        db.add(session)
        await db.commit()
        logger.info(f"New session {session.id} for chat {chat_id} on channel {channel.id}")
        return session

    async def _is_duplicate(self, db: AsyncSession, session_id: str, external_message_id: str) -> bool:
        result = await db.execute(
            select(ChatMessageDB.id).where(
                ChatMessageDB.session_id == session_id,
                ChatMessageDB.external_message_id == external_message_id,
            )
        )
        return result.first() is not None

    async def _store(
        self,
        db: AsyncSession,
        session: ChatSessionDB,
        msg: InboundMessage,
        direction: str,
        contact_phone: str,
    ) -> bool:
        """Insert the message and update the session. False if it was a duplicate."""
        sender_type = "contact" if direction == "inbound" else "human"
        db.add(
            ChatMessageDB(
                session_id=session.id,
                tenant_id=session.tenant_id,
                external_message_id=msg.external_message_id,
                direction=direction,
                sender_type=sender_type,
                body=msg.body,
                message_type=msg.message_type,
                status="received" if direction == "inbound" else "sent",
                msg_metadata=msg.metadata,
                message_ts=msg.timestamp,
            )
        )

        session.last_message = msg.body
        session.last_message_at = msg.timestamp
        session.last_message_direction = direction
        session.last_message_sender = sender_type
        if direction == "inbound":
            session.contact_name = msg.from_name or session.contact_name or contact_phone
            if session.status in ("resolved", "closed"):
                logger.info(f"Reopening session {session.id}")
                session.status = "open"

        try:
            await db.commit()
        except IntegrityError:
            # Same message delivered concurrently past the pre-check
            await db.rollback()
            logger.info(f"Duplicate message skipped: {msg.external_message_id}")
            return False
        return True

    async def _reply(
        self,
        db: AsyncSession,
        channel: ChannelDB,
        session: ChatSessionDB,
        msg: InboundMessage,
    ) -> str:
        result = await db.execute(
            select(ReplyProfileDB).where(ReplyProfileDB.channel_id == channel.id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return RESULT_STORED

        profile = load_reply_profile(row, self._default_timezone)
        decision = await self._gate.should_auto_reply(
            session, profile, now=datetime.utcnow(), message_text=msg.body
        )
        # The gate may clear an expired takeover or stamp the notice time
        await db.commit()

        if decision.notice:
            await self._composer.send_notice(db, channel, session, decision.notice)

        if not decision.should_reply:
            logger.info(f"No automated reply for session {session.id}: {decision.reason}")
            return RESULT_SKIPPED

        kb_result = await db.execute(
            select(KnowledgeBaseEntryDB)
            .where(KnowledgeBaseEntryDB.channel_id == channel.id)
            .order_by(KnowledgeBaseEntryDB.created_at)
        )
        kb_entries = [
            KnowledgeEntry(title=entry.title, content=entry.content)
            for entry in kb_result.scalars().all()
        ]

        reply = await self._composer.compose_and_send(
            db, channel, session, profile, decision.scenario, kb_entries
        )
        return RESULT_REPLIED if reply else RESULT_SKIPPED

    async def handle_status(self, status: StatusUpdate) -> int:
        """Record a delivery status on the outbound message it refers to."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(ChatMessageDB)
                .where(
                    ChatMessageDB.external_message_id == status.external_message_id,
                    ChatMessageDB.direction == "outbound",
                )
                .values(status=status.status)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount
