"""
SQLAlchemy ORM models for Reply Flow.

Tables:
- channels: One gateway connection (phone number) per row
- chat_sessions: Conversation threads between a contact and a channel
- chat_messages: Messages exchanged in a session
- reply_profiles: Automated reply configuration per channel
- knowledge_base_entries: Reference material injected into reply instructions
"""

import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    JSON,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from replyflow.db.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Channel status values
CHANNEL_PENDING = "pending"
CHANNEL_AWAITING_SCAN = "awaiting_scan"
CHANNEL_CONNECTED = "connected"
CHANNEL_DISCONNECTED = "disconnected"

CHANNEL_STATUSES = (
    CHANNEL_PENDING,
    CHANNEL_AWAITING_SCAN,
    CHANNEL_CONNECTED,
    CHANNEL_DISCONNECTED,
)

# Allowed status transitions. Nothing leads back to pending: a new pending
# channel only comes from a fresh provisioning run.
CHANNEL_TRANSITIONS = {
    CHANNEL_PENDING: {CHANNEL_AWAITING_SCAN, CHANNEL_CONNECTED},
    CHANNEL_AWAITING_SCAN: {CHANNEL_CONNECTED, CHANNEL_DISCONNECTED},
    CHANNEL_CONNECTED: {CHANNEL_DISCONNECTED},
    CHANNEL_DISCONNECTED: {CHANNEL_CONNECTED},  # re-pair by QR scan
}


def can_transition(current: str, target: str) -> bool:
    """Whether a channel may move from ``current`` to ``target``."""
    return target in CHANNEL_TRANSITIONS.get(current, set())


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


class ChannelDB(Base):
    """
    A phone-number-backed connection to the messaging gateway.

    external_token is a gateway credential and never leaves the server.
    """
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True
    )
    workspace_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )  # Reserved for workspace grouping
    external_channel_id: Mapped[str] = mapped_column(
        String(128), nullable=False
    )
    external_token: Mapped[str] = mapped_column(
        String(256), nullable=False
    )
    name: Mapped[str] = mapped_column(
        String(128), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(32), default=CHANNEL_PENDING, nullable=False
    )  # pending / awaiting_scan / connected / disconnected
    phone_number: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True
    )
    webhook_registered: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("external_channel_id", name="uq_channels_external_channel_id"),
        Index("ix_channels_phone_status", "phone_number", "status"),
    )

    def __repr__(self) -> str:
        return f"<Channel(id={self.id}, tenant={self.tenant_id}, status={self.status})>"


class ChatSessionDB(Base):
    """
    Conversation thread between a contact and a tenant's channel.

    Sessions are never hard-deleted, only archived.
    """
    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True
    )
    channel_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("channels.id", ondelete="SET NULL"), nullable=True
    )
    chat_id: Mapped[str] = mapped_column(
        String(128), nullable=False
    )  # Normalized chat id (no @domain suffix)
    phone_number: Mapped[str] = mapped_column(
        String(32), nullable=False
    )
    contact_name: Mapped[Optional[str]] = mapped_column(
        String(256), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(32), default="open", nullable=False
    )  # open / resolved / closed
    is_archived: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    human_takeover: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    auto_resume_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    outside_hours_notified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    handoff_notified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    last_message: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True
    )
    last_message_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    last_message_direction: Mapped[Optional[str]] = mapped_column(
        String(16), nullable=True
    )  # inbound / outbound
    last_message_sender: Mapped[Optional[str]] = mapped_column(
        String(16), nullable=True
    )  # contact / ai / human
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    messages: Mapped[List["ChatMessageDB"]] = relationship(
        "ChatMessageDB", back_populates="session"
    )

    __table_args__ = (
        UniqueConstraint("channel_id", "chat_id", name="uq_chat_sessions_channel_chat"),
    )

    def __repr__(self) -> str:
        return f"<ChatSession(id={self.id}, chat_id={self.chat_id}, takeover={self.human_takeover})>"


class ChatMessageDB(Base):
    """
    Messages received from or sent to a contact.
    """
    __tablename__ = "chat_messages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64), nullable=False
    )
    external_message_id: Mapped[Optional[str]] = mapped_column(
        String(256), nullable=True
    )
    direction: Mapped[str] = mapped_column(
        String(16), nullable=False
    )  # inbound / outbound
    sender_type: Mapped[str] = mapped_column(
        String(16), nullable=False
    )  # contact / ai / human
    body: Mapped[str] = mapped_column(
        Text, nullable=False, default=""
    )
    message_type: Mapped[str] = mapped_column(
        String(32), default="text", nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(32), default="received", nullable=False
    )  # received / sent / delivered / read / failed
    msg_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    message_ts: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Relationships
    session: Mapped["ChatSessionDB"] = relationship(
        "ChatSessionDB", back_populates="messages"
    )

    __table_args__ = (
        UniqueConstraint("session_id", "external_message_id", name="uq_chat_messages_session_external"),
        Index("ix_chat_messages_session_created", "session_id", "created_at"),
        Index("ix_chat_messages_external_message_id", "external_message_id"),
    )

    def __repr__(self) -> str:
        return f"<ChatMessage(direction={self.direction}, sender={self.sender_type})>"


class ReplyProfileDB(Base):
    """
    Automated reply configuration for a channel.

    profile_data holds either the structured ``response_flow`` shape or the
    deprecated flat fields; see replyflow.services.profile.
    """
    __tablename__ = "reply_profiles"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    channel_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64), nullable=False
    )
    is_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    profile_data: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True, default=dict
    )
    max_tokens: Mapped[int] = mapped_column(
        Integer, default=500, nullable=False
    )
    schedule_mode: Mapped[str] = mapped_column(
        String(32), default="always_on", nullable=False
    )  # always_on / business_hours / custom
    business_hours: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True
    )  # {"monday": {"enabled": true, "open": "09:00", "close": "17:00"}, ...}
    schedule: Mapped[Optional[dict]] = mapped_column(
        JSONType, nullable=True
    )  # AI-only hours for schedule_mode "custom", same shape as business_hours
    timezone: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    outside_hours_message: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True
    )
    custom_instructions: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True
    )  # Channel-level override appended to instructions
    greeting_override: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<ReplyProfile(channel_id={self.channel_id}, mode={self.schedule_mode})>"


class KnowledgeBaseEntryDB(Base):
    """
    Reference material for a channel, maintained outside this core.
    """
    __tablename__ = "knowledge_base_entries"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64), nullable=False
    )
    channel_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(
        String(256), nullable=False
    )
    content: Mapped[str] = mapped_column(
        Text, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_knowledge_base_entries_channel_id", "channel_id"),
    )

    def __repr__(self) -> str:
        return f"<KnowledgeBaseEntry(title={self.title})>"
