"""
Reply Composer.

``build_instructions`` assembles the system instructions for the completion
provider from a channel's profile. It is pure and deterministic; sections are
always emitted in the same order:

1. identity
2. language preference
3. communication style (plus general response rules / topics to avoid)
4. first-contact greeting
5. scenario block (omitted for fallback replies)
6. knowledge base
7. channel-specific instructions
8. platform-safety rules

``ReplyComposer`` runs the provider and sends the result through the gateway.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from replyflow.channels.base import GatewayClient, to_gateway_chat_id
from replyflow.db.models import ChannelDB, ChatMessageDB, ChatSessionDB
from replyflow.services.completion import CompletionProvider
from replyflow.services.profile import (
    ChannelOverrides,
    CommunicationStyle,
    FlowProfile,
    KnowledgeEntry,
    ReplyProfile,
    Scenario,
)

logger = logging.getLogger(__name__)

TONE_DESCRIPTIONS = {
    "professional": "Maintain a professional, polished tone. Be respectful and business-appropriate.",
    "friendly": "Be warm, approachable, and personable. Use a conversational but helpful tone.",
    "casual": "Keep things relaxed and informal. Use everyday language and be easygoing.",
    "formal": "Use formal language and proper etiquette. Be courteous and dignified.",
}

LENGTH_DESCRIPTIONS = {
    "concise": "Keep responses short and to the point. Aim for 1-3 sentences when possible.",
    "moderate": "Provide clear, balanced responses. Use enough detail to be helpful without being verbose.",
    "detailed": "Give thorough, comprehensive responses. Include relevant details and explanations.",
}

EMOJI_DESCRIPTIONS = {
    "none": "Do not use emojis.",
    "minimal": "Use emojis sparingly, at most one per message.",
    "moderate": "Feel free to use emojis where they feel natural.",
}

DEFAULT_IDENTITY = (
    "You are a helpful AI assistant managing WhatsApp conversations. "
    "Respond professionally and concisely."
)

CORE_RULES = """## Core Rules
- You are chatting via WhatsApp. Keep messages appropriate for mobile messaging.
- Never reveal that you are an AI unless directly asked.
- If you don't know the answer to something, be honest about it rather than making up information.
- Never share sensitive business information like internal processes, pricing strategies, or employee details unless explicitly covered in the knowledge base.
- If a conversation requires human attention (complaints, complex issues, urgent matters), politely let the customer know that a team member will follow up."""


def _identity_section(profile: FlowProfile) -> str:
    sections: List[str] = []

    if profile.use_case == "business":
        name = profile.business_name or "the business"
        sections.append(
            f"You are an AI assistant for {name}. You help manage WhatsApp conversations on behalf of this business."
        )
        if profile.business_description:
            sections.append(f"## About the Business\n{profile.business_description}")
        if profile.business_type:
            sections.append(f"## Industry\nThis is a {profile.business_type} business.")
        if profile.target_audience:
            sections.append(f"## Target Audience\n{profile.target_audience}")
    elif profile.use_case == "organization":
        name = profile.business_name or "the organization"
        sections.append(
            f"You are an AI assistant for {name}. You help manage WhatsApp conversations on behalf of this organization."
        )
        if profile.business_description:
            sections.append(f"## About the Organization\n{profile.business_description}")
        if profile.target_audience:
            sections.append(f"## Audience\n{profile.target_audience}")
    elif profile.use_case == "personal":
        sections.append("You are a personal AI assistant managing WhatsApp conversations.")
        if profile.business_description:
            sections.append(f"## Context\n{profile.business_description}")
    else:
        sections.append(DEFAULT_IDENTITY)

    return "\n\n".join(sections)


def _language_section(profile: FlowProfile) -> Optional[str]:
    preference = profile.language_preference
    if not preference:
        return None
    if preference == "match_customer":
        return "## Language\nAlways respond in the same language the customer uses."
    return f"## Language\nRespond in {preference}."


def _style_section(style: CommunicationStyle, profile: FlowProfile) -> str:
    flow = profile.response_flow
    rules = [
        TONE_DESCRIPTIONS[style.tone],
        LENGTH_DESCRIPTIONS[style.response_length],
        EMOJI_DESCRIPTIONS[style.emoji_usage],
    ]
    parts = ["## Communication Style\n" + "\n".join(rules)]
    if flow.response_rules:
        parts.append(f"## Response Guidelines\n{flow.response_rules}")
    if flow.topics_to_avoid:
        parts.append(f"## Topics to Avoid\n{flow.topics_to_avoid}")
    return "\n\n".join(parts)


def _scenario_section(scenario: Scenario) -> str:
    lines = [f"## Current Scenario: {scenario.label}"]
    if scenario.goal:
        lines.append(f"### Goal\n{scenario.goal}")
    if scenario.instructions:
        lines.append(f"### Instructions\n{scenario.instructions}")
    if scenario.context:
        lines.append(f"### Context\n{scenario.context}")
    if scenario.rules:
        lines.append(f"### Rules\n{scenario.rules}")
    if scenario.example_response:
        lines.append(f"### Example Response\n{scenario.example_response}")
    if scenario.escalation_trigger:
        escalation = f"### Escalation\nIf {scenario.escalation_trigger}"
        if scenario.escalation_message:
            escalation += f", respond with: \"{scenario.escalation_message}\""
        else:
            escalation += ", let the customer know a team member will follow up."
        lines.append(escalation)
    return "\n\n".join(lines)


def _knowledge_section(entries: Sequence[KnowledgeEntry]) -> str:
    body = "\n\n---\n\n".join(f"### {entry.title}\n{entry.content}" for entry in entries)
    return (
        "## Knowledge Base\n"
        "Use the following reference information to answer questions accurately. "
        "If a question isn't covered by this information, say so honestly.\n\n"
        f"{body}"
    )


def build_instructions(
    profile: FlowProfile,
    scenario: Optional[Scenario] = None,
    kb_entries: Sequence[KnowledgeEntry] = (),
    channel_overrides: Optional[ChannelOverrides] = None,
) -> str:
    """Assemble reply instructions. Pure: same inputs, same text."""
    flow = profile.response_flow
    overrides = channel_overrides or ChannelOverrides()
    style = scenario.style(flow.default_style) if scenario else flow.default_style

    parts = [_identity_section(profile)]

    language = _language_section(profile)
    if language:
        parts.append(language)

    parts.append(_style_section(style, profile))

    greeting = overrides.greeting_override or flow.greeting_message
    if greeting:
        parts.append(
            "## First Contact Greeting\n"
            f"When this is the first message from a new contact, greet them with: \"{greeting}\""
        )

    if scenario is not None:
        parts.append(_scenario_section(scenario))

    if kb_entries:
        parts.append(_knowledge_section(kb_entries))

    if overrides.custom_instructions:
        parts.append(f"## Channel-Specific Instructions\n{overrides.custom_instructions}")

    parts.append(CORE_RULES)
    return "\n\n".join(parts)


class ReplyComposer:
    """Generates replies with the completion provider and sends them."""

    def __init__(
        self,
        gateway: GatewayClient,
        completion: Optional[CompletionProvider],
        history_limit: int = 20,
    ):
        self._gateway = gateway
        self._completion = completion
        self._history_limit = history_limit

    async def load_history(self, db: AsyncSession, session_id: str) -> List[dict]:
        """Last N messages of a session as chat turns, oldest first."""
        result = await db.execute(
            select(ChatMessageDB)
            .where(ChatMessageDB.session_id == session_id)
            .order_by(desc(ChatMessageDB.created_at))
            .limit(self._history_limit)
        )
        messages = list(result.scalars().all())
        messages.reverse()
        return [
            {
                "role": "user" if m.direction == "inbound" else "assistant",
                "content": m.body or "",
            }
            for m in messages
        ]

    async def compose_and_send(
        self,
        db: AsyncSession,
        channel: ChannelDB,
        session: ChatSessionDB,
        profile: ReplyProfile,
        scenario: Optional[Scenario],
        kb_entries: Sequence[KnowledgeEntry] = (),
    ) -> Optional[str]:
        """Generate a reply for the session and send it. Returns the reply text."""
        if self._completion is None:
            logger.debug("No completion provider configured; not replying")
            return None

        instructions = build_instructions(profile.profile, scenario, kb_entries, profile.overrides)
        history = await self.load_history(db, session.id)
        reply = await self._completion.generate(instructions, history, profile.max_tokens)

        if not reply or not reply.strip():
            logger.info(f"Empty reply generated for session {session.id}; nothing sent")
            return None

        await self.send_text(db, channel, session, reply.strip(), sender_type="ai")
        return reply.strip()

    async def send_notice(
        self,
        db: AsyncSession,
        channel: ChannelDB,
        session: ChatSessionDB,
        notice: str,
    ) -> ChatMessageDB:
        """Send a fixed notice (outside hours, handoff) without the provider."""
        logger.info(f"Sending notice to session {session.id}")
        return await self.send_text(db, channel, session, notice, sender_type="ai")

    async def send_text(
        self,
        db: AsyncSession,
        channel: ChannelDB,
        session: ChatSessionDB,
        body: str,
        sender_type: str = "ai",
    ) -> ChatMessageDB:
        """Send ``body`` to the session's chat and record it as outbound."""
        message_id = await self._gateway.send_text(
            channel.external_token, to_gateway_chat_id(session.chat_id), body
        )

        now = datetime.utcnow()
        record = ChatMessageDB(
            session_id=session.id,
            tenant_id=session.tenant_id,
            external_message_id=message_id,
            direction="outbound",
            sender_type=sender_type,
            body=body,
            message_type="text",
            status="sent",
            message_ts=now,
            created_at=now,
        )
        db.add(record)

        session.last_message = body
        session.last_message_at = now
        session.last_message_direction = "outbound"
        session.last_message_sender = sender_type
        await db.commit()
        return record
