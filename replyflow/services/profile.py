"""
Reply profile model.

A channel's ``profile_data`` comes in two shapes:

- FlowProfile: has a structured ``response_flow`` (scenarios + fallback)
- LegacyProfile: the deprecated flat fields (tone, response_rules, ...)

``parse_profile_data`` discriminates on the presence of ``response_flow`` and
``migrate_profile`` turns either shape into a FlowProfile. Migration is pure:
it never writes storage, and running it twice gives the same result.
"""

from datetime import time
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Tone = Literal["professional", "friendly", "casual", "formal"]
ResponseLength = Literal["concise", "moderate", "detailed"]
EmojiUsage = Literal["none", "minimal", "moderate"]
FallbackMode = Literal["respond_basics", "human_handle"]
ScheduleMode = Literal["always_on", "business_hours", "custom"]

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class CommunicationStyle(BaseModel):
    tone: Tone = "friendly"
    response_length: ResponseLength = "moderate"
    emoji_usage: EmojiUsage = "minimal"


DEFAULT_STYLE = CommunicationStyle()


class Scenario(BaseModel):
    """A class of inbound intent and how to respond to it."""
    model_config = ConfigDict(extra="ignore")

    id: str
    label: str
    detection_criteria: str
    goal: Optional[str] = None
    instructions: Optional[str] = None
    context: Optional[str] = None
    rules: Optional[str] = None
    example_response: Optional[str] = None
    escalation_trigger: Optional[str] = None
    escalation_message: Optional[str] = None
    tone: Optional[Tone] = None
    response_length: Optional[ResponseLength] = None
    emoji_usage: Optional[EmojiUsage] = None
    # Deprecated names, folded into instructions / escalation_trigger
    response_rules: Optional[str] = None
    escalation_rules: Optional[str] = None

    def style(self, default: CommunicationStyle) -> CommunicationStyle:
        """Default style with this scenario's overrides applied."""
        return CommunicationStyle(
            tone=self.tone or default.tone,
            response_length=self.response_length or default.response_length,
            emoji_usage=self.emoji_usage or default.emoji_usage,
        )


class ResponseFlow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    default_style: CommunicationStyle = Field(default_factory=CommunicationStyle)
    greeting_message: Optional[str] = None
    response_rules: Optional[str] = None
    topics_to_avoid: Optional[str] = None
    scenarios: List[Scenario] = Field(default_factory=list)
    fallback_mode: FallbackMode = "respond_basics"


class _IdentityFields(BaseModel):
    """Fields shared by both profile shapes."""
    model_config = ConfigDict(extra="ignore")

    use_case: Optional[Literal["business", "personal", "organization"]] = None
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    business_description: Optional[str] = None
    target_audience: Optional[str] = None
    language_preference: Optional[str] = None  # "match_customer" or a language name
    human_phone: Optional[str] = None  # shared in human handoff notices


class FlowProfile(_IdentityFields):
    kind: Literal["flow"] = "flow"
    response_flow: ResponseFlow = Field(default_factory=ResponseFlow)


class LegacyProfile(_IdentityFields):
    kind: Literal["legacy"] = "legacy"
    tone: Optional[Tone] = None
    response_length: Optional[ResponseLength] = None
    emoji_usage: Optional[EmojiUsage] = None
    response_rules: Optional[str] = None
    greeting_message: Optional[str] = None
    escalation_rules: Optional[str] = None
    topics_to_avoid: Optional[str] = None


ProfileData = Union[FlowProfile, LegacyProfile]


def parse_profile_data(raw: Optional[dict]) -> ProfileData:
    """Parse stored profile JSON into the matching tagged shape."""
    data = dict(raw or {})
    data.pop("kind", None)
    if data.get("response_flow") is not None:
        return FlowProfile.model_validate(data)
    return LegacyProfile.model_validate(data)


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _migrate_scenario(scenario: Scenario) -> Scenario:
    if not scenario.response_rules and not scenario.escalation_rules:
        return scenario
    return scenario.model_copy(update={
        "instructions": scenario.instructions or scenario.response_rules,
        "escalation_trigger": scenario.escalation_trigger or scenario.escalation_rules,
        "response_rules": None,
        "escalation_rules": None,
    })


def _flow_from_flat(profile: LegacyProfile) -> ResponseFlow:
    rules = _strip(profile.response_rules)
    escalation = _strip(profile.escalation_rules)
    combined = "\n\n".join(
        part for part in (rules, f"Escalation: {escalation}" if escalation else None) if part
    )
    return ResponseFlow(
        default_style=CommunicationStyle(
            tone=profile.tone or DEFAULT_STYLE.tone,
            response_length=profile.response_length or DEFAULT_STYLE.response_length,
            emoji_usage=profile.emoji_usage or DEFAULT_STYLE.emoji_usage,
        ),
        greeting_message=_strip(profile.greeting_message),
        response_rules=combined or None,
        topics_to_avoid=_strip(profile.topics_to_avoid),
        scenarios=[],
        fallback_mode="respond_basics",
    )


def migrate_profile(profile: Union[ProfileData, dict, None]) -> FlowProfile:
    """Return the scenario-based shape of ``profile``.

    Accepts either tagged shape or raw stored JSON. The input is never
    modified; callers that want the migrated shape persisted must save
    ``result.model_dump(exclude_none=True)`` themselves.
    """
    if profile is None or isinstance(profile, dict):
        profile = parse_profile_data(profile)

    identity = profile.model_dump(include=set(_IdentityFields.model_fields))

    if isinstance(profile, LegacyProfile):
        flow = _flow_from_flat(profile)
    else:
        flow = profile.response_flow.model_copy(update={
            "scenarios": [_migrate_scenario(sc) for sc in profile.response_flow.scenarios],
        })

    return FlowProfile(**identity, response_flow=flow)


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

class DaySchedule(BaseModel):
    enabled: bool = True
    open: time = time(9, 0)
    close: time = time(17, 0)

    @field_validator("open", "close", mode="before")
    @classmethod
    def parse_hhmm(cls, v):
        if isinstance(v, str):
            hours, _, minutes = v.partition(":")
            return time(int(hours), int(minutes or 0))
        return v

    @property
    def overnight(self) -> bool:
        """Window spans midnight, e.g. 22:00-02:00."""
        return self.close < self.open


class WeeklySchedule(BaseModel):
    """Defaults to Mon-Fri 09:00-17:00 with the weekend closed."""
    model_config = ConfigDict(extra="ignore")

    monday: DaySchedule = Field(default_factory=DaySchedule)
    tuesday: DaySchedule = Field(default_factory=DaySchedule)
    wednesday: DaySchedule = Field(default_factory=DaySchedule)
    thursday: DaySchedule = Field(default_factory=DaySchedule)
    friday: DaySchedule = Field(default_factory=DaySchedule)
    saturday: DaySchedule = Field(default_factory=lambda: DaySchedule(enabled=False))
    sunday: DaySchedule = Field(default_factory=lambda: DaySchedule(enabled=False))

    def for_weekday(self, weekday: int) -> DaySchedule:
        return getattr(self, WEEKDAYS[weekday])


# ---------------------------------------------------------------------------
# Reply profile (row + parsed profile data)
# ---------------------------------------------------------------------------

class ChannelOverrides(BaseModel):
    custom_instructions: Optional[str] = None
    greeting_override: Optional[str] = None


class KnowledgeEntry(BaseModel):
    title: str
    content: str


class ReplyProfile(BaseModel):
    """Everything the gate and composer need to know about a channel's replies."""
    is_enabled: bool = True
    max_tokens: int = 500
    schedule_mode: ScheduleMode = "always_on"
    business_hours: WeeklySchedule = Field(default_factory=WeeklySchedule)
    schedule: WeeklySchedule = Field(default_factory=WeeklySchedule)  # custom AI hours
    timezone: str = "UTC"
    outside_hours_message: Optional[str] = None
    overrides: ChannelOverrides = Field(default_factory=ChannelOverrides)
    profile: FlowProfile = Field(default_factory=FlowProfile)

    @property
    def flow(self) -> ResponseFlow:
        return self.profile.response_flow

    @property
    def active_schedule(self) -> Optional[WeeklySchedule]:
        """Hours automated replies are allowed in; None means always on."""
        if self.schedule_mode == "business_hours":
            return self.business_hours
        if self.schedule_mode == "custom":
            return self.schedule
        return None


def load_reply_profile(row, default_timezone: str = "UTC") -> ReplyProfile:
    """Build a ReplyProfile from a ReplyProfileDB row (or None for defaults)."""
    if row is None:
        return ReplyProfile(timezone=default_timezone)
    return ReplyProfile(
        is_enabled=row.is_enabled,
        max_tokens=row.max_tokens or 500,
        schedule_mode=row.schedule_mode or "always_on",
        business_hours=WeeklySchedule.model_validate(row.business_hours or {}),
        schedule=WeeklySchedule.model_validate(row.schedule or {}),
        timezone=row.timezone or default_timezone,
        outside_hours_message=row.outside_hours_message,
        overrides=ChannelOverrides(
            custom_instructions=row.custom_instructions,
            greeting_override=row.greeting_override,
        ),
        profile=migrate_profile(row.profile_data),
    )
