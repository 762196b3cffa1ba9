"""
Core data models for the LeadFlow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, time, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class BranchAction(str, Enum):
    CONTINUE = "continue"
    END = "end"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    RECOVERED = "recovered"


# Statuses in which a session still accepts replies and answers
OPEN_STATUSES = (SessionStatus.ACTIVE, SessionStatus.RECOVERED)


class DripStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DelayMode(str, Enum):
    FROM_STEP = "from_step"       # every delay is measured from the step's send time
    CUMULATIVE = "cumulative"     # each delay is measured from the previous drip


class TriggerType(str, Enum):
    LEAD_CREATED = "lead_created"
    MESSAGE_RECEIVED = "message_received"
    LEAD_REPLIED_FIRST_TIME = "lead_replied_first_time"
    MESSAGE_SENT = "message_sent"
    APPOINTMENT_BOOKED = "appointment_booked"
    NO_RESPONSE_FOR_DAYS = "no_response_for_days"
    KEYWORD_MATCH = "keyword_match"


class TagActionType(str, Enum):
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    SET_PRIMARY_TAG = "set_primary_tag"
    REPLACE_CONDITION_TAGS = "replace_condition_tags"


class ConditionMode(str, Enum):
    ANY = "any"
    ALL = "all"
    NONE = "none"


# ──────────────────────────────────────────────────────────────
#  Flow Definition — a branching conversation script
# ──────────────────────────────────────────────────────────────

class DripMessage(BaseModel):
    """A delayed follow-up sent when the contact stays quiet on a step."""
    message: str
    delay_hours: float = Field(ge=0)


class ResponseBranch(BaseModel):
    """
    One labelled reply option on a step.
    No next_step_id with action=continue keeps the contact on the same step.
    """
    label: str
    follow_up_message: str = ""
    next_step_id: Optional[str] = None
    action: BranchAction = BranchAction.CONTINUE


class StepTag(BaseModel):
    """Step-completion marker shown in the UI (not a contact tag)."""
    label: str
    color: str = ""


class Step(BaseModel):
    id: str = Field(default_factory=_new_id)
    outbound_message: str                         # may contain {{placeholders}}
    responses: list[ResponseBranch] = []
    drip_sequence: list[DripMessage] = []
    tag: Optional[StepTag] = None

    def find_response(self, label: str) -> Optional[ResponseBranch]:
        """Case-insensitive exact match against the configured labels."""
        wanted = label.casefold()
        return next((r for r in self.responses if r.label.casefold() == wanted), None)

    @property
    def labels(self) -> list[str]:
        return [r.label for r in self.responses]


class RequiredQuestion(BaseModel):
    question: str
    field_key: str


class FlowDefinition(BaseModel):
    """
    Immutable-per-version description of a conversation.

    Step order is the list order; step identity is the opaque id, so
    inserting or removing a step never renumbers the others.
    """
    id: str
    name: str
    owner_id: str = ""
    version: str = "1"
    steps: list[Step] = []
    required_questions: list[RequiredQuestion] = []
    requires_human_follow_up: bool = False
    metadata: dict[str, Any] = {}

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

    @property
    def first_step(self) -> Optional[Step]:
        return self.steps[0] if self.steps else None

    def step_index(self, step_id: str) -> int:
        for i, s in enumerate(self.steps):
            if s.id == step_id:
                return i
        return -1


# ──────────────────────────────────────────────────────────────
#  Business Hours — weekly send window
# ──────────────────────────────────────────────────────────────

WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::[0-5]\d)?$")


def parse_hhmm(value: str) -> time:
    """Parse "HH:MM" or "HH:MM:SS" into a time (seconds are ignored)."""
    match = _HHMM.match(value.strip())
    if not match:
        raise ValueError(f"invalid time of day '{value}'")
    return time(int(match.group(1)), int(match.group(2)))


class DayHours(BaseModel):
    enabled: bool = True
    open: str = "09:00"
    close: str = "17:00"

    @model_validator(mode="after")
    def _check_window(self) -> "DayHours":
        if parse_hhmm(self.close) <= parse_hhmm(self.open):
            raise ValueError(f"close {self.close} must be after open {self.open}")
        return self

    @property
    def open_time(self) -> time:
        return parse_hhmm(self.open)

    @property
    def close_time(self) -> time:
        return parse_hhmm(self.close)


class WeeklyHours(BaseModel):
    """
    Per-weekday send window plus the timezone it is expressed in.
    Weekdays missing from `days` are closed.
    """
    timezone: str = "UTC"
    days: dict[str, DayHours] = {}

    @field_validator("days")
    @classmethod
    def _known_weekdays(cls, v: dict[str, DayHours]) -> dict[str, DayHours]:
        unknown = [d for d in v if d not in WEEKDAYS]
        if unknown:
            raise ValueError(f"unknown weekdays: {unknown}")
        return v

    def for_weekday(self, weekday: int) -> Optional[DayHours]:
        """Hours for a Python weekday number (0 = Monday)."""
        day = self.days.get(WEEKDAYS[weekday])
        return day if day and day.enabled else None

    @property
    def has_open_day(self) -> bool:
        return any(d.enabled for d in self.days.values())

    @classmethod
    def weekdays_9_to_5(cls, tz: str = "UTC") -> "WeeklyHours":
        return cls(
            timezone=tz,
            days={d: DayHours() for d in WEEKDAYS[:5]},
        )


# ──────────────────────────────────────────────────────────────
#  Conversation Session — one run of a flow against one contact
# ──────────────────────────────────────────────────────────────

class SessionTransitionRecord(BaseModel):
    """Immutable log of a single session transition."""
    id: str = Field(default_factory=_new_id)
    kind: str                       # started | advanced | answered | abandoned | recovered | booked
    from_status: SessionStatus
    to_status: SessionStatus
    from_step_id: str = ""
    to_step_id: str = ""
    response_label: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = {}


class ConversationSession(BaseModel):
    """
    The mutable runtime entity, owned by the engine.
    Callers only ever receive copies; all changes go through FlowEngine.
    """
    id: str = Field(default_factory=_new_id)
    owner_id: str = ""
    contact_id: str
    flow_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: datetime = Field(default_factory=_utcnow)
    last_activity_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    recovered_at: Optional[datetime] = None
    current_step_id: str = ""
    answered_questions: dict[str, Any] = {}
    questions_total: int = 0
    appointment_booked: bool = False
    appointment_time: Optional[datetime] = None
    recovery_link_sent: bool = False
    version: int = 0
    history: list[SessionTransitionRecord] = []

    @property
    def completion_percentage(self) -> int:
        if self.questions_total <= 0:
            return 100
        pct = round(100 * len(self.answered_questions) / self.questions_total)
        return max(0, min(100, pct))

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def open_key(self) -> Optional[str]:
        """Uniqueness key held while the session is open."""
        return f"{self.contact_id}:{self.flow_id}" if self.is_open else None

    def snapshot(self) -> "ConversationSession":
        return self.model_copy(deep=True)


# ──────────────────────────────────────────────────────────────
#  Pending Drip — one queued follow-up send
# ──────────────────────────────────────────────────────────────

class PendingDrip(BaseModel):
    id: str = Field(default_factory=_new_id)
    session_id: str
    contact_id: str = ""
    step_id: str
    sequence_index: int
    message: str
    scheduled_for: datetime
    status: DripStatus = DripStatus.SCHEDULED
    created_at: datetime = Field(default_factory=_utcnow)
    sent_at: Optional[datetime] = None
    delivery_id: str = ""
    failed_reason: str = ""


# ──────────────────────────────────────────────────────────────
#  Auto-Tagging Rules
# ──────────────────────────────────────────────────────────────

class EventTrigger(BaseModel):
    """Triggers that need nothing beyond the event type."""
    kind: Literal["event"] = "event"


class NoResponseTrigger(BaseModel):
    kind: Literal["no_response"] = "no_response"
    days: int = Field(ge=1)


class KeywordTrigger(BaseModel):
    kind: Literal["keyword"] = "keyword"
    keywords: list[str] = Field(min_length=1)

    @field_validator("keywords")
    @classmethod
    def _non_blank(cls, v: list[str]) -> list[str]:
        cleaned = [k.strip() for k in v if k and k.strip()]
        if not cleaned:
            raise ValueError("at least one non-blank keyword is required")
        return cleaned


TriggerConfig = Annotated[
    Union[EventTrigger, NoResponseTrigger, KeywordTrigger],
    Field(discriminator="kind"),
]


def decode_trigger_config(trigger_type: TriggerType, raw: Optional[dict[str, Any]]) -> TriggerConfig:
    """Turn the stored opaque trigger_config map into its typed variant."""
    raw = raw or {}
    if trigger_type == TriggerType.NO_RESPONSE_FOR_DAYS:
        return NoResponseTrigger(days=raw.get("days"))
    if trigger_type == TriggerType.KEYWORD_MATCH:
        keywords = raw.get("keywords")
        if isinstance(keywords, str):
            keywords = keywords.split(",")
        return KeywordTrigger(keywords=keywords or [])
    return EventTrigger()


class AutoTaggingRule(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    enabled: bool = True
    priority: int = 100
    trigger_type: TriggerType
    trigger: TriggerConfig = Field(default_factory=EventTrigger)
    action_type: TagActionType
    target_tag: str
    condition_tags: list[str] = []
    condition_mode: ConditionMode = ConditionMode.ANY

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> "AutoTaggingRule":
        """
        Decode a stored rule record. Accepts the storage field names
        (tag_name, condition_tags_mode, trigger_config) as well as ours.
        """
        trigger_type = TriggerType(raw["trigger_type"])
        return cls(
            id=str(raw.get("id") or _new_id()),
            name=raw.get("name", ""),
            enabled=raw.get("enabled", True),
            priority=int(raw.get("priority", 100)),
            trigger_type=trigger_type,
            trigger=decode_trigger_config(trigger_type, raw.get("trigger_config")),
            action_type=TagActionType(raw["action_type"]),
            target_tag=raw.get("target_tag") or raw.get("tag_name") or "",
            condition_tags=list(raw.get("condition_tags") or []),
            condition_mode=ConditionMode(
                raw.get("condition_mode") or raw.get("condition_tags_mode") or "any"
            ),
        )


class ConversationEvent(BaseModel):
    """An event fed to the rule engine."""
    id: str = Field(default_factory=_new_id)
    trigger_type: TriggerType
    contact_id: str
    session_id: str = ""
    text: str = ""                                # message body for keyword rules
    days_without_response: Optional[int] = None   # elapsed silence for no-response rules
    occurred_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = {}


class ContactTagView(BaseModel):
    """Snapshot of a contact's tags handed to the rule engine."""
    contact_id: str
    tags: list[str] = []
    primary_tag: Optional[str] = None

    def has(self, tag: str) -> bool:
        return tag in self.tags


class TagMutation(BaseModel):
    """The diff one fired rule applied to the working tag set."""
    rule_id: str
    action_type: TagActionType
    target_tag: str
    added_tags: list[str] = []
    removed_tags: list[str] = []
    primary_tag: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.added_tags or self.removed_tags) or self.action_type == TagActionType.SET_PRIMARY_TAG


# ──────────────────────────────────────────────────────────────
#  Engine results
# ──────────────────────────────────────────────────────────────

class AdvanceResult(BaseModel):
    """What advance_step did: the new session plus the drip bookkeeping."""
    session: ConversationSession
    branch: ResponseBranch
    follow_up_message: str = ""
    completed: bool = False
    moved: bool = False                        # current step changed
    cancelled_drips: int = 0
    scheduled_drips: list[PendingDrip] = []
