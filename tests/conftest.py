"""Shared test fixtures for the LeadFlow engine."""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from core.collaborators import CalendarCollaborator, MessageTransport
from core.engine import FlowEngine
from core.errors import TransportError
from database.store_memory import InMemoryEngineStore
from flows.registry import FlowRegistry
from models.schemas import (
    BranchAction, DripMessage, FlowDefinition, RequiredQuestion,
    ResponseBranch, Step, StepTag, WeeklyHours,
)

# 2024-01-01 is a Monday
MON_10 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected into the engine."""

    def __init__(self, start: datetime = MON_10):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingTransport(MessageTransport):
    """Keeps every message; can be told to fail."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent: list[dict[str, Any]] = []
        self.fail_with = fail_with

    async def send(self, contact_id: str, text: str, metadata: Optional[dict[str, Any]] = None) -> str:
        if self.fail_with:
            raise self.fail_with
        self.sent.append({"contact_id": contact_id, "text": text, "metadata": metadata or {}})
        return f"dlv_{len(self.sent)}"

    @property
    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent]


class FakeCalendar(CalendarCollaborator):
    def __init__(self):
        self.events: list[dict[str, Any]] = []

    async def create_event(self, contact_id, start, duration_minutes=30, title="", metadata=None) -> str:
        self.events.append({"contact_id": contact_id, "start": start, "title": title})
        return f"evt_{len(self.events)}"


@pytest.fixture
def calendar() -> WeeklyHours:
    """Mon-Fri 09:00-17:00 UTC."""
    return WeeklyHours.weekdays_9_to_5("UTC")


@pytest.fixture
def qualification_flow() -> FlowDefinition:
    """Three-step lead qualification flow with drips on the first two steps."""
    return FlowDefinition(
        id="qualify",
        name="Lead Qualification",
        owner_id="owner_1",
        steps=[
            Step(
                id="interest",
                outbound_message="Hi {{first}}! Still interested in a quote?",
                responses=[
                    ResponseBranch(label="Yes", follow_up_message="Great!", next_step_id="coverage"),
                    ResponseBranch(label="No", follow_up_message="No problem.", action=BranchAction.END),
                    ResponseBranch(label="Maybe", follow_up_message="Take your time."),
                ],
                drip_sequence=[
                    DripMessage(message="ping", delay_hours=2),
                    DripMessage(message="ping2", delay_hours=24),
                ],
                tag=StepTag(label="New Lead", color="#3b82f6"),
            ),
            Step(
                id="coverage",
                outbound_message="What type of coverage?",
                responses=[
                    ResponseBranch(label="Health", follow_up_message="Noted.", next_step_id="book"),
                    ResponseBranch(label="Auto", follow_up_message="Noted.", next_step_id="book"),
                ],
                drip_sequence=[DripMessage(message="nudge", delay_hours=4)],
            ),
            Step(
                id="book",
                outbound_message="Can we book a call?",
                responses=[
                    ResponseBranch(label="Yes", follow_up_message="Booked!", action=BranchAction.END),
                    ResponseBranch(label="Later", follow_up_message="Sure.", action=BranchAction.END),
                ],
            ),
        ],
        required_questions=[
            RequiredQuestion(question="Coverage type?", field_key="coverage"),
            RequiredQuestion(question="Household size?", field_key="household"),
        ],
    )


@pytest.fixture
def flow_registry(qualification_flow) -> FlowRegistry:
    registry = FlowRegistry()
    registry.register(qualification_flow)
    return registry


@pytest.fixture
def memory_store() -> InMemoryEngineStore:
    return InMemoryEngineStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(memory_store, flow_registry, calendar, clock) -> FlowEngine:
    return FlowEngine(memory_store, flow_registry, calendar, clock=clock)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def failing_transport() -> RecordingTransport:
    return RecordingTransport(fail_with=TransportError("gateway down", retryable=True))


@pytest.fixture
def fake_calendar() -> FakeCalendar:
    return FakeCalendar()
