"""
Session State Machine — Lifecycle rules for one conversation session.

    active ──advance(end)──→ completed
    active ──abandon──────→ abandoned ──recover──→ recovered
    recovered ──advance(end)──→ completed

Every transition is a pure function: it takes a session, validates the
source status, and returns a TransitionResult holding a *new* session (version
bumped, history record appended). Nothing is persisted here; the engine
writes the result and its drip bookkeeping in one store call.

Usage:
    sm = SessionStateMachine()
    result = sm.advance(session, flow, "Yes", now)
    result.session            # the updated copy
    result.record             # SessionTransitionRecord appended to history
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from core.errors import InvalidSessionTransition, UnknownResponseLabel
from models.schemas import (
    BranchAction, ConversationSession, FlowDefinition, OPEN_STATUSES,
    ResponseBranch, SessionStatus, SessionTransitionRecord, Step,
)


# Source statuses each operation accepts
ALLOWED_FROM: dict[str, tuple[SessionStatus, ...]] = {
    "advance": OPEN_STATUSES,
    "record_answer": OPEN_STATUSES,
    "reply": OPEN_STATUSES,
    "abandon": (SessionStatus.ACTIVE,),
    "recover": (SessionStatus.ABANDONED,),
}


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of applying one operation to a session."""

    def __init__(
        self,
        session: ConversationSession,
        record: SessionTransitionRecord,
        branch: Optional[ResponseBranch] = None,
        next_step: Optional[Step] = None,
    ):
        self.session = session
        self.record = record
        self.branch = branch
        self.next_step = next_step          # step whose drips should be scheduled, if any

    @property
    def from_status(self) -> SessionStatus:
        return self.record.from_status

    @property
    def to_status(self) -> SessionStatus:
        return self.record.to_status

    @property
    def moved(self) -> bool:
        return self.record.from_step_id != self.record.to_step_id

    def __repr__(self):
        return (f"<Transition {self.record.kind} {self.from_status.value} → "
                f"{self.to_status.value} step={self.record.to_step_id}>")


# ──────────────────────────────────────────────────────────────
#  Session State Machine
# ──────────────────────────────────────────────────────────────

class SessionStateMachine:
    """Pure lifecycle rules; holds no state of its own."""

    @staticmethod
    def _check(session: ConversationSession, operation: str) -> None:
        allowed = ALLOWED_FROM[operation]
        if session.status not in allowed:
            raise InvalidSessionTransition(
                session.id, operation, session.status.value,
                tuple(s.value for s in allowed),
            )

    @staticmethod
    def _commit(
        before: ConversationSession,
        after: ConversationSession,
        kind: str,
        now: datetime,
        response_label: str = "",
        metadata: dict[str, Any] = None,
    ) -> SessionTransitionRecord:
        record = SessionTransitionRecord(
            kind=kind,
            from_status=before.status,
            to_status=after.status,
            from_step_id=before.current_step_id,
            to_step_id=after.current_step_id,
            response_label=response_label,
            timestamp=now,
            metadata=metadata or {},
        )
        after.history.append(record)
        after.version = before.version + 1
        return record

    # ── Creation ──────────────────────────────────────────────

    def start(
        self,
        contact_id: str,
        flow: FlowDefinition,
        now: datetime,
        owner_id: str = "",
    ) -> TransitionResult:
        """New active session positioned on the flow's first step."""
        first = flow.first_step
        if first is None:
            raise ValueError(f"Flow '{flow.id}' has no steps")

        session = ConversationSession(
            owner_id=owner_id or flow.owner_id,
            contact_id=contact_id,
            flow_id=flow.id,
            status=SessionStatus.ACTIVE,
            started_at=now,
            last_activity_at=now,
            current_step_id=first.id,
            questions_total=len(flow.required_questions),
        )
        record = SessionTransitionRecord(
            kind="started",
            from_status=SessionStatus.ACTIVE,
            to_status=SessionStatus.ACTIVE,
            to_step_id=first.id,
            timestamp=now,
            metadata={"flow_version": flow.version},
        )
        session.history.append(record)
        return TransitionResult(session, record, next_step=first)

    # ── Transitions ───────────────────────────────────────────

    def advance(
        self,
        session: ConversationSession,
        flow: FlowDefinition,
        response_label: str,
        now: datetime,
        answers: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Follow the branch labelled `response_label` on the current step.
        `end` completes the session; otherwise the session moves to the
        branch's next step, or stays put when the branch names none.
        """
        self._check(session, "advance")

        step = flow.get_step(session.current_step_id)
        if step is None:
            raise UnknownResponseLabel(session.id, session.current_step_id, response_label)
        branch = step.find_response(response_label)
        if branch is None:
            raise UnknownResponseLabel(session.id, step.id, response_label, step.labels)

        after = session.snapshot()
        after.last_activity_at = now
        if answers:
            after.answered_questions.update(answers)

        next_step: Optional[Step] = None
        if branch.action == BranchAction.END:
            after.status = SessionStatus.COMPLETED
            after.completed_at = now
        else:
            if branch.next_step_id:
                next_step = flow.get_step(branch.next_step_id)
                if next_step is None:
                    raise UnknownResponseLabel(session.id, step.id, response_label, step.labels)
                after.current_step_id = next_step.id
            else:
                next_step = step

        record = self._commit(
            session, after, "advanced", now,
            response_label=branch.label,
            metadata={"action": branch.action.value},
        )
        return TransitionResult(after, record, branch=branch, next_step=next_step)

    def record_answer(
        self,
        session: ConversationSession,
        field_key: str,
        value: Any,
        now: datetime,
    ) -> TransitionResult:
        self._check(session, "record_answer")
        after = session.snapshot()
        after.answered_questions[field_key] = value
        after.last_activity_at = now
        record = self._commit(session, after, "answered", now, metadata={"field_key": field_key})
        return TransitionResult(after, record)

    def note_reply(self, session: ConversationSession, now: datetime) -> TransitionResult:
        """A reply that picked no branch still counts as activity."""
        self._check(session, "reply")
        after = session.snapshot()
        after.last_activity_at = now
        record = self._commit(session, after, "replied", now)
        return TransitionResult(after, record)

    def abandon(self, session: ConversationSession, now: datetime) -> TransitionResult:
        self._check(session, "abandon")
        after = session.snapshot()
        after.status = SessionStatus.ABANDONED
        record = self._commit(
            session, after, "abandoned", now,
            metadata={"idle_since": session.last_activity_at.isoformat()},
        )
        return TransitionResult(after, record)

    def recover(
        self,
        session: ConversationSession,
        now: datetime,
        max_idle: Optional[timedelta] = None,
    ) -> TransitionResult:
        """
        Reopen an abandoned session where it left off. With `max_idle`, a
        session silent for longer than the window can no longer be recovered.
        """
        self._check(session, "recover")
        if max_idle is not None and now - session.last_activity_at > max_idle:
            raise InvalidSessionTransition(
                session.id, "recover (recovery window expired)", session.status.value,
            )
        after = session.snapshot()
        after.status = SessionStatus.RECOVERED
        after.recovered_at = now
        after.last_activity_at = now
        record = self._commit(session, after, "recovered", now)
        return TransitionResult(after, record)

    # ── Flags (any status) ────────────────────────────────────

    def note_recovery_link_sent(self, session: ConversationSession, now: datetime) -> TransitionResult:
        after = session.snapshot()
        after.recovery_link_sent = True
        record = self._commit(session, after, "recovery_link_sent", now)
        return TransitionResult(after, record)

    def book_appointment(
        self,
        session: ConversationSession,
        when: datetime,
        now: datetime,
    ) -> TransitionResult:
        after = session.snapshot()
        after.appointment_booked = True
        after.appointment_time = when
        after.last_activity_at = now
        record = self._commit(
            session, after, "booked", now,
            metadata={"appointment_time": when.isoformat()},
        )
        return TransitionResult(after, record)
