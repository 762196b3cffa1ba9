"""
Orchestrator — wires inbound events to the engine, the classifier, the
transport and the auto-tagging rules.

  Start:   open session → send first step → MESSAGE_SENT
  Reply:   MESSAGE_RECEIVED (+ LEAD_REPLIED_FIRST_TIME, KEYWORD_MATCH)
           → classify → advance_step → send follow-up and next step
  Booking: book_appointment → calendar event → APPOINTMENT_BOOKED
  Silence: check_no_response → NO_RESPONSE_FOR_DAYS per quiet session

Session effects and tag effects are independent: a reply that cannot be
classified still feeds the rule engine.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel

from core.collaborators import (
    CalendarCollaborator, ClassificationResult, InMemoryTagStore,
    LabelMatchClassifier, MessageTransport, ResponseClassifier, TagStore,
)
from core.engine import FlowEngine
from core.errors import TransportError, UnknownResponseLabel
from flows.render import render_message
from models.schemas import (
    AdvanceResult, ConversationEvent, ConversationSession, SessionStatus,
    TagMutation, TriggerType,
)
from rules.engine import AutoTaggingEngine

logger = structlog.get_logger()


class ReplyOutcome(BaseModel):
    session: ConversationSession
    classification: ClassificationResult
    advance: Optional[AdvanceResult] = None
    delivery_ids: list[str] = []
    tag_mutations: list[TagMutation] = []


class Orchestrator:
    """
    Generic coordinator. Flow logic lives in the flow definitions and the
    engine; tag logic lives in the rules. This class only routes.
    """

    def __init__(
        self,
        engine: FlowEngine,
        transport: MessageTransport,
        classifier: Optional[ResponseClassifier] = None,
        tagging: Optional[AutoTaggingEngine] = None,
        tag_store: Optional[TagStore] = None,
        calendar: Optional[CalendarCollaborator] = None,
        no_response_days: int = 3,
    ):
        self.engine = engine
        self.transport = transport
        self.classifier = classifier or LabelMatchClassifier()
        self.tagging = tagging or AutoTaggingEngine()
        self.tag_store = tag_store or InMemoryTagStore()
        self.calendar = calendar
        self.no_response_days = no_response_days

    # ── Tag events ────────────────────────────────────────────

    async def emit(self, event: ConversationEvent) -> list[TagMutation]:
        """Evaluate the rules for one event and persist the resulting mutations."""
        contact = await self.tag_store.get_tags(event.contact_id)
        mutations = self.tagging.evaluate(event, contact)
        effective = [m for m in mutations if m.changed]
        if effective:
            await self.tag_store.apply(event.contact_id, effective)
        elif mutations:
            logger.debug("tag_rules_no_change", contact_id=event.contact_id, fired=len(mutations))
        return mutations

    async def _emit(
        self,
        trigger: TriggerType,
        contact_id: str,
        session_id: str = "",
        text: str = "",
        now: Optional[datetime] = None,
        **metadata: Any,
    ) -> list[TagMutation]:
        return await self.emit(ConversationEvent(
            trigger_type=trigger,
            contact_id=contact_id,
            session_id=session_id,
            text=text,
            occurred_at=self.engine.resolve_now(now),
            metadata=metadata,
        ))

    async def lead_created(self, contact_id: str, now: Optional[datetime] = None) -> list[TagMutation]:
        return await self._emit(TriggerType.LEAD_CREATED, contact_id, now=now)

    # ── Outbound ──────────────────────────────────────────────

    async def _send(
        self,
        session: ConversationSession,
        template: str,
        variables: Optional[dict[str, Any]],
        kind: str,
        now: Optional[datetime] = None,
    ) -> str:
        text = render_message(template, variables)
        if not text.strip():
            return ""
        try:
            delivery_id = await self.transport.send(
                session.contact_id, text,
                metadata={"session_id": session.id, "kind": kind},
            )
        except TransportError as e:
            logger.error("message_send_failed",
                         session_id=session.id, contact_id=session.contact_id,
                         kind=kind, error=str(e))
            return ""
        logger.info("message_sent", session_id=session.id, kind=kind, delivery_id=delivery_id)
        await self._emit(TriggerType.MESSAGE_SENT, session.contact_id, session.id, text, now=now, kind=kind)
        return delivery_id

    async def start_conversation(
        self,
        contact_id: str,
        flow_id: str,
        variables: Optional[dict[str, Any]] = None,
        owner_id: str = "",
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        """Open (or reuse) the session and send the first step when it is new."""
        session, created = await self.engine.open_session(contact_id, flow_id, owner_id=owner_id, now=now)
        if created:
            step = self.engine.flow_for(session).get_step(session.current_step_id)
            await self._send(session, step.outbound_message, variables, "step", now=now)
        return session

    # ── Inbound ───────────────────────────────────────────────

    async def handle_reply(
        self,
        session_id: str,
        text: str,
        variables: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ReplyOutcome:
        now = self.engine.resolve_now(now)
        session = await self.engine.get_session(session_id)
        first_reply = not any(r.kind in ("advanced", "replied") for r in session.history)

        mutations = await self._emit(TriggerType.MESSAGE_RECEIVED, session.contact_id, session.id, text, now=now)
        if first_reply:
            mutations += await self._emit(
                TriggerType.LEAD_REPLIED_FIRST_TIME, session.contact_id, session.id, text, now=now,
            )
        mutations += await self._emit(TriggerType.KEYWORD_MATCH, session.contact_id, session.id, text, now=now)

        outcome = ReplyOutcome(
            session=session,
            classification=ClassificationResult(confidence=0.0),
            tag_mutations=mutations,
        )
        if not session.is_open:
            logger.info("reply_to_closed_session", session_id=session.id, status=session.status.value)
            return outcome

        flow = self.engine.flow_for(session)
        step = flow.get_step(session.current_step_id)
        classification = await self.classifier.classify(text, step)
        outcome.classification = classification

        if not classification.response_label:
            session = await self.engine.note_reply(session.id, now=now)
            for key, value in classification.answered_questions.items():
                session = await self.engine.record_answer(session.id, key, value, now=now)
            outcome.session = session
            logger.info("reply_unclassified", session_id=session.id, step=step.id)
            return outcome

        try:
            result = await self.engine.advance_step(
                session.id,
                classification.response_label,
                now=now,
                drip_override=classification.drip_override,
                answers=classification.answered_questions,
            )
        except UnknownResponseLabel as e:
            logger.warning("classifier_label_unknown", session_id=session.id, label=e.label, known=e.known)
            outcome.session = await self.engine.note_reply(session.id, now=now)
            return outcome

        outcome.advance = result
        outcome.session = result.session

        delivered = [await self._send(result.session, result.follow_up_message, variables, "follow_up", now=now)]
        if result.moved and not result.completed:
            next_step = flow.get_step(result.session.current_step_id)
            delivered.append(await self._send(result.session, next_step.outbound_message, variables, "step", now=now))
        outcome.delivery_ids = [d for d in delivered if d]
        return outcome

    async def book_appointment(
        self,
        session_id: str,
        when: datetime,
        duration_minutes: int = 30,
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        session = await self.engine.book_appointment(session_id, when, now=now)
        if self.calendar:
            flow = self.engine.flow_for(session)
            event_id = await self.calendar.create_event(
                session.contact_id, when, duration_minutes,
                title=flow.name, metadata={"session_id": session.id},
            )
            logger.info("calendar_event_created", session_id=session.id, event_id=event_id)
        await self._emit(TriggerType.APPOINTMENT_BOOKED, session.contact_id, session.id, now=now,
                         appointment_time=when.isoformat())
        return session

    # ── Silence ───────────────────────────────────────────────

    async def check_no_response(
        self,
        now: Optional[datetime] = None,
        days: Optional[int] = None,
        limit: int = 500,
    ) -> dict[str, int]:
        """Emit NO_RESPONSE_FOR_DAYS for every unfinished session quiet for at least `days`."""
        now = self.engine.resolve_now(now)
        if days is None:
            days = self.no_response_days
        cutoff = now - timedelta(days=days)
        stats = {"checked": 0, "tagged": 0}

        for status in (SessionStatus.ACTIVE, SessionStatus.RECOVERED, SessionStatus.ABANDONED):
            for session in await self.engine.store.list_sessions(status=status, idle_before=cutoff, limit=limit):
                stats["checked"] += 1
                silent_days = (now - session.last_activity_at).days
                mutations = await self.emit(ConversationEvent(
                    trigger_type=TriggerType.NO_RESPONSE_FOR_DAYS,
                    contact_id=session.contact_id,
                    session_id=session.id,
                    days_without_response=silent_days,
                    occurred_at=now,
                ))
                if mutations:
                    stats["tagged"] += 1
        return stats
