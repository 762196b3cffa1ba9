"""
Flow Engine — owns conversation sessions and their drip queue.

Every mutation goes through here:

    start_session       insert-if-absent on (contact, flow); first step's drips
    advance_step        follow a response branch; cancel + reschedule drips
    record_answer       merge a qualification answer
    mark_abandoned      active → abandoned; cancel drips
    sweep_idle          abandon every active session idle past a threshold
    recover             abandoned → recovered, same step and answers
    book_appointment    record a booking (status unchanged)

Mutations on one session are serialised by a per-session asyncio.Lock and
written with a single store call (session + drip cancellations + new drips),
guarded by the session's version. Callers only ever receive copies.
"""
from __future__ import annotations

import asyncio
import structlog
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence
from zoneinfo import ZoneInfo

from context.state_machine import SessionStateMachine, TransitionResult
from core.errors import InvalidSessionTransition, SessionConflict, SessionNotFound
from database.store_base import BaseEngineStore
from flows.registry import FlowRegistry
from models.schemas import (
    AdvanceResult, ConversationSession, DelayMode, DripMessage, DripStatus,
    FlowDefinition, PendingDrip, SessionStatus, WeeklyHours,
)
from scheduling.drips import DripScheduler

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowEngine:
    """
    Async façade over the session state machine, the drip scheduler and the
    store. One engine per owner; safe to share between asyncio tasks.
    """

    def __init__(
        self,
        store: BaseEngineStore,
        flows: FlowRegistry,
        calendar: WeeklyHours,
        delay_mode: DelayMode = DelayMode.FROM_STEP,
        recovery_window: Optional[timedelta] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.flows = flows
        self.scheduler = DripScheduler(store, calendar, delay_mode)
        self.machine = SessionStateMachine()
        self.recovery_window = recovery_window
        self.timezone = ZoneInfo(calendar.timezone)
        self._clock = clock or _utcnow
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ── Helpers ───────────────────────────────────────────────

    def now(self) -> datetime:
        return self.localize(self._clock())

    def localize(self, moment: datetime) -> datetime:
        """Naive moments are calendar-local wall time; aware ones pass through."""
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.timezone)
        return moment

    def resolve_now(self, now: Optional[datetime] = None) -> datetime:
        return self.localize(now) if now is not None else self.now()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _load(self, session_id: str) -> ConversationSession:
        session = await self.store.load_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def _commit(
        self,
        before: ConversationSession,
        result: TransitionResult,
        cancel_pending: bool = False,
        new_drips: Sequence[PendingDrip] = (),
    ) -> int:
        cancelled = await self.store.commit_session(
            result.session,
            expected_version=before.version,
            cancel_pending=cancel_pending,
            new_drips=new_drips,
        )
        logger.info("session_transition",
                    session_id=before.id,
                    kind=result.record.kind,
                    from_status=result.from_status.value,
                    to_status=result.to_status.value,
                    step=result.session.current_step_id,
                    cancelled_drips=cancelled,
                    new_drips=len(new_drips))
        return cancelled

    # ── Reads ─────────────────────────────────────────────────

    async def get_session(self, session_id: str) -> ConversationSession:
        return await self._load(session_id)

    async def find_open_session(self, contact_id: str, flow_id: str) -> Optional[ConversationSession]:
        return await self.store.find_open_session(contact_id, flow_id)

    async def list_drips(self, session_id: str, status: Optional[DripStatus] = None) -> list[PendingDrip]:
        return await self.store.list_drips(session_id, status)

    def flow_for(self, session: ConversationSession) -> FlowDefinition:
        return self.flows.require(session.flow_id)

    # ── Session creation ──────────────────────────────────────

    async def open_session(
        self,
        contact_id: str,
        flow_id: str,
        owner_id: str = "",
        now: Optional[datetime] = None,
    ) -> tuple[ConversationSession, bool]:
        """Like start_session, but also reports whether a new session was created."""
        now = self.resolve_now(now)
        flow = self.flows.require(flow_id)

        existing = await self.store.find_open_session(contact_id, flow_id)
        if existing:
            logger.debug("session_reused", session_id=existing.id, contact_id=contact_id, flow_id=flow_id)
            return existing, False

        result = self.machine.start(contact_id, flow, now, owner_id=owner_id)
        drips = self.scheduler.build_sequence(
            result.session, result.next_step.id, result.next_step.drip_sequence, anchor=now,
        )
        session, created = await self.store.insert_session_if_absent(result.session, drips)
        if created:
            logger.info("session_started",
                        session_id=session.id,
                        contact_id=contact_id,
                        flow_id=flow_id,
                        step=session.current_step_id,
                        drips=len(drips))
        return session, created

    async def start_session(
        self,
        contact_id: str,
        flow_id: str,
        owner_id: str = "",
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        """Return the open session for (contact, flow), creating it if there is none."""
        session, _ = await self.open_session(contact_id, flow_id, owner_id=owner_id, now=now)
        return session

    # ── Transitions ───────────────────────────────────────────

    async def advance_step(
        self,
        session_id: str,
        response_label: str,
        now: Optional[datetime] = None,
        drip_override: Optional[list[DripMessage]] = None,
        answers: Optional[dict[str, Any]] = None,
    ) -> AdvanceResult:
        """
        Follow the branch matching `response_label`. Pending drips are always
        cancelled; unless the branch ends the flow, the resulting step's drips
        (or `drip_override`) are scheduled from `now`.
        """
        now = self.resolve_now(now)
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            flow = self.flow_for(session)
            result = self.machine.advance(session, flow, response_label, now, answers=answers)

            new_drips: list[PendingDrip] = []
            if result.next_step is not None:
                sequence = drip_override if drip_override is not None else result.next_step.drip_sequence
                new_drips = self.scheduler.build_sequence(
                    result.session, result.next_step.id, sequence, anchor=now,
                )

            cancelled = await self._commit(session, result, cancel_pending=True, new_drips=new_drips)

        return AdvanceResult(
            session=result.session.snapshot(),
            branch=result.branch,
            follow_up_message=result.branch.follow_up_message,
            completed=result.to_status == SessionStatus.COMPLETED,
            moved=result.moved,
            cancelled_drips=cancelled,
            scheduled_drips=new_drips,
        )

    async def record_answer(
        self,
        session_id: str,
        field_key: str,
        value: Any,
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        now = self.resolve_now(now)
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            result = self.machine.record_answer(session, field_key, value, now)
            await self._commit(session, result)
        return result.session.snapshot()

    async def note_reply(self, session_id: str, now: Optional[datetime] = None) -> ConversationSession:
        """Record a reply that picked no branch: refresh activity, stop the drips."""
        now = self.resolve_now(now)
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            result = self.machine.note_reply(session, now)
            await self._commit(session, result, cancel_pending=True)
        return result.session.snapshot()

    async def mark_abandoned(self, session_id: str, now: Optional[datetime] = None) -> ConversationSession:
        now = self.resolve_now(now)
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            result = self.machine.abandon(session, now)
            await self._commit(session, result, cancel_pending=True)
        return result.session.snapshot()

    async def sweep_idle(
        self,
        idle_after: timedelta,
        now: Optional[datetime] = None,
        limit: int = 500,
    ) -> list[ConversationSession]:
        """Abandon every active session whose last activity is older than `idle_after`."""
        now = self.resolve_now(now)
        cutoff = now - idle_after
        abandoned = []

        for candidate in await self.store.list_sessions(
            status=SessionStatus.ACTIVE, idle_before=cutoff, limit=limit,
        ):
            async with self._lock_for(candidate.id):
                session = await self.store.load_session(candidate.id)
                # Re-check under the lock: a reply may have landed since the listing
                if (session is None or session.status != SessionStatus.ACTIVE
                        or session.last_activity_at >= cutoff):
                    continue
                try:
                    result = self.machine.abandon(session, now)
                    await self._commit(session, result, cancel_pending=True)
                except (InvalidSessionTransition, SessionConflict) as e:
                    logger.debug("idle_sweep_skipped", session_id=session.id, reason=str(e))
                    continue
            abandoned.append(result.session.snapshot())

        if abandoned:
            logger.info("idle_sessions_abandoned", count=len(abandoned), cutoff=cutoff.isoformat())
        return abandoned

    async def recover(
        self,
        session_id: str,
        now: Optional[datetime] = None,
        max_idle: Optional[timedelta] = None,
    ) -> ConversationSession:
        """
        Reopen an abandoned session on the step it was left on. Fails if the
        contact has since started another open session on the same flow.
        """
        now = self.resolve_now(now)
        window = max_idle if max_idle is not None else self.recovery_window
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            result = self.machine.recover(session, now, max_idle=window)

            other = await self.store.find_open_session(session.contact_id, session.flow_id)
            if other and other.id != session.id:
                raise InvalidSessionTransition(
                    session.id, f"recover (session {other.id} is already open)", session.status.value,
                )
            await self._commit(session, result)
        return result.session.snapshot()

    async def note_recovery_link_sent(self, session_id: str, now: Optional[datetime] = None) -> ConversationSession:
        now = self.resolve_now(now)
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            if session.recovery_link_sent:
                return session
            result = self.machine.note_recovery_link_sent(session, now)
            await self._commit(session, result)
        return result.session.snapshot()

    async def book_appointment(
        self,
        session_id: str,
        when: datetime,
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        now = self.resolve_now(now)
        async with self._lock_for(session_id):
            session = await self._load(session_id)
            result = self.machine.book_appointment(session, self.localize(when), now)
            await self._commit(session, result)
        return result.session.snapshot()

    # ── Drips ─────────────────────────────────────────────────

    async def due_drips(self, as_of: Optional[datetime] = None, limit: int = 100) -> list[PendingDrip]:
        return await self.scheduler.due_drips(self.resolve_now(as_of), limit)

    async def cancel_pending(self, session_id: str) -> int:
        async with self._lock_for(session_id):
            return await self.scheduler.cancel_pending(session_id)
