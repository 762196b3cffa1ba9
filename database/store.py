"""
SqlEngineStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

Concurrency guarantees come from the database, not from Python locks:
  - unique open_key column → one open session per (contact, flow)
  - version column         → optimistic check on every session update
  - conditional UPDATEs    → drip status changes race safely across workers
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError

from core.errors import SessionConflict
from database.models import SessionRow, DripRow
from database.session import SessionScope, get_session
from database.store_base import BaseEngineStore
from models.schemas import (
    ConversationSession, DripStatus, PendingDrip, SessionStatus,
)

logger = structlog.get_logger()


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to UTC before writing; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; they were written as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlEngineStore(BaseEngineStore):
    """
    Persistent engine store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.

    `scope` is a transactional session factory; it defaults to the global
    get_session(), tests pass one bound to their own engine.
    """

    def __init__(self, scope: Optional[SessionScope] = None):
        self._scope = scope or get_session

    # ── Session operations ─────────────────────────────────

    async def load_session(self, session_id: str) -> Optional[ConversationSession]:
        async with self._scope() as db:
            row = await db.get(SessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def find_open_session(self, contact_id: str, flow_id: str) -> Optional[ConversationSession]:
        async with self._scope() as db:
            stmt = select(SessionRow).where(SessionRow.open_key == f"{contact_id}:{flow_id}")
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def insert_session_if_absent(
        self, session: ConversationSession, drips: Sequence[PendingDrip] = (),
    ) -> tuple[ConversationSession, bool]:
        try:
            async with self._scope() as db:
                db.add(SessionRow(**self._session_values(session), id=session.id))
                await db.flush()
                db.add_all([self._drip_to_row(d) for d in drips])
        except IntegrityError:
            existing = await self.find_open_session(session.contact_id, session.flow_id)
            if existing is None:
                # The winner closed again before we could read it
                raise SessionConflict(session.id, session.version)
            logger.debug("session_insert_lost_race",
                         contact_id=session.contact_id, flow_id=session.flow_id,
                         existing_id=existing.id)
            return existing, False
        return session.snapshot(), True

    async def commit_session(
        self,
        session: ConversationSession,
        expected_version: int,
        cancel_pending: bool = False,
        new_drips: Sequence[PendingDrip] = (),
    ) -> int:
        try:
            async with self._scope() as db:
                result = await db.execute(
                    update(SessionRow)
                    .where(and_(
                        SessionRow.id == session.id,
                        SessionRow.version == expected_version,
                    ))
                    .values(**self._session_values(session))
                )
                if result.rowcount != 1:
                    raise SessionConflict(session.id, expected_version)

                cancelled = 0
                if cancel_pending:
                    cancelled = await self._cancel_scheduled(db, session.id)
                db.add_all([self._drip_to_row(d) for d in new_drips])
        except IntegrityError as exc:
            # open_key already held by another session for this pair
            raise SessionConflict(session.id, expected_version) from exc
        return cancelled

    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        idle_before: Optional[datetime] = None,
        contact_id: str = "",
        limit: int = 500,
    ) -> list[ConversationSession]:
        async with self._scope() as db:
            stmt = select(SessionRow)
            if status is not None:
                stmt = stmt.where(SessionRow.status == status.value)
            if idle_before is not None:
                stmt = stmt.where(SessionRow.last_activity_at < _to_utc(idle_before))
            if contact_id:
                stmt = stmt.where(SessionRow.contact_id == contact_id)
            stmt = stmt.order_by(SessionRow.last_activity_at).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars().all()]

    # ── Drip operations ────────────────────────────────────

    async def add_drips(self, drips: Sequence[PendingDrip]) -> None:
        async with self._scope() as db:
            db.add_all([self._drip_to_row(d) for d in drips])

    async def cancel_pending_drips(self, session_id: str) -> int:
        async with self._scope() as db:
            return await self._cancel_scheduled(db, session_id)

    async def get_drip(self, drip_id: str) -> Optional[PendingDrip]:
        async with self._scope() as db:
            row = await db.get(DripRow, drip_id)
            return self._row_to_drip(row) if row else None

    async def list_drips(self, session_id: str, status: Optional[DripStatus] = None) -> list[PendingDrip]:
        async with self._scope() as db:
            stmt = select(DripRow).where(DripRow.session_id == session_id)
            if status is not None:
                stmt = stmt.where(DripRow.status == status.value)
            stmt = stmt.order_by(DripRow.scheduled_for, DripRow.sequence_index)
            result = await db.execute(stmt)
            return [self._row_to_drip(r) for r in result.scalars().all()]

    async def due_drips(self, as_of: datetime, limit: int = 100) -> list[PendingDrip]:
        async with self._scope() as db:
            stmt = (
                select(DripRow)
                .where(and_(
                    DripRow.status == DripStatus.SCHEDULED.value,
                    DripRow.scheduled_for <= _to_utc(as_of),
                ))
                .order_by(DripRow.scheduled_for, DripRow.sequence_index)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_drip(r) for r in result.scalars().all()]

    async def transition_drip(
        self,
        drip_id: str,
        from_statuses: Sequence[DripStatus],
        to_status: DripStatus,
        **fields: Any,
    ) -> bool:
        values = {k: _to_utc(v) if isinstance(v, datetime) else v for k, v in fields.items()}
        async with self._scope() as db:
            result = await db.execute(
                update(DripRow)
                .where(and_(
                    DripRow.id == drip_id,
                    DripRow.status.in_([s.value for s in from_statuses]),
                ))
                .values(status=to_status.value, **values)
            )
            return result.rowcount == 1

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    async def _cancel_scheduled(db, session_id: str) -> int:
        result = await db.execute(
            update(DripRow)
            .where(and_(
                DripRow.session_id == session_id,
                DripRow.status == DripStatus.SCHEDULED.value,
            ))
            .values(status=DripStatus.CANCELLED.value)
        )
        return result.rowcount or 0

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _session_values(session: ConversationSession) -> dict[str, Any]:
        dumped = session.model_dump(mode="json", include={"answered_questions", "history"})
        return {
            "owner_id": session.owner_id,
            "contact_id": session.contact_id,
            "flow_id": session.flow_id,
            "status": session.status.value,
            "open_key": session.open_key,
            "current_step_id": session.current_step_id,
            "answered_questions": dumped["answered_questions"],
            "questions_total": session.questions_total,
            "appointment_booked": session.appointment_booked,
            "appointment_time": _to_utc(session.appointment_time),
            "recovery_link_sent": session.recovery_link_sent,
            "history": dumped["history"],
            "version": session.version,
            "started_at": _to_utc(session.started_at),
            "last_activity_at": _to_utc(session.last_activity_at),
            "completed_at": _to_utc(session.completed_at),
            "recovered_at": _to_utc(session.recovered_at),
        }

    @staticmethod
    def _row_to_session(row: SessionRow) -> ConversationSession:
        return ConversationSession(
            id=row.id,
            owner_id=row.owner_id or "",
            contact_id=row.contact_id,
            flow_id=row.flow_id,
            status=SessionStatus(row.status),
            started_at=_from_db(row.started_at),
            last_activity_at=_from_db(row.last_activity_at),
            completed_at=_from_db(row.completed_at),
            recovered_at=_from_db(row.recovered_at),
            current_step_id=row.current_step_id or "",
            answered_questions=row.answered_questions or {},
            questions_total=row.questions_total or 0,
            appointment_booked=bool(row.appointment_booked),
            appointment_time=_from_db(row.appointment_time),
            recovery_link_sent=bool(row.recovery_link_sent),
            version=row.version or 0,
            history=row.history or [],
        )

    @staticmethod
    def _drip_to_row(drip: PendingDrip) -> DripRow:
        return DripRow(
            id=drip.id,
            session_id=drip.session_id,
            contact_id=drip.contact_id,
            step_id=drip.step_id,
            sequence_index=drip.sequence_index,
            message=drip.message,
            status=drip.status.value,
            scheduled_for=_to_utc(drip.scheduled_for),
            created_at=_to_utc(drip.created_at),
            sent_at=_to_utc(drip.sent_at),
            delivery_id=drip.delivery_id,
            failed_reason=drip.failed_reason,
        )

    @staticmethod
    def _row_to_drip(row: DripRow) -> PendingDrip:
        return PendingDrip(
            id=row.id,
            session_id=row.session_id,
            contact_id=row.contact_id or "",
            step_id=row.step_id,
            sequence_index=row.sequence_index or 0,
            message=row.message,
            scheduled_for=_from_db(row.scheduled_for),
            status=DripStatus(row.status),
            created_at=_from_db(row.created_at),
            sent_at=_from_db(row.sent_at),
            delivery_id=row.delivery_id or "",
            failed_reason=row.failed_reason or "",
        )
