"""
InMemoryEngineStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlEngineStore
  - Atomic units guarded by one asyncio.Lock (single event loop)
  - Stores and returns deep copies, so callers never hold live state
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional, Sequence

from core.errors import SessionConflict
from database.store_base import BaseEngineStore
from models.schemas import ConversationSession, DripStatus, PendingDrip, SessionStatus

logger = structlog.get_logger()


class InMemoryEngineStore(BaseEngineStore):
    """Full-featured in-memory store with the same interface as SqlEngineStore."""

    def __init__(self):
        self._sessions: dict[str, ConversationSession] = {}      # id → session
        self._drips: dict[str, PendingDrip] = {}                 # id → drip

        # Indexes
        self._open_index: dict[str, str] = {}                    # "contact:flow" → session_id
        self._session_drips: dict[str, list[str]] = defaultdict(list)  # session_id → [drip_ids]
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Sessions ──────────────────────────────────────────

    async def load_session(self, session_id: str) -> Optional[ConversationSession]:
        session = self._sessions.get(session_id)
        return session.snapshot() if session else None

    async def find_open_session(self, contact_id: str, flow_id: str) -> Optional[ConversationSession]:
        sid = self._open_index.get(f"{contact_id}:{flow_id}")
        return await self.load_session(sid) if sid else None

    async def insert_session_if_absent(
        self, session: ConversationSession, drips: Sequence[PendingDrip] = (),
    ) -> tuple[ConversationSession, bool]:
        async with self._lock:
            key = session.open_key
            existing_id = self._open_index.get(key) if key else None
            if existing_id:
                return self._sessions[existing_id].snapshot(), False
            self._sessions[session.id] = session.snapshot()
            if key:
                self._open_index[key] = session.id
            self._insert_drips(drips)
            return session.snapshot(), True

    async def commit_session(
        self,
        session: ConversationSession,
        expected_version: int,
        cancel_pending: bool = False,
        new_drips: Sequence[PendingDrip] = (),
    ) -> int:
        async with self._lock:
            current = self._sessions.get(session.id)
            if current is None or current.version != expected_version:
                raise SessionConflict(session.id, expected_version)

            new_key = session.open_key
            holder = self._open_index.get(new_key) if new_key else None
            if holder and holder != session.id:
                raise SessionConflict(session.id, expected_version)

            old_key = current.open_key
            if old_key and self._open_index.get(old_key) == session.id and old_key != new_key:
                del self._open_index[old_key]
            if new_key:
                self._open_index[new_key] = session.id
            self._sessions[session.id] = session.snapshot()

            cancelled = self._cancel_scheduled(session.id) if cancel_pending else 0
            self._insert_drips(new_drips)
            return cancelled

    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        idle_before: Optional[datetime] = None,
        contact_id: str = "",
        limit: int = 500,
    ) -> list[ConversationSession]:
        found = [
            s for s in self._sessions.values()
            if (status is None or s.status == status)
            and (idle_before is None or s.last_activity_at < idle_before)
            and (not contact_id or s.contact_id == contact_id)
        ]
        found.sort(key=lambda s: s.last_activity_at)
        return [s.snapshot() for s in found[:limit]]

    # ── Drips ─────────────────────────────────────────────

    async def add_drips(self, drips: Sequence[PendingDrip]) -> None:
        async with self._lock:
            self._insert_drips(drips)

    async def cancel_pending_drips(self, session_id: str) -> int:
        async with self._lock:
            return self._cancel_scheduled(session_id)

    async def get_drip(self, drip_id: str) -> Optional[PendingDrip]:
        drip = self._drips.get(drip_id)
        return drip.model_copy() if drip else None

    async def list_drips(self, session_id: str, status: Optional[DripStatus] = None) -> list[PendingDrip]:
        drips = [self._drips[d] for d in self._session_drips.get(session_id, [])]
        if status is not None:
            drips = [d for d in drips if d.status == status]
        return [d.model_copy() for d in drips]

    async def due_drips(self, as_of: datetime, limit: int = 100) -> list[PendingDrip]:
        due = [
            d for d in self._drips.values()
            if d.status == DripStatus.SCHEDULED and d.scheduled_for <= as_of
        ]
        due.sort(key=lambda d: (d.scheduled_for, d.sequence_index))
        return [d.model_copy() for d in due[:limit]]

    async def transition_drip(
        self,
        drip_id: str,
        from_statuses: Sequence[DripStatus],
        to_status: DripStatus,
        **fields: Any,
    ) -> bool:
        async with self._lock:
            drip = self._drips.get(drip_id)
            if drip is None or drip.status not in from_statuses:
                return False
            self._drips[drip_id] = drip.model_copy(update={"status": to_status, **fields})
            return True

    # ── Helpers ───────────────────────────────────────────

    def _insert_drips(self, drips: Sequence[PendingDrip]) -> None:
        for drip in drips:
            self._drips[drip.id] = drip.model_copy()
            self._session_drips[drip.session_id].append(drip.id)

    def _cancel_scheduled(self, session_id: str) -> int:
        cancelled = 0
        for drip_id in self._session_drips.get(session_id, []):
            drip = self._drips[drip_id]
            if drip.status == DripStatus.SCHEDULED:
                self._drips[drip_id] = drip.model_copy(update={"status": DripStatus.CANCELLED})
                cancelled += 1
        return cancelled

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "open_sessions": len(self._open_index),
            "drips": len(self._drips),
            "scheduled_drips": sum(1 for d in self._drips.values() if d.status == DripStatus.SCHEDULED),
        }
