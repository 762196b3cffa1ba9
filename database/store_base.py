"""
Abstract Engine Store — Interface for all storage backends.

Implementations:
  - SqlEngineStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryEngineStore (dict-based, single-process, no persistence)

Atomicity contract (every backend must honour it):
  - insert_session_if_absent: at most one open session per (contact, flow);
    the session and its initial drips land together or not at all.
  - commit_session: the session update, the cancellation of its scheduled
    drips and the insertion of new drips are one unit.
  - transition_drip: a conditional status change; returns False if the drip
    was no longer in one of the expected statuses.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, Sequence

from models.schemas import ConversationSession, DripStatus, PendingDrip, SessionStatus


class BaseEngineStore(ABC):
    """Interface that all engine store backends must implement."""

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def load_session(self, session_id: str) -> Optional[ConversationSession]:
        ...

    @abstractmethod
    async def find_open_session(self, contact_id: str, flow_id: str) -> Optional[ConversationSession]:
        ...

    @abstractmethod
    async def insert_session_if_absent(
        self, session: ConversationSession, drips: Sequence[PendingDrip] = (),
    ) -> tuple[ConversationSession, bool]:
        """Returns (session, created). When not created, the existing open session is returned."""
        ...

    @abstractmethod
    async def commit_session(
        self,
        session: ConversationSession,
        expected_version: int,
        cancel_pending: bool = False,
        new_drips: Sequence[PendingDrip] = (),
    ) -> int:
        """Persist `session` (version bumped by the caller). Returns the number of drips cancelled."""
        ...

    @abstractmethod
    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        idle_before: Optional[datetime] = None,
        contact_id: str = "",
        limit: int = 500,
    ) -> list[ConversationSession]:
        ...

    # ── Drips ─────────────────────────────────────────────────

    @abstractmethod
    async def add_drips(self, drips: Sequence[PendingDrip]) -> None:
        ...

    @abstractmethod
    async def cancel_pending_drips(self, session_id: str) -> int:
        ...

    @abstractmethod
    async def get_drip(self, drip_id: str) -> Optional[PendingDrip]:
        ...

    @abstractmethod
    async def list_drips(self, session_id: str, status: Optional[DripStatus] = None) -> list[PendingDrip]:
        ...

    @abstractmethod
    async def due_drips(self, as_of: datetime, limit: int = 100) -> list[PendingDrip]:
        ...

    @abstractmethod
    async def transition_drip(
        self,
        drip_id: str,
        from_statuses: Sequence[DripStatus],
        to_status: DripStatus,
        **fields: Any,
    ) -> bool:
        ...
