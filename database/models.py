"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - No partial indexes: "one open session per (contact, flow)" is enforced by a
    plain unique index on open_key, which holds "contact:flow" while the
    session is open and NULL once it is closed (NULLs never collide).
  - String primary keys (uuid hex) — no database-specific sequences.
  - Timestamps are written as UTC; SQLite hands them back naive.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, ForeignKey,
    Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Conversation Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "conversation_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), default="")
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="active")
    open_key: Mapped[Optional[str]] = mapped_column(String(160), unique=True, nullable=True)

    current_step_id: Mapped[str] = mapped_column(String(64), default="")
    answered_questions: Mapped[Any] = mapped_column(JSON, default=dict)
    questions_total: Mapped[int] = mapped_column(Integer, default=0)

    appointment_booked: Mapped[bool] = mapped_column(Boolean, default=False)
    appointment_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    recovery_link_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    history: Mapped[Any] = mapped_column(JSON, default=list)
    version: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    recovered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_sessions_contact_flow", "contact_id", "flow_id"),
        Index("ix_sessions_status_activity", "status", "last_activity_at"),
        Index("ix_sessions_owner", "owner_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Pending Drips
# ──────────────────────────────────────────────────────────────

class DripRow(Base):
    __tablename__ = "pending_drips"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    session_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversation_sessions.id"), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), default="")
    step_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence_index: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(32), default="scheduled")
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    delivery_id: Mapped[str] = mapped_column(String(256), default="")
    failed_reason: Mapped[str] = mapped_column(Text, default="")

    __table_args__ = (
        Index("ix_drips_status_scheduled", "status", "scheduled_for"),
        Index("ix_drips_session_status", "session_id", "status"),
    )
