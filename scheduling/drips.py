"""
Drip Scheduler — turns a step's drip sequence into concrete queued sends.

For each drip the raw instant is computed from the anchor, then only that
instant is snapped into business hours:

    from_step   raw_i = anchor + delay_i
    cumulative  raw_i = raw_{i-1} + delay_i        (raw_0 = anchor)

Snapping never feeds back into the chain. Sending a drip never advances
the session.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Optional, Sequence

from core.errors import StaleDripClaim
from database.store_base import BaseEngineStore
from models.schemas import (
    ConversationSession, DelayMode, DripMessage, DripStatus, PendingDrip,
    WeeklyHours,
)
from scheduling.business_hours import next_business_moment

logger = structlog.get_logger()


class DripScheduler:
    """Computes send times and owns the drip queue operations."""

    def __init__(
        self,
        store: BaseEngineStore,
        calendar: WeeklyHours,
        delay_mode: DelayMode = DelayMode.FROM_STEP,
    ):
        self.store = store
        self.calendar = calendar
        self.delay_mode = DelayMode(delay_mode)

    # ── Computation (pure) ────────────────────────────────────

    def send_times(self, drip_sequence: Sequence[DripMessage], anchor: datetime) -> list[datetime]:
        """Business-hours-adjusted send instant for each drip, in order."""
        times = []
        raw = anchor
        for drip in drip_sequence:
            base = raw if self.delay_mode == DelayMode.CUMULATIVE else anchor
            raw = base + timedelta(hours=drip.delay_hours)
            times.append(next_business_moment(raw, self.calendar))
        return times

    def build_sequence(
        self,
        session: ConversationSession,
        step_id: str,
        drip_sequence: Sequence[DripMessage],
        anchor: datetime,
    ) -> list[PendingDrip]:
        """PendingDrip records for a sequence, not yet persisted."""
        return [
            PendingDrip(
                session_id=session.id,
                contact_id=session.contact_id,
                step_id=step_id,
                sequence_index=i,
                message=drip.message,
                scheduled_for=when,
                created_at=anchor,
            )
            for i, (drip, when) in enumerate(zip(drip_sequence, self.send_times(drip_sequence, anchor)))
        ]

    # ── Queue operations ──────────────────────────────────────

    async def schedule_sequence(
        self,
        session: ConversationSession,
        drip_sequence: Sequence[DripMessage],
        anchor: datetime,
        step_id: Optional[str] = None,
    ) -> list[PendingDrip]:
        """Build and persist a sequence for `session` (default: its current step)."""
        drips = self.build_sequence(session, step_id or session.current_step_id, drip_sequence, anchor)
        if drips:
            await self.store.add_drips(drips)
            logger.info("drips_scheduled",
                        session_id=session.id,
                        count=len(drips),
                        first_at=drips[0].scheduled_for.isoformat())
        return drips

    async def cancel_pending(self, session_id: str) -> int:
        cancelled = await self.store.cancel_pending_drips(session_id)
        if cancelled:
            logger.info("drips_cancelled", session_id=session_id, count=cancelled)
        return cancelled

    async def due_drips(self, as_of: datetime, limit: int = 100) -> list[PendingDrip]:
        return await self.store.due_drips(as_of, limit)

    async def mark_sent(self, drip_id: str, delivery_id: str = "", now: Optional[datetime] = None) -> None:
        """Claim a scheduled drip as sent. Raises StaleDripClaim if another worker got there first."""
        expected = (DripStatus.SCHEDULED,)
        ok = await self.store.transition_drip(
            drip_id, expected, DripStatus.SENT,
            sent_at=now, delivery_id=delivery_id,
        )
        if not ok:
            raise StaleDripClaim(drip_id, tuple(s.value for s in expected), DripStatus.SENT.value)

    async def record_delivery(self, drip_id: str, delivery_id: str) -> None:
        """Attach the transport's delivery id to a drip already claimed as sent."""
        expected = (DripStatus.SENT,)
        ok = await self.store.transition_drip(drip_id, expected, DripStatus.SENT, delivery_id=delivery_id)
        if not ok:
            raise StaleDripClaim(drip_id, tuple(s.value for s in expected), DripStatus.SENT.value)

    async def mark_failed(self, drip_id: str, reason: str) -> None:
        """A scheduled drip could not be delivered. Raises StaleDripClaim if it already left scheduled."""
        await self._fail(drip_id, (DripStatus.SCHEDULED,), reason)

    async def release_failed_claim(self, drip_id: str, reason: str) -> None:
        """The worker that claimed this drip (scheduled → sent) could not deliver it."""
        await self._fail(drip_id, (DripStatus.SENT,), reason)

    async def _fail(self, drip_id: str, expected: tuple[DripStatus, ...], reason: str) -> None:
        ok = await self.store.transition_drip(
            drip_id, expected, DripStatus.FAILED, failed_reason=reason,
        )
        if not ok:
            raise StaleDripClaim(drip_id, tuple(s.value for s in expected), DripStatus.FAILED.value)
        logger.warning("drip_failed", drip_id=drip_id, reason=reason)
