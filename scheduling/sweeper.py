"""
Sweepers — periodic background work for the engine.

  DripSweeper          claim due drips, send them, record the outcome
  IdleSessionSweeper   abandon idle sessions, raise no-response events

Both run as asyncio tasks started at application startup:

    sweeper = DripSweeper(engine, transport, interval_s=60)
    await sweeper.start()
    ...
    await sweeper.stop()

A drip is claimed (scheduled → sent) before it is handed to the transport,
so two sweepers never deliver the same drip. A lost claim is logged at
debug and skipped.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from core.collaborators import MessageTransport
from core.engine import FlowEngine
from core.errors import StaleDripClaim
from flows.render import render_message
from models.schemas import PendingDrip

logger = structlog.get_logger()

VariablesFn = Callable[[str], Awaitable[dict[str, Any]]]
SentHook = Callable[[PendingDrip, str], Awaitable[None]]
NoResponseFn = Callable[[datetime], Awaitable[dict[str, int]]]


class _PeriodicSweeper:
    """start/stop plumbing shared by the sweepers."""

    name = "sweeper"

    def __init__(self, interval_s: float):
        self.interval_s = interval_s
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name=self.name)
        logger.info(f"{self.name}_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        """Gracefully stop the loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info(f"{self.name}_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{self.name}_cycle_error", error=str(e))

            await asyncio.sleep(self.interval_s)

    async def sweep_cycle(self, now: Optional[datetime] = None) -> dict[str, int]:
        raise NotImplementedError


class DripSweeper(_PeriodicSweeper):
    """
    Sends due drips. Configure in settings:
        drips:
          sweep_interval_seconds: 60
          sweep_batch_size: 100
    """

    name = "drip_sweeper"

    def __init__(
        self,
        engine: FlowEngine,
        transport: MessageTransport,
        interval_s: float = 60,
        batch_size: int = 100,
        variables_for: Optional[VariablesFn] = None,
        on_sent: Optional[SentHook] = None,
    ):
        super().__init__(interval_s)
        self.engine = engine
        self.transport = transport
        self.batch_size = batch_size
        self._variables_for = variables_for
        self._on_sent = on_sent

    async def sweep_cycle(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Single sweep:
        1. List scheduled drips due at `now`
        2. Claim each one (scheduled → sent)
        3. Send it; on failure move it to failed

        Returns counts: {"due": N, "sent": N, "failed": N, "stale": N}
        """
        now = self.engine.resolve_now(now)
        scheduler = self.engine.scheduler
        stats = {"due": 0, "sent": 0, "failed": 0, "stale": 0}

        due = await scheduler.due_drips(now, self.batch_size)
        stats["due"] = len(due)

        for drip in due:
            try:
                await scheduler.mark_sent(drip.id, now=now)
            except StaleDripClaim as e:
                logger.debug("drip_claim_lost", drip_id=drip.id, error=str(e))
                stats["stale"] += 1
                continue

            try:
                variables = await self._variables_for(drip.contact_id) if self._variables_for else {}
                delivery_id = await self.transport.send(
                    drip.contact_id,
                    render_message(drip.message, variables),
                    metadata={"session_id": drip.session_id, "drip_id": drip.id, "kind": "drip"},
                )
            except Exception as e:
                logger.error("drip_send_failed", drip_id=drip.id, session_id=drip.session_id, error=str(e))
                try:
                    await scheduler.release_failed_claim(drip.id, str(e))
                except StaleDripClaim as stale:
                    logger.debug("drip_fail_mark_lost", drip_id=drip.id, error=str(stale))
                stats["failed"] += 1
                continue

            if delivery_id:
                try:
                    await scheduler.record_delivery(drip.id, delivery_id)
                except StaleDripClaim as e:
                    logger.debug("drip_delivery_record_lost", drip_id=drip.id, error=str(e))
            stats["sent"] += 1
            logger.info("drip_sent",
                        drip_id=drip.id,
                        session_id=drip.session_id,
                        sequence_index=drip.sequence_index,
                        delivery_id=delivery_id)
            if self._on_sent:
                await self._on_sent(drip, delivery_id)

        return stats


class IdleSessionSweeper(_PeriodicSweeper):
    """
    Abandons sessions idle longer than `idle_after` and, when given a
    no-response callback (Orchestrator.check_no_response), raises the
    silence events for the auto-tagging rules.
    """

    name = "idle_session_sweeper"

    def __init__(
        self,
        engine: FlowEngine,
        idle_after: timedelta,
        interval_s: float = 300,
        no_response: Optional[NoResponseFn] = None,
    ):
        super().__init__(interval_s)
        self.engine = engine
        self.idle_after = idle_after
        self._no_response = no_response

    async def sweep_cycle(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = self.engine.resolve_now(now)
        stats = {"abandoned": 0, "no_response_tagged": 0}

        if self._no_response:
            result = await self._no_response(now)
            stats["no_response_tagged"] = result.get("tagged", 0)

        abandoned = await self.engine.sweep_idle(self.idle_after, now=now)
        stats["abandoned"] = len(abandoned)
        return stats
