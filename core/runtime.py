"""
Runtime — assembles the engine, orchestrator and sweepers from settings.

    runtime = build_runtime()          # settings.yaml / LEADFLOW_CONFIG
    await runtime.start()              # init db (sql backend), start sweepers
    ...
    await runtime.stop()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from channels.webhook_transport import WebhookTransport
from config.settings import Settings, get_settings
from core.collaborators import MessageTransport, ResponseClassifier, TagStore
from core.engine import FlowEngine
from core.orchestrator import Orchestrator
from database.session import close_db, init_db
from database.store_base import BaseEngineStore
from database.store_factory import create_store
from flows.registry import FlowRegistry
from rules.engine import AutoTaggingEngine
from scheduling.sweeper import DripSweeper, IdleSessionSweeper

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    store: BaseEngineStore
    engine: FlowEngine
    orchestrator: Orchestrator
    drip_sweeper: DripSweeper
    idle_sweeper: IdleSessionSweeper

    async def start(self) -> None:
        if self.settings.database.store_backend == "sql":
            await init_db()
        await self.drip_sweeper.start()
        await self.idle_sweeper.start()
        logger.info("leadflow_started",
                    store=type(self.store).__name__,
                    flows=len(self.engine.flows.list_all()),
                    rules=len(self.orchestrator.tagging.list_rules()))

    async def stop(self) -> None:
        await self.drip_sweeper.stop()
        await self.idle_sweeper.stop()
        await self.orchestrator.transport.close()
        if self.settings.database.store_backend == "sql":
            await close_db()
        logger.info("leadflow_stopped")


def build_runtime(
    settings: Optional[Settings] = None,
    store: Optional[BaseEngineStore] = None,
    transport: Optional[MessageTransport] = None,
    classifier: Optional[ResponseClassifier] = None,
    tag_store: Optional[TagStore] = None,
) -> Runtime:
    """Wire every component from configuration; any collaborator can be injected."""
    settings = settings or get_settings()
    store = store or create_store({"store_backend": settings.database.store_backend})

    flows = FlowRegistry()
    flows.register_from_config(settings.flows)

    tagging = AutoTaggingEngine()
    tagging.load_rules(settings.auto_tagging_rules)

    window = settings.sessions.recovery_window_hours
    engine = FlowEngine(
        store,
        flows,
        settings.business_hours,
        delay_mode=settings.drips.delay_mode,
        recovery_window=timedelta(hours=window) if window else None,
    )
    transport = transport or WebhookTransport(settings.transport)
    orchestrator = Orchestrator(
        engine,
        transport,
        classifier=classifier,
        tagging=tagging,
        tag_store=tag_store,
        no_response_days=settings.sessions.no_response_days,
    )

    return Runtime(
        settings=settings,
        store=store,
        engine=engine,
        orchestrator=orchestrator,
        drip_sweeper=DripSweeper(
            engine, transport,
            interval_s=settings.drips.sweep_interval_seconds,
            batch_size=settings.drips.sweep_batch_size,
        ),
        idle_sweeper=IdleSessionSweeper(
            engine,
            idle_after=timedelta(minutes=settings.sessions.idle_timeout_minutes),
            interval_s=settings.sessions.idle_sweep_interval_seconds,
            no_response=orchestrator.check_no_response,
        ),
    )
