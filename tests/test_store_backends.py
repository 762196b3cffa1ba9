"""
Engine store contract — the same tests run against the in-memory store and
the SQL store on a throwaway SQLite file.
"""
import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import create_async_engine

import config.settings as settings_module
from config.settings import load_settings
from core.engine import FlowEngine
from core.errors import SessionConflict
from database.session import close_db, init_db, make_session_scope
from database.store import SqlEngineStore
from database.store_factory import create_store, reset_store
from database.store_memory import InMemoryEngineStore
from models.schemas import (
    ConversationSession, DripStatus, PendingDrip, SessionStatus, SessionTransitionRecord,
    WeeklyHours,
)

UTC = timezone.utc
MON_10 = datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
NAIVE_MON_10 = datetime(2024, 1, 1, 10, 0)


def later(**kwargs) -> datetime:
    return MON_10 + timedelta(**kwargs)


def make_session(contact_id="c1", flow_id="qualify", **kwargs) -> ConversationSession:
    return ConversationSession(
        contact_id=contact_id, flow_id=flow_id, current_step_id="interest",
        started_at=MON_10, last_activity_at=kwargs.pop("last_activity_at", MON_10),
        questions_total=2, **kwargs,
    )


def make_drip(session: ConversationSession, index: int, when: datetime) -> PendingDrip:
    return PendingDrip(
        session_id=session.id, contact_id=session.contact_id, step_id="interest",
        sequence_index=index, message=f"drip {index}", scheduled_for=when, created_at=MON_10,
    )


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryEngineStore()
        return
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'leadflow.db'}")
    await init_db(engine)
    yield SqlEngineStore(make_session_scope(engine))
    await engine.dispose()


@pytest.mark.asyncio
class TestSessions:
    async def test_insert_and_load(self, store):
        session = make_session(answered_questions={"coverage": "auto"})
        stored, created = await store.insert_session_if_absent(session)
        assert created
        loaded = await store.load_session(session.id)
        assert loaded.contact_id == "c1"
        assert loaded.answered_questions == {"coverage": "auto"}
        assert loaded.started_at == MON_10
        assert loaded.started_at.tzinfo is not None

    async def test_missing_session(self, store):
        assert await store.load_session("nope") is None

    async def test_one_open_session_per_pair(self, store):
        first, _ = await store.insert_session_if_absent(make_session())
        winner, created = await store.insert_session_if_absent(make_session())
        assert not created
        assert winner.id == first.id
        assert (await store.find_open_session("c1", "qualify")).id == first.id

    async def test_other_pairs_are_independent(self, store):
        await store.insert_session_if_absent(make_session())
        _, created_contact = await store.insert_session_if_absent(make_session(contact_id="c2"))
        _, created_flow = await store.insert_session_if_absent(make_session(flow_id="other"))
        assert created_contact and created_flow

    async def test_insert_with_drips(self, store):
        session = make_session()
        await store.insert_session_if_absent(session, [make_drip(session, 0, later(hours=2))])
        assert len(await store.list_drips(session.id)) == 1

    async def test_commit_checks_version(self, store):
        session, _ = await store.insert_session_if_absent(make_session())
        updated = session.model_copy(update={"version": 1, "current_step_id": "coverage"})
        await store.commit_session(updated, expected_version=0)
        assert (await store.load_session(session.id)).current_step_id == "coverage"

        stale = session.model_copy(update={"version": 1, "current_step_id": "book"})
        with pytest.raises(SessionConflict):
            await store.commit_session(stale, expected_version=0)
        assert (await store.load_session(session.id)).current_step_id == "coverage"

    async def test_closing_releases_pair(self, store):
        session, _ = await store.insert_session_if_absent(make_session())
        done = session.model_copy(update={"status": SessionStatus.COMPLETED, "version": 1})
        await store.commit_session(done, expected_version=0)
        assert await store.find_open_session("c1", "qualify") is None
        _, created = await store.insert_session_if_absent(make_session())
        assert created

    async def test_reopen_blocked_by_other_open_session(self, store):
        old, _ = await store.insert_session_if_absent(make_session())
        abandoned = old.model_copy(update={"status": SessionStatus.ABANDONED, "version": 1})
        await store.commit_session(abandoned, expected_version=0)
        newer, _ = await store.insert_session_if_absent(make_session())

        reopened = abandoned.model_copy(update={"status": SessionStatus.RECOVERED, "version": 2})
        with pytest.raises(SessionConflict):
            await store.commit_session(reopened, expected_version=1)
        assert (await store.find_open_session("c1", "qualify")).id == newer.id
        assert (await store.load_session(old.id)).status == SessionStatus.ABANDONED

    async def test_commit_cancels_and_adds_drips(self, store):
        session, _ = await store.insert_session_if_absent(make_session())
        await store.add_drips([make_drip(session, 0, later(hours=2)), make_drip(session, 1, later(days=1))])
        moved = session.model_copy(update={"version": 1, "current_step_id": "coverage"})
        cancelled = await store.commit_session(
            moved, expected_version=0, cancel_pending=True,
            new_drips=[make_drip(session, 0, later(hours=5))],
        )
        assert cancelled == 2
        scheduled = await store.list_drips(session.id, DripStatus.SCHEDULED)
        assert [d.scheduled_for for d in scheduled] == [later(hours=5)]

    async def test_list_sessions_filters(self, store):
        quiet, _ = await store.insert_session_if_absent(make_session(contact_id="quiet"))
        await store.insert_session_if_absent(make_session(contact_id="busy", last_activity_at=later(days=2)))
        idle = await store.list_sessions(status=SessionStatus.ACTIVE, idle_before=later(days=1))
        assert [s.id for s in idle] == [quiet.id]
        assert len(await store.list_sessions(contact_id="busy")) == 1
        assert await store.list_sessions(status=SessionStatus.COMPLETED) == []

    async def test_history_round_trip(self, store):
        session = make_session(history=[SessionTransitionRecord(
            kind="started", from_status=SessionStatus.ACTIVE, to_status=SessionStatus.ACTIVE,
            to_step_id="interest", timestamp=MON_10,
        )])
        await store.insert_session_if_absent(session)
        loaded = await store.load_session(session.id)
        assert [r.kind for r in loaded.history] == ["started"]
        assert loaded.history[0].timestamp == MON_10


@pytest.mark.asyncio
class TestDrips:
    async def _seed(self, store):
        session, _ = await store.insert_session_if_absent(make_session())
        drips = [make_drip(session, 1, later(days=1)), make_drip(session, 0, later(hours=2))]
        await store.add_drips(drips)
        return session, drips

    async def test_due_ordering_and_limit(self, store):
        await self._seed(store)
        due = await store.due_drips(later(days=2))
        assert [d.sequence_index for d in due] == [0, 1]
        assert len(await store.due_drips(later(days=2), limit=1)) == 1
        assert await store.due_drips(later(hours=1)) == []

    async def test_due_boundary_inclusive(self, store):
        await self._seed(store)
        assert len(await store.due_drips(later(hours=2))) == 1

    async def test_non_utc_query_time(self, store):
        await self._seed(store)
        eastern = timezone(timedelta(hours=-5))
        assert len(await store.due_drips(later(hours=2).astimezone(eastern))) == 1

    async def test_transition_is_conditional(self, store):
        _, drips = await self._seed(store)
        drip_id = drips[1].id
        assert await store.transition_drip(drip_id, [DripStatus.SCHEDULED], DripStatus.SENT,
                                           sent_at=later(hours=2), delivery_id="d1")
        assert not await store.transition_drip(drip_id, [DripStatus.SCHEDULED], DripStatus.SENT)
        stored = await store.get_drip(drip_id)
        assert stored.status == DripStatus.SENT
        assert stored.delivery_id == "d1"
        assert stored.sent_at == later(hours=2)

    async def test_cancel_pending_only_touches_scheduled(self, store):
        session, drips = await self._seed(store)
        await store.transition_drip(drips[1].id, [DripStatus.SCHEDULED], DripStatus.SENT)
        assert await store.cancel_pending_drips(session.id) == 1
        statuses = sorted(d.status.value for d in await store.list_drips(session.id))
        assert statuses == ["cancelled", "sent"]

    async def test_unknown_drip(self, store):
        assert await store.get_drip("nope") is None
        assert not await store.transition_drip("nope", [DripStatus.SCHEDULED], DripStatus.SENT)


@pytest.mark.asyncio
class TestEngineOnStore:
    async def test_reply_cancels_and_reschedules(self, store, flow_registry, calendar):
        engine = FlowEngine(store, flow_registry, calendar, clock=lambda: MON_10)
        session = await engine.start_session("c1", "qualify")
        result = await engine.advance_step(session.id, "Yes", now=later(hours=1))
        assert result.cancelled_drips == 2

        drips = await engine.list_drips(session.id)
        assert sorted(d.status.value for d in drips) == ["cancelled", "cancelled", "scheduled"]
        [pending] = await engine.list_drips(session.id, DripStatus.SCHEDULED)
        assert pending.step_id == "coverage"
        assert pending.scheduled_for == later(hours=5)

        reloaded = await engine.get_session(session.id)
        assert reloaded.version == 1
        assert [r.kind for r in reloaded.history] == ["started", "advanced"]

    async def test_abandon_and_recover(self, store, flow_registry, calendar):
        engine = FlowEngine(store, flow_registry, calendar, clock=lambda: MON_10)
        session = await engine.start_session("c1", "qualify")
        [abandoned] = await engine.sweep_idle(timedelta(hours=24), now=later(days=2))
        assert abandoned.id == session.id
        assert await engine.find_open_session("c1", "qualify") is None
        recovered = await engine.recover(session.id, now=later(days=3))
        assert recovered.status == SessionStatus.RECOVERED
        assert (await engine.find_open_session("c1", "qualify")).id == session.id

    async def test_concurrent_starts_create_one_session(self, store, flow_registry, calendar):
        engine = FlowEngine(store, flow_registry, calendar, clock=lambda: MON_10)
        sessions = await asyncio.gather(*[engine.start_session("c1", "qualify") for _ in range(50)])
        assert len({s.id for s in sessions}) == 1
        assert len(await store.list_sessions(status=SessionStatus.ACTIVE)) == 1
        assert len(await store.list_drips(sessions[0].id)) == 2

    async def test_naive_clock_recover_and_sweep(self, store, flow_registry, calendar):
        engine = FlowEngine(store, flow_registry, calendar, clock=lambda: NAIVE_MON_10)
        session = await engine.start_session("c1", "qualify")
        assert session.started_at == MON_10

        [abandoned] = await engine.sweep_idle(timedelta(hours=24), now=NAIVE_MON_10 + timedelta(days=2))
        assert abandoned.id == session.id
        assert await engine.sweep_idle(timedelta(hours=24), now=NAIVE_MON_10 + timedelta(days=2)) == []

        recovered = await engine.recover(
            session.id, now=NAIVE_MON_10 + timedelta(days=3), max_idle=timedelta(days=7),
        )
        assert recovered.status == SessionStatus.RECOVERED
        assert recovered.recovered_at == later(days=3)

        result = await engine.advance_step(session.id, "Yes", now=NAIVE_MON_10 + timedelta(days=3, hours=1))
        assert result.session.current_step_id == "coverage"

    async def test_naive_clock_is_calendar_local(self, store, flow_registry):
        new_york = WeeklyHours.weekdays_9_to_5("America/New_York")
        engine = FlowEngine(store, flow_registry, new_york, clock=lambda: NAIVE_MON_10)
        session = await engine.start_session("c1", "qualify")
        # 10:00 in New York is 15:00 UTC
        assert session.started_at == datetime(2024, 1, 1, 15, 0, tzinfo=UTC)
        drips = sorted(await engine.list_drips(session.id), key=lambda d: d.sequence_index)
        assert [d.scheduled_for for d in drips] == [
            datetime(2024, 1, 1, 17, 0, tzinfo=UTC),
            datetime(2024, 1, 2, 15, 0, tzinfo=UTC),
        ]
        assert await engine.due_drips(datetime(2024, 1, 1, 11, 59)) == []
        assert len(await engine.due_drips(datetime(2024, 1, 1, 12, 0))) == 1


class TestStoreFactory:
    def setup_method(self):
        reset_store()

    def teardown_method(self):
        reset_store()

    def test_memory_default(self):
        assert isinstance(create_store(), InMemoryEngineStore)

    def test_sql_backend(self):
        assert isinstance(create_store({"store_backend": "sql"}), SqlEngineStore)

    def test_unknown_backend_falls_back(self):
        assert isinstance(create_store({"store_backend": "cassandra"}), InMemoryEngineStore)

    def test_singleton(self):
        assert create_store() is create_store({"store_backend": "sql"})


@pytest.mark.asyncio
class TestGlobalSession:
    async def test_default_scope_uses_configured_database(self, tmp_path, monkeypatch):
        monkeypatch.setattr(settings_module, "_settings", None)
        path = tmp_path / "settings.yaml"
        path.write_text(f'database:\n  url: "sqlite:///{tmp_path / "global.db"}"\n')
        load_settings(str(path))
        try:
            await init_db()
            store = SqlEngineStore()
            stored, created = await store.insert_session_if_absent(make_session())
            assert created
            assert (await store.load_session(stored.id)).contact_id == "c1"
        finally:
            await close_db()
