"""Tests for the command dispatcher."""

import asyncio
from datetime import date

import pytest

from habitsync.core.errors import ValidationError
from habitsync.core.models import ActivityEvent
from habitsync.shell.commands import (
    CommandDispatcher,
    ConnectivityChanged,
    DeleteActivity,
    EditActivity,
    LogActivity,
    QuickAdd,
    Resync,
    VisibilityChanged,
    WindowFocused,
    create_sync_client,
)
from habitsync.shell.event_store import LocalEventStore, StoreConfig
from habitsync.shell.session import Session
from habitsync.shell.sync_engine import SyncConfig, SyncEngine, SyncState, SyncStatus


DAY = date(2024, 9, 10)


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def make_dispatcher(gateway, catalog, session=None, online=True):
    session = session or Session("hbt_token")
    engine = SyncEngine(
        LocalEventStore(catalog),
        gateway,
        session,
        catalog,
        SyncConfig(max_attempts=1, backoff_seconds=0),
        online=online,
    )
    return CommandDispatcher(engine, session)


class TestDispatch:
    """Tests for direct command dispatch."""

    def test_log_activity(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog)
            return await dispatcher.dispatch(LogActivity({"goal": "water", "date": DAY, "amount": 20}))

        result = _run(scenario())
        assert result.synced
        assert gateway.kinds() == ["create"]

    def test_quick_add_clamped_to_twice_target(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog)
            return await dispatcher.dispatch(QuickAdd(goal="water", amount=500, day=DAY))

        result = _run(scenario())
        assert result.event.amount == 128

    def test_quick_add_zero_rejected(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog)
            with pytest.raises(ValidationError):
                await dispatcher.dispatch(QuickAdd(goal="water", amount=0, day=DAY))

        _run(scenario())
        assert gateway.calls == []

    def test_quick_add_unknown_goal(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog)
            with pytest.raises(ValidationError):
                await dispatcher.dispatch(QuickAdd(goal="sleep", amount=5, day=DAY))

        _run(scenario())

    def test_edit_and_delete(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog)
            created = await dispatcher.dispatch(LogActivity({"goal": "water", "date": DAY, "amount": 20}))
            await dispatcher.dispatch(
                EditActivity(created.event.id, {"goal": "water", "date": DAY, "amount": 30})
            )
            edited_amount = gateway.events[created.event.id].amount
            await dispatcher.dispatch(DeleteActivity(created.event.id))
            return edited_amount

        assert _run(scenario()) == 30
        assert gateway.events == {}

    def test_environment_commands(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog)
            lost = await dispatcher.dispatch(ConnectivityChanged(False))
            state = dispatcher.engine.state
            regained = await dispatcher.dispatch(ConnectivityChanged(True))
            focus = await dispatcher.dispatch(WindowFocused())
            hidden = await dispatcher.dispatch(VisibilityChanged(False))
            manual = await dispatcher.dispatch(Resync())
            return lost, state, regained, focus, hidden, manual

        lost, state, regained, focus, hidden, manual = _run(scenario())
        assert lost is None
        assert state is SyncState.OFFLINE
        assert regained.status is SyncStatus.APPLIED
        assert focus.status is SyncStatus.APPLIED
        assert hidden is None
        assert manual.reason == "manual"

    def test_unknown_command(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog)
            with pytest.raises(TypeError):
                await dispatcher.dispatch("log water")

        _run(scenario())


class TestQueue:
    """Tests for the FIFO command queue."""

    def test_commands_handled_in_order(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog, online=False)
            runner = asyncio.create_task(dispatcher.run())
            futures = [
                dispatcher.submit(LogActivity({"goal": "water", "date": DAY, "amount": amount}))
                for amount in (10, 20, 30)
            ]
            results = await asyncio.gather(*futures)
            await dispatcher.drain()
            dispatcher.stop()
            await runner
            return dispatcher, results

        dispatcher, results = _run(scenario())
        assert [r.event.amount for r in results] == [10, 20, 30]
        assert dispatcher.engine.pending_count() == 3

    def test_failures_reach_the_future(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog)
            runner = asyncio.create_task(dispatcher.run())
            future = dispatcher.submit(LogActivity({"goal": "sleep", "date": DAY, "amount": 8}))
            with pytest.raises(ValidationError):
                await future
            dispatcher.stop()
            await runner

        _run(scenario())

    def test_session_change_queues_command(self, gateway, catalog):
        gateway.events = {}

        async def scenario():
            session = Session("hbt_token")
            dispatcher = make_dispatcher(gateway, catalog, session=session)
            runner = asyncio.create_task(dispatcher.run())
            await dispatcher.dispatch(LogActivity({"goal": "water", "date": DAY, "amount": 20}))
            session.sign_out()
            await asyncio.sleep(0)
            await dispatcher.drain()
            dispatcher.stop()
            await runner
            return dispatcher

        dispatcher = _run(scenario())
        assert dispatcher.engine.events() == []

    def test_start_loads_and_syncs(self, gateway, catalog):
        async def scenario():
            dispatcher = make_dispatcher(gateway, catalog)
            await dispatcher.start()

        _run(scenario())
        assert gateway.kinds() == ["fetch"]

    def test_sign_out_before_start_clears_cache(self, gateway, catalog, tmp_path):
        previous_run = LocalEventStore(catalog, StoreConfig(directory=tmp_path))
        previous_run.bind("hbt_token")
        previous_run.upsert_local(ActivityEvent(id="1", goal="water", date=DAY, amount=20))

        session = Session("hbt_token")
        engine = SyncEngine(
            LocalEventStore(catalog, StoreConfig(directory=tmp_path)),
            gateway,
            session,
            catalog,
            SyncConfig(max_attempts=1, backoff_seconds=0),
        )
        dispatcher = CommandDispatcher(engine, session)
        session.sign_out()
        _run(dispatcher.start())

        assert dispatcher.engine.events() == []
        assert gateway.calls == []
        reopened = LocalEventStore(catalog, StoreConfig(directory=tmp_path))
        reopened.bind("hbt_token")
        assert reopened.load() == []

    def test_sign_in_before_start_loads_that_user(self, gateway, catalog):
        gateway.events = {"1": ActivityEvent(id="1", goal="water", date=DAY, amount=20)}
        session = Session()
        dispatcher = make_dispatcher(gateway, catalog, session=session)
        session.sign_in("hbt_token")
        _run(dispatcher.start())

        assert gateway.kinds() == ["fetch"]
        assert [e.id for e in dispatcher.engine.events()] == ["1"]


class TestCreateSyncClient:
    def test_wires_from_environment(self, monkeypatch, tmp_path, catalog):
        monkeypatch.setenv("HABITSYNC_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("HABITSYNC_API_URL", "http://habits.test/api/habits")
        monkeypatch.setenv("HABITSYNC_MAX_ATTEMPTS", "5")

        dispatcher = create_sync_client(Session(), catalog)

        engine = dispatcher.engine
        assert engine.config.max_attempts == 5
        assert engine.catalog is catalog
        assert engine.state is SyncState.ONLINE_IDLE
