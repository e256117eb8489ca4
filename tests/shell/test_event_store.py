"""Tests for the local event store - slot files, degradation, id reassignment."""

import json
from datetime import date

import pytest

from habitsync.core.goals import GoalCatalog
from habitsync.core.models import ActivityEvent, PendingOperation
from habitsync.shell.event_store import LocalEventStore, StoreConfig, identity_scope


def make_event(event_id, goal="water", amount=20):
    return ActivityEvent(id=event_id, goal=goal, date=date(2024, 9, 10), amount=amount)


@pytest.fixture
def store(tmp_path):
    return LocalEventStore(GoalCatalog(), StoreConfig(directory=tmp_path))


class TestPersistence:
    """Tests for slot persistence."""

    def test_empty_load(self, store):
        assert store.load() == []

    def test_survives_restart(self, tmp_path, store):
        store.upsert_local(make_event("a"))
        store.upsert_local(make_event("b", goal="protein"))

        reopened = LocalEventStore(GoalCatalog(), StoreConfig(directory=tmp_path))
        assert sorted(e.id for e in reopened.load()) == ["a", "b"]

    def test_slot_file_names(self, tmp_path, store):
        store.upsert_local(make_event("a"))
        store.save_outbox([PendingOperation(kind="create", event_id="a", event=make_event("a"))])
        assert (tmp_path / "habitTracker_activities.json").exists()
        assert (tmp_path / "habitTracker_outbox.json").exists()

    def test_namespace(self, tmp_path):
        store = LocalEventStore(GoalCatalog(), StoreConfig(directory=tmp_path, namespace="other"))
        store.upsert_local(make_event("a"))
        assert (tmp_path / "other_activities.json").exists()

    def test_replace_overwrites(self, tmp_path, store):
        store.upsert_local(make_event("a"))
        store.replace([make_event("b")])
        reopened = LocalEventStore(GoalCatalog(), StoreConfig(directory=tmp_path))
        assert [e.id for e in reopened.load()] == ["b"]

    def test_remove(self, store):
        store.upsert_local(make_event("a"))
        assert store.remove_local("a") is True
        assert store.remove_local("a") is False
        assert store.snapshot() == []

    def test_legacy_aggregate_rows_normalized(self, tmp_path):
        """Cached rows in the aggregate shape load as synthetic events."""
        (tmp_path / "habitTracker_activities.json").write_text(
            json.dumps([{"id": 17, "date": "2024-09-10", "water": 40, "protein": 80}])
        )
        store = LocalEventStore(GoalCatalog(), StoreConfig(directory=tmp_path))
        assert sorted(e.id for e in store.load()) == ["17-protein", "17-water"]

    def test_unreadable_slot_discarded(self, tmp_path):
        (tmp_path / "habitTracker_activities.json").write_text("{not json")
        store = LocalEventStore(GoalCatalog(), StoreConfig(directory=tmp_path))
        assert store.load() == []
        assert not store.memory_only

    def test_outbox_round_trip(self, tmp_path, store):
        op = PendingOperation(kind="update", event_id="a", event=make_event("a", amount=5), previous=make_event("a"))
        store.save_outbox([op])

        reopened = LocalEventStore(GoalCatalog(), StoreConfig(directory=tmp_path))
        [loaded] = reopened.load_outbox()
        assert loaded.op_id == op.op_id
        assert loaded.event.amount == 5
        assert loaded.previous.amount == 20

    def test_clear(self, tmp_path, store):
        store.upsert_local(make_event("a"))
        store.save_outbox([PendingOperation(kind="delete", event_id="a")])
        store.clear()

        reopened = LocalEventStore(GoalCatalog(), StoreConfig(directory=tmp_path))
        assert reopened.load() == []
        assert reopened.load_outbox() == []
        assert reopened.rejected() == []

    def test_rejected_round_trip(self, tmp_path, store):
        op = PendingOperation(kind="create", event_id="a", event=make_event("a"))
        store.save_rejected([op])
        assert (tmp_path / "habitTracker_rejected.json").exists()

        reopened = LocalEventStore(GoalCatalog(), StoreConfig(directory=tmp_path))
        assert reopened.load_outbox() == []
        assert [r.op_id for r in reopened.rejected()] == [op.op_id]


class TestIdentityScope:
    """Each signed-in user gets their own slot files."""

    def test_scoped_slot_names(self, tmp_path, store):
        store.bind("hbt_userA")
        store.upsert_local(make_event("a"))
        assert store.scope == identity_scope("hbt_userA")
        assert (tmp_path / f"habitTracker_{store.scope}_activities.json").exists()
        assert not (tmp_path / "habitTracker_activities.json").exists()

    def test_credential_not_in_file_names(self, tmp_path, store):
        store.bind("hbt_userA")
        store.upsert_local(make_event("a"))
        assert all("hbt_userA" not in p.name for p in tmp_path.iterdir())

    def test_users_do_not_see_each_other(self, tmp_path, store):
        store.bind("hbt_userA")
        store.upsert_local(make_event("a"))
        store.save_outbox([PendingOperation(kind="create", event_id="a", event=make_event("a"))])

        store.bind("hbt_userB")
        assert store.snapshot() == []
        assert store.load() == []
        assert store.load_outbox() == []

        store.bind("hbt_userA")
        assert [e.id for e in store.load()] == ["a"]
        assert len(store.load_outbox()) == 1

    def test_unbound_uses_plain_names(self, store):
        store.bind(None)
        assert store.scope is None
        assert identity_scope("") is None


class TestDegradation:
    """A failing medium never fails the caller."""

    def test_memory_only_without_directory(self):
        store = LocalEventStore(GoalCatalog())
        assert store.memory_only
        store.upsert_local(make_event("a"))
        assert [e.id for e in store.snapshot()] == ["a"]

    def test_write_failure_degrades(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        # A regular file where the directory should be makes every write fail
        store = LocalEventStore(GoalCatalog(), StoreConfig(directory=blocker / "data"))

        store.upsert_local(make_event("a"))

        assert store.memory_only
        assert [e.id for e in store.snapshot()] == ["a"]
        store.upsert_local(make_event("b"))
        assert len(store.snapshot()) == 2


class TestReassignId:
    """Tests for replacing client ids with server ids."""

    def test_event_renamed(self, store):
        store.upsert_local(make_event("local-1"))
        assert store.reassign_id("local-1", "1726000000000") is True
        assert store.get("local-1") is None
        assert store.get("1726000000000").amount == 20

    def test_pending_ops_follow(self, store):
        store.upsert_local(make_event("local-1", amount=30))
        store.save_outbox([
            PendingOperation(
                kind="update",
                event_id="local-1",
                event=make_event("local-1", amount=30),
                previous=make_event("local-1"),
            )
        ])

        store.reassign_id("local-1", "99")

        [op] = store.pending()
        assert op.event_id == "99"
        assert op.event.id == "99"
        assert op.previous.id == "99"

    def test_unknown_id(self, store):
        assert store.reassign_id("local-1", "99") is False
