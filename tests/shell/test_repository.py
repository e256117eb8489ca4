"""Unit tests for server-side record handling."""

from datetime import date, datetime

import pytest

from habitsync.shell.repository import (
    ActivityPayload,
    ConflictError,
    InMemoryActivityRepository,
    apply_update,
    build_aggregate_record,
    build_event_record,
)


DAY = date(2024, 9, 10)


def payload(**overrides):
    fields = {"goal": "water", "date": DAY, "amount": 20}
    fields.update(overrides)
    return ActivityPayload(**fields)


class TestBuildRecords:
    def test_event_record(self):
        record = build_event_record("5", payload(timestamp=datetime(2024, 9, 10, 7, 15)))
        assert record == {
            "id": "5",
            "goal": "water",
            "date": "2024-09-10",
            "amount": 20,
            "description": None,
            "timestamp": "2024-09-10T07:15:00",
        }

    def test_aggregate_record(self):
        record = build_aggregate_record("7", DAY, {"water": 40}, {"water": "bottles"})
        assert record["water"] == 40
        assert record["water_desc"] == "bottles"
        assert "goal" not in record


class TestApplyUpdate:
    """Tests for PUT semantics on both shapes."""

    def test_event_replaced_in_place(self):
        record = build_event_record("5", payload(timestamp=datetime(2024, 9, 10, 7, 15)))
        updated = apply_update(record, payload(goal="protein", amount=30, description="shake"))
        assert updated["id"] == "5"
        assert updated["goal"] == "protein"
        assert updated["amount"] == 30
        assert updated["timestamp"] == "2024-09-10T07:15:00"

    def test_aggregate_sets_one_slot(self):
        record = build_aggregate_record("7", DAY, {"water": 40, "protein": 80})
        updated = apply_update(record, payload(amount=0))
        assert updated["water"] == 0
        assert updated["water_desc"] is None
        assert updated["protein"] == 80

    def test_aggregate_other_day_conflicts(self):
        record = build_aggregate_record("7", DAY, {"water": 40})
        with pytest.raises(ConflictError):
            apply_update(record, payload(date=date(2024, 9, 11)))

    def test_input_record_untouched(self):
        record = build_aggregate_record("7", DAY, {"water": 40})
        apply_update(record, payload(amount=1))
        assert record["water"] == 40


class TestInMemoryRepository:
    def test_ids_unique(self):
        repo = InMemoryActivityRepository()
        ids = {repo.create_event("u", payload())["id"] for _ in range(20)}
        assert len(ids) == 20

    def test_users_isolated(self):
        repo = InMemoryActivityRepository()
        repo.create_event("u1", payload())
        assert repo.list_records("u2") == []

    def test_update_and_delete(self):
        repo = InMemoryActivityRepository()
        record = repo.create_event("u", payload())
        assert repo.update_record("u", record["id"], payload(amount=9))["amount"] == 9
        assert repo.update_record("u", "missing", payload()) is None
        assert repo.delete_record("u", record["id"]) is True
        assert repo.delete_record("u", record["id"]) is False

    def test_returned_records_are_copies(self):
        repo = InMemoryActivityRepository()
        record = repo.create_event("u", payload())
        record["amount"] = 999
        assert repo.list_records("u")[0]["amount"] == 20
