"""Activity Repository - server-side storage for the /api/habits service.

Holds both record shapes in one id namespace: aggregate rows imported from
the aggregate-era schema and event rows written by current clients. The
in-memory backend here is the default; Firestore lives in firestore_client.
"""

import logging
import threading
import time
from datetime import date, datetime
from datetime import date as DateType
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field, field_validator

from ..core.adapter import DESCRIPTION_SUFFIX, classify
from ..core.errors import HabitSyncError
from ..core.models import to_naive_utc


logger = logging.getLogger(__name__)


class ConflictError(HabitSyncError):
    """The write contradicts the stored record (HTTP 409)."""


class RepositoryError(HabitSyncError):
    """The storage backend failed (HTTP 500)."""


class ActivityPayload(BaseModel):
    """The `activity` object of POST and PUT bodies."""

    goal: str = Field(min_length=1)
    date: DateType
    amount: float = Field(ge=0)
    description: Optional[str] = None
    timestamp: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None


class ActivityRepository(Protocol):
    def list_records(self, user_id: str) -> list[dict[str, Any]]: ...

    def create_event(self, user_id: str, activity: ActivityPayload) -> dict[str, Any]: ...

    def update_record(self, user_id: str, record_id: str, activity: ActivityPayload) -> dict[str, Any] | None: ...

    def delete_record(self, user_id: str, record_id: str) -> bool: ...


def build_event_record(record_id: str, activity: ActivityPayload) -> dict[str, Any]:
    """Event-shape record for a newly created activity."""
    timestamp = activity.timestamp or datetime.utcnow()
    return {
        "id": record_id,
        "goal": activity.goal,
        "date": activity.date.isoformat(),
        "amount": activity.amount,
        "description": activity.description,
        "timestamp": timestamp.isoformat(),
    }


def build_aggregate_record(
    record_id: str,
    day: date,
    amounts: dict[str, float],
    descriptions: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Aggregate-shape row as the aggregate-era schema stored it."""
    now = datetime.utcnow().isoformat()
    record: dict[str, Any] = {"id": record_id, "date": day.isoformat(), "created_at": now, "updated_at": now}
    record.update(amounts)
    for goal, text in (descriptions or {}).items():
        record[f"{goal}{DESCRIPTION_SUFFIX}"] = text
    return record


def apply_update(record: dict[str, Any], activity: ActivityPayload) -> dict[str, Any]:
    """Apply a PUT to a stored record of either shape.

    Event rows are replaced in place, keeping id and timestamp. Aggregate
    rows only have the named goal's column (and its description) set.

    Raises:
        ConflictError: If the PUT would move an aggregate row to another day
    """
    updated = dict(record)
    if classify(record) == "event":
        updated.update(
            goal=activity.goal,
            date=activity.date.isoformat(),
            amount=activity.amount,
            description=activity.description,
        )
        return updated

    if activity.date.isoformat() != str(record.get("date")):
        raise ConflictError(f"Row {record.get('id')} belongs to {record.get('date')}, not {activity.date}")
    updated[activity.goal] = activity.amount
    updated[f"{activity.goal}{DESCRIPTION_SUFFIX}"] = activity.description
    updated["updated_at"] = datetime.utcnow().isoformat()
    return updated


class InMemoryActivityRepository:
    """Process-local storage. Data is lost on restart.

    Ids are millisecond timestamps, bumped to stay unique.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self._last_id = 0

    def _next_id(self) -> str:
        self._last_id = max(self._last_id + 1, int(time.time() * 1000))
        return str(self._last_id)

    def _user_records(self, user_id: str) -> dict[str, dict[str, Any]]:
        return self._records.setdefault(user_id, {})

    def list_records(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._user_records(user_id).values()]

    def create_event(self, user_id: str, activity: ActivityPayload) -> dict[str, Any]:
        with self._lock:
            record = build_event_record(self._next_id(), activity)
            self._user_records(user_id)[record["id"]] = record
        logger.info("Added activity %s for %s", record["id"], user_id[:8])
        return dict(record)

    def put_aggregate(
        self,
        user_id: str,
        day: date,
        amounts: dict[str, float],
        descriptions: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Store an aggregate-shape row (legacy import)."""
        with self._lock:
            record = build_aggregate_record(self._next_id(), day, amounts, descriptions)
            self._user_records(user_id)[record["id"]] = record
        return dict(record)

    def update_record(self, user_id: str, record_id: str, activity: ActivityPayload) -> dict[str, Any] | None:
        with self._lock:
            records = self._user_records(user_id)
            record = records.get(record_id)
            if record is None:
                return None
            records[record_id] = apply_update(record, activity)
            return dict(records[record_id])

    def delete_record(self, user_id: str, record_id: str) -> bool:
        with self._lock:
            return self._user_records(user_id).pop(record_id, None) is not None
