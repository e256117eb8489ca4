"""Representation Adapter - converts between wire shapes and ActivityEvent.

Two server contracts have existed:

    aggregate shape:  {id, date, water, protein, exercise, water_desc, ...}
                      one row per (user, date) with a running total per goal
    event shape:      {id, goal, date, amount, description, timestamp}
                      one row per logged action

Aggregate rows expand into one synthetic event per goal with a non-zero
total, identified as "<recordId>-<goal>" so edits and deletes can be routed
back to the right slot of the parent row. Deleting a synthetic event zeroes
its slot; deleting an event-shape record removes the row. That asymmetry is
kept for compatibility with rows written by the aggregate-era server.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time
from datetime import date as DateType
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from .errors import MalformedRecordError
from .goals import GoalCatalog
from .models import ActivityEvent


SYNTHETIC_SEPARATOR = "-"
DESCRIPTION_SUFFIX = "_desc"


class EventRecord(BaseModel):
    """Event-shape wire record."""

    id: str
    goal: str
    date: DateType
    amount: float = Field(ge=0)
    description: str | None = None
    timestamp: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class AggregateRecord(BaseModel):
    """Aggregate-shape wire record. Goal columns arrive as extra fields."""

    model_config = {"extra": "allow"}

    id: str
    date: DateType
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    def slot_amount(self, goal: str) -> float:
        value = (self.model_extra or {}).get(goal)
        if value is None:
            return 0.0
        try:
            amount = float(value)
        except (TypeError, ValueError) as e:
            raise MalformedRecordError(f"Non-numeric {goal} column on record {self.id}: {value!r}") from e
        if amount < 0:
            raise MalformedRecordError(f"Negative {goal} column on record {self.id}")
        return amount

    def slot_description(self, goal: str) -> str | None:
        return (self.model_extra or {}).get(f"{goal}{DESCRIPTION_SUFFIX}") or None


@dataclass(frozen=True)
class SlotRef:
    """Address of one goal column inside an aggregate row."""

    record_id: str
    goal: str


@dataclass
class WireRequest:
    """One HTTP call the gateway must issue to carry out a write."""

    method: Literal["POST", "PUT", "DELETE"]
    body: dict[str, Any] = field(default_factory=dict)
    slot: SlotRef | None = None


def classify(raw: dict[str, Any]) -> Literal["event", "aggregate"]:
    """Tell the two wire shapes apart. Only event records carry a goal tag."""
    return "event" if "goal" in raw else "aggregate"


def synthetic_id(record_id: str, goal: str) -> str:
    return f"{record_id}{SYNTHETIC_SEPARATOR}{goal}"


def parse_synthetic_id(event_id: str, catalog: GoalCatalog) -> SlotRef | None:
    """Resolve "<recordId>-<goal>" back to its aggregate slot.

    Args:
        event_id: Event id as seen by the engine
        catalog: Goal catalog (the suffix must be a known goal)

    Returns:
        SlotRef for synthetic ids, None for event-shape ids
    """
    record_id, sep, goal = event_id.rpartition(SYNTHETIC_SEPARATOR)
    if not sep or not record_id or goal not in catalog:
        return None
    return SlotRef(record_id=record_id, goal=goal)


def _decode_event(raw: dict[str, Any]) -> ActivityEvent:
    record = EventRecord.model_validate(raw)
    timestamp = record.timestamp or datetime.combine(record.date, time())
    return ActivityEvent(
        id=record.id,
        goal=record.goal,
        date=record.date,
        amount=record.amount,
        description=record.description,
        timestamp=timestamp,
    )


def _decode_aggregate(raw: dict[str, Any], catalog: GoalCatalog) -> list[ActivityEvent]:
    record = AggregateRecord.model_validate(raw)
    timestamp = record.updated_at or record.created_at or datetime.combine(record.date, time())
    events: list[ActivityEvent] = []
    for goal in catalog:
        amount = record.slot_amount(goal.key)
        if amount <= 0:
            continue
        events.append(
            ActivityEvent(
                id=synthetic_id(record.id, goal.key),
                goal=goal.key,
                date=record.date,
                amount=amount,
                description=record.slot_description(goal.key),
                timestamp=timestamp,
            )
        )
    return events


def decode_record(raw: Any, catalog: GoalCatalog) -> list[ActivityEvent]:
    """Decode one wire record of either shape.

    Args:
        raw: Parsed JSON object
        catalog: Goal catalog naming the aggregate columns

    Returns:
        Zero or more events (aggregate rows with all-zero columns yield none)

    Raises:
        MalformedRecordError: If the record matches neither shape
    """
    if not isinstance(raw, dict):
        raise MalformedRecordError(f"Expected an object, got {type(raw).__name__}")
    try:
        if classify(raw) == "event":
            return [_decode_event(raw)]
        return _decode_aggregate(raw, catalog)
    except PydanticValidationError as e:
        raise MalformedRecordError(f"Malformed record: {e}") from e


def decode_records(raws: Iterable[Any], catalog: GoalCatalog) -> list[ActivityEvent]:
    """Decode a list of wire records of mixed shapes."""
    events: list[ActivityEvent] = []
    for raw in raws:
        events.extend(decode_record(raw, catalog))
    return events


def decode_response_event(raw: Any, event_id: str, fallback: ActivityEvent, catalog: GoalCatalog) -> ActivityEvent:
    """Pick the event with the given id out of a write response.

    A PUT against an aggregate row answers with the whole row; the caller
    wants back the single synthetic event it edited. When the slot is now
    zero there is no such event and the fallback is returned.
    """
    events = decode_record(raw, catalog)
    for event in events:
        if event.id == event_id:
            return event
    if classify(raw) == "event" and events:
        return events[0]
    return fallback


def encode_input(event: ActivityEvent) -> dict[str, Any]:
    """Encode the EventInput body for POST and PUT."""
    return {
        "goal": event.goal,
        "date": event.date.isoformat(),
        "amount": event.amount,
        "description": event.description,
        "timestamp": event.timestamp.isoformat(),
    }


def _zero_slot(slot: SlotRef, day: date) -> WireRequest:
    return WireRequest(
        method="PUT",
        body={
            "id": slot.record_id,
            "activity": {"goal": slot.goal, "date": day.isoformat(), "amount": 0, "description": None},
        },
        slot=slot,
    )


def plan_create(event: ActivityEvent) -> WireRequest:
    """New writes always use the event shape."""
    return WireRequest(method="POST", body={"activity": encode_input(event)})


def plan_update(
    event_id: str,
    event: ActivityEvent,
    previous: ActivityEvent | None,
    catalog: GoalCatalog,
) -> list[WireRequest]:
    """Plan the calls that carry out an edit.

    Args:
        event_id: Id of the event being edited
        event: Edited event
        previous: Event as last known locally (needed for synthetic moves)
        catalog: Goal catalog

    Returns:
        Requests to issue in order; the last response holds the result
    """
    slot = parse_synthetic_id(event_id, catalog)
    if slot is None:
        return [WireRequest(method="PUT", body={"id": event_id, "activity": encode_input(event)})]

    old_date = previous.date if previous is not None else event.date
    if event.goal == slot.goal and event.date == old_date:
        body = {"id": slot.record_id, "activity": encode_input(event)}
        return [WireRequest(method="PUT", body=body, slot=slot)]

    # Moving to another goal or day leaves the row: empty the old slot and
    # log the amount as a standalone event.
    return [_zero_slot(slot, old_date), plan_create(event)]


def plan_delete(event_id: str, event: ActivityEvent | None, catalog: GoalCatalog) -> WireRequest:
    """Plan the call that carries out a delete.

    Synthetic events zero their slot on the parent row; event-shape records
    are removed outright.
    """
    slot = parse_synthetic_id(event_id, catalog)
    if slot is None:
        return WireRequest(method="DELETE", body={"id": event_id})
    if event is None:
        raise MalformedRecordError(f"Cannot zero slot {event_id} without its date")
    return _zero_slot(slot, event.date)
