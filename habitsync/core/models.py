"""Core Data Models - Pydantic models for type safety.

ActivityEvent is the only shape the sync engine and the aggregation view
ever see. Wire shapes live in the adapter.
"""

import time
from datetime import datetime, timezone
from datetime import date as DateType
from enum import Enum
from typing import Literal, Optional
from pydantic import BaseModel, Field, field_validator
import uuid


LOCAL_ID_PREFIX = "local-"

_last_local_ms = 0


def new_local_id() -> str:
    """Generate a client-side event id from the creation time.

    Ids are strictly increasing within the process even when two events are
    created in the same millisecond.

    Returns:
        Id in format: local-<epoch_ms>
    """
    global _last_local_ms
    now_ms = int(time.time() * 1000)
    if now_ms <= _last_local_ms:
        now_ms = _last_local_ms + 1
    _last_local_ms = now_ms
    return f"{LOCAL_ID_PREFIX}{now_ms}"


def is_local_id(event_id: str) -> bool:
    """True for ids issued by this client that the server has not replaced yet."""
    return event_id.startswith(LOCAL_ID_PREFIX)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize aware datetimes to naive UTC so all timestamps compare."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Goal(BaseModel):
    """A tracked recurring metric with a daily target."""

    # Synthetic ids are "<recordId>-<key>", so keys cannot contain '-'
    key: str = Field(pattern=r"^[A-Za-z0-9_]+$", description="Goal key, e.g. 'water'")
    name: str = Field(min_length=1, description="Display name")
    target: float = Field(gt=0, description="Daily target in the goal's unit")
    unit: str = Field(description="Unit label, e.g. 'fl oz'")
    emoji: str = Field(default="", description="Display glyph")


class ActivityEvent(BaseModel):
    """One logged occurrence of progress toward a goal on a specific date."""

    id: str = Field(min_length=1, description="Opaque id, unique within a user's events")
    goal: str = Field(min_length=1, description="Goal key from the catalog")
    date: DateType = Field(description="Day the event counts toward")
    amount: float = Field(ge=0, description="Quantity in the goal's unit")
    description: Optional[str] = Field(default=None, description="Optional note")
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # Servers hand out integer ids; keep ids opaque strings on this side.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class ActivityInput(BaseModel):
    """Validated user input for creating or editing an activity."""

    goal: str = Field(min_length=1)
    date: DateType
    amount: float = Field(gt=0, description="Must be positive to be logged")
    description: Optional[str] = None
    timestamp: Optional[datetime] = None

    @field_validator("description")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None


class PendingOperation(BaseModel):
    """A local write that has not reached the remote store yet."""

    op_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Literal["create", "update", "delete"]
    event_id: str
    event: Optional[ActivityEvent] = Field(default=None, description="New contents, or the deleted event")
    previous: Optional[ActivityEvent] = Field(default=None, description="Contents before an update")
    queued_at: datetime = Field(default_factory=datetime.utcnow)


class CalendarClass(str, Enum):
    """Achievement classification of a calendar day."""

    NONE = "none"
    NO_GOALS = "no-goals"
    PARTIAL_GOALS = "partial-goals"
    ALL_GOALS = "all-goals"


class ProgressTier(str, Enum):
    """Four-tier coloring of a progress bar."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    COMPLETE = "complete"


class DayAggregate(BaseModel):
    """Derived per-date summary. Computed on every read, never stored."""

    date: DateType
    totals: dict[str, float]
    goals_achieved: int = Field(ge=0)
    calendar_class: CalendarClass


class GoalProgress(BaseModel):
    """Progress toward one goal on one day."""

    goal: str
    name: str
    emoji: str
    total: float = Field(ge=0)
    target: float
    unit: str
    pct: float = Field(ge=0, le=1)
    tier: ProgressTier
    label: str = Field(description="e.g. '50 / 64 fl oz'")


class DaySummary(BaseModel):
    """Progress bars for a selected day."""

    date: DateType
    goals: list[GoalProgress]
    goals_achieved: int
    calendar_class: CalendarClass


class CalendarDay(BaseModel):
    """A single cell of the month calendar."""

    date: DateType
    calendar_class: CalendarClass
    goals_achieved: int
    is_today: bool = False
    is_selected: bool = False


class MonthCalendar(BaseModel):
    """Month view with one classified cell per day."""

    year: int
    month: int = Field(ge=1, le=12)
    title: str = Field(description="e.g. 'September 2024'")
    leading_blanks: int = Field(ge=0, le=6, description="Empty cells before day 1 (Sunday-first)")
    days: list[CalendarDay]
    days_logged: int
    all_goal_days: int


class User(BaseModel):
    """Account record of the reference service."""

    username: str = Field(min_length=1)
    api_key_hash: str = Field(description="SHA256 hash of API key - never store plaintext")
    created_at: datetime = Field(default_factory=datetime.utcnow)
