"""Aggregation View - Pure functions for progress math.

All functions are pure: same input always produces same output, no side effects.
Nothing here caches; callers recompute from the current event snapshot.
"""

from collections.abc import Iterable
from datetime import date

from .goals import GoalCatalog
from .models import ActivityEvent, CalendarClass, DayAggregate, ProgressTier


def day_total(events: Iterable[ActivityEvent], goal: str, day: date) -> float:
    """Sum the amounts logged toward a goal on a day.

    Args:
        events: Event snapshot
        goal: Goal key
        day: Calendar day

    Returns:
        Total amount, 0 when nothing was logged
    """
    return sum(e.amount for e in events if e.goal == goal and e.date == day)


def progress_pct(events: Iterable[ActivityEvent], goal: str, day: date, catalog: GoalCatalog) -> float:
    """Fraction of the goal's target reached, clamped to 1.0.

    Args:
        events: Event snapshot
        goal: Goal key (must be in the catalog)
        day: Calendar day
        catalog: Goal catalog supplying the target

    Returns:
        Value in [0.0, 1.0]
    """
    target = catalog.require(goal).target
    return min(day_total(events, goal, day) / target, 1.0)


def progress_tier(pct: float) -> ProgressTier:
    """Classify a progress fraction into the four display tiers."""
    if pct >= 1.0:
        return ProgressTier.COMPLETE
    if pct >= 0.67:
        return ProgressTier.HIGH
    if pct >= 0.34:
        return ProgressTier.MEDIUM
    return ProgressTier.LOW


def goals_achieved(events: Iterable[ActivityEvent], day: date, catalog: GoalCatalog) -> int:
    """Count goals whose day total reached the target."""
    events = list(events)
    return sum(1 for goal in catalog if day_total(events, goal.key, day) >= goal.target)


def calendar_class(events: Iterable[ActivityEvent], day: date, catalog: GoalCatalog) -> CalendarClass:
    """Classify a day for the calendar.

    Distinguishes "no data" (NONE) from "data but nothing met" (NO_GOALS).
    """
    events = list(events)
    achieved = goals_achieved(events, day, catalog)
    if achieved == 0:
        has_events = any(e.date == day for e in events)
        return CalendarClass.NO_GOALS if has_events else CalendarClass.NONE
    if achieved >= len(catalog):
        return CalendarClass.ALL_GOALS
    return CalendarClass.PARTIAL_GOALS


def day_aggregate(events: Iterable[ActivityEvent], day: date, catalog: GoalCatalog) -> DayAggregate:
    """Derive the full per-day aggregate for a date."""
    events = list(events)
    return DayAggregate(
        date=day,
        totals={goal.key: day_total(events, goal.key, day) for goal in catalog},
        goals_achieved=goals_achieved(events, day, catalog),
        calendar_class=calendar_class(events, day, catalog),
    )
