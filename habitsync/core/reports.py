"""Report Generation - Pure functions for day and month views.

All functions are pure: same input always produces same output, no side effects.
"""

import calendar
from collections.abc import Iterable
from datetime import date

from .aggregation import calendar_class, day_total, goals_achieved, progress_tier
from .goals import GoalCatalog
from .models import (
    ActivityEvent,
    CalendarClass,
    CalendarDay,
    DaySummary,
    Goal,
    GoalProgress,
    MonthCalendar,
)


def _format_amount(value: float) -> str:
    """Render 50.0 as '50' and 12.5 as '12.5'."""
    return f"{value:g}"


def generate_day_summary(events: Iterable[ActivityEvent], catalog: GoalCatalog, day: date) -> DaySummary:
    """Generate the progress bars for a single day.

    Args:
        events: Event snapshot
        catalog: Goal catalog
        day: The day to summarize

    Returns:
        DaySummary with one GoalProgress per catalog goal
    """
    events = list(events)
    rows: list[GoalProgress] = []
    for goal in catalog:
        total = day_total(events, goal.key, day)
        pct = min(total / goal.target, 1.0)
        rows.append(
            GoalProgress(
                goal=goal.key,
                name=goal.name,
                emoji=goal.emoji,
                total=total,
                target=goal.target,
                unit=goal.unit,
                pct=pct,
                tier=progress_tier(pct),
                label=f"{_format_amount(total)} / {_format_amount(goal.target)} {goal.unit}",
            )
        )

    return DaySummary(
        date=day,
        goals=rows,
        goals_achieved=goals_achieved(events, day, catalog),
        calendar_class=calendar_class(events, day, catalog),
    )


def generate_month_calendar(
    events: Iterable[ActivityEvent],
    catalog: GoalCatalog,
    year: int,
    month: int,
    today: date | None = None,
    selected: date | None = None,
) -> MonthCalendar:
    """Generate the month calendar with one classified cell per day.

    Args:
        events: Event snapshot
        catalog: Goal catalog
        year: Calendar year
        month: Calendar month (1-12)
        today: Day to flag as today (defaults to date.today())
        selected: Day to flag as selected (defaults to today)

    Returns:
        MonthCalendar laid out for a Sunday-first grid
    """
    if today is None:
        today = date.today()
    if selected is None:
        selected = today

    events = [e for e in events if e.date.year == year and e.date.month == month]
    first_weekday, days_in_month = calendar.monthrange(year, month)
    # monthrange is Monday-first; shift so Sunday is column 0
    leading_blanks = (first_weekday + 1) % 7

    days: list[CalendarDay] = []
    for day_number in range(1, days_in_month + 1):
        day = date(year, month, day_number)
        days.append(
            CalendarDay(
                date=day,
                calendar_class=calendar_class(events, day, catalog),
                goals_achieved=goals_achieved(events, day, catalog),
                is_today=day == today,
                is_selected=day == selected,
            )
        )

    return MonthCalendar(
        year=year,
        month=month,
        title=f"{calendar.month_name[month]} {year}",
        leading_blanks=leading_blanks,
        days=days,
        days_logged=sum(1 for d in days if d.calendar_class != CalendarClass.NONE),
        all_goal_days=sum(1 for d in days if d.calendar_class == CalendarClass.ALL_GOALS),
    )


def generate_daily_log(events: Iterable[ActivityEvent], day: date) -> list[ActivityEvent]:
    """Events logged for a day, newest first."""
    return sorted((e for e in events if e.date == day), key=lambda e: e.timestamp, reverse=True)


def generate_activity_history(events: Iterable[ActivityEvent]) -> list[ActivityEvent]:
    """All events, newest day first and newest entry first within a day."""
    return sorted(events, key=lambda e: (e.date, e.timestamp), reverse=True)


def quick_add_limit(goal: Goal) -> float:
    """Largest amount a single quick-add may log: twice the daily target."""
    return goal.target * 2
