"""Goal Catalog - process-wide, read-only goal configuration.

The catalog is built once at startup (optionally from HABITSYNC_GOALS) and
never mutated during a session.
"""

import json
import os
from collections.abc import Iterator, Mapping

from .errors import ValidationError
from .models import Goal


DEFAULT_GOALS: tuple[Goal, ...] = (
    Goal(key="water", name="Water", target=64, unit="fl oz", emoji="💧"),
    Goal(key="protein", name="Protein", target=100, unit="g", emoji="💪"),
    Goal(key="exercise", name="Exercise", target=30, unit="min", emoji="🏃"),
)


class GoalCatalog:
    """Ordered, immutable mapping of goal key to Goal."""

    def __init__(self, goals: tuple[Goal, ...] | list[Goal] = DEFAULT_GOALS) -> None:
        if not goals:
            raise ValueError("Goal catalog must contain at least one goal")
        self._goals: dict[str, Goal] = {}
        for goal in goals:
            if goal.key in self._goals:
                raise ValueError(f"Duplicate goal key: {goal.key}")
            self._goals[goal.key] = goal

    def __iter__(self) -> Iterator[Goal]:
        return iter(self._goals.values())

    def __len__(self) -> int:
        return len(self._goals)

    def __contains__(self, key: object) -> bool:
        return key in self._goals

    @property
    def keys(self) -> list[str]:
        return list(self._goals)

    def get(self, key: str) -> Goal | None:
        return self._goals.get(key)

    def require(self, key: str) -> Goal:
        """Look up a goal, rejecting unknown keys.

        Raises:
            ValidationError: If the key is not in the catalog
        """
        goal = self._goals.get(key)
        if goal is None:
            raise ValidationError(f"Unknown goal '{key}'. Expected one of: {', '.join(self._goals)}")
        return goal


def catalog_from_mapping(data: Mapping[str, Mapping]) -> GoalCatalog:
    """Build a catalog from {key: {name, target, unit, emoji}}."""
    return GoalCatalog([Goal(key=key, **fields) for key, fields in data.items()])


def load_goal_catalog() -> GoalCatalog:
    """Load the process-wide catalog.

    HABITSYNC_GOALS may hold a JSON object overriding the default goals,
    e.g. {"water": {"name": "Water", "target": 2000, "unit": "ml"}}.

    Returns:
        The goal catalog for this process
    """
    raw = os.environ.get("HABITSYNC_GOALS")
    if not raw:
        return GoalCatalog()
    return catalog_from_mapping(json.loads(raw))
