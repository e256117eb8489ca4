"""Shared fixtures for shell tests."""

import asyncio

import pytest

from habitsync.core.errors import HabitSyncError, NotFoundError
from habitsync.core.goals import GoalCatalog
from habitsync.core.models import ActivityEvent


class FakeGateway:
    """In-process stand-in for RemoteGateway.

    Stores events by id and hands out numeric ids. `failures` maps an
    operation name to exceptions raised by its next calls; `fetch_gates`
    holds futures the next fetches wait on (their result is returned).
    """

    def __init__(self) -> None:
        self.events: dict[str, ActivityEvent] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, list[HabitSyncError]] = {}
        self.fetch_gates: list[asyncio.Future] = []
        self.create_gate: asyncio.Future | None = None
        self.reachable = True
        self.probes = 0
        self._next_id = 1000

    def fail(self, operation: str, *errors: HabitSyncError) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def _check(self, operation: str) -> None:
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def fetch_all(self) -> list[ActivityEvent]:
        self.calls.append(("fetch",))
        self._check("fetch")
        if self.fetch_gates:
            return await self.fetch_gates.pop(0)
        return list(self.events.values())

    async def create(self, event: ActivityEvent) -> ActivityEvent:
        self.calls.append(("create", event.id))
        if self.create_gate is not None:
            await self.create_gate
        self._check("create")
        self._next_id += 1
        created = event.model_copy(update={"id": str(self._next_id)})
        self.events[created.id] = created
        return created

    async def update(self, event_id, event, previous=None) -> ActivityEvent:
        self.calls.append(("update", event_id))
        self._check("update")
        if event_id not in self.events:
            raise NotFoundError("Activity not found")
        self.events[event_id] = event.model_copy(update={"id": event_id})
        return self.events[event_id]

    async def delete(self, event_id, event=None) -> None:
        self.calls.append(("delete", event_id))
        self._check("delete")
        if self.events.pop(event_id, None) is None:
            raise NotFoundError("Activity not found")

    async def is_reachable(self) -> bool:
        self.probes += 1
        return self.reachable

    def kinds(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def catalog():
    return GoalCatalog()


@pytest.fixture
def gateway():
    return FakeGateway()
