"""Command handlers - the single input-event queue in front of the sync engine.

User actions and environment notifications (connectivity, focus,
visibility, session changes) are turned into command objects and handled
in arrival order.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Union

from ..core.errors import ValidationError
from ..core.goals import GoalCatalog, load_goal_catalog
from ..core.models import ActivityInput
from ..core.reports import quick_add_limit
from .event_store import LocalEventStore, StoreConfig
from .gateway import GatewayConfig, RemoteGateway
from .session import Session
from .sync_engine import SyncConfig, SyncEngine


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogActivity:
    activity: ActivityInput | dict[str, Any]


@dataclass(frozen=True)
class QuickAdd:
    """Log an amount for a goal from the quick-add slider."""

    goal: str
    amount: float
    day: date
    description: str | None = None


@dataclass(frozen=True)
class EditActivity:
    event_id: str
    activity: ActivityInput | dict[str, Any]


@dataclass(frozen=True)
class DeleteActivity:
    event_id: str


@dataclass(frozen=True)
class ConnectivityChanged:
    online: bool


@dataclass(frozen=True)
class WindowFocused:
    pass


@dataclass(frozen=True)
class VisibilityChanged:
    visible: bool


@dataclass(frozen=True)
class SessionChanged:
    credential: str | None


@dataclass(frozen=True)
class Resync:
    reason: str = "manual"


Command = Union[
    LogActivity,
    QuickAdd,
    EditActivity,
    DeleteActivity,
    ConnectivityChanged,
    WindowFocused,
    VisibilityChanged,
    SessionChanged,
    Resync,
]

_STOP = object()


class CommandDispatcher:
    """Serializes commands onto the sync engine.

    Commands are taken off the queue in FIFO order and each one is handled
    in its own task. Handlers commit locally before their first await, so a
    burst of edits is applied in the order issued even while earlier pushes
    are still waiting on the network.
    """

    def __init__(self, engine: SyncEngine, session: Session | None = None) -> None:
        self.engine = engine
        self._queue: asyncio.Queue | None = None
        self._tasks: set[asyncio.Task] = set()
        self._missed_sessions: list[str | None] = []
        if session is not None:
            session.on_session_change(self._on_session_change)

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def _on_session_change(self, credential: str | None) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Session changed before the event loop started, deferring to start()")
            self._missed_sessions.append(credential)
            return
        self.submit(SessionChanged(credential))

    def submit(self, command: Command) -> asyncio.Future:
        """Queue a command. Must be called from the running event loop.

        Returns:
            Future resolved with the handler's result
        """
        future = asyncio.get_running_loop().create_future()
        self.queue.put_nowait((command, future))
        return future

    async def start(self) -> None:
        """Load the cached snapshot and pull fresh data if possible.

        Session changes that happened before the loop was running are
        replayed first, in order.
        """
        missed, self._missed_sessions = self._missed_sessions, []
        for credential in missed:
            await self.engine.session_changed(credential)
        if missed and missed[-1] is not None:
            # The sign-in above already loaded and synced
            return
        self.engine.start()
        await self.engine.resync("startup")

    async def run(self) -> None:
        """Consume the queue until stop() is called."""
        while True:
            item = await self.queue.get()
            if item is _STOP:
                self.queue.task_done()
                break
            command, future = item
            task = asyncio.create_task(self._handle(command, future))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            self.queue.task_done()

    def stop(self) -> None:
        self.queue.put_nowait(_STOP)

    async def drain(self) -> None:
        """Wait until every queued command has been handled."""
        await self.queue.join()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _handle(self, command: Command, future: asyncio.Future) -> None:
        try:
            result = await self.dispatch(command)
        except ValidationError as e:
            logger.warning("Rejected %s: %s", type(command).__name__, str(e))
            if not future.cancelled():
                future.set_exception(e)
        except Exception as e:
            logger.exception("Command %s failed", type(command).__name__)
            if not future.cancelled():
                future.set_exception(e)
        else:
            if not future.cancelled():
                future.set_result(result)

    async def dispatch(self, command: Command) -> Any:
        """Handle one command directly, bypassing the queue."""
        engine = self.engine
        if isinstance(command, LogActivity):
            return await engine.create(command.activity)
        if isinstance(command, QuickAdd):
            return await engine.create(self._quick_add_input(engine.catalog, command))
        if isinstance(command, EditActivity):
            return await engine.update(command.event_id, command.activity)
        if isinstance(command, DeleteActivity):
            return await engine.delete(command.event_id)
        if isinstance(command, ConnectivityChanged):
            return await engine.connectivity_changed(command.online)
        if isinstance(command, WindowFocused):
            return await engine.window_focused()
        if isinstance(command, VisibilityChanged):
            return await engine.visibility_changed(command.visible)
        if isinstance(command, SessionChanged):
            return await engine.session_changed(command.credential)
        if isinstance(command, Resync):
            return await engine.resync(command.reason)
        raise TypeError(f"Unknown command: {command!r}")

    @staticmethod
    def _quick_add_input(catalog: GoalCatalog, command: QuickAdd) -> ActivityInput:
        goal = catalog.require(command.goal)
        amount = max(0.0, min(command.amount, quick_add_limit(goal)))
        if amount <= 0:
            raise ValidationError("Quick-add amount must be greater than zero")
        return ActivityInput(goal=goal.key, date=command.day, amount=amount, description=command.description)


def create_sync_client(session: Session, catalog: GoalCatalog | None = None) -> CommandDispatcher:
    """Wire store, gateway and engine from environment configuration.

    Args:
        session: Session overlay supplying the credential
        catalog: Goal catalog (defaults to the process-wide one)

    Returns:
        Dispatcher ready for start() and run()
    """
    catalog = catalog or load_goal_catalog()
    store = LocalEventStore(catalog, StoreConfig.from_env())
    gateway = RemoteGateway(session, catalog, GatewayConfig.from_env())
    engine = SyncEngine(store, gateway, session, catalog, SyncConfig.from_env())
    return CommandDispatcher(engine, session)
