"""Merge/Sync Engine - keeps the local event store consistent with the remote.

Writes are committed locally first and always appear to succeed; pushing
them is best effort through an ordered outbox. Fetches replace the local set
with server truth overlaid by writes still waiting in the outbox. Every
fetch is tagged with a generation and applied only if no newer sync or local
write happened while it was in flight.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError

from ..core.errors import (
    HabitSyncError,
    MissingCredentialError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from ..core.goals import GoalCatalog
from ..core.models import ActivityEvent, ActivityInput, PendingOperation, new_local_id
from .event_store import LocalEventStore
from .gateway import RemoteGateway
from .session import Session


logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncState(str, Enum):
    OFFLINE = "offline"
    ONLINE_IDLE = "online-idle"
    SYNCING = "syncing"


class SyncStatus(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SyncResult:
    """Outcome of one resync attempt."""

    status: SyncStatus
    generation: int
    reason: str
    event_count: int = 0
    error: HabitSyncError | None = None


@dataclass
class WriteResult:
    """Outcome of a local write.

    The write itself always succeeded locally; synced tells whether the
    remote store has it yet.
    """

    event: ActivityEvent | None
    synced: bool
    error: HabitSyncError | None = None


@dataclass
class SyncConfig:
    """Retry and timeout policy for remote calls.

    Attributes:
        max_attempts: Tries per call for connectivity and 5xx failures
        backoff_seconds: First retry delay, doubled on each further retry
        request_timeout: Upper bound on a single call, in seconds
    """

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    request_timeout: float = 15.0

    @classmethod
    def from_env(cls) -> "SyncConfig":
        return cls(
            max_attempts=int(os.environ.get("HABITSYNC_MAX_ATTEMPTS", "3")),
            backoff_seconds=float(os.environ.get("HABITSYNC_BACKOFF_SECONDS", "0.5")),
            request_timeout=float(os.environ.get("HABITSYNC_REQUEST_TIMEOUT", "15")),
        )


class SyncEngine:
    """Reconciles the local event store with the remote gateway.

    State machine:
        OFFLINE      -> ONLINE_IDLE   connectivity regained (then resync)
        ONLINE_IDLE  -> SYNCING       while at least one fetch is in flight
        any          -> OFFLINE       connectivity lost, or a failed call while
                                      the service is unreachable

    Runs on a single event loop. Local commits happen before the first await
    of every write, so writes land in the store in the order issued.
    """

    def __init__(
        self,
        store: LocalEventStore,
        gateway: RemoteGateway,
        session: Session,
        catalog: GoalCatalog,
        config: SyncConfig | None = None,
        online: bool = True,
    ) -> None:
        self.config = config or SyncConfig()
        self._store = store
        self._gateway = gateway
        self._session = session
        self._catalog = catalog
        self._online = online
        self._generation = 0
        self._inflight_syncs = 0
        self._flush_lock = asyncio.Lock()
        self._inflight_op_id: str | None = None
        self._aliases: dict[str, str] = {}
        self._identity = session.current_credential()
        self._store.bind(self._identity)

    # ==================== State ====================

    @property
    def state(self) -> SyncState:
        if not self._online:
            return SyncState.OFFLINE
        if self._inflight_syncs:
            return SyncState.SYNCING
        return SyncState.ONLINE_IDLE

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def catalog(self) -> GoalCatalog:
        return self._catalog

    def events(self) -> list[ActivityEvent]:
        """Current local snapshot, for the aggregation view."""
        return self._store.snapshot()

    def pending_count(self) -> int:
        return len(self._store.pending())

    def rejected_count(self) -> int:
        return len(self._store.rejected())

    def resolve_id(self, event_id: str) -> str:
        """Follow client-id -> server-id reassignments."""
        seen: set[str] = set()
        while event_id in self._aliases and event_id not in seen:
            seen.add(event_id)
            event_id = self._aliases[event_id]
        return event_id

    def start(self) -> list[ActivityEvent]:
        """Load the persisted snapshot and outbox from the last session."""
        events = self._store.load()
        pending = self._store.load_outbox()
        logger.info("Started with %d cached events, %d pending writes", len(events), len(pending))
        return events

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _can_push(self) -> bool:
        return self._online and self._session.current_credential() is not None

    def _go_offline(self, why: str) -> None:
        if self._online:
            logger.warning("Going offline: %s", why)
        self._online = False

    # ==================== Local Writes ====================

    def _to_input(self, data: ActivityInput | dict[str, Any]) -> ActivityInput:
        if isinstance(data, ActivityInput):
            activity = data
        else:
            try:
                activity = ActivityInput.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(str(e)) from e
        self._catalog.require(activity.goal)
        return activity

    def _require_local(self, event_id: str) -> tuple[str, ActivityEvent]:
        event_id = self.resolve_id(event_id)
        event = self._store.get(event_id)
        if event is None:
            raise ValidationError(f"Unknown activity id: {event_id}")
        return event_id, event

    async def create(self, data: ActivityInput | dict[str, Any]) -> WriteResult:
        """Log a new activity.

        Args:
            data: Activity fields (validated before anything is written)

        Returns:
            WriteResult with the stored event (server id once pushed)

        Raises:
            ValidationError: If the input is malformed or the goal is unknown
        """
        activity = self._to_input(data)
        event = ActivityEvent(
            id=new_local_id(),
            goal=activity.goal,
            date=activity.date,
            amount=activity.amount,
            description=activity.description,
            timestamp=activity.timestamp or datetime.utcnow(),
        )
        self._store.upsert_local(event)
        self._enqueue(PendingOperation(kind="create", event_id=event.id, event=event))
        self._next_generation()
        logger.info("Logged %s %s on %s (%s)", event.amount, event.goal, event.date, event.id)
        return await self._sync_write(event.id, event)

    async def update(self, event_id: str, data: ActivityInput | dict[str, Any]) -> WriteResult:
        """Edit an activity in place, keeping its identity and timestamp.

        Raises:
            ValidationError: If the input is malformed or the id is unknown locally
        """
        activity = self._to_input(data)
        event_id, previous = self._require_local(event_id)
        event = previous.model_copy(
            update={
                "goal": activity.goal,
                "date": activity.date,
                "amount": activity.amount,
                "description": activity.description,
            }
        )
        self._store.upsert_local(event)
        self._enqueue(PendingOperation(kind="update", event_id=event_id, event=event, previous=previous))
        self._next_generation()
        logger.info("Edited %s", event_id)
        return await self._sync_write(event_id, event)

    async def delete(self, event_id: str) -> WriteResult:
        """Remove an activity.

        Raises:
            ValidationError: If the id is unknown locally
        """
        event_id, previous = self._require_local(event_id)
        self._store.remove_local(event_id)
        self._enqueue(PendingOperation(kind="delete", event_id=event_id, event=previous))
        self._next_generation()
        logger.info("Deleted %s", event_id)
        return await self._sync_write(event_id, previous)

    def _enqueue(self, op: PendingOperation) -> None:
        """Append a write to the outbox, folding it into unsent writes for the same id.

        The operation currently being pushed is never rewritten. A new write to
        an event whose earlier write was refused replaces that refusal.
        """
        op = self._revive_rejected(op)
        if op is None:
            return
        ops = self._store.pending()

        def unsent(kind: str) -> PendingOperation | None:
            for existing in ops:
                if existing.kind == kind and existing.event_id == op.event_id and existing.op_id != self._inflight_op_id:
                    return existing
            return None

        pending_create = unsent("create")
        pending_update = unsent("update")

        if op.kind == "update" and pending_create is not None:
            pending_create.event = op.event
        elif op.kind == "update" and pending_update is not None:
            pending_update.event = op.event
        elif op.kind == "delete" and pending_create is not None:
            # Never reached the server: forget it entirely
            ops = [o for o in ops if o.event_id != op.event_id or o.op_id == self._inflight_op_id]
        elif op.kind == "delete":
            if pending_update is not None:
                ops.remove(pending_update)
                op.event = pending_update.previous or op.event
            ops.append(op)
        else:
            ops.append(op)

        self._store.save_outbox(ops)

    def _revive_rejected(self, op: PendingOperation) -> PendingOperation | None:
        rejected = self._store.rejected()
        own = [r for r in rejected if r.event_id == op.event_id]
        if not own:
            return op
        self._store.save_rejected([r for r in rejected if r.event_id != op.event_id])
        if not any(r.kind == "create" for r in own):
            return op
        # The remote store never had this event
        if op.kind == "delete":
            return None
        return PendingOperation(kind="create", event_id=op.event_id, event=op.event)

    async def _sync_write(self, event_id: str, fallback: ActivityEvent) -> WriteResult:
        if not self._can_push():
            logger.info("Write to %s kept locally, sync deferred", event_id)
            return WriteResult(event=self._store.get(event_id) or fallback, synced=False)

        errors = await self.flush_outbox()
        final_id = self.resolve_id(event_id)
        event = self._store.get(final_id) or fallback.model_copy(update={"id": final_id})
        still_pending = any(op.event_id == final_id for op in self._store.pending())
        own_errors = [failed for failed_id, failed in errors if failed_id == final_id]
        if own_errors:
            error: HabitSyncError | None = own_errors[-1]
        elif still_pending and errors:
            error = errors[-1][1]
        else:
            error = None
        return WriteResult(event=event, synced=not still_pending and error is None, error=error)

    # ==================== Outbox ====================

    async def flush_outbox(self) -> list[tuple[str, HabitSyncError]]:
        """Push pending writes in order until the outbox is empty or a call fails.

        Returns:
            (event_id, error) for every write that failed during this flush
        """
        errors: list[tuple[str, HabitSyncError]] = []
        async with self._flush_lock:
            while self._can_push():
                ops = self._store.pending()
                if not ops:
                    break
                op = ops[0]
                self._inflight_op_id = op.op_id
                try:
                    await self._push(op)
                except NotFoundError as e:
                    logger.warning("Remote has no %s, keeping local state: %s", op.event_id, str(e))
                    errors.append((self.resolve_id(op.event_id), e))
                    self._drop_op(op.op_id)
                except TransportError as e:
                    errors.append((self.resolve_id(op.event_id), e))
                    if e.retryable or e.status_code in (401, 403):
                        logger.warning("Push of %s deferred: %s", op.event_id, str(e))
                        await self._handle_transport_error(e)
                        break
                    logger.error("Remote rejected %s %s, keeping it locally: %s", op.kind, op.event_id, str(e))
                    self._reject_op(op)
                except MissingCredentialError as e:
                    errors.append((op.event_id, e))
                    break
                finally:
                    self._inflight_op_id = None
        return errors

    def _drop_op(self, op_id: str) -> None:
        self._store.save_outbox([o for o in self._store.pending() if o.op_id != op_id])

    def _reject_op(self, op: PendingOperation) -> None:
        """Stop pushing a refused write but keep its local effect across fetches."""
        self._drop_op(op.op_id)
        self._store.save_rejected(self._store.rejected() + [op])

    async def _push(self, op: PendingOperation) -> None:
        if op.kind == "create":
            assert op.event is not None
            created = await self._call(lambda: self._gateway.create(op.event))
            self._drop_op(op.op_id)
            self._adopt(op.event_id, created.id)
        elif op.kind == "update":
            assert op.event is not None
            updated = await self._call(lambda: self._gateway.update(op.event_id, op.event, op.previous))
            self._drop_op(op.op_id)
            if updated.id != op.event_id:
                self._adopt(op.event_id, updated.id)
        else:
            await self._call(lambda: self._gateway.delete(op.event_id, op.event))
            self._drop_op(op.op_id)

    def _adopt(self, old_id: str, new_id: str) -> None:
        """Switch every reference from the client id to the server id."""
        if old_id == new_id:
            return
        self._aliases[old_id] = new_id
        self._store.reassign_id(old_id, new_id)
        logger.info("Server assigned id %s to %s", new_id, old_id)

    async def _call(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Run a gateway call with a timeout and bounded exponential backoff."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(factory(), timeout=self.config.request_timeout)
            except asyncio.TimeoutError:
                error = TransportError(f"Remote call timed out after {self.config.request_timeout}s")
            except TransportError as e:
                error = e
            if not error.retryable or attempt >= self.config.max_attempts:
                raise error
            delay = self.config.backoff_seconds * (2 ** (attempt - 1))
            logger.warning("Remote call failed (attempt %d/%d), retrying in %.2fs: %s",
                           attempt, self.config.max_attempts, delay, str(error))
            await asyncio.sleep(delay)

    async def _handle_transport_error(self, error: TransportError) -> None:
        """Demote to OFFLINE only when the service is actually unreachable."""
        if await self._gateway.is_reachable():
            logger.warning("Remote error while online, staying online: %s", str(error))
            return
        self._go_offline(f"remote unreachable ({error})")

    # ==================== Sync ====================

    def _merge(self, server_events: list[ActivityEvent]) -> list[ActivityEvent]:
        """Server truth overlaid with refused writes, then with writes not pushed yet."""
        merged = {e.id: e for e in server_events}
        for op in self._store.rejected() + self._store.pending():
            if op.kind == "delete":
                merged.pop(op.event_id, None)
                continue
            local = self._store.get(op.event_id) or op.event
            if local is not None:
                merged[op.event_id] = local
        return list(merged.values())

    async def resync(self, reason: str = "manual") -> SyncResult:
        """Push pending writes, then replace the local set with server truth.

        Args:
            reason: What triggered the sync (logged)

        Returns:
            SyncResult; STALE when a newer sync or local write superseded it
        """
        if not self._can_push():
            logger.debug("Skipping %s sync: offline or signed out", reason)
            return SyncResult(status=SyncStatus.SKIPPED, generation=self._generation, reason=reason)

        self._inflight_syncs += 1
        try:
            generation = self._next_generation()
            logger.debug("Sync %d started (%s)", generation, reason)
            errors = await self.flush_outbox()
            if not self._can_push():
                logger.warning("Sync %d abandoned: went offline while pushing writes", generation)
                return SyncResult(
                    status=SyncStatus.FAILED,
                    generation=generation,
                    reason=reason,
                    error=errors[-1][1] if errors else None,
                )
            try:
                events = await self._call(self._gateway.fetch_all)
            except TransportError as e:
                logger.warning("Sync %d failed, using local data: %s", generation, str(e))
                await self._handle_transport_error(e)
                return SyncResult(status=SyncStatus.FAILED, generation=generation, reason=reason, error=e)
            except MissingCredentialError as e:
                return SyncResult(status=SyncStatus.FAILED, generation=generation, reason=reason, error=e)

            if generation != self._generation:
                logger.warning("Discarding stale sync %d (current generation %d)", generation, self._generation)
                return SyncResult(status=SyncStatus.STALE, generation=generation, reason=reason)

            merged = self._merge(events)
            self._store.replace(merged)
            logger.info("Sync %d applied %d events (%s)", generation, len(merged), reason)
            return SyncResult(
                status=SyncStatus.APPLIED,
                generation=generation,
                reason=reason,
                event_count=len(merged),
            )
        finally:
            self._inflight_syncs -= 1

    # ==================== Triggers ====================

    async def connectivity_changed(self, online: bool) -> SyncResult | None:
        """React to the network going up or down."""
        if not online:
            self._go_offline("connectivity lost")
            return None
        if not self._online:
            logger.info("Connectivity regained")
        self._online = True
        return await self.resync("connectivity")

    async def window_focused(self) -> SyncResult | None:
        if not self._online:
            return None
        return await self.resync("focus")

    async def visibility_changed(self, visible: bool) -> SyncResult | None:
        if not visible or not self._online:
            return None
        return await self.resync("visibility")

    async def session_changed(self, credential: str | None) -> SyncResult | None:
        """Sign-out wipes the local replica; sign-in pulls the new user's data.

        Switching straight to another user rebinds the store to that user's
        slots, so the previous user's events and unsent writes are neither
        shown nor pushed under the new credential.
        """
        self._next_generation()
        previous, self._identity = self._identity, credential
        if credential is None:
            self._store.clear()
            self._store.bind(None)
            self._aliases.clear()
            logger.info("Signed out, local events cleared")
            return None
        if credential != previous:
            self._store.bind(credential)
            self._aliases.clear()
            logger.info("Session identity changed, switched local store to scope %s", self._store.scope)
        self.start()
        return await self.resync("session")
