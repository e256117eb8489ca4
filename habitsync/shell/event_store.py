"""Event Store - durable local cache of activity events.

This module handles all local persistence for the sync client. Each slot is
a JSON file written atomically; a failing medium degrades the store to
memory-only for the rest of the session instead of failing the caller.
"""

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter

from ..core.adapter import decode_records
from ..core.errors import MalformedRecordError, StorageError
from ..core.goals import GoalCatalog
from ..core.models import ActivityEvent, PendingOperation


logger = logging.getLogger(__name__)

_events_adapter = TypeAdapter(list[ActivityEvent])
_outbox_adapter = TypeAdapter(list[PendingOperation])


@dataclass
class StoreConfig:
    """Configuration for the local event store.

    Attributes:
        directory: Folder holding the slot files (None for memory-only)
        namespace: Prefix of the slot file names
    """

    directory: Path | None = None
    namespace: str = "habitTracker"

    @classmethod
    def from_env(cls) -> "StoreConfig":
        directory = os.environ.get("HABITSYNC_DATA_DIR")
        return cls(
            directory=Path(directory).expanduser() if directory else None,
            namespace=os.environ.get("HABITSYNC_NAMESPACE", "habitTracker"),
        )


def identity_scope(identity: str | None) -> str | None:
    """Stable, non-reversible file-name component for a session credential."""
    if not identity:
        return None
    return hashlib.sha256(identity.encode()).hexdigest()[:16]


class LocalEventStore:
    """Single-writer cache of the user's activity events.

    Slot layout under config.directory:
        <namespace>[_<scope>]_activities.json   serialized ActivityEvent array
        <namespace>[_<scope>]_outbox.json       writes not yet pushed to the remote store
        <namespace>[_<scope>]_rejected.json     writes the remote store refused

    <scope> identifies the signed-in user (see bind), so one user's cache
    and outbox are never loaded under another user's session.

    Only the sync engine and the user-write handlers mutate the store, all on
    one event loop, so no lock is taken here.
    """

    def __init__(self, catalog: GoalCatalog, config: StoreConfig | None = None) -> None:
        """Initialize the store.

        Args:
            catalog: Goal catalog used to normalize legacy cached rows
            config: Store configuration
        """
        self.config = config or StoreConfig()
        self._catalog = catalog
        self._events: dict[str, ActivityEvent] = {}
        self._outbox: list[PendingOperation] = []
        self._rejected: list[PendingOperation] = []
        self._scope: str | None = None
        self._memory_only = self.config.directory is None

    @property
    def memory_only(self) -> bool:
        return self._memory_only

    @property
    def scope(self) -> str | None:
        return self._scope

    def bind(self, identity: str | None) -> None:
        """Point the store at the slots of another session identity.

        In-memory state is dropped; call load() and load_outbox() afterwards.
        The previous identity's slot files are left untouched.
        """
        self._scope = identity_scope(identity)
        self._events = {}
        self._outbox = []
        self._rejected = []

    def _slot_path(self, slot: str) -> Path:
        assert self.config.directory is not None
        prefix = self.config.namespace
        if self._scope:
            prefix = f"{prefix}_{self._scope}"
        return self.config.directory / f"{prefix}_{slot}.json"

    # ==================== Slot I/O ====================

    def _read_slot(self, slot: str) -> list[Any] | None:
        if self._memory_only:
            return None
        path = self._slot_path(slot)
        try:
            if not path.exists():
                return None
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            self._degrade(StorageError(f"Failed to read {path}: {e}"))
            return None
        except ValueError as e:
            logger.warning("Discarding unreadable slot %s: %s", path.name, str(e))
            return None
        if not isinstance(data, list):
            logger.warning("Discarding slot %s: expected a list", path.name)
            return None
        return data

    def _write_slot(self, slot: str, payload: bytes) -> None:
        if self._memory_only:
            return
        path = self._slot_path(slot)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            self._degrade(StorageError(f"Failed to write {path}: {e}"))

    def _degrade(self, error: StorageError) -> None:
        logger.warning("Local storage unavailable, continuing in memory only: %s", str(error))
        self._memory_only = True

    def _commit_events(self) -> None:
        self._write_slot("activities", _events_adapter.dump_json(list(self._events.values())))

    def _commit_outbox(self) -> None:
        self._write_slot("outbox", _outbox_adapter.dump_json(self._outbox))

    def _commit_rejected(self) -> None:
        self._write_slot("rejected", _outbox_adapter.dump_json(self._rejected))

    # ==================== Event Operations ====================

    def load(self) -> list[ActivityEvent]:
        """Load the last persisted snapshot (empty when there is none).

        Cached rows of either wire shape are normalized through the adapter.

        Returns:
            The events now held by the store
        """
        raw = self._read_slot("activities")
        if raw is not None:
            try:
                events = decode_records(raw, self._catalog)
            except MalformedRecordError as e:
                logger.warning("Discarding malformed cached events: %s", str(e))
                events = []
            self._events = {e.id: e for e in events}
        logger.debug("Loaded %d events from local store", len(self._events))
        return self.snapshot()

    def snapshot(self) -> list[ActivityEvent]:
        """Current events, without touching the medium."""
        return list(self._events.values())

    def get(self, event_id: str) -> ActivityEvent | None:
        return self._events.get(event_id)

    def replace(self, events: list[ActivityEvent]) -> None:
        """Atomically overwrite the whole event set."""
        self._events = {e.id: e for e in events}
        self._commit_events()

    def upsert_local(self, event: ActivityEvent) -> None:
        self._events[event.id] = event
        self._commit_events()

    def remove_local(self, event_id: str) -> bool:
        """Remove an event.

        Returns:
            True if the event was present
        """
        if self._events.pop(event_id, None) is None:
            return False
        self._commit_events()
        return True

    def reassign_id(self, old_id: str, new_id: str) -> bool:
        """Replace a client-issued id with the server's id.

        Pending operations referencing the old id are rewritten too, so an
        edit queued before the server answered still finds its event.

        Returns:
            True if a stored event carried the old id
        """
        if old_id == new_id:
            return old_id in self._events
        found = False
        event = self._events.pop(old_id, None)
        if event is not None:
            self._events[new_id] = event.model_copy(update={"id": new_id})
            self._commit_events()
            found = True

        changed = False
        for op in self._outbox:
            if op.event_id == old_id:
                op.event_id = new_id
                if op.event is not None:
                    op.event = op.event.model_copy(update={"id": new_id})
                if op.previous is not None:
                    op.previous = op.previous.model_copy(update={"id": new_id})
                changed = True
        if changed:
            self._commit_outbox()
        return found

    # ==================== Outbox Operations ====================

    def _read_ops(self, slot: str) -> list[PendingOperation] | None:
        raw = self._read_slot(slot)
        if raw is None:
            return None
        try:
            return _outbox_adapter.validate_python(raw)
        except ValueError as e:
            logger.warning("Discarding malformed %s slot: %s", slot, str(e))
            return []

    def load_outbox(self) -> list[PendingOperation]:
        """Load pending and rejected writes from the last session.

        Returns:
            The pending writes, oldest first
        """
        outbox = self._read_ops("outbox")
        if outbox is not None:
            self._outbox = outbox
        rejected = self._read_ops("rejected")
        if rejected is not None:
            self._rejected = rejected
        return list(self._outbox)

    def pending(self) -> list[PendingOperation]:
        return list(self._outbox)

    def save_outbox(self, ops: list[PendingOperation]) -> None:
        self._outbox = list(ops)
        self._commit_outbox()

    # ==================== Rejected Writes ====================

    def rejected(self) -> list[PendingOperation]:
        """Writes the remote store refused; their effect is kept locally only."""
        return list(self._rejected)

    def save_rejected(self, ops: list[PendingOperation]) -> None:
        self._rejected = list(ops)
        self._commit_rejected()

    def clear(self) -> None:
        """Drop all events, pending and rejected writes (sign-out)."""
        self._events = {}
        self._outbox = []
        self._rejected = []
        self._commit_events()
        self._commit_outbox()
        self._commit_rejected()
