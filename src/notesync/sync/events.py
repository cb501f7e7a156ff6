"""Observer interface for sync and migration events.

Collaborators subscribe to a SyncEvent and receive a payload carrying
enough data to render status without querying the engines.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional
from uuid import uuid4

from rich.console import Console

from ..db.schemas import ConflictRecord, ConflictResolution, MigrationStatus, NoteSnapshot


class SyncEvent(str, Enum):
    """Events emitted by the sync and migration engines."""

    NOTE_SYNCED = "note-synced"
    SYNC_FAILED = "sync-failed"
    CONFLICT_DETECTED = "conflict-detected"
    CONFLICT_RESOLVED = "conflict-resolved"
    MIGRATION_PROGRESS = "migration-progress-updated"
    MIGRATION_COMPLETED = "migration-completed"


@dataclass
class NoteSynced:
    note: NoteSnapshot


@dataclass
class SyncFailed:
    note_id: str
    snapshot: NoteSnapshot
    error: str


@dataclass
class ConflictDetected:
    conflict: ConflictRecord

    @property
    def note_id(self) -> str:
        return self.conflict.note_id


@dataclass
class ConflictResolved:
    note_id: str
    resolution: ConflictResolution
    note: Optional[NoteSnapshot]


@dataclass
class MigrationProgress:
    status: MigrationStatus


@dataclass
class MigrationCompleted:
    status: MigrationStatus


Listener = Callable[[Any], None]

console = Console()


class EventBus:
    """Subscribe/unsubscribe registry owned by a sync session."""

    def __init__(self):
        self._listeners: dict[str, tuple[SyncEvent, Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event: SyncEvent, callback: Listener) -> str:
        """Register a callback. Returns a token for unsubscribe()."""
        token = str(uuid4())
        with self._lock:
            self._listeners[token] = (event, callback)
        return token

    def unsubscribe(self, token: str) -> bool:
        with self._lock:
            return self._listeners.pop(token, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def listener_count(self, event: Optional[SyncEvent] = None) -> int:
        with self._lock:
            if event is None:
                return len(self._listeners)
            return sum(1 for ev, _ in self._listeners.values() if ev == event)

    def emit(self, event: SyncEvent, payload: Any) -> None:
        """Deliver payload to every subscriber of event.

        A failing callback is reported and does not stop delivery to the
        remaining subscribers.
        """
        with self._lock:
            callbacks = [cb for ev, cb in self._listeners.values() if ev == event]

        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                console.print(f"[red]Listener for {event.value} failed:[/red] {e}")
