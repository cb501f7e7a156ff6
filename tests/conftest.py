"""Pytest configuration and shared fixtures.

This module provides fixtures for testing notesync, including temporary
databases, identity-scoped stores and an in-memory note server that
honours the remote gateway contract.
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

from notesync.config import reset_config
from notesync.db.schemas import NoteSnapshot, RemoteNote, SyncStatus
from notesync.db.sqlite import Database
from notesync.db.store import LocalStore
from notesync.sync.conflict import ConflictDetector
from notesync.sync.events import EventBus
from notesync.sync.gateway import NetworkError, SemanticError, VersionConflictError
from notesync.sync.queue import SyncQueue

IDENTITY = "user-1"


# ============================================================================
# Fake Note Server
# ============================================================================


class FakeNoteServer:
    """In-memory stand-in for the remote note API.

    Updates are version-conditioned: a PUT is rejected with the server
    copy when its base version is stale or its version does not move
    the note forward.
    """

    def __init__(self):
        self.notes: dict[str, RemoteNote] = {}
        self.calls: list[tuple[str, str]] = []
        self.sent: list[NoteSnapshot] = []
        self.offline = False
        self.on_request: Optional[Callable[[str, str], None]] = None
        self._queued_failures: dict[str, list[Exception]] = {}
        self._rules: list[tuple[str, Callable[[NoteSnapshot], bool], Exception]] = []

    # -- failure injection ---------------------------------------------------

    def fail(self, op: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of op raise error."""
        self._queued_failures.setdefault(op, []).extend([error] * times)

    def fail_when(self, op: str, predicate: Callable[[NoteSnapshot], bool], error: Exception) -> None:
        """Make every call of op for matching notes raise error."""
        self._rules.append((op, predicate, error))

    def calls_for(self, op: str) -> list[str]:
        return [note_id for called, note_id in self.calls if called == op]

    def _check(self, op: str, note_id: str, note: Optional[NoteSnapshot] = None) -> None:
        self.calls.append((op, note_id))
        if note is not None:
            self.sent.append(note)
        if self.on_request is not None:
            self.on_request(op, note_id)
        if self.offline:
            raise NetworkError("offline")
        queued = self._queued_failures.get(op)
        if queued:
            raise queued.pop(0)
        for rule_op, predicate, error in self._rules:
            if rule_op == op and note is not None and predicate(note):
                raise error

    # -- other devices -------------------------------------------------------

    def put_remote(
        self,
        note_id: str,
        title: str = "",
        body: str = "",
        version: int = 1,
        tags: Optional[list[str]] = None,
        updated_at: Optional[datetime] = None,
    ) -> RemoteNote:
        remote = RemoteNote(
            id=note_id,
            title=title,
            body=body,
            tags=tags or [],
            version=version,
            created_at=updated_at or datetime.now(timezone.utc),
            updated_at=updated_at or datetime.now(timezone.utc),
        )
        self.notes[note_id] = remote
        return remote

    def edit_remotely(self, note_id: str, **changes) -> RemoteNote:
        """Apply an edit as another device would, bumping the version."""
        current = self.notes[note_id]
        remote = current.model_copy(
            update={
                **changes,
                "version": current.version + 1,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self.notes[note_id] = remote
        return remote

    # -- gateway contract ----------------------------------------------------

    def create_note(self, note: NoteSnapshot) -> RemoteNote:
        self._check("create", note.id, note)
        remote = RemoteNote(
            id=note.id,
            title=note.title,
            body=note.body,
            color=note.color,
            tags=list(note.tags),
            version=note.version,
            created_at=note.created_at,
            updated_at=note.updated_at,
        )
        self.notes[note.id] = remote
        return remote.model_copy()

    def update_note(self, remote_id: str, note: NoteSnapshot) -> RemoteNote:
        self._check("update", remote_id, note)
        current = self.notes.get(remote_id)
        if current is None:
            raise SemanticError(f"Note {remote_id} not found", 404)
        stale_base = note.synced_version is not None and note.synced_version != current.version
        if stale_base or note.version <= current.version:
            raise VersionConflictError(current.model_copy())
        remote = current.model_copy(
            update={
                "title": note.title,
                "body": note.body,
                "color": note.color,
                "tags": list(note.tags),
                "version": note.version,
                "updated_at": note.updated_at,
            }
        )
        self.notes[remote_id] = remote
        return remote.model_copy()

    def delete_note(self, remote_id: str) -> None:
        self._check("delete", remote_id)
        self.notes.pop(remote_id, None)

    def list_notes(self) -> list[RemoteNote]:
        self._check("list", "*")
        return [n.model_copy() for n in self.notes.values()]

    def close(self) -> None:
        pass


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database file path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    # Cleanup
    if db_path.exists():
        db_path.unlink()


@pytest.fixture(scope="function")
def db(temp_db_path: Path) -> Generator[Database, None, None]:
    """Create a test database instance."""
    reset_config()
    os.environ["NOTESYNC_DB_PATH"] = str(temp_db_path)

    database = Database(str(temp_db_path))
    database.create_tables()
    yield database

    database.dispose()
    reset_config()
    if "NOTESYNC_DB_PATH" in os.environ:
        del os.environ["NOTESYNC_DB_PATH"]


@pytest.fixture
def legacy_store(db: Database) -> LocalStore:
    """Store over legacy anonymous notes."""
    return LocalStore(db)


@pytest.fixture
def store(db: Database) -> LocalStore:
    """Store of the signed-in test identity."""
    return LocalStore(db, IDENTITY)


# ============================================================================
# Sync Fixtures
# ============================================================================


@pytest.fixture
def server() -> FakeNoteServer:
    """In-memory note server."""
    return FakeNoteServer()


@pytest.fixture
def sleeps() -> list[float]:
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def detector(store: LocalStore, events: EventBus) -> ConflictDetector:
    return ConflictDetector(store, events)


@pytest.fixture
def queue(
    store: LocalStore,
    server: FakeNoteServer,
    detector: ConflictDetector,
    events: EventBus,
    sleeps: list[float],
) -> Generator[SyncQueue, None, None]:
    """Sync queue wired to the fake server, without a background thread."""
    sync_queue = SyncQueue(
        store,
        server,
        detector=detector,
        events=events,
        batch_size=10,
        retry_attempts=3,
        retry_delay=2.0,
        auto_sync=False,
        sleep=sleeps.append,
    )
    yield sync_queue
    sync_queue.stop()


# ============================================================================
# Sample Data Fixtures
# ============================================================================


def build_note(
    title: str = "Groceries",
    body: str = "Milk, eggs, bread",
    owner_id: Optional[str] = IDENTITY,
    **fields,
) -> NoteSnapshot:
    """Build a note snapshot for tests."""
    return NoteSnapshot(title=title, body=body, owner_id=owner_id, **fields)


@pytest.fixture
def make_note() -> Callable[..., NoteSnapshot]:
    """Factory for note snapshots owned by the test identity."""
    return build_note


@pytest.fixture
def identity() -> str:
    return IDENTITY


@pytest.fixture
def legacy_notes(legacy_store: LocalStore) -> list[NoteSnapshot]:
    """Three anonymous notes created before sign-in."""
    notes = [
        build_note("Groceries", "Milk, eggs, bread", owner_id=None),
        build_note("Ideas", "A book about tides", owner_id=None, tags=["writing"]),
        build_note("Todo", "Renew passport before June", owner_id=None),
    ]
    for note in notes:
        legacy_store.save_note(note)
    return notes


@pytest.fixture
def synced_note(store: LocalStore, server: FakeNoteServer) -> NoteSnapshot:
    """A note that is on the server at version 1."""
    note = build_note(
        "Hello",
        "Hello",
        version=1,
        sync_status=SyncStatus.SYNCED,
        synced_version=1,
        last_sync_at=datetime.now(timezone.utc),
    )
    store.save_note(note)
    server.put_remote(note.id, title=note.title, body=note.body, version=1)
    return note
