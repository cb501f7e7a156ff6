"""Database module for local SQLite storage."""

from .models import Note
from .schemas import (
    ConflictRecord,
    ConflictResolution,
    FailedSync,
    MigrationConflictPolicy,
    MigrationOptions,
    MigrationStatus,
    MigrationStrategy,
    NoteCreate,
    NoteSnapshot,
    NoteUpdate,
    RemoteNote,
    SyncStatus,
)
from .sqlite import Database
from .store import LEGACY_SCOPE, LocalStore

__all__ = [
    "Note",
    "ConflictRecord",
    "ConflictResolution",
    "FailedSync",
    "MigrationConflictPolicy",
    "MigrationOptions",
    "MigrationStatus",
    "MigrationStrategy",
    "NoteCreate",
    "NoteSnapshot",
    "NoteUpdate",
    "RemoteNote",
    "SyncStatus",
    "Database",
    "LEGACY_SCOPE",
    "LocalStore",
]
