"""Migration module for attaching legacy notes to an account."""

from .backup import BackupMetadata, BackupResult, NoteBackupManager
from .dedupe import SIMILARITY_THRESHOLD, DuplicateMatch, MatchType, find_duplicate
from .engine import (
    MigrationEngine,
    MigrationError,
    MigrationFatalError,
    MigrationInProgressError,
    MigrationItemError,
)

__all__ = [
    "BackupMetadata",
    "BackupResult",
    "NoteBackupManager",
    "SIMILARITY_THRESHOLD",
    "DuplicateMatch",
    "MatchType",
    "find_duplicate",
    "MigrationEngine",
    "MigrationError",
    "MigrationFatalError",
    "MigrationInProgressError",
    "MigrationItemError",
]
