"""Pre-migration note backups.

Writes a timestamped snapshot of local notes before the migration
engine touches them, verifies it can be read back and restores it into
the legacy scope on request.
"""

import gzip
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError

from ..db.schemas import NoteSnapshot, SyncStatus, utcnow
from ..db.store import LocalStore

console = Console()


@dataclass
class BackupMetadata:
    """Metadata about a backup."""

    version: str = "1.0"
    created_at: str = ""
    scope: str = ""
    note_count: int = 0
    checksum: str = ""
    app_version: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "version": self.version,
            "created_at": self.created_at,
            "scope": self.scope,
            "note_count": self.note_count,
            "checksum": self.checksum,
            "app_version": self.app_version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BackupMetadata":
        """Create from dictionary."""
        return cls(
            version=data.get("version", "1.0"),
            created_at=data.get("created_at", ""),
            scope=data.get("scope", ""),
            note_count=data.get("note_count", 0),
            checksum=data.get("checksum", ""),
            app_version=data.get("app_version", ""),
        )


@dataclass
class BackupResult:
    """Result of a backup operation."""

    success: bool
    backup_path: Optional[Path] = None
    metadata: Optional[BackupMetadata] = None
    error: Optional[str] = None
    size_bytes: int = 0


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    success: bool
    notes_restored: int = 0
    notes_skipped: int = 0
    error: Optional[str] = None
    restored_ids: list[str] = field(default_factory=list)


def _checksum(notes_data: list[dict]) -> str:
    json_bytes = json.dumps(notes_data, sort_keys=True).encode("utf-8")
    return hashlib.sha256(json_bytes).hexdigest()


class NoteBackupManager:
    """Manages pre-migration note backups."""

    BACKUP_PREFIX = "notes-backup-"
    BACKUP_EXTENSION = ".json.gz"

    def __init__(self, store: LocalStore, backup_dir: Path, keep: int = 10):
        """Initialize backup manager.

        Args:
            store: Store whose backup index records new backups
            backup_dir: Directory backup files are written to
            keep: Number of index entries kept
        """
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.keep = keep

    def create_backup(
        self, notes: list[NoteSnapshot], now: Optional[datetime] = None
    ) -> BackupResult:
        """Write a compressed snapshot of notes.

        Args:
            notes: Notes to back up
            now: Timestamp for the file name (defaults to current time)

        Returns:
            BackupResult with status and details
        """
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            now = now or utcnow()

            notes_data = [note.model_dump(mode="json") for note in notes]

            from .. import __version__

            metadata = BackupMetadata(
                created_at=now.isoformat(),
                scope=self.store.scope,
                note_count=len(notes_data),
                checksum=_checksum(notes_data),
                app_version=__version__,
            )
            backup_data = {"notes": notes_data, "_metadata": metadata.to_dict()}

            stamp = now.strftime("%Y%m%dT%H%M%S%f")
            final_path = self.backup_dir / f"{self.BACKUP_PREFIX}{stamp}{self.BACKUP_EXTENSION}"
            with gzip.open(final_path, "wt", encoding="utf-8") as f:
                json.dump(backup_data, f, indent=2)

            trimmed = self.store.record_backup(
                str(final_path),
                metadata.note_count,
                metadata.checksum,
                keep=self.keep,
                created_at=now,
            )
            self._remove_files(trimmed)

            return BackupResult(
                success=True,
                backup_path=final_path,
                metadata=metadata,
                size_bytes=final_path.stat().st_size,
            )

        except (OSError, TypeError, ValueError, SQLAlchemyError) as e:
            return BackupResult(success=False, error=str(e))

    def verify_backup(self, backup_path: Path) -> tuple[bool, Optional[str]]:
        """Verify backup file integrity.

        Args:
            backup_path: Path to backup file

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            data = self._load_backup_file(Path(backup_path))
        except (OSError, ValueError) as e:
            return False, str(e)

        if "_metadata" not in data:
            return False, "Missing metadata in backup"
        if "notes" not in data:
            return False, "Missing notes in backup"

        metadata = BackupMetadata.from_dict(data["_metadata"])
        if len(data["notes"]) != metadata.note_count:
            return False, (
                f"Note count mismatch: expected {metadata.note_count}, got {len(data['notes'])}"
            )
        if _checksum(data["notes"]) != metadata.checksum:
            return False, "Checksum mismatch"

        return True, None

    def load_backup(self, backup_path: Path) -> list[NoteSnapshot]:
        """Read the notes stored in a backup file."""
        data = self._load_backup_file(Path(backup_path))
        return [NoteSnapshot.model_validate(item) for item in data.get("notes", [])]

    def restore_backup(self, backup_path: Path, dry_run: bool = False) -> RestoreResult:
        """Put the notes of a backup back into the legacy scope.

        Notes the store still holds are skipped. Restored notes come back
        unowned and LocalOnly, so the next migration picks them up again.

        Args:
            backup_path: Path to backup file
            dry_run: If True, only count what would be restored

        Returns:
            RestoreResult with status and counts
        """
        valid, error = self.verify_backup(backup_path)
        if not valid:
            return RestoreResult(success=False, error=error)

        result = RestoreResult(success=True)
        try:
            notes = self.load_backup(backup_path)
            with self.store.locked():
                for note in notes:
                    if self.store.get_note(note.id) is not None:
                        result.notes_skipped += 1
                        continue
                    if not dry_run:
                        self.store.save_note(
                            note.model_copy(
                                update={
                                    "owner_id": None,
                                    "sync_status": SyncStatus.LOCAL_ONLY,
                                    "remote_id": None,
                                    "synced_version": None,
                                    "last_sync_at": None,
                                }
                            )
                        )
                    result.notes_restored += 1
                    result.restored_ids.append(note.id)
        except (ValueError, SQLAlchemyError) as e:
            return RestoreResult(success=False, error=str(e))
        return result

    def list_backups(self) -> list[dict]:
        """List indexed backups, newest first."""
        return self.store.list_backups()

    def _load_backup_file(self, backup_path: Path) -> dict:
        with gzip.open(backup_path, "rt", encoding="utf-8") as f:
            return json.load(f)

    def _remove_files(self, paths: list[str]) -> None:
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as e:
                console.print(f"[yellow]Could not remove old backup {path}:[/yellow] {e}")
