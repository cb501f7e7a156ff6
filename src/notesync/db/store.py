"""Local note store.

Durable per-identity persistence of notes and sync bookkeeping records.
A store is a view over one scope of the database: an identity id, or
LEGACY_SCOPE for notes created before anyone signed in. No business
logic lives here.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Generator, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .models import (
    FailedSyncRow,
    MigrationHistoryRow,
    MigrationStateRow,
    Note,
    NoteBackupRow,
    SyncConflictRow,
)
from .schemas import (
    ConflictRecord,
    ConflictResolution,
    FailedSync,
    MigrationRecord,
    MigrationStatus,
    NoteSnapshot,
    RemoteNote,
    SyncStatus,
)
from .sqlite import Database

LEGACY_SCOPE = ""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class LocalStore:
    """Notes and sync records for a single identity scope."""

    def __init__(self, db: Database, identity_id: Optional[str] = None):
        """Initialize store.

        Args:
            db: Database instance
            identity_id: Signed-in identity, or None for legacy anonymous notes
        """
        self.db = db
        self.identity_id = identity_id
        self.scope = identity_id or LEGACY_SCOPE

    @property
    def is_legacy(self) -> bool:
        return self.scope == LEGACY_SCOPE

    @contextmanager
    def locked(self) -> Generator[None, None, None]:
        """Hold the database write lock for a read-modify-write sequence."""
        with self.db.write_lock:
            yield

    # ========================================================================
    # Note Operations
    # ========================================================================

    def get_note(self, note_id: str, session: Optional[Session] = None) -> Optional[NoteSnapshot]:
        """Get a note by id, tombstones included."""

        def _get(s: Session) -> Optional[NoteSnapshot]:
            row = s.get(Note, (self.scope, note_id))
            return self._to_snapshot(row) if row else None

        if session:
            return _get(session)
        with self.db.get_session() as s:
            return _get(s)

    def save_note(self, note: NoteSnapshot, session: Optional[Session] = None) -> NoteSnapshot:
        """Insert or replace a note."""

        def _save(s: Session) -> NoteSnapshot:
            row = s.get(Note, (self.scope, note.id))
            if row is None:
                row = Note(scope=self.scope, id=note.id)
                s.add(row)
            row.owner_id = note.owner_id
            row.title = note.title
            row.body = note.body
            row.color = note.color
            row.set_tags(list(note.tags))
            row.created_at = _iso(note.created_at)
            row.updated_at = _iso(note.updated_at)
            row.version = note.version
            row.sync_status = note.sync_status.value
            row.last_sync_at = _iso(note.last_sync_at)
            row.deleted = note.deleted
            row.remote_id = note.remote_id
            row.synced_version = note.synced_version
            return note

        if session:
            return _save(session)
        with self.db.get_session() as s:
            return _save(s)

    def list_notes(
        self,
        include_deleted: bool = False,
        statuses: Optional[Iterable[SyncStatus]] = None,
    ) -> list[NoteSnapshot]:
        """List notes in this scope, oldest first."""
        with self.db.get_session() as s:
            stmt = select(Note).where(Note.scope == self.scope)
            if not include_deleted:
                stmt = stmt.where(Note.deleted == False)  # noqa: E712
            if statuses is not None:
                stmt = stmt.where(Note.sync_status.in_([st.value for st in statuses]))
            stmt = stmt.order_by(Note.created_at)
            return [self._to_snapshot(row) for row in s.execute(stmt).scalars().all()]

    def pending_notes(self) -> list[NoteSnapshot]:
        """Notes that still need to reach the server, tombstones included.

        Syncing counts as pending: an acknowledgment that was never
        recorded leaves the note unconfirmed.
        """
        return self.list_notes(
            include_deleted=True,
            statuses=[SyncStatus.LOCAL_ONLY, SyncStatus.SYNCING, SyncStatus.ERROR],
        )

    def find_by_remote_id(self, remote_id: str) -> Optional[NoteSnapshot]:
        """Get the note linked to a server id that differs from its own."""
        with self.db.get_session() as s:
            stmt = select(Note).where(Note.scope == self.scope, Note.remote_id == remote_id)
            row = s.execute(stmt).scalars().first()
            return self._to_snapshot(row) if row else None

    def purge_note(self, note_id: str) -> bool:
        """Physically remove a note and its bookkeeping records."""
        with self.db.get_session() as s:
            row = s.get(Note, (self.scope, note_id))
            if not row:
                return False
            s.delete(row)
            s.execute(
                delete(FailedSyncRow).where(
                    FailedSyncRow.scope == self.scope, FailedSyncRow.note_id == note_id
                )
            )
            s.execute(
                delete(SyncConflictRow).where(
                    SyncConflictRow.scope == self.scope, SyncConflictRow.note_id == note_id
                )
            )
            return True

    def purge_scope(self) -> int:
        """Delete every note in this scope. Returns number removed."""
        with self.db.get_session() as s:
            result = s.execute(delete(Note).where(Note.scope == self.scope))
            return result.rowcount or 0

    def count_notes(self) -> int:
        """Count live notes in this scope."""
        return len(self.list_notes())

    def _to_snapshot(self, row: Note) -> NoteSnapshot:
        return NoteSnapshot(
            id=row.id,
            owner_id=row.owner_id,
            title=row.title or "",
            body=row.body or "",
            color=row.color,
            tags=row.get_tags(),
            created_at=_parse(row.created_at),
            updated_at=_parse(row.updated_at),
            version=row.version,
            sync_status=SyncStatus(row.sync_status),
            last_sync_at=_parse(row.last_sync_at),
            deleted=bool(row.deleted),
            remote_id=row.remote_id,
            synced_version=row.synced_version,
        )

    # ========================================================================
    # Conflict Operations
    # ========================================================================

    def save_conflict(self, conflict: ConflictRecord) -> None:
        """Insert or replace the conflict record for a note."""
        with self.db.get_session() as s:
            row = s.get(SyncConflictRow, (self.scope, conflict.note_id))
            if row is None:
                row = SyncConflictRow(scope=self.scope, note_id=conflict.note_id)
                s.add(row)
            row.local_snapshot = conflict.local_snapshot.model_dump_json()
            row.remote_snapshot = conflict.remote_snapshot.model_dump_json(by_alias=True)
            row.detected_at = _iso(conflict.detected_at)
            row.resolution = conflict.resolution.value

    def get_conflict(self, note_id: str) -> Optional[ConflictRecord]:
        """Get the conflict record for a note."""
        with self.db.get_session() as s:
            row = s.get(SyncConflictRow, (self.scope, note_id))
            return self._to_conflict(row) if row else None

    def list_conflicts(self, unresolved_only: bool = True) -> list[ConflictRecord]:
        """List conflict records, oldest first."""
        with self.db.get_session() as s:
            stmt = select(SyncConflictRow).where(SyncConflictRow.scope == self.scope)
            if unresolved_only:
                stmt = stmt.where(
                    SyncConflictRow.resolution == ConflictResolution.UNRESOLVED.value
                )
            stmt = stmt.order_by(SyncConflictRow.detected_at)
            return [self._to_conflict(row) for row in s.execute(stmt).scalars().all()]

    def delete_conflict(self, note_id: str) -> bool:
        """Remove the conflict record for a note."""
        with self.db.get_session() as s:
            row = s.get(SyncConflictRow, (self.scope, note_id))
            if not row:
                return False
            s.delete(row)
            return True

    def _to_conflict(self, row: SyncConflictRow) -> ConflictRecord:
        return ConflictRecord(
            note_id=row.note_id,
            local_snapshot=NoteSnapshot.model_validate_json(row.local_snapshot),
            remote_snapshot=RemoteNote.model_validate_json(row.remote_snapshot),
            detected_at=_parse(row.detected_at),
            resolution=ConflictResolution(row.resolution),
        )

    # ========================================================================
    # Failed Sync Ledger
    # ========================================================================

    def add_failed_sync(self, entry: FailedSync) -> None:
        """Record a note whose sync gave up."""
        with self.db.get_session() as s:
            s.add(
                FailedSyncRow(
                    id=entry.id,
                    scope=self.scope,
                    note_id=entry.note_id,
                    snapshot=entry.snapshot.model_dump_json(),
                    error=entry.error,
                    failed_at=_iso(entry.failed_at),
                )
            )

    def list_failed_syncs(self, note_id: Optional[str] = None) -> list[FailedSync]:
        """List failed-sync ledger entries, oldest first."""
        with self.db.get_session() as s:
            stmt = select(FailedSyncRow).where(FailedSyncRow.scope == self.scope)
            if note_id:
                stmt = stmt.where(FailedSyncRow.note_id == note_id)
            stmt = stmt.order_by(FailedSyncRow.failed_at)
            return [
                FailedSync(
                    id=row.id,
                    note_id=row.note_id,
                    snapshot=NoteSnapshot.model_validate_json(row.snapshot),
                    error=row.error,
                    failed_at=_parse(row.failed_at),
                )
                for row in s.execute(stmt).scalars().all()
            ]

    def clear_failed_syncs(self, note_id: Optional[str] = None) -> int:
        """Remove ledger entries for one note, or all of them."""
        with self.db.get_session() as s:
            stmt = delete(FailedSyncRow).where(FailedSyncRow.scope == self.scope)
            if note_id:
                stmt = stmt.where(FailedSyncRow.note_id == note_id)
            return s.execute(stmt).rowcount or 0

    # ========================================================================
    # Migration Status
    # ========================================================================

    def load_migration_status(self) -> Optional[MigrationStatus]:
        """Load the persisted migration status for this identity."""
        with self.db.get_session() as s:
            row = s.get(MigrationStateRow, self.scope)
            return MigrationStatus.model_validate_json(row.status) if row else None

    def save_migration_status(self, status: MigrationStatus) -> None:
        """Persist the migration status for this identity."""
        with self.db.get_session() as s:
            row = s.get(MigrationStateRow, self.scope)
            if row is None:
                row = MigrationStateRow(scope=self.scope)
                s.add(row)
            row.status = status.model_dump_json()

    def clear_migration_status(self) -> None:
        with self.db.get_session() as s:
            row = s.get(MigrationStateRow, self.scope)
            if row:
                s.delete(row)

    def add_migration_record(self, record: MigrationRecord, keep: int = 20) -> None:
        """Append a finished run to the history, keeping the most recent entries."""
        with self.db.get_session() as s:
            s.add(
                MigrationHistoryRow(
                    scope=self.scope,
                    record=record.model_dump_json(),
                    created_at=_iso(record.timestamp),
                )
            )
            s.flush()
            stmt = (
                select(MigrationHistoryRow)
                .where(MigrationHistoryRow.scope == self.scope)
                .order_by(MigrationHistoryRow.seq.desc())
            )
            for stale in s.execute(stmt).scalars().all()[keep:]:
                s.delete(stale)

    def list_migration_history(self) -> list[MigrationRecord]:
        """List finished migration runs, newest first."""
        with self.db.get_session() as s:
            stmt = (
                select(MigrationHistoryRow)
                .where(MigrationHistoryRow.scope == self.scope)
                .order_by(MigrationHistoryRow.seq.desc())
            )
            return [
                MigrationRecord.model_validate_json(row.record)
                for row in s.execute(stmt).scalars().all()
            ]

    # ========================================================================
    # Backup Index
    # ========================================================================

    def record_backup(
        self,
        path: str,
        note_count: int,
        checksum: str,
        keep: int = 10,
        created_at: Optional[datetime] = None,
    ) -> list[str]:
        """Add a backup to the index, keeping only the most recent entries.

        Returns:
            Paths of the entries dropped from the index
        """
        with self.db.get_session() as s:
            row = NoteBackupRow(
                scope=self.scope, path=path, note_count=note_count, checksum=checksum
            )
            if created_at is not None:
                row.created_at = _iso(created_at)
            s.add(row)
            s.flush()
            stmt = (
                select(NoteBackupRow)
                .where(NoteBackupRow.scope == self.scope)
                .order_by(NoteBackupRow.created_at.desc())
            )
            trimmed = []
            for stale in s.execute(stmt).scalars().all()[keep:]:
                trimmed.append(stale.path)
                s.delete(stale)
            return trimmed

    def list_backups(self) -> list[dict]:
        """List indexed backups, newest first."""
        with self.db.get_session() as s:
            stmt = (
                select(NoteBackupRow)
                .where(NoteBackupRow.scope == self.scope)
                .order_by(NoteBackupRow.created_at.desc())
            )
            return [
                {
                    "path": row.path,
                    "note_count": row.note_count,
                    "checksum": row.checksum,
                    "created_at": row.created_at,
                }
                for row in s.execute(stmt).scalars().all()
            ]

