"""SQLAlchemy ORM models for local SQLite database.

Tables:
- notes: Note records, scoped per identity ("" holds legacy anonymous notes)
- sync_conflicts: Diverged local/remote versions awaiting resolution
- failed_syncs: Notes whose sync gave up, kept for manual retry
- migration_status: One migration progress record per identity
- migration_history: Summaries of finished migration runs
- note_backups: Index of pre-migration backup files
"""

import json
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .schemas import DEFAULT_COLOR, SyncStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def generate_uuid() -> str:
    """Generate a UUID string for primary keys."""
    return str(uuid4())


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Note(Base):
    """Note model - one row per note per identity scope."""

    __tablename__ = "notes"

    # Primary key
    scope: Mapped[str] = mapped_column(String(64), primary_key=True, default="")
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    owner_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    # Content
    title: Mapped[str] = mapped_column(String(500), default="")
    body: Mapped[str] = mapped_column(Text, default="")
    color: Mapped[str] = mapped_column(String(20), default=DEFAULT_COLOR)
    tags: Mapped[Optional[str]] = mapped_column(Text)  # JSON array

    # Timestamps
    created_at: Mapped[str] = mapped_column(String(32), default=_now_iso)
    updated_at: Mapped[str] = mapped_column(String(32), default=_now_iso)

    # Sync tracking
    version: Mapped[int] = mapped_column(Integer, default=1)
    sync_status: Mapped[str] = mapped_column(
        String(20), default=SyncStatus.LOCAL_ONLY.value, index=True
    )
    last_sync_at: Mapped[Optional[str]] = mapped_column(String(32))
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    remote_id: Mapped[Optional[str]] = mapped_column(String(64))
    synced_version: Mapped[Optional[int]] = mapped_column(Integer)

    def __repr__(self) -> str:
        return f"<Note(id={self.id}, scope='{self.scope}', v={self.version}, status={self.sync_status})>"

    def get_tags(self) -> list[str]:
        """Get tags as list."""
        if self.tags:
            return json.loads(self.tags)
        return []

    def set_tags(self, tags: list[str]) -> None:
        """Set tags from list."""
        self.tags = json.dumps(tags) if tags else None


class SyncConflictRow(Base):
    """Sync conflict - local and remote snapshots stored as JSON."""

    __tablename__ = "sync_conflicts"

    scope: Mapped[str] = mapped_column(String(64), primary_key=True)
    note_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    local_snapshot: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    remote_snapshot: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    detected_at: Mapped[str] = mapped_column(String(32), default=_now_iso)
    resolution: Mapped[str] = mapped_column(String(20), default="unresolved")

    def __repr__(self) -> str:
        return f"<SyncConflictRow(note_id={self.note_id}, resolution={self.resolution})>"


class FailedSyncRow(Base):
    """Failed-sync ledger entry."""

    __tablename__ = "failed_syncs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    scope: Mapped[str] = mapped_column(String(64), index=True)
    note_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    snapshot: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    error: Mapped[str] = mapped_column(Text, nullable=False)
    failed_at: Mapped[str] = mapped_column(String(32), default=_now_iso)

    def __repr__(self) -> str:
        return f"<FailedSyncRow(note_id={self.note_id}, error='{self.error[:40]}')>"


class MigrationStateRow(Base):
    """Persisted migration status for one identity."""

    __tablename__ = "migration_status"

    scope: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    updated_at: Mapped[str] = mapped_column(String(32), default=_now_iso, onupdate=_now_iso)


class NoteBackupRow(Base):
    """Index entry for a pre-migration backup file."""

    __tablename__ = "note_backups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    scope: Mapped[str] = mapped_column(String(64), index=True)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    note_count: Mapped[int] = mapped_column(Integer, default=0)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[str] = mapped_column(String(32), default=_now_iso, index=True)

    def __repr__(self) -> str:
        return f"<NoteBackupRow(path='{self.path}', notes={self.note_count})>"


class MigrationHistoryRow(Base):
    """One finished migration run."""

    __tablename__ = "migration_history"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(64), index=True)
    record: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    created_at: Mapped[str] = mapped_column(String(32), default=_now_iso)

    def __repr__(self) -> str:
        return f"<MigrationHistoryRow(seq={self.seq}, scope='{self.scope}')>"
