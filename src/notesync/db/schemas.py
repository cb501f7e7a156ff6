"""Pydantic schemas for data validation.

These schemas define the note data exchanged between the local store,
the sync queue, the conflict detector, the migration engine and the
remote note API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SyncStatus(str, Enum):
    """Sync state of a note."""

    LOCAL_ONLY = "local_only"  # Pending local changes not acknowledged by the server
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICT = "conflict"  # Waiting for explicit resolution
    ERROR = "error"  # Retries exhausted or rejected, manual retry


class ConflictResolution(str, Enum):
    """Resolution of a sync conflict."""

    UNRESOLVED = "unresolved"
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGED = "merged"


class MigrationStrategy(str, Enum):
    """How legacy notes are attached to an account."""

    MERGE = "merge"  # Search for remote duplicates first
    OVERWRITE = "overwrite"  # Create everything, no duplicate search
    KEEP_LOCAL = "keep_local"  # Local note wins over any duplicate
    SELECTIVE = "selective"  # Only the note ids listed in the options


class MigrationConflictPolicy(str, Enum):
    """Which copy wins when a legacy note has a remote duplicate."""

    NEWER = "newer"
    OLDER = "older"
    MANUAL = "manual"


# Predefined note colors
NOTE_COLORS = (
    "#FFE5B4",
    "#E5F3FF",
    "#E5FFE5",
    "#FFE5E5",
    "#F0E5FF",
    "#FFE5F0",
    "#E5F0FF",
    "#F5F5F5",
)
DEFAULT_COLOR = NOTE_COLORS[0]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_note_id() -> str:
    """Generate a client-side note id."""
    return str(uuid4())


def _ordered_tags(tags: Optional[list[str]]) -> Optional[list[str]]:
    """Strip tags and drop blanks and repeats, keeping first-seen order."""
    if tags is None:
        return None
    seen: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# Note Schemas
# ============================================================================


class NoteBase(BaseModel):
    """Editable note content."""

    title: str = Field("", max_length=500)
    body: str = ""
    color: str = DEFAULT_COLOR
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: list[str]) -> list[str]:
        """Tags are an ordered set."""
        return _ordered_tags(v) or []


class NoteCreate(NoteBase):
    """Schema for creating a note."""

    pass


class NoteUpdate(BaseModel):
    """Schema for updating a note. All fields optional."""

    title: Optional[str] = Field(None, max_length=500)
    body: Optional[str] = None
    color: Optional[str] = None
    tags: Optional[list[str]] = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        return _ordered_tags(v)


class NoteSnapshot(NoteBase):
    """Immutable copy of a stored note at one point in time."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_note_id)
    owner_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(1, ge=1)
    sync_status: SyncStatus = SyncStatus.LOCAL_ONLY
    last_sync_at: Optional[datetime] = None
    deleted: bool = False

    # Server bookkeeping
    remote_id: Optional[str] = None  # Server id when it differs from ours
    synced_version: Optional[int] = None  # Last version acknowledged by the server

    @field_validator("created_at", "updated_at", "last_sync_at")
    @classmethod
    def ensure_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _aware(v)

    @property
    def server_id(self) -> str:
        """Id the server knows this note by."""
        return self.remote_id or self.id

    @property
    def is_new(self) -> bool:
        """True if the server has never acknowledged this note."""
        return self.synced_version is None and self.remote_id is None

    def content_key(self) -> tuple:
        """Comparable user-visible content."""
        return (self.title, self.body, self.color, tuple(self.tags))


class RemoteNote(BaseModel):
    """A note as returned by the remote note API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    title: str = ""
    body: str = Field("", alias="content")
    color: str = DEFAULT_COLOR
    tags: list[str] = Field(default_factory=list)
    version: int = 1
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, v: Optional[list[str]]) -> list[str]:
        return _ordered_tags(v) or []

    @field_validator("created_at", "updated_at")
    @classmethod
    def ensure_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _aware(v)

    def content_key(self) -> tuple:
        """Comparable user-visible content."""
        return (self.title, self.body, self.color, tuple(self.tags))


# ============================================================================
# Sync Bookkeeping Schemas
# ============================================================================


class ConflictRecord(BaseModel):
    """Local and remote versions of a note that diverged."""

    note_id: str
    local_snapshot: NoteSnapshot
    remote_snapshot: RemoteNote
    detected_at: datetime = Field(default_factory=utcnow)
    resolution: ConflictResolution = ConflictResolution.UNRESOLVED


class FailedSync(BaseModel):
    """Ledger entry for a note whose sync gave up."""

    id: str = Field(default_factory=generate_note_id)
    note_id: str
    snapshot: NoteSnapshot
    error: str
    failed_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Migration Schemas
# ============================================================================


class MigrationOptions(BaseModel):
    """Options for attaching legacy notes to an account."""

    strategy: MigrationStrategy = MigrationStrategy.MERGE
    conflict_resolution: MigrationConflictPolicy = MigrationConflictPolicy.NEWER
    backup_local: bool = True
    note_ids: Optional[list[str]] = None  # Used by the selective strategy


class MigrationErrorEntry(BaseModel):
    """A legacy note that could not be migrated."""

    note_id: str
    title: str
    reason: str

    def __str__(self) -> str:
        return f'Note "{self.title}" failed to migrate: {self.reason}'


class MigrationStatus(BaseModel):
    """Progress of a migration run, persisted across reloads."""

    in_progress: bool = False
    total_notes: int = 0
    processed_notes: int = 0
    errors: list[MigrationErrorEntry] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)  # Note ids awaiting a decision
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    backup_path: Optional[str] = None
    cancelled: bool = False
    fatal_error: Optional[str] = None  # Set when the run aborted before migrating anything

    @property
    def success(self) -> bool:
        return (
            not self.in_progress
            and not self.cancelled
            and not self.fatal_error
            and not self.errors
        )

    @property
    def interrupted(self) -> bool:
        """True if a run was persisted as started but never finished."""
        return self.in_progress and self.finished_at is None


class MigrationRecord(BaseModel):
    """Summary of one finished migration run."""

    id: str = Field(default_factory=generate_note_id)
    timestamp: datetime = Field(default_factory=utcnow)
    total_notes: int = 0
    processed_notes: int = 0
    errors: list[MigrationErrorEntry] = Field(default_factory=list)
    conflicts: int = 0
    success: bool = False
    cancelled: bool = False
    fatal_error: Optional[str] = None
    backup_path: Optional[str] = None

    @classmethod
    def from_status(cls, status: MigrationStatus) -> "MigrationRecord":
        return cls(
            timestamp=status.finished_at or utcnow(),
            total_notes=status.total_notes,
            processed_notes=status.processed_notes,
            errors=list(status.errors),
            conflicts=len(status.conflicts),
            success=status.success,
            cancelled=status.cancelled,
            fatal_error=status.fatal_error,
            backup_path=status.backup_path,
        )
