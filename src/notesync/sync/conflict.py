"""Conflict detection and resolution for sync operations.

Detects when the server holds a version of a note that this device has
not seen and whose content differs from the local copy, and provides
explicit resolution strategies. Nothing is merged automatically: a
conflicting note is suspended from syncing until resolve_conflict().
"""

from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from rich.console import Console

from ..db.schemas import (
    ConflictRecord,
    ConflictResolution,
    NoteSnapshot,
    NoteUpdate,
    RemoteNote,
    SyncStatus,
    utcnow,
)
from ..db.store import LocalStore
from .events import ConflictDetected, ConflictResolved, EventBus, SyncEvent

if TYPE_CHECKING:
    from .queue import SyncQueue


class ConflictError(Exception):
    """Base exception for conflict handling."""

    pass


class ConflictNotFoundError(ConflictError):
    """Raised when resolving a note that has no pending conflict."""

    pass


class ConflictOutcome(str, Enum):
    """Classification of a local note against the server's copy."""

    CLEAN = "clean"  # Server has nothing this device has not seen
    IDENTICAL = "identical"  # Versions differ but content matches
    CONFLICT = "conflict"  # Server is newer and content differs


def detect_conflict(local: NoteSnapshot, remote: RemoteNote) -> ConflictOutcome:
    """Decide whether a server copy conflicts with the local note.

    Args:
        local: Local note as sent (or as stored)
        remote: Server's current or rejecting copy

    Returns:
        ConflictOutcome
    """
    last_synced = local.synced_version or 0
    if remote.version <= last_synced:
        return ConflictOutcome.CLEAN
    if local.content_key() == remote.content_key():
        return ConflictOutcome.IDENTICAL
    return ConflictOutcome.CONFLICT


console = Console()


class ConflictDetector:
    """Records conflicts, suspends their notes and applies resolutions."""

    def __init__(
        self,
        store: LocalStore,
        events: Optional[EventBus] = None,
        queue: Optional["SyncQueue"] = None,
    ):
        """Initialize conflict detector.

        Args:
            store: Local store of the signed-in identity
            events: Event bus for conflict notifications
            queue: Sync queue resolved notes are handed back to
        """
        self.store = store
        self.events = events or EventBus()
        self.queue = queue

    def attach_queue(self, queue: "SyncQueue") -> None:
        self.queue = queue

    def inspect(self, local: NoteSnapshot, remote: RemoteNote) -> ConflictOutcome:
        return detect_conflict(local, remote)

    def flag(self, local: NoteSnapshot, remote: RemoteNote) -> ConflictRecord:
        """Persist a conflict and suspend the note until it is resolved.

        Args:
            local: Local note that was rejected
            remote: Server copy

        Returns:
            The stored ConflictRecord
        """
        with self.store.locked():
            current = self.store.get_note(local.id) or local
            record = ConflictRecord(
                note_id=local.id,
                local_snapshot=current,
                remote_snapshot=remote,
            )
            self.store.save_conflict(record)
            self.store.save_note(current.model_copy(update={"sync_status": SyncStatus.CONFLICT}))

        if self.queue is not None:
            self.queue.discard(local.id)

        console.print(
            f"[yellow]Conflict on note {local.id}:[/yellow] "
            f"local v{current.version}, server v{remote.version}"
        )
        self.events.emit(SyncEvent.CONFLICT_DETECTED, ConflictDetected(conflict=record))
        return record

    def get_conflict(self, note_id: str) -> Optional[ConflictRecord]:
        return self.store.get_conflict(note_id)

    def list_conflicts(self) -> list[ConflictRecord]:
        """List unresolved conflicts, oldest first."""
        return self.store.list_conflicts()

    def resolve_conflict(
        self,
        note_id: str,
        strategy: Union[ConflictResolution, str],
        merged_data: Optional[Union[NoteUpdate, dict]] = None,
    ) -> NoteSnapshot:
        """Resolve a pending conflict.

        Args:
            note_id: Conflicting note
            strategy: keep_local, keep_remote or merged
            merged_data: Fields to apply for the merged strategy

        Returns:
            The note after resolution

        Raises:
            ConflictNotFoundError: No pending conflict for note_id
            ValueError: Unknown strategy, or merged without merged_data
        """
        strategy = ConflictResolution(strategy)
        if strategy == ConflictResolution.UNRESOLVED:
            raise ValueError("A conflict cannot be resolved as 'unresolved'")
        if strategy == ConflictResolution.MERGED and merged_data is None:
            raise ValueError("The merged strategy requires merged_data")

        with self.store.locked():
            record = self.store.get_conflict(note_id)
            current = self.store.get_note(note_id)
            if record is None or current is None:
                raise ConflictNotFoundError(f"No pending conflict for note {note_id}")

            remote = record.remote_snapshot
            now = utcnow()
            linked = {
                "remote_id": remote.id if remote.id != current.id else current.remote_id,
                "synced_version": remote.version,
            }

            if strategy == ConflictResolution.KEEP_LOCAL:
                # Rebase above the server copy so the next update overwrites it
                note = current.model_copy(
                    update={
                        **linked,
                        "version": max(current.version, remote.version) + 1,
                        "sync_status": SyncStatus.LOCAL_ONLY,
                        "updated_at": now,
                    }
                )
            elif strategy == ConflictResolution.KEEP_REMOTE:
                remote_content = {
                    "title": remote.title,
                    "body": remote.body,
                    "color": remote.color,
                    "tags": list(remote.tags),
                    "updated_at": remote.updated_at or now,
                }
                if remote.version >= current.version:
                    note = current.model_copy(
                        update={
                            **linked,
                            **remote_content,
                            "version": remote.version,
                            "sync_status": SyncStatus.SYNCED,
                            "last_sync_at": now,
                        }
                    )
                else:
                    # Version may not go backwards; push the server content as a new edit
                    note = current.model_copy(
                        update={
                            **linked,
                            **remote_content,
                            "version": current.version + 1,
                            "sync_status": SyncStatus.LOCAL_ONLY,
                        }
                    )
            else:
                if isinstance(merged_data, NoteUpdate):
                    merged = merged_data
                else:
                    merged = NoteUpdate.model_validate(merged_data)
                note = current.model_copy(
                    update={
                        **linked,
                        **merged.model_dump(exclude_none=True),
                        "version": max(current.version, remote.version) + 1,
                        "sync_status": SyncStatus.LOCAL_ONLY,
                        "updated_at": now,
                    }
                )

            self.store.save_note(note)
            self.store.delete_conflict(note_id)

        console.print(f"[green]Conflict on note {note_id} resolved:[/green] {strategy.value}")
        self.events.emit(
            SyncEvent.CONFLICT_RESOLVED,
            ConflictResolved(note_id=note_id, resolution=strategy, note=note),
        )

        if note.sync_status == SyncStatus.LOCAL_ONLY and self.queue is not None:
            self.queue.enqueue(note)
        return note
