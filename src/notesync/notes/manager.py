"""Notes manager for note create/update/delete operations.

Every local mutation bumps the note version, marks it LocalOnly and
hands it to the sync queue. The manager never talks to the server.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ..db.schemas import NoteCreate, NoteSnapshot, NoteUpdate, SyncStatus, utcnow
from ..db.store import LocalStore
from ..sync.queue import SyncQueue


class NoteNotFoundError(ValueError):
    """Raised when a note does not exist or is deleted."""

    pass


class NoteInConflictError(Exception):
    """Raised when editing a note that is waiting for conflict resolution."""

    def __init__(self, note_id: str):
        self.note_id = note_id
        super().__init__(f"Note {note_id} has an unresolved sync conflict")


SORT_FIELDS = ("created_at", "updated_at", "title")


@dataclass
class NotesStats:
    """Counts for the notes overview."""

    total_notes: int = 0
    recent_notes: int = 0
    total_tags: int = 0
    synced_notes: int = 0
    local_only_notes: int = 0
    conflict_notes: int = 0
    error_notes: int = 0

    @property
    def pending_notes(self) -> int:
        return self.local_only_notes + self.error_notes


class NotesManager:
    """Manages the local lifecycle of notes."""

    def __init__(self, store: LocalStore, queue: Optional[SyncQueue] = None):
        """Initialize notes manager.

        Args:
            store: Local store for the current identity (or legacy scope)
            queue: Sync queue; None for anonymous use
        """
        self.store = store
        self.queue = queue

    @property
    def owner_id(self) -> Optional[str]:
        return self.store.identity_id

    # -------------------------------------------------------------------------
    # Note CRUD
    # -------------------------------------------------------------------------

    def create_note(self, data: NoteCreate) -> NoteSnapshot:
        """Create a new note.

        Args:
            data: Note creation data

        Returns:
            Created note
        """
        now = utcnow()
        note = NoteSnapshot(
            owner_id=self.owner_id,
            title=data.title,
            body=data.body,
            color=data.color,
            tags=data.tags,
            created_at=now,
            updated_at=now,
            version=1,
            sync_status=SyncStatus.LOCAL_ONLY,
        )
        self.store.save_note(note)
        self._hand_off(note)
        return note

    def update_note(self, note_id: str, data: NoteUpdate) -> NoteSnapshot:
        """Update a note.

        Args:
            note_id: Note ID
            data: Fields to change

        Returns:
            Updated note

        Raises:
            NoteNotFoundError: Note missing or deleted
            NoteInConflictError: Note waits for conflict resolution
        """
        with self.store.locked():
            current = self._get_editable(note_id)
            changes = data.model_dump(exclude_none=True)
            if not changes:
                return current

            note = current.model_copy(
                update={
                    **changes,
                    "version": current.version + 1,
                    "sync_status": SyncStatus.LOCAL_ONLY,
                    "updated_at": utcnow(),
                }
            )
            self.store.save_note(note)

        self._hand_off(note)
        return note

    def delete_note(self, note_id: str) -> bool:
        """Delete a note.

        Synced identities keep a tombstone until the deletion reaches the
        server; anonymous notes are removed at once.

        Args:
            note_id: Note ID

        Returns:
            True if deleted, False if not found
        """
        with self.store.locked():
            current = self.store.get_note(note_id)
            if current is None:
                return False
            if current.deleted:
                return True
            if current.sync_status == SyncStatus.CONFLICT:
                raise NoteInConflictError(note_id)

            if self.queue is None:
                return self.store.purge_note(note_id)

            note = current.model_copy(
                update={
                    "deleted": True,
                    "version": current.version + 1,
                    "sync_status": SyncStatus.LOCAL_ONLY,
                    "updated_at": utcnow(),
                }
            )
            self.store.save_note(note)

        self._hand_off(note)
        return True

    def get_note(self, note_id: str) -> Optional[NoteSnapshot]:
        """Get a note by ID.

        Args:
            note_id: Note ID

        Returns:
            Note or None (deleted notes are hidden)
        """
        note = self.store.get_note(note_id)
        if note is None or note.deleted:
            return None
        return note

    def list_notes(
        self,
        search: Optional[str] = None,
        tags: Optional[list[str]] = None,
        status: Optional[SyncStatus] = None,
        sort_by: str = "updated_at",
        descending: bool = True,
    ) -> list[NoteSnapshot]:
        """List notes with optional filters.

        Args:
            search: Case-insensitive match on title, body or tags
            tags: Notes must carry all of these tags
            status: Filter by sync status
            sort_by: created_at, updated_at or title
            descending: Sort descending

        Returns:
            List of notes
        """
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"Cannot sort by {sort_by!r}; use one of {', '.join(SORT_FIELDS)}")

        notes = self.store.list_notes(statuses=[status] if status else None)

        if search:
            term = search.lower()
            notes = [
                n
                for n in notes
                if term in n.title.lower()
                or term in n.body.lower()
                or any(term in t.lower() for t in n.tags)
            ]
        if tags:
            notes = [n for n in notes if all(t in n.tags for t in tags)]

        if sort_by == "title":
            return sorted(notes, key=lambda n: n.title.lower(), reverse=descending)
        return sorted(notes, key=lambda n: getattr(n, sort_by), reverse=descending)

    def get_all_tags(self) -> list[str]:
        """Get every tag in use, sorted."""
        tags: set[str] = set()
        for note in self.store.list_notes():
            tags.update(note.tags)
        return sorted(tags)

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stats(self, recent_days: int = 7) -> NotesStats:
        """Get note counts by sync status.

        Args:
            recent_days: Window for "recent" notes

        Returns:
            NotesStats
        """
        notes = self.store.list_notes()
        cutoff = utcnow() - timedelta(days=recent_days)

        def count(status: SyncStatus) -> int:
            return sum(1 for n in notes if n.sync_status == status)

        return NotesStats(
            total_notes=len(notes),
            recent_notes=sum(1 for n in notes if n.updated_at >= cutoff),
            total_tags=len({t for n in notes for t in n.tags}),
            synced_notes=count(SyncStatus.SYNCED),
            local_only_notes=count(SyncStatus.LOCAL_ONLY) + count(SyncStatus.SYNCING),
            conflict_notes=count(SyncStatus.CONFLICT),
            error_notes=count(SyncStatus.ERROR),
        )

    def _get_editable(self, note_id: str) -> NoteSnapshot:
        note = self.store.get_note(note_id)
        if note is None or note.deleted:
            raise NoteNotFoundError(f"Note {note_id} not found")
        if note.sync_status == SyncStatus.CONFLICT:
            raise NoteInConflictError(note_id)
        return note

    def _hand_off(self, note: NoteSnapshot) -> None:
        if self.queue is not None:
            self.queue.enqueue(note)
