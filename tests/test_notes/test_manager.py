"""Tests for NotesManager."""

from datetime import timedelta

import pytest

from notesync.db.schemas import NoteCreate, NoteUpdate, RemoteNote, SyncStatus
from notesync.db.store import LocalStore
from notesync.notes.manager import NoteInConflictError, NoteNotFoundError, NotesManager
from notesync.sync.queue import SyncQueue


@pytest.fixture
def manager(store: LocalStore, queue: SyncQueue) -> NotesManager:
    """Create a NotesManager for the signed-in identity."""
    return NotesManager(store, queue)


@pytest.fixture
def anonymous(legacy_store: LocalStore) -> NotesManager:
    """Create a NotesManager without an identity or queue."""
    return NotesManager(legacy_store)


class TestNoteCRUD:
    """Tests for note CRUD operations."""

    def test_create_note(self, manager: NotesManager, identity: str):
        """Test creating a note."""
        note = manager.create_note(NoteCreate(title="Trip", body="Pack boots", tags=["travel"]))

        assert note.id is not None
        assert note.title == "Trip"
        assert note.owner_id == identity
        assert note.version == 1
        assert note.sync_status == SyncStatus.LOCAL_ONLY
        assert note.created_at == note.updated_at

    def test_create_enqueues(self, manager: NotesManager, queue: SyncQueue):
        """Test a created note is handed to the sync queue."""
        note = manager.create_note(NoteCreate(title="Trip"))
        assert queue.get_entry(note.id).snapshot.version == 1

    def test_anonymous_note_has_no_owner(self, anonymous: NotesManager):
        """Test notes created before sign-in belong to nobody."""
        note = anonymous.create_note(NoteCreate(title="Scratch"))
        assert note.owner_id is None
        assert anonymous.get_note(note.id) is not None

    def test_get_note(self, manager: NotesManager):
        """Test getting a note by ID."""
        created = manager.create_note(NoteCreate(title="Trip"))
        assert manager.get_note(created.id).title == "Trip"

    def test_get_missing_note(self, manager: NotesManager):
        """Test getting a note that does not exist."""
        assert manager.get_note("missing") is None

    def test_update_note(self, manager: NotesManager):
        """Test updating a note."""
        created = manager.create_note(NoteCreate(title="Trip", body="Pack"))

        updated = manager.update_note(created.id, NoteUpdate(body="Pack boots"))

        assert updated.title == "Trip"
        assert updated.body == "Pack boots"
        assert updated.version == 2
        assert updated.updated_at >= created.updated_at

    def test_update_missing_note(self, manager: NotesManager):
        """Test updating a note that does not exist."""
        with pytest.raises(NoteNotFoundError):
            manager.update_note("missing", NoteUpdate(title="x"))

    def test_empty_update_is_a_no_op(self, manager: NotesManager):
        """Test an update without fields does not bump the version."""
        created = manager.create_note(NoteCreate(title="Trip"))
        assert manager.update_note(created.id, NoteUpdate()).version == 1


class TestVersioning:
    """Tests for version and sync status bookkeeping."""

    def test_versions_strictly_increase(self, manager: NotesManager):
        """Test every mutation moves the version forward."""
        note = manager.create_note(NoteCreate(title="Draft"))
        versions = [note.version]
        for body in ("a", "b", "c"):
            versions.append(manager.update_note(note.id, NoteUpdate(body=body)).version)

        assert versions == [1, 2, 3, 4]

    def test_edit_of_synced_note_is_local_only(
        self, manager: NotesManager, store: LocalStore, synced_note
    ):
        """Test editing a synced note marks it pending again."""
        updated = manager.update_note(synced_note.id, NoteUpdate(body="Hello again"))

        assert updated.sync_status == SyncStatus.LOCAL_ONLY
        assert updated.synced_version == 1
        assert store.get_note(synced_note.id).sync_status == SyncStatus.LOCAL_ONLY

    def test_edit_of_conflict_note_is_rejected(self, manager: NotesManager, queue: SyncQueue, make_note):
        """Test a note in Conflict cannot be edited until resolved."""
        note = make_note(version=2, synced_version=1)
        manager.store.save_note(note)
        queue.detector.flag(note, RemoteNote(id=note.id, body="theirs", version=2))

        with pytest.raises(NoteInConflictError):
            manager.update_note(note.id, NoteUpdate(body="mine"))
        with pytest.raises(NoteInConflictError):
            manager.delete_note(note.id)


class TestDelete:
    """Tests for deleting notes."""

    def test_delete_leaves_tombstone(self, manager: NotesManager, store: LocalStore):
        """Test a signed-in delete keeps a tombstone for the server."""
        note = manager.create_note(NoteCreate(title="Old"))

        assert manager.delete_note(note.id) is True

        assert manager.get_note(note.id) is None
        tombstone = store.get_note(note.id)
        assert tombstone.deleted is True
        assert tombstone.version == 2

    def test_anonymous_delete_purges(self, anonymous: NotesManager, legacy_store: LocalStore):
        """Test anonymous deletes remove the row."""
        note = anonymous.create_note(NoteCreate(title="Old"))

        assert anonymous.delete_note(note.id) is True
        assert legacy_store.get_note(note.id) is None

    def test_delete_missing_note(self, manager: NotesManager):
        """Test deleting a note that does not exist."""
        assert manager.delete_note("missing") is False

    def test_deleted_note_cannot_be_edited(self, manager: NotesManager):
        """Test tombstones are not editable."""
        note = manager.create_note(NoteCreate(title="Old"))
        manager.delete_note(note.id)

        with pytest.raises(NoteNotFoundError):
            manager.update_note(note.id, NoteUpdate(title="New"))


class TestListNotes:
    """Tests for listing and filtering."""

    @pytest.fixture
    def notes(self, manager: NotesManager):
        return [
            manager.create_note(NoteCreate(title="banana bread", body="Flour", tags=["food"])),
            manager.create_note(NoteCreate(title="Apple pie", body="Butter", tags=["food", "dessert"])),
            manager.create_note(NoteCreate(title="Chores", body="Vacuum the hall")),
        ]

    def test_list_all(self, manager: NotesManager, notes):
        """Test listing every live note."""
        assert len(manager.list_notes()) == 3

    def test_search(self, manager: NotesManager, notes):
        """Test searching titles, bodies and tags."""
        assert [n.title for n in manager.list_notes(search="vacuum")] == ["Chores"]
        assert len(manager.list_notes(search="FOOD")) == 2

    def test_filter_by_tags(self, manager: NotesManager, notes):
        """Test notes must carry every requested tag."""
        assert [n.title for n in manager.list_notes(tags=["food", "dessert"])] == ["Apple pie"]

    def test_sort_by_title(self, manager: NotesManager, notes):
        """Test case-insensitive title sort."""
        titles = [n.title for n in manager.list_notes(sort_by="title", descending=False)]
        assert titles == ["Apple pie", "banana bread", "Chores"]

    def test_invalid_sort(self, manager: NotesManager):
        """Test an unknown sort field is rejected."""
        with pytest.raises(ValueError):
            manager.list_notes(sort_by="colour")

    def test_filter_by_status(self, manager: NotesManager, notes, synced_note):
        """Test filtering by sync status."""
        synced = manager.list_notes(status=SyncStatus.SYNCED)
        assert [n.id for n in synced] == [synced_note.id]

    def test_get_all_tags(self, manager: NotesManager, notes):
        """Test collecting tags."""
        assert manager.get_all_tags() == ["dessert", "food"]


class TestStats:
    """Tests for note statistics."""

    def test_stats(self, manager: NotesManager, store: LocalStore, make_note, synced_note):
        """Test counts by sync status."""
        manager.create_note(NoteCreate(title="Pending", tags=["a"]))
        store.save_note(make_note("Broken", sync_status=SyncStatus.ERROR))
        old = make_note("Old", sync_status=SyncStatus.SYNCED, synced_version=1)
        store.save_note(old.model_copy(update={"updated_at": old.updated_at - timedelta(days=30)}))

        stats = manager.get_stats()

        assert stats.total_notes == 4
        assert stats.synced_notes == 2
        assert stats.local_only_notes == 1
        assert stats.error_notes == 1
        assert stats.pending_notes == 2
        assert stats.recent_notes == 3
        assert stats.total_tags == 1
