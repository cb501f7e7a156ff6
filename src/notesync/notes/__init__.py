"""Note lifecycle: local create, update and delete feeding the sync queue."""

from .manager import NoteInConflictError, NoteNotFoundError, NotesManager, NotesStats

__all__ = [
    "NoteInConflictError",
    "NoteNotFoundError",
    "NotesManager",
    "NotesStats",
]
