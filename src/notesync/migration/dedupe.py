"""Duplicate detection between legacy local notes and remote notes.

A legacy note is matched to an existing remote note using, in order:
1. Exact title + body match
2. Title-only match (non-empty titles)
3. Body similarity above SIMILARITY_THRESHOLD (normalized edit distance)

When several remote notes pass the similarity threshold the highest
score wins and the match is flagged as ambiguous.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from rapidfuzz.distance import Levenshtein

from ..db.schemas import NoteSnapshot, RemoteNote

SIMILARITY_THRESHOLD = 0.8


class MatchType(str, Enum):
    """Type of duplicate match."""

    EXACT = "exact"
    TITLE = "title"
    FUZZY = "fuzzy"


@dataclass
class DuplicateMatch:
    """A remote note that probably is the same note as a local one."""

    local: NoteSnapshot
    remote: RemoteNote
    match_type: MatchType
    confidence: float  # 0.0 - 1.0
    runners_up: list[RemoteNote] = field(default_factory=list)

    @property
    def ambiguous(self) -> bool:
        return bool(self.runners_up)

    def __repr__(self) -> str:
        return (
            f"DuplicateMatch({self.local.title!r} <-> {self.remote.title!r}, "
            f"type={self.match_type.value}, confidence={self.confidence:.2f})"
        )


def content_similarity(text1: str, text2: str) -> float:
    """Similarity of two texts as 1 - edit distance / longer length."""
    if text1 == text2:
        return 1.0
    if not text1 or not text2:
        return 0.0
    return Levenshtein.normalized_similarity(text1, text2)


def find_duplicate(
    local: NoteSnapshot,
    remote_notes: Iterable[RemoteNote],
    exclude: Optional[set[str]] = None,
    threshold: float = SIMILARITY_THRESHOLD,
) -> Optional[DuplicateMatch]:
    """Find the remote note most likely to duplicate a local note.

    Args:
        local: Legacy local note
        remote_notes: Existing remote notes of the identity
        exclude: Remote ids already claimed by other local notes
        threshold: Minimum body similarity for a fuzzy match

    Returns:
        DuplicateMatch, or None if the note has no remote counterpart
    """
    exclude = exclude or set()
    candidates = [r for r in remote_notes if r.id not in exclude]

    for remote in candidates:
        if remote.title == local.title and remote.body == local.body:
            return DuplicateMatch(local, remote, MatchType.EXACT, 1.0)

    if local.title.strip():
        for remote in candidates:
            if remote.title == local.title:
                return DuplicateMatch(
                    local, remote, MatchType.TITLE, content_similarity(local.body, remote.body)
                )

    if not local.body:
        return None

    scored = [
        (content_similarity(local.body, remote.body), remote)
        for remote in candidates
        if remote.body
    ]
    above = sorted(
        (pair for pair in scored if pair[0] > threshold),
        key=lambda pair: pair[0],
        reverse=True,
    )
    if not above:
        return None

    best_score, best = above[0]
    return DuplicateMatch(
        local,
        best,
        MatchType.FUZZY,
        best_score,
        runners_up=[remote for _, remote in above[1:]],
    )
