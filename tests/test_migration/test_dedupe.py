"""Tests for duplicate detection between legacy and remote notes."""

import pytest

from notesync.db.schemas import NoteSnapshot, RemoteNote
from notesync.migration.dedupe import (
    SIMILARITY_THRESHOLD,
    MatchType,
    content_similarity,
    find_duplicate,
)


@pytest.fixture
def local() -> NoteSnapshot:
    return NoteSnapshot(title="Groceries", body="Milk, eggs, bread")


class TestContentSimilarity:
    """Tests for normalized edit distance."""

    def test_identical(self):
        """Test identical texts."""
        assert content_similarity("abc", "abc") == 1.0

    def test_empty(self):
        """Test an empty side scores zero."""
        assert content_similarity("", "abc") == 0.0
        assert content_similarity("abc", "") == 0.0

    def test_edit_distance(self):
        """Test similarity is one minus distance over the longer length."""
        assert content_similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)


class TestFindDuplicate:
    """Tests for the matching cascade."""

    def test_exact_match(self, local: NoteSnapshot):
        """Test title and body equality wins first."""
        remotes = [
            RemoteNote(id="r1", title="Groceries", body="Something else"),
            RemoteNote(id="r2", title="Groceries", body="Milk, eggs, bread"),
        ]

        match = find_duplicate(local, remotes)

        assert match.remote.id == "r2"
        assert match.match_type == MatchType.EXACT
        assert match.confidence == 1.0

    def test_title_match(self, local: NoteSnapshot):
        """Test a title match when the bodies differ."""
        match = find_duplicate(local, [RemoteNote(id="r1", title="Groceries", body="Apples")])

        assert match.match_type == MatchType.TITLE
        assert match.confidence < 1.0

    def test_untitled_notes_never_title_match(self):
        """Test empty titles are not used for matching."""
        local = NoteSnapshot(title="", body="Call the plumber")
        remote = RemoteNote(id="r1", title="", body="Book a dentist visit")

        assert find_duplicate(local, [remote]) is None

    def test_fuzzy_match(self, local: NoteSnapshot):
        """Test near-identical bodies match."""
        remote = RemoteNote(id="r1", title="Shopping", body="Milk, eggs, bread!")

        match = find_duplicate(local, [remote])

        assert match.match_type == MatchType.FUZZY
        assert match.confidence > SIMILARITY_THRESHOLD
        assert match.ambiguous is False

    def test_below_threshold(self, local: NoteSnapshot):
        """Test dissimilar bodies do not match."""
        remote = RemoteNote(id="r1", title="Shopping", body="Fix the garden fence")
        assert find_duplicate(local, [remote]) is None

    def test_empty_body_never_fuzzy_matches(self):
        """Test two empty bodies are not a duplicate."""
        local = NoteSnapshot(title="A", body="")
        remote = RemoteNote(id="r1", title="B", body="")

        assert find_duplicate(local, [remote]) is None

    def test_highest_score_wins(self, local: NoteSnapshot):
        """Test the closest body wins and the rest are runners-up."""
        remotes = [
            RemoteNote(id="far", title="x", body="Milk, eggs & bread"),
            RemoteNote(id="near", title="y", body="Milk, eggs, bread."),
        ]

        match = find_duplicate(local, remotes)

        assert match.remote.id == "near"
        assert match.ambiguous is True
        assert [r.id for r in match.runners_up] == ["far"]

    def test_exclude_claimed(self, local: NoteSnapshot):
        """Test remote notes claimed by another local note are skipped."""
        remote = RemoteNote(id="r1", title="Groceries", body="Milk, eggs, bread")
        assert find_duplicate(local, [remote], exclude={"r1"}) is None

    def test_no_remotes(self, local: NoteSnapshot):
        """Test an empty remote list."""
        assert find_duplicate(local, []) is None
