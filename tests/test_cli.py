"""Tests for the CLI interface."""

import re
from pathlib import Path

import pytest
from typer.testing import CliRunner

from notesync.cli import app
from notesync.config import reset_config


@pytest.fixture(autouse=True)
def setup_env(monkeypatch, temp_db_path: Path, tmp_path: Path):
    """Point the CLI at a temporary database as an anonymous user."""
    reset_config()
    monkeypatch.setenv("NOTESYNC_DB_PATH", str(temp_db_path))
    monkeypatch.setenv("NOTESYNC_BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("NOTESYNC_AUTO_SYNC", "false")
    monkeypatch.delenv("NOTESYNC_IDENTITY_ID", raising=False)
    monkeypatch.delenv("NOTESYNC_API_URL", raising=False)

    yield

    reset_config()


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def signed_in(monkeypatch, server, identity):
    """Sign the CLI in against the fake note server."""
    monkeypatch.setenv("NOTESYNC_IDENTITY_ID", identity)
    monkeypatch.setenv("NOTESYNC_API_URL", "https://api.example.com")
    monkeypatch.setenv("NOTESYNC_RETRY_DELAY", "0")
    monkeypatch.setattr("notesync.session.RemoteGateway", lambda *args, **kwargs: server)
    reset_config()
    return server


def add_note(runner: CliRunner, *args: str) -> str:
    """Add a note and return its short id."""
    result = runner.invoke(app, ["add", *args])
    assert result.exit_code == 0, result.stdout
    return re.search(r"\(([0-9a-f]{8})\)", result.stdout).group(1)


class TestCLIBasics:
    """Tests for basic CLI functionality."""

    def test_help(self, runner: CliRunner):
        """Test that help command works."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Local-first notes" in result.stdout

    def test_version(self, runner: CliRunner):
        """Test version command."""
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.stdout


class TestNoteCommands:
    """Tests for local note commands."""

    def test_add(self, runner: CliRunner):
        """Test adding a note."""
        result = runner.invoke(app, ["add", "Trip", "--body", "Pack boots", "--tags", "travel"])
        assert result.exit_code == 0
        assert "Added: Trip" in result.stdout

    def test_list_empty(self, runner: CliRunner):
        """Test listing with no notes."""
        result = runner.invoke(app, ["list"])
        assert result.exit_code == 0
        assert "No notes found" in result.stdout

    def test_list_with_notes(self, runner: CliRunner):
        """Test listing notes."""
        add_note(runner, "Trip")
        add_note(runner, "Chores")

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "Trip" in result.stdout
        assert "Chores" in result.stdout

    def test_list_search(self, runner: CliRunner):
        """Test searching notes."""
        add_note(runner, "Trip", "--body", "Pack boots")
        add_note(runner, "Chores")

        result = runner.invoke(app, ["list", "--search", "boots"])

        assert "Trip" in result.stdout
        assert "Chores" not in result.stdout

    def test_list_bad_sort(self, runner: CliRunner):
        """Test an invalid sort field."""
        result = runner.invoke(app, ["list", "--sort", "colour"])
        assert result.exit_code == 1

    def test_show_by_prefix(self, runner: CliRunner):
        """Test showing a note by id prefix."""
        short_id = add_note(runner, "Trip", "--body", "Pack boots")

        result = runner.invoke(app, ["show", short_id[:6]])

        assert result.exit_code == 0
        assert "Pack boots" in result.stdout

    def test_show_missing(self, runner: CliRunner):
        """Test showing a missing note."""
        result = runner.invoke(app, ["show", "deadbeef"])
        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_edit(self, runner: CliRunner):
        """Test editing a note bumps its version."""
        short_id = add_note(runner, "Trip")

        result = runner.invoke(app, ["edit", short_id, "--body", "Pack boots"])

        assert result.exit_code == 0
        assert "v2" in result.stdout

    def test_delete(self, runner: CliRunner):
        """Test deleting a note."""
        short_id = add_note(runner, "Trip")

        result = runner.invoke(app, ["delete", short_id, "--yes"])

        assert result.exit_code == 0
        assert "No notes found" in runner.invoke(app, ["list"]).stdout

    def test_delete_cancelled(self, runner: CliRunner):
        """Test declining the confirmation keeps the note."""
        short_id = add_note(runner, "Trip")

        result = runner.invoke(app, ["delete", short_id], input="n\n")

        assert "Cancelled" in result.stdout
        assert "Trip" in runner.invoke(app, ["list"]).stdout


class TestSyncCommands:
    """Tests for commands that need an account."""

    def test_status_anonymous(self, runner: CliRunner):
        """Test status when not signed in."""
        add_note(runner, "Trip")

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "Not signed in" in result.stdout

    @pytest.mark.parametrize("command", ["sync", "pull", "migrate", "history", "conflicts", "failed", "retry"])
    def test_requires_sign_in(self, runner: CliRunner, command: str):
        """Test sync commands refuse anonymous use."""
        result = runner.invoke(app, [command])
        assert result.exit_code == 1
        assert "Not signed in" in result.stdout

    def test_sync(self, runner: CliRunner, signed_in):
        """Test pushing a note."""
        add_note(runner, "Trip")

        result = runner.invoke(app, ["sync"])

        assert result.exit_code == 0
        assert "Pushed: 1" in result.stdout
        assert len(signed_in.notes) == 1

    def test_sync_nothing_pending(self, runner: CliRunner, signed_in):
        """Test syncing with an empty queue."""
        result = runner.invoke(app, ["sync"])
        assert result.exit_code == 0
        assert "No pending changes" in result.stdout

    def test_migrate_anonymous_notes(self, runner: CliRunner, monkeypatch, server, identity):
        """Test notes written before sign-in are attached afterwards."""
        add_note(runner, "Trip")
        add_note(runner, "Chores")
        monkeypatch.setenv("NOTESYNC_IDENTITY_ID", identity)
        monkeypatch.setenv("NOTESYNC_API_URL", "https://api.example.com")
        monkeypatch.setattr("notesync.session.RemoteGateway", lambda *args, **kwargs: server)
        reset_config()

        result = runner.invoke(app, ["migrate"])

        assert result.exit_code == 0, result.stdout
        assert "Migrated 2" in result.stdout
        assert len(server.notes) == 2
        assert "No local notes waiting" in runner.invoke(app, ["migrate"]).stdout

    def test_failed_and_retry(self, runner: CliRunner, signed_in):
        """Test a failed push is listed and retried."""
        add_note(runner, "Trip")
        signed_in.offline = True
        assert runner.invoke(app, ["sync"]).exit_code == 1

        listed = runner.invoke(app, ["failed"])
        assert "offline" in listed.stdout

        signed_in.offline = False
        result = runner.invoke(app, ["retry"])

        assert result.exit_code == 0
        assert "Retried 1" in result.stdout
        assert len(signed_in.notes) == 1

    def test_conflicts_and_resolve(self, runner: CliRunner, signed_in):
        """Test a conflict is listed and resolved from the command line."""
        short_id = add_note(runner, "Hello", "--body", "Hello")
        runner.invoke(app, ["sync"])
        note_id = next(iter(signed_in.notes))
        signed_in.edit_remotely(note_id, body="Hi")
        runner.invoke(app, ["edit", short_id, "--body", "Hello world"])
        runner.invoke(app, ["sync"])

        listed = runner.invoke(app, ["conflicts"])
        assert short_id in listed.stdout

        result = runner.invoke(app, ["resolve", short_id, "keep_local"])

        assert result.exit_code == 0, result.stdout
        assert signed_in.notes[note_id].body == "Hello world"
        assert "No conflicts" in runner.invoke(app, ["conflicts"]).stdout

    def test_pull(self, runner: CliRunner, signed_in):
        """Test notes from another device show up locally."""
        signed_in.put_remote("phone-note-1", title="From phone", body="Call back", version=2)

        result = runner.invoke(app, ["pull"])

        assert result.exit_code == 0, result.stdout
        assert "Updated: 1" in result.stdout
        assert "From phone" in runner.invoke(app, ["list"]).stdout

    def test_pull_offline(self, runner: CliRunner, signed_in):
        """Test an unreachable server fails the command."""
        signed_in.offline = True

        result = runner.invoke(app, ["pull"])

        assert result.exit_code == 1
        assert "could not be pulled" in result.stdout


class TestMigrationRecords:
    """Tests for migration history, backups and restore."""

    @pytest.fixture
    def migrated(self, runner: CliRunner, monkeypatch, server, identity):
        """Two anonymous notes migrated into the account."""
        add_note(runner, "Trip")
        add_note(runner, "Chores")
        monkeypatch.setenv("NOTESYNC_IDENTITY_ID", identity)
        monkeypatch.setenv("NOTESYNC_API_URL", "https://api.example.com")
        monkeypatch.setattr("notesync.session.RemoteGateway", lambda *args, **kwargs: server)
        reset_config()
        assert runner.invoke(app, ["migrate"]).exit_code == 0
        return server

    def test_history_empty(self, runner: CliRunner, signed_in):
        """Test history before any migration."""
        result = runner.invoke(app, ["history"])
        assert result.exit_code == 0
        assert "No migrations yet" in result.stdout

    def test_history(self, runner: CliRunner, migrated):
        """Test a finished migration is listed."""
        result = runner.invoke(app, ["history"])

        assert result.exit_code == 0
        assert "Migration History" in result.stdout
        assert "2/2" in result.stdout
        assert "ok" in result.stdout

    def test_backups(self, runner: CliRunner, migrated):
        """Test the pre-migration backup is listed."""
        result = runner.invoke(app, ["backups"])

        assert result.exit_code == 0
        assert "Backups" in result.stdout

    def test_backups_empty(self, runner: CliRunner):
        """Test listing when nothing was backed up."""
        result = runner.invoke(app, ["backups"])
        assert result.exit_code == 0
        assert "No backups found" in result.stdout

    def test_restore(self, runner: CliRunner, migrated, tmp_path: Path):
        """Test purged legacy notes come back from the backup."""
        backup_file = next((tmp_path / "backups").glob("notes-backup-*.json.gz"))

        preview = runner.invoke(app, ["restore", str(backup_file), "--dry-run"])
        assert "Would restore 2 notes" in preview.stdout

        result = runner.invoke(app, ["restore", str(backup_file)])

        assert result.exit_code == 0, result.stdout
        assert "Restored 2 notes" in result.stdout
        assert "notesync migrate" in result.stdout

    def test_restore_missing_file(self, runner: CliRunner, tmp_path: Path):
        """Test restoring a file that does not exist."""
        result = runner.invoke(app, ["restore", str(tmp_path / "nope.json.gz")])
        assert result.exit_code == 1
        assert "not found" in result.stdout
