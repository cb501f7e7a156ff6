"""Command-line interface for notesync.

Built with Typer for commands and Rich for output.
"""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import get_config
from .db.schemas import (
    ConflictResolution,
    MigrationConflictPolicy,
    MigrationOptions,
    MigrationStrategy,
    NoteCreate,
    NoteUpdate,
    SyncStatus,
)
from .migration.engine import MigrationError
from .notes.manager import NoteInConflictError, NoteNotFoundError
from .session import NoteSyncSession
from .sync.conflict import ConflictError

app = typer.Typer(
    name="notesync",
    help="Local-first notes with account sync.",
    no_args_is_help=True,
)

console = Console()

STATUS_STYLES = {
    SyncStatus.LOCAL_ONLY: "yellow",
    SyncStatus.SYNCING: "cyan",
    SyncStatus.SYNCED: "green",
    SyncStatus.CONFLICT: "magenta",
    SyncStatus.ERROR: "red",
}


# ============================================================================
# Helper Functions
# ============================================================================


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def open_session() -> NoteSyncSession:
    """Build a session for the configured identity."""
    config = get_config()
    errors = config.validate()
    if errors:
        for error in errors:
            print_error(error)
        raise typer.Exit(1)
    return NoteSyncSession.from_config(config)


def require_signed_in(session: NoteSyncSession) -> None:
    if not session.is_authenticated:
        print_error("Not signed in. Set NOTESYNC_IDENTITY_ID and NOTESYNC_API_URL.")
        raise typer.Exit(1)


def resolve_note_id(session: NoteSyncSession, note_id: str) -> str:
    """Expand a unique id prefix to the full note id."""
    if session.store.get_note(note_id):
        return note_id
    matches = [n.id for n in session.store.list_notes() if n.id.startswith(note_id)]
    if len(matches) == 1:
        return matches[0]
    if matches:
        print_error(f"Ambiguous note id {note_id!r} ({len(matches)} matches)")
    else:
        print_error(f"Note not found: {note_id}")
    raise typer.Exit(1)


def format_note_table(notes: list, title: str = "Notes") -> Table:
    """Create a rich table for displaying notes."""
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan", max_width=40)
    table.add_column("Tags", style="green", max_width=25)
    table.add_column("Version", justify="right")
    table.add_column("Status")
    table.add_column("Updated", style="dim")

    for note in notes:
        style = STATUS_STYLES.get(note.sync_status, "white")
        table.add_row(
            note.id[:8],
            note.title or "[dim](untitled)[/dim]",
            ", ".join(note.tags) or "-",
            str(note.version),
            f"[{style}]{note.sync_status.value}[/{style}]",
            note.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    return table


def parse_tags(tags: Optional[str]) -> Optional[list[str]]:
    if tags is None:
        return None
    return tags.split(",")


# ============================================================================
# Note Commands
# ============================================================================


@app.command()
def add(
    title: str = typer.Argument(..., help="Note title"),
    body: str = typer.Option("", "--body", "-b", help="Note body"),
    tags: Optional[str] = typer.Option(None, "--tags", "-t", help="Comma-separated tags"),
    color: Optional[str] = typer.Option(None, "--color", "-c", help="Note color"),
) -> None:
    """Add a new note."""
    session = open_session()
    data = NoteCreate(title=title, body=body, tags=parse_tags(tags) or [])
    if color:
        data.color = color
    note = session.notes.create_note(data)
    print_success(f"Added: {note.title} ({note.id[:8]})")


@app.command("list")
def list_notes(
    search: Optional[str] = typer.Option(None, "--search", "-q", help="Search text"),
    tag: Optional[list[str]] = typer.Option(None, "--tag", "-t", help="Filter by tag"),
    status: Optional[SyncStatus] = typer.Option(None, "--status", "-s", help="Filter by sync status"),
    sort_by: str = typer.Option("updated_at", "--sort", help="created_at, updated_at or title"),
    limit: int = typer.Option(20, "--limit", "-l", help="Max notes to show"),
) -> None:
    """List notes."""
    session = open_session()
    try:
        notes = session.notes.list_notes(search=search, tags=tag, status=status, sort_by=sort_by)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if not notes:
        console.print("[dim]No notes found.[/dim]")
        return

    console.print(format_note_table(notes[:limit]))
    if len(notes) > limit:
        console.print(f"[dim]Showing {limit} of {len(notes)} notes[/dim]")


@app.command()
def show(note_id: str = typer.Argument(..., help="Note ID or unique prefix")) -> None:
    """Show a note."""
    session = open_session()
    note = session.notes.get_note(resolve_note_id(session, note_id))
    if note is None:
        print_error(f"Note not found: {note_id}")
        raise typer.Exit(1)

    style = STATUS_STYLES.get(note.sync_status, "white")
    console.print(
        Panel(
            note.body or "[dim](empty)[/dim]",
            title=note.title or "(untitled)",
            subtitle=f"v{note.version} [{style}]{note.sync_status.value}[/{style}]",
        )
    )
    if note.tags:
        console.print(f"[dim]Tags: {', '.join(note.tags)}[/dim]")


@app.command()
def edit(
    note_id: str = typer.Argument(..., help="Note ID or unique prefix"),
    title: Optional[str] = typer.Option(None, "--title", help="New title"),
    body: Optional[str] = typer.Option(None, "--body", "-b", help="New body"),
    tags: Optional[str] = typer.Option(None, "--tags", "-t", help="Comma-separated tags"),
    color: Optional[str] = typer.Option(None, "--color", "-c", help="New color"),
) -> None:
    """Edit a note."""
    session = open_session()
    full_id = resolve_note_id(session, note_id)
    try:
        note = session.notes.update_note(
            full_id, NoteUpdate(title=title, body=body, tags=parse_tags(tags), color=color)
        )
    except NoteNotFoundError as e:
        print_error(str(e))
        raise typer.Exit(1)
    except NoteInConflictError as e:
        print_error(f"{e}. Resolve it first with 'notesync resolve'.")
        raise typer.Exit(1)
    print_success(f"Updated: {note.title} (v{note.version})")


@app.command()
def delete(
    note_id: str = typer.Argument(..., help="Note ID or unique prefix"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a note."""
    session = open_session()
    full_id = resolve_note_id(session, note_id)
    if not yes and not typer.confirm(f"Delete note {full_id[:8]}?", default=False):
        console.print("[dim]Cancelled.[/dim]")
        raise typer.Exit(0)
    try:
        session.notes.delete_note(full_id)
    except NoteInConflictError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Deleted note {full_id[:8]}")


# ============================================================================
# Sync Commands
# ============================================================================


@app.command()
def status() -> None:
    """Show note and sync status."""
    session = open_session()
    stats = session.notes.get_stats()

    lines = [
        f"Notes: [bold]{stats.total_notes}[/bold] ({stats.recent_notes} edited this week)",
        f"Synced: [green]{stats.synced_notes}[/green]  "
        f"Pending: [yellow]{stats.local_only_notes}[/yellow]  "
        f"Conflicts: [magenta]{stats.conflict_notes}[/magenta]  "
        f"Errors: [red]{stats.error_notes}[/red]",
    ]
    if session.is_authenticated:
        lines.insert(0, f"Signed in as [bold]{session.identity_id}[/bold]")
        if session.migration.check_migration_needed():
            lines.append(
                f"[yellow]{len(session.migration.unmigrated_notes())} local notes "
                "waiting for migration[/yellow]"
            )
        migration = session.migration.get_migration_status()
        if migration and migration.interrupted:
            lines.append("[yellow]Last migration was interrupted; run 'notesync migrate'.[/yellow]")
    else:
        lines.insert(0, "[dim]Not signed in; notes stay on this device.[/dim]")

    console.print(Panel("\n".join(lines), title="Sync Status"))


@app.command()
def sync() -> None:
    """Push pending local changes to the server."""
    session = open_session()
    require_signed_in(session)

    session.start(run_migration=False, background=False)
    pending = len(session.queue)
    if pending == 0:
        console.print("[green]✓[/green] No pending changes to push.")
        return

    console.print(f"[bold]Pushing {pending} notes...[/bold]")
    result = session.sync_now()
    console.print(
        f"\n[green]Pushed: {result.pushed}[/green]  Deleted: {result.deleted}  "
        f"Conflicts: [magenta]{result.conflicts}[/magenta]"
    )
    if result.conflicts:
        console.print("[dim]Run 'notesync conflicts' to review.[/dim]")
    if result.errors:
        print_error(f"{len(result.errors)} notes failed to sync")
        for note_id, error in result.errors[:5]:
            console.print(f"  [red]- {note_id[:8]}: {error}[/red]")
        raise typer.Exit(1)


@app.command()
def pull() -> None:
    """Fetch notes written on other devices."""
    session = open_session()
    require_signed_in(session)

    session.start(run_migration=False, background=False)
    result = session.pull(show_progress=True)
    console.print(
        f"\n[green]Updated: {result.pulled}[/green]  Skipped: {result.skipped}  "
        f"Conflicts: [magenta]{result.conflicts}[/magenta]"
    )
    if result.conflicts:
        console.print("[dim]Run 'notesync conflicts' to review.[/dim]")
    if result.errors:
        print_error(f"{len(result.errors)} notes could not be pulled")
        for note_id, error in result.errors[:5]:
            console.print(f"  [red]- {note_id}: {error}[/red]")
        raise typer.Exit(1)


@app.command()
def migrate(
    strategy: MigrationStrategy = typer.Option(
        MigrationStrategy.MERGE, "--strategy", help="merge, overwrite, keep_local or selective"
    ),
    conflict: MigrationConflictPolicy = typer.Option(
        MigrationConflictPolicy.NEWER, "--conflict", help="newer, older or manual"
    ),
    note: Optional[list[str]] = typer.Option(None, "--note", "-n", help="Note ids for selective"),
    no_backup: bool = typer.Option(False, "--no-backup", help="Skip the pre-migration backup"),
) -> None:
    """Attach notes created before sign-in to the account."""
    session = open_session()
    require_signed_in(session)

    if not session.migration.check_migration_needed():
        console.print("[green]✓[/green] No local notes waiting for migration.")
        return

    options = MigrationOptions(
        strategy=strategy,
        conflict_resolution=conflict,
        backup_local=not no_backup,
        note_ids=note,
    )
    session.start(run_migration=False, background=False)
    try:
        result = session.migration.start_migration(options=options, show_progress=True)
    except MigrationError as e:
        print_error(str(e))
        raise typer.Exit(1)

    session.sync_now()

    console.print(
        f"\nMigrated [bold]{result.processed_notes - len(result.errors)}[/bold] "
        f"of {result.total_notes} notes"
    )
    if result.backup_path:
        console.print(f"[dim]Backup: {result.backup_path}[/dim]")
    if result.conflicts:
        print_warning(f"{len(result.conflicts)} notes need a decision: 'notesync conflicts'")
    if result.errors:
        for entry in result.errors:
            console.print(f"  [red]- {entry}[/red]")
        console.print("[dim]Run 'notesync migrate' again to retry them.[/dim]")
        raise typer.Exit(1)


@app.command()
def history() -> None:
    """Show recent migration runs."""
    session = open_session()
    require_signed_in(session)

    records = session.migration_history()
    if not records:
        console.print("[dim]No migrations yet.[/dim]")
        return

    table = Table(title="Migration History", show_header=True, header_style="bold magenta")
    table.add_column("When", style="dim")
    table.add_column("Notes", justify="right")
    table.add_column("Errors", justify="right", style="red")
    table.add_column("Conflicts", justify="right", style="magenta")
    table.add_column("Result")
    for record in records:
        if record.success:
            outcome = "[green]ok[/green]"
        elif record.fatal_error:
            outcome = f"[red]aborted: {record.fatal_error}[/red]"
        elif record.cancelled:
            outcome = "[yellow]cancelled[/yellow]"
        else:
            outcome = "[yellow]partial[/yellow]"
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M"),
            f"{record.processed_notes}/{record.total_notes}",
            str(len(record.errors)),
            str(record.conflicts),
            outcome,
        )
    console.print(table)


@app.command()
def conflicts() -> None:
    """List notes waiting for conflict resolution."""
    session = open_session()
    require_signed_in(session)

    records = session.detector.list_conflicts()
    if not records:
        console.print("[green]✓[/green] No conflicts.")
        return

    table = Table(title="Conflicts", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Local", style="cyan", max_width=35)
    table.add_column("Remote", style="green", max_width=35)
    table.add_column("Versions", justify="center")
    table.add_column("Detected", style="dim")
    for record in records:
        local, remote = record.local_snapshot, record.remote_snapshot
        table.add_row(
            record.note_id[:8],
            f"{local.title}\n[dim]{local.body[:60]}[/dim]",
            f"{remote.title}\n[dim]{remote.body[:60]}[/dim]",
            f"v{local.version} / v{remote.version}",
            record.detected_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def resolve(
    note_id: str = typer.Argument(..., help="Note ID or unique prefix"),
    strategy: ConflictResolution = typer.Argument(..., help="keep_local, keep_remote or merged"),
    title: Optional[str] = typer.Option(None, "--title", help="Merged title"),
    body: Optional[str] = typer.Option(None, "--body", "-b", help="Merged body"),
    tags: Optional[str] = typer.Option(None, "--tags", "-t", help="Merged tags"),
) -> None:
    """Resolve a sync conflict."""
    session = open_session()
    require_signed_in(session)
    full_id = resolve_note_id(session, note_id)

    merged = None
    if strategy == ConflictResolution.MERGED:
        merged = NoteUpdate(title=title, body=body, tags=parse_tags(tags))

    try:
        note = session.resolve_conflict(full_id, strategy, merged)
    except (ConflictError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    session.sync_now()
    print_success(f"Resolved {full_id[:8]} with {strategy.value} (v{note.version})")


@app.command()
def failed() -> None:
    """List notes whose sync gave up."""
    session = open_session()
    require_signed_in(session)

    entries = session.store.list_failed_syncs()
    if not entries:
        console.print("[green]✓[/green] No failed syncs.")
        return

    table = Table(title="Failed Syncs", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan", max_width=35)
    table.add_column("Version", justify="right")
    table.add_column("Error", style="red", max_width=50)
    table.add_column("When", style="dim")
    for entry in entries:
        table.add_row(
            entry.note_id[:8],
            entry.snapshot.title,
            str(entry.snapshot.version),
            entry.error,
            entry.failed_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def retry(
    note_id: Optional[str] = typer.Argument(None, help="Only this note"),
) -> None:
    """Retry notes whose sync failed."""
    session = open_session()
    require_signed_in(session)
    full_id = resolve_note_id(session, note_id) if note_id else None

    queued = session.retry_failed(full_id)

    if not queued:
        console.print("[dim]Nothing to retry.[/dim]")
        return
    print_success(f"Retried {queued} notes")


# ============================================================================
# Backup Commands
# ============================================================================


@app.command()
def backups() -> None:
    """List pre-migration backups."""
    session = open_session()

    entries = session.list_backups()
    if not entries:
        console.print("[dim]No backups found.[/dim]")
        return

    table = Table(title="Backups", show_header=True, header_style="bold magenta")
    table.add_column("Created", style="dim")
    table.add_column("Notes", justify="right")
    table.add_column("Path", style="cyan")
    for entry in entries:
        table.add_row(
            entry["created_at"][:16].replace("T", " "),
            str(entry["note_count"]),
            entry["path"],
        )
    console.print(table)


@app.command()
def restore(
    backup_file: Path = typer.Argument(..., help="Backup file to restore"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only show what would be restored"),
) -> None:
    """Restore notes from a pre-migration backup."""
    session = open_session()
    if not backup_file.exists():
        print_error(f"Backup file not found: {backup_file}")
        raise typer.Exit(1)

    result = session.restore_backup(backup_file, dry_run=dry_run)
    if not result.success:
        print_error(f"Restore failed: {result.error}")
        raise typer.Exit(1)

    if dry_run:
        console.print(
            f"[dim]Would restore {result.notes_restored} notes, "
            f"skip {result.notes_skipped}.[/dim]"
        )
        return
    print_success(f"Restored {result.notes_restored} notes, skipped {result.notes_skipped}")
    if result.notes_restored and session.is_authenticated:
        console.print("[dim]Run 'notesync migrate' to attach them to the account.[/dim]")


@app.command()
def version() -> None:
    """Show version."""
    from . import __version__

    console.print(f"notesync {__version__}")


if __name__ == "__main__":
    app()
