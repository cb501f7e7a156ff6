"""One-time migration of legacy anonymous notes into an account.

Legacy notes live in the LEGACY_SCOPE of the local store. Migration
copies each of them into the signed-in identity's scope, reconciles it
against the identity's existing remote notes and hands anything that
still needs pushing to the sync queue. The legacy copies are stamped
with the owner id as they are migrated and only purged after a clean
pass whose backup verified.
"""

import threading
import time
from contextlib import nullcontext
from typing import Callable, Iterable, Optional, Union

from rich.console import Console
from tqdm import tqdm

from ..db.schemas import (
    MigrationConflictPolicy,
    MigrationErrorEntry,
    MigrationOptions,
    MigrationRecord,
    MigrationStatus,
    MigrationStrategy,
    NoteSnapshot,
    RemoteNote,
    SyncStatus,
    utcnow,
)
from ..db.store import LocalStore
from ..sync.conflict import ConflictDetector
from ..sync.events import EventBus, MigrationCompleted, MigrationProgress, SyncEvent
from ..sync.gateway import GatewayError, RemoteGateway
from ..sync.queue import SyncQueue, call_with_retry
from .backup import NoteBackupManager
from .dedupe import DuplicateMatch, MatchType, find_duplicate


class MigrationError(Exception):
    """Base exception for migration errors."""

    pass


class MigrationItemError(MigrationError):
    """A single note could not be migrated. The batch continues."""

    def __init__(self, note: NoteSnapshot, reason: str):
        self.note = note
        self.reason = reason
        super().__init__(f'Note "{note.title}" failed to migrate: {reason}')


class MigrationFatalError(MigrationError):
    """The run aborted before any note was migrated."""

    pass


class MigrationInProgressError(MigrationError):
    """A migration is already running."""

    pass


MIGRATION_HISTORY_KEEP = 20

console = Console()


class MigrationEngine:
    """Attaches legacy local notes to an authenticated identity."""

    def __init__(
        self,
        legacy_store: LocalStore,
        user_store: LocalStore,
        gateway: RemoteGateway,
        queue: Optional[SyncQueue] = None,
        events: Optional[EventBus] = None,
        backups: Optional[NoteBackupManager] = None,
        detector: Optional[ConflictDetector] = None,
        retry_attempts: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize migration engine.

        Args:
            legacy_store: Store over the legacy anonymous scope
            user_store: Store of the signed-in identity
            gateway: Remote note API client
            queue: Sync queue that receives notes still to be pushed
            events: Event bus for progress notifications
            backups: Backup manager (required when backups are requested)
            detector: Conflict detector for manual decisions
            retry_attempts: Attempts per network call
            retry_delay: Base backoff delay in seconds
            sleep: Sleep function used for backoff
        """
        if user_store.identity_id is None:
            raise ValueError("Migration needs a signed-in identity")

        self.legacy_store = legacy_store
        self.user_store = user_store
        self.gateway = gateway
        self.queue = queue
        if events is None:
            events = queue.events if queue is not None else EventBus()
        self.events = events
        self.backups = backups
        if detector is None:
            detector = queue.detector if queue is not None else ConflictDetector(user_store, events)
        self.detector = detector
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

        self._guard = threading.Lock()
        self._cancel = threading.Event()
        self._status: Optional[MigrationStatus] = None
        self._last_options: Optional[MigrationOptions] = None

    @property
    def identity_id(self) -> str:
        return self.user_store.identity_id

    @property
    def in_progress(self) -> bool:
        return self._guard.locked()

    # ========================================================================
    # Queries
    # ========================================================================

    def unmigrated_notes(self) -> list[NoteSnapshot]:
        """Legacy notes that are not attached to any identity yet."""
        return [n for n in self.legacy_store.list_notes() if n.owner_id is None]

    def check_migration_needed(self, local_notes: Optional[Iterable[NoteSnapshot]] = None) -> bool:
        """Check whether notes need attaching to the signed-in identity.

        Args:
            local_notes: Notes to inspect (defaults to unmigrated legacy notes)

        Returns:
            True if any note lacks an owner or is still LocalOnly
        """
        if not self.identity_id:
            return False
        notes = self.unmigrated_notes() if local_notes is None else list(local_notes)
        return any(
            n.owner_id is None or n.sync_status == SyncStatus.LOCAL_ONLY
            for n in notes
            if not n.deleted
        )

    def get_migration_status(self) -> Optional[MigrationStatus]:
        """Current run's status, or the last persisted one."""
        if self._status is not None:
            return self._status.model_copy(deep=True)
        return self.user_store.load_migration_status()

    def get_migration_history(self) -> list[MigrationRecord]:
        """Finished runs for this identity, newest first."""
        return self.user_store.list_migration_history()

    # ========================================================================
    # Listeners
    # ========================================================================

    def on_migration_update(self, callback: Callable[[MigrationStatus], None]) -> str:
        """Call callback with the status after every progress update.

        Returns:
            Token for off_migration_update()
        """
        return self.events.subscribe(
            SyncEvent.MIGRATION_PROGRESS, lambda payload: callback(payload.status)
        )

    def off_migration_update(self, token: str) -> bool:
        return self.events.unsubscribe(token)

    # ========================================================================
    # Running
    # ========================================================================

    def cancel_migration(self) -> bool:
        """Stop the running migration before its next note.

        Returns:
            True if a running migration was asked to stop
        """
        if not self.in_progress:
            return False
        console.print("[yellow]Cancelling migration...[/yellow]")
        self._cancel.set()
        return True

    def retry_migration(
        self, options: Optional[MigrationOptions] = None, show_progress: bool = False
    ) -> MigrationStatus:
        """Run migration again for notes that are still unmigrated.

        Notes migrated by an earlier run carry an owner id and are skipped.
        """
        return self.start_migration(
            options=options or self._last_options,
            show_progress=show_progress,
        )

    def start_migration(
        self,
        local_notes: Optional[Iterable[NoteSnapshot]] = None,
        options: Optional[Union[MigrationOptions, dict]] = None,
        show_progress: bool = False,
    ) -> MigrationStatus:
        """Migrate legacy notes into the signed-in identity.

        Args:
            local_notes: Notes to migrate (defaults to unmigrated legacy notes)
            options: Strategy, conflict policy and backup flag
            show_progress: Show tqdm progress bar

        Returns:
            Final MigrationStatus

        Raises:
            MigrationInProgressError: Another run is active
            MigrationFatalError: Backup or remote fetch failed; nothing was migrated
        """
        if not self._guard.acquire(blocking=False):
            raise MigrationInProgressError("A migration is already in progress")

        try:
            if options is None:
                options = MigrationOptions()
            elif isinstance(options, dict):
                options = MigrationOptions.model_validate(options)
            self._last_options = options
            self._cancel.clear()

            notes = self._select_notes(local_notes, options)
            status = MigrationStatus(
                in_progress=True, total_notes=len(notes), started_at=utcnow()
            )
            self._status = status
            self._publish(status)

            backup_verified = False
            remote_notes: list[RemoteNote] = []
            if notes:
                try:
                    backup_verified = self._prepare_backup(notes, options, status)
                    remote_notes = self._fetch_remote_notes(status)
                except MigrationFatalError:
                    raise
                except Exception as e:
                    self._abort(status, f"Migration could not start: {e}")

            console.print(
                f"[cyan]Migrating {len(notes)} notes for {self.identity_id} "
                f"({options.strategy.value}, {options.conflict_resolution.value})[/cyan]"
            )

            ids = [n.id for n in notes]
            reservation = self.queue.reserve(ids) if self.queue is not None else nullcontext()
            with reservation:
                self._run(notes, remote_notes, options, status, show_progress)

            status.in_progress = False
            status.finished_at = utcnow()
            self._publish(status)
            self.events.emit(
                SyncEvent.MIGRATION_COMPLETED,
                MigrationCompleted(status=status.model_copy(deep=True)),
            )
            self._record_history(status)

            if status.success and backup_verified:
                self._purge_legacy()
            self._report(status)
            return status.model_copy(deep=True)

        finally:
            self._status = None
            self._guard.release()

    def _select_notes(
        self, local_notes: Optional[Iterable[NoteSnapshot]], options: MigrationOptions
    ) -> list[NoteSnapshot]:
        source = self.unmigrated_notes() if local_notes is None else list(local_notes)
        notes = [n for n in source if n.owner_id is None and not n.deleted]
        if options.strategy == MigrationStrategy.SELECTIVE:
            wanted = set(options.note_ids or [])
            notes = [n for n in notes if n.id in wanted]
        return notes

    def _prepare_backup(
        self, notes: list[NoteSnapshot], options: MigrationOptions, status: MigrationStatus
    ) -> bool:
        """Back up notes before any mutation. Returns True if the backup verified."""
        if not options.backup_local:
            return False
        if self.backups is None:
            self._abort(status, "Backup requested but no backup location is configured")

        result = self.backups.create_backup(notes)
        if not result.success:
            self._abort(status, f"Backup failed: {result.error}")

        status.backup_path = str(result.backup_path)
        valid, error = self.backups.verify_backup(result.backup_path)
        if not valid:
            self._abort(status, f"Backup verification failed: {error}")
        console.print(f"[dim]Backed up {len(notes)} notes to {result.backup_path}[/dim]")
        return True

    def _fetch_remote_notes(self, status: MigrationStatus) -> list[RemoteNote]:
        try:
            return self._retry(self.gateway.list_notes, "List remote notes")
        except GatewayError as e:
            self._abort(status, f"Could not fetch remote notes: {e}")

    def _abort(self, status: MigrationStatus, reason: str) -> None:
        status.in_progress = False
        status.finished_at = utcnow()
        status.fatal_error = reason
        self._publish(status)
        self._record_history(status)
        console.print(f"[red]Migration aborted:[/red] {reason}")
        raise MigrationFatalError(reason)

    def _run(
        self,
        notes: list[NoteSnapshot],
        remote_notes: list[RemoteNote],
        options: MigrationOptions,
        status: MigrationStatus,
        show_progress: bool,
    ) -> None:
        claimed: set[str] = set()

        for note in tqdm(notes, desc="Migrating notes", disable=not show_progress):
            if self._cancel.is_set():
                status.cancelled = True
                console.print(
                    f"[yellow]Migration cancelled after {status.processed_notes} notes.[/yellow]"
                )
                break

            try:
                self._migrate_note(note, remote_notes, claimed, options, status)
            except MigrationItemError as e:
                status.errors.append(
                    MigrationErrorEntry(note_id=note.id, title=note.title, reason=e.reason)
                )
                console.print(f"[red]{e}[/red]")

            status.processed_notes += 1
            self._publish(status)

    def _migrate_note(
        self,
        note: NoteSnapshot,
        remote_notes: list[RemoteNote],
        claimed: set[str],
        options: MigrationOptions,
        status: MigrationStatus,
    ) -> None:
        owned = note.model_copy(
            update={"owner_id": self.identity_id, "sync_status": SyncStatus.LOCAL_ONLY}
        )

        match = None
        if options.strategy != MigrationStrategy.OVERWRITE:
            match = find_duplicate(note, remote_notes, exclude=claimed)

        try:
            if match is None:
                migrated = self._create_remote(owned)
            else:
                claimed.add(match.remote.id)
                if match.ambiguous:
                    console.print(
                        f"[yellow]Note {note.title!r} resembles {len(match.runners_up) + 1} "
                        f"remote notes; using {match.remote.id} "
                        f"({match.confidence:.0%} similar)[/yellow]"
                    )
                migrated = self._reconcile(owned, match, options, status)
        except GatewayError as e:
            raise MigrationItemError(note, str(e)) from e

        # The legacy copy stays as a fallback until the purge
        self.legacy_store.save_note(note.model_copy(update={"owner_id": self.identity_id}))

        if migrated.sync_status == SyncStatus.LOCAL_ONLY and self.queue is not None:
            self.queue.enqueue(migrated)

    def _create_remote(self, owned: NoteSnapshot) -> NoteSnapshot:
        remote = self._retry(lambda: self.gateway.create_note(owned), f"Create {owned.id}")
        migrated = owned.model_copy(
            update={
                "remote_id": remote.id if remote.id != owned.id else None,
                "synced_version": remote.version,
                "version": max(owned.version, remote.version),
                "sync_status": SyncStatus.SYNCED,
                "last_sync_at": utcnow(),
            }
        )
        self.user_store.save_note(migrated)
        return migrated

    def _reconcile(
        self,
        owned: NoteSnapshot,
        match: DuplicateMatch,
        options: MigrationOptions,
        status: MigrationStatus,
    ) -> NoteSnapshot:
        """Decide between a legacy note and its remote duplicate."""
        remote = match.remote
        linked = {
            "remote_id": remote.id if remote.id != owned.id else None,
            "synced_version": remote.version,
        }

        if match.match_type == MatchType.EXACT and owned.content_key() == remote.content_key():
            return self._adopt_remote(owned, remote, linked)

        if options.strategy == MigrationStrategy.KEEP_LOCAL:
            local_wins = True
        elif options.conflict_resolution == MigrationConflictPolicy.MANUAL:
            self.user_store.save_note(owned)
            self.detector.flag(owned, remote)
            status.conflicts.append(owned.id)
            return self.user_store.get_note(owned.id)
        elif remote.updated_at is None:
            local_wins = True
        elif options.conflict_resolution == MigrationConflictPolicy.NEWER:
            local_wins = owned.updated_at > remote.updated_at
        else:
            local_wins = owned.updated_at < remote.updated_at

        if not local_wins:
            return self._adopt_remote(owned, remote, linked)

        # Overwrite the duplicate through the queue with a version above the server's
        migrated = owned.model_copy(
            update={
                **linked,
                "version": max(owned.version, remote.version + 1),
                "sync_status": SyncStatus.LOCAL_ONLY,
            }
        )
        self.user_store.save_note(migrated)
        return migrated

    def _adopt_remote(self, owned: NoteSnapshot, remote: RemoteNote, linked: dict) -> NoteSnapshot:
        content = {
            "title": remote.title,
            "body": remote.body,
            "color": remote.color,
            "tags": list(remote.tags),
            "updated_at": remote.updated_at or owned.updated_at,
        }
        if remote.version >= owned.version:
            migrated = owned.model_copy(
                update={
                    **linked,
                    **content,
                    "version": remote.version,
                    "sync_status": SyncStatus.SYNCED,
                    "last_sync_at": utcnow(),
                }
            )
        else:
            # Local version count is ahead; push the server content back as an edit
            migrated = owned.model_copy(
                update={
                    **linked,
                    **content,
                    "version": owned.version + 1,
                    "sync_status": SyncStatus.LOCAL_ONLY,
                }
            )
        self.user_store.save_note(migrated)
        return migrated

    def _purge_legacy(self) -> None:
        # Copies stamped by earlier partial runs go too
        migrated = [
            n.id
            for n in self.legacy_store.list_notes(include_deleted=True)
            if n.owner_id == self.identity_id
        ]
        removed = sum(1 for note_id in migrated if self.legacy_store.purge_note(note_id))
        console.print(f"[dim]Removed {removed} legacy notes after migration.[/dim]")

    def _retry(self, operation, label: str):
        return call_with_retry(
            operation,
            attempts=self.retry_attempts,
            delay=self.retry_delay,
            sleep=self._sleep,
            label=label,
        )

    def _publish(self, status: MigrationStatus) -> None:
        self.user_store.save_migration_status(status)
        self.events.emit(
            SyncEvent.MIGRATION_PROGRESS, MigrationProgress(status=status.model_copy(deep=True))
        )

    def _record_history(self, status: MigrationStatus) -> None:
        record = MigrationRecord.from_status(status)
        self.user_store.add_migration_record(record, keep=MIGRATION_HISTORY_KEEP)

    def _report(self, status: MigrationStatus) -> None:
        if status.cancelled:
            console.print("[yellow]Migration cancelled.[/yellow]")
        elif status.errors:
            console.print(
                f"[yellow]Migration finished with {len(status.errors)} errors "
                f"({status.processed_notes}/{status.total_notes} processed).[/yellow]"
            )
        else:
            console.print(
                f"[green]Migration complete:[/green] {status.processed_notes} notes, "
                f"{len(status.conflicts)} awaiting a decision."
            )
