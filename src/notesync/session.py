"""Sync session lifecycle.

A NoteSyncSession owns every sync service for one signed-in identity:
it is built at login, started once, and closed at logout. Anonymous
sessions only expose a NotesManager over the legacy scope.
"""

import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from rich.console import Console

from .config import Config, get_config
from .db.schemas import (
    MigrationOptions,
    MigrationRecord,
    MigrationStatus,
    NoteSnapshot,
    NoteUpdate,
)
from .db.sqlite import Database
from .db.store import LocalStore
from .migration.backup import NoteBackupManager, RestoreResult
from .migration.engine import MigrationEngine, MigrationFatalError
from .notes.manager import NotesManager
from .sync.conflict import ConflictDetector
from .sync.events import EventBus, SyncEvent
from .sync.gateway import RemoteGateway
from .sync.queue import SyncQueue, SyncResult

console = Console()


class NotSignedInError(Exception):
    """Raised when a sync operation is used on an anonymous session."""

    pass


class NoteSyncSession:
    """Service container for one identity, from login to logout."""

    def __init__(
        self,
        db: Database,
        identity_id: Optional[str] = None,
        gateway: Optional[RemoteGateway] = None,
        config: Optional[Config] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Build the services for an identity.

        Args:
            db: Database instance
            identity_id: Signed-in identity, or None for an anonymous session
            gateway: Remote note API client (built from config if not provided)
            config: Configuration (global config if not provided)
            sleep: Sleep function used for backoff
        """
        self.config = config or get_config()
        self.db = db
        self.identity_id = identity_id
        self.events = EventBus()
        self.legacy_store = LocalStore(db)
        self.backups = NoteBackupManager(
            self.legacy_store, self.config.backup_dir, keep=self.config.backup_keep
        )

        self.gateway: Optional[RemoteGateway] = None
        self.queue: Optional[SyncQueue] = None
        self.detector: Optional[ConflictDetector] = None
        self.migration: Optional[MigrationEngine] = None
        self._owns_gateway = False

        if identity_id is None:
            self.store = self.legacy_store
            self.notes = NotesManager(self.store)
            return

        if gateway is None:
            if not self.config.has_remote_config():
                raise ValueError("Remote note API not configured. Set NOTESYNC_API_URL.")
            gateway = RemoteGateway(
                self.config.api_url,
                auth_token=self.config.api_token,
                timeout=self.config.api_timeout,
            )
            self._owns_gateway = True
        self.gateway = gateway

        self.store = LocalStore(db, identity_id)
        self.detector = ConflictDetector(self.store, self.events)
        self.queue = SyncQueue(
            self.store,
            gateway,
            detector=self.detector,
            events=self.events,
            batch_size=self.config.batch_size,
            retry_attempts=self.config.retry_attempts,
            retry_delay=self.config.retry_delay,
            sync_interval=self.config.sync_interval,
            auto_sync=self.config.auto_sync,
            sleep=sleep,
        )
        self.migration = MigrationEngine(
            self.legacy_store,
            self.store,
            gateway,
            queue=self.queue,
            events=self.events,
            backups=self.backups,
            detector=self.detector,
            retry_attempts=self.config.retry_attempts,
            retry_delay=self.config.retry_delay,
            sleep=sleep,
        )
        self.notes = NotesManager(self.store, self.queue)

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "NoteSyncSession":
        """Open the database and build a session for the configured identity."""
        config = config or get_config()
        db = Database(str(config.db_path))
        db.create_tables()
        identity = config.identity_id if config.is_signed_in() else None
        return cls(db, identity_id=identity, config=config)

    @property
    def is_authenticated(self) -> bool:
        return self.identity_id is not None

    def _require_sync(self) -> None:
        if not self.is_authenticated:
            raise NotSignedInError("Sign in to sync notes")

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(
        self,
        run_migration: bool = True,
        migration_options: Optional[MigrationOptions] = None,
        background: Optional[bool] = None,
        show_progress: bool = False,
    ) -> Optional[MigrationStatus]:
        """Bring the session online.

        Rebuilds the queue from the store, migrates legacy notes if any
        are waiting and starts the background sync timer.

        Args:
            run_migration: Migrate legacy notes when needed
            migration_options: Options for that migration
            background: Start the timer (defaults to config auto_sync)
            show_progress: Show migration progress bar

        Returns:
            MigrationStatus if a migration ran
        """
        if not self.is_authenticated:
            return None

        queued = self.queue.rescan()
        if queued:
            console.print(f"[dim]Restored {queued} pending notes to the sync queue.[/dim]")

        status = None
        if run_migration and self.migration.check_migration_needed():
            try:
                status = self.migration.start_migration(
                    options=migration_options, show_progress=show_progress
                )
            except MigrationFatalError:
                # Legacy notes stay untouched; sync of account notes goes on
                status = self.migration.get_migration_status()

        if background is None:
            background = self.config.auto_sync
        if background:
            self.queue.start()
        return status

    def close(self) -> None:
        """Stop background sync and release the session's services."""
        if self.queue is not None:
            self.queue.stop()
            self.queue.clear()
        self.events.clear()
        if self.gateway is not None and self._owns_gateway:
            self.gateway.close()

    def __enter__(self) -> "NoteSyncSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ========================================================================
    # Sync Operations
    # ========================================================================

    def sync_now(self) -> Optional[SyncResult]:
        """Drain the sync queue now."""
        self._require_sync()
        return self.queue.trigger_sync()

    def pull(self, show_progress: bool = False) -> SyncResult:
        """Fetch notes written by other devices into the local store."""
        self._require_sync()
        return self.queue.pull(show_progress=show_progress)

    def retry_failed(self, note_id: Optional[str] = None) -> int:
        """Requeue notes in Error and drain them."""
        self._require_sync()
        queued = self.queue.retry_failed(note_id)
        if queued:
            self.queue.trigger_sync()
        return queued

    def resolve_conflict(
        self,
        note_id: str,
        strategy: str,
        merged_data: Optional[Union[NoteUpdate, dict]] = None,
    ) -> NoteSnapshot:
        self._require_sync()
        return self.detector.resolve_conflict(note_id, strategy, merged_data)

    def migration_history(self) -> list[MigrationRecord]:
        self._require_sync()
        return self.migration.get_migration_history()

    # ========================================================================
    # Backups
    # ========================================================================

    def list_backups(self) -> list[dict]:
        return self.backups.list_backups()

    def restore_backup(self, backup_path: Path, dry_run: bool = False) -> RestoreResult:
        """Bring the notes of a pre-migration backup back as legacy notes.

        Restored notes are migrated again the next time the session starts.
        """
        result = self.backups.restore_backup(backup_path, dry_run=dry_run)
        if result.success and not dry_run and result.notes_restored:
            console.print(f"[dim]Restored {result.notes_restored} notes from {backup_path}.[/dim]")
        return result

    def subscribe(self, event: SyncEvent, callback: Callable[[Any], None]) -> str:
        return self.events.subscribe(event, callback)

    def unsubscribe(self, token: str) -> bool:
        return self.events.unsubscribe(token)
