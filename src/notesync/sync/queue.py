"""Sync queue engine for propagating local note mutations.

Holds at most one pending entry per note id, drains them in batches
through the remote gateway with retry and backoff, and writes the
outcome back to the local store. Pulling brings notes written by
other devices into the store. Draining is single-flight: a manual
trigger and the background timer share one guard.
"""

import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Generator, Iterable, Optional, TypeVar

from rich.console import Console
from tqdm import tqdm

from ..db.schemas import FailedSync, NoteSnapshot, RemoteNote, SyncStatus, utcnow
from ..db.store import LocalStore
from .conflict import ConflictDetector, ConflictOutcome
from .events import EventBus, NoteSynced, SyncEvent, SyncFailed
from .gateway import GatewayError, NetworkError, RemoteGateway, SemanticError, VersionConflictError

T = TypeVar("T")


@dataclass
class SyncQueueEntry:
    """A note snapshot waiting to be pushed."""

    note_id: str
    snapshot: NoteSnapshot
    enqueued_at: datetime = field(default_factory=utcnow)


@dataclass
class SyncResult:
    """Result of a drain or a pull."""

    pushed: int = 0
    pulled: int = 0
    deleted: int = 0
    conflicts: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.pushed + self.deleted

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


@dataclass
class QueueStatus:
    """Snapshot of the queue for status displays."""

    is_syncing: bool
    queue_length: int
    auto_sync: bool
    last_sync_at: Optional[datetime]


console = Console()


def call_with_retry(
    operation: Callable[[], T],
    attempts: int = 3,
    delay: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "Request",
) -> T:
    """Execute operation, retrying network errors with linear backoff.

    Args:
        operation: Callable to execute
        attempts: Total attempts before giving up
        delay: Base delay; attempt n waits delay * n seconds
        sleep: Sleep function
        label: Description used in retry messages

    Returns:
        Result of operation

    Raises:
        NetworkError: When every attempt failed
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except NetworkError as e:
            if attempt == attempts:
                raise
            wait = delay * attempt
            console.print(
                f"[dim]{label} failed ({attempt}/{attempts}): {e}. Retrying in {wait}s...[/dim]"
            )
            sleep(wait)
    raise AssertionError("unreachable")


class SyncQueue:
    """Queue of pending note mutations and the engine that drains it."""

    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway,
        detector: Optional[ConflictDetector] = None,
        events: Optional[EventBus] = None,
        batch_size: int = 10,
        retry_attempts: int = 3,
        retry_delay: float = 2.0,
        sync_interval: float = 30.0,
        auto_sync: bool = True,
        debounce: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize sync queue.

        Args:
            store: Local store of the signed-in identity
            gateway: Remote note API client
            detector: Conflict detector (created if not provided)
            events: Event bus (created if not provided)
            batch_size: Entries popped per batch
            retry_attempts: Attempts per network call
            retry_delay: Base backoff delay in seconds
            sync_interval: Background drain interval in seconds
            auto_sync: Drain soon after enqueue while the timer runs
            debounce: Delay between an enqueue and the drain it wakes
            sleep: Sleep function used for backoff
        """
        self.store = store
        self.gateway = gateway
        self.events = events or EventBus()
        self.detector = detector or ConflictDetector(store, self.events)
        self.detector.attach_queue(self)
        self.batch_size = batch_size
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.sync_interval = sync_interval
        self.auto_sync = auto_sync
        self.debounce = debounce
        self._sleep = sleep

        self._entries: "OrderedDict[str, SyncQueueEntry]" = OrderedDict()
        self._reserved: set[str] = set()
        self._lock = threading.Lock()
        self._drain_guard = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_sync_at: Optional[datetime] = None

    # ========================================================================
    # Queue Operations
    # ========================================================================

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def pending_ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    @property
    def is_syncing(self) -> bool:
        return self._drain_guard.locked()

    def get_entry(self, note_id: str) -> Optional[SyncQueueEntry]:
        with self._lock:
            return self._entries.get(note_id)

    def enqueue(self, note: NoteSnapshot) -> bool:
        """Insert or replace the pending entry for a note.

        Notes without an owner and notes waiting for conflict resolution
        are never queued.

        Returns:
            True if the note was queued
        """
        if note.owner_id is None:
            console.print(f"[dim]Note {note.id} has no owner, not queued.[/dim]")
            return False
        if note.sync_status == SyncStatus.CONFLICT:
            return False

        with self._lock:
            self._entries[note.id] = SyncQueueEntry(note_id=note.id, snapshot=note)

        if self.auto_sync and self.running:
            self._wake.set()
        return True

    def enqueue_many(self, notes: Iterable[NoteSnapshot]) -> int:
        return sum(1 for note in notes if self.enqueue(note))

    def discard(self, note_id: str) -> bool:
        """Drop the pending entry for a note."""
        with self._lock:
            return self._entries.pop(note_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def rescan(self) -> int:
        """Rebuild the queue from notes the store still has pending.

        Notes left in Syncing by an interrupted drain go back to LocalOnly.

        Returns:
            Number of notes queued
        """
        queued = 0
        with self.store.locked():
            for note in self.store.pending_notes():
                if note.sync_status == SyncStatus.SYNCING:
                    if self.is_syncing:
                        continue
                    note = note.model_copy(update={"sync_status": SyncStatus.LOCAL_ONLY})
                    self.store.save_note(note)
                if self.enqueue(note):
                    queued += 1
        return queued

    def retry_failed(self, note_id: Optional[str] = None) -> int:
        """Requeue notes that ended in Error.

        Args:
            note_id: Only this note (all Error notes if not provided)

        Returns:
            Number of notes queued
        """
        queued = 0
        with self.store.locked():
            for note in self.store.list_notes(include_deleted=True, statuses=[SyncStatus.ERROR]):
                if note_id and note.id != note_id:
                    continue
                note = note.model_copy(update={"sync_status": SyncStatus.LOCAL_ONLY})
                self.store.save_note(note)
                self.store.clear_failed_syncs(note.id)
                if self.enqueue(note):
                    queued += 1
        return queued

    @contextmanager
    def reserve(self, note_ids: Iterable[str]) -> Generator[None, None, None]:
        """Withhold note ids from drains while another component owns them."""
        ids = set(note_ids)
        with self._lock:
            self._reserved |= ids
        try:
            yield
        finally:
            with self._lock:
                self._reserved -= ids

    def is_reserved(self, note_id: str) -> bool:
        with self._lock:
            return note_id in self._reserved

    def status(self) -> QueueStatus:
        return QueueStatus(
            is_syncing=self.is_syncing,
            queue_length=len(self),
            auto_sync=self.auto_sync,
            last_sync_at=self.last_sync_at,
        )

    # ========================================================================
    # Draining
    # ========================================================================

    def trigger_sync(self) -> Optional[SyncResult]:
        """Drain the queue now.

        Returns:
            SyncResult, or None if a drain was already running
        """
        if not self._drain_guard.acquire(blocking=False):
            console.print("[dim]Sync already in progress, trigger ignored.[/dim]")
            return None
        try:
            return self._drain()
        finally:
            self._drain_guard.release()

    def _drain(self) -> SyncResult:
        result = SyncResult()
        deferred: list[SyncQueueEntry] = []

        while True:
            batch = self._pop_batch(deferred)
            if not batch:
                break
            for entry in batch:
                try:
                    self._sync_entry(entry, result)
                except Exception as e:
                    result.errors.append((entry.note_id, str(e)))
                    console.print(f"[red]Could not record sync of note {entry.note_id}:[/red] {e}")

        # Reserved entries go back unless superseded meanwhile
        with self._lock:
            for entry in deferred:
                self._entries.setdefault(entry.note_id, entry)

        self.last_sync_at = utcnow()
        if result.total or result.errors or result.conflicts:
            console.print(
                f"[dim]Sync finished: {result.pushed} pushed, {result.deleted} deleted, "
                f"{result.conflicts} conflicts, {result.failed} failed.[/dim]"
            )
        return result

    def _pop_batch(self, deferred: list[SyncQueueEntry]) -> list[SyncQueueEntry]:
        batch: list[SyncQueueEntry] = []
        with self._lock:
            for note_id in list(self._entries):
                if len(batch) >= self.batch_size:
                    break
                entry = self._entries.pop(note_id)
                if note_id in self._reserved:
                    deferred.append(entry)
                else:
                    batch.append(entry)
        return batch

    def _sync_entry(self, entry: SyncQueueEntry, result: SyncResult) -> None:
        """Push a single queued snapshot."""
        snapshot = entry.snapshot

        with self.store.locked():
            current = self.store.get_note(snapshot.id)
            if current is None or current.sync_status == SyncStatus.CONFLICT:
                result.skipped += 1
                return
            if current.version > snapshot.version:
                if self.get_entry(snapshot.id) is not None:
                    # A newer snapshot is already queued
                    result.skipped += 1
                    return
                snapshot = current
            if snapshot.owner_id is None:
                result.skipped += 1
                return
            if current.version == snapshot.version and current.sync_status != SyncStatus.SYNCING:
                self.store.save_note(current.model_copy(update={"sync_status": SyncStatus.SYNCING}))

        try:
            if snapshot.deleted:
                self._push_delete(snapshot, result)
            elif snapshot.is_new:
                self._push_create(snapshot, result)
            else:
                self._push_update(snapshot, result)
        except VersionConflictError as e:
            self._handle_version_conflict(snapshot, e.remote_note, result)
        except GatewayError as e:
            self._fail(snapshot, e, result)
        except Exception as e:
            # Anything else still lands in Error and the ledger, never stuck in Syncing
            self._fail(snapshot, e, result)

    def _retry(self, operation: Callable[[], T], label: str) -> T:
        return call_with_retry(
            operation,
            attempts=self.retry_attempts,
            delay=self.retry_delay,
            sleep=self._sleep,
            label=label,
        )

    def _push_create(self, snapshot: NoteSnapshot, result: SyncResult) -> None:
        remote = self._retry(lambda: self.gateway.create_note(snapshot), f"Create {snapshot.id}")
        self._acknowledge(snapshot, remote)
        result.pushed += 1

    def _push_update(self, snapshot: NoteSnapshot, result: SyncResult) -> None:
        remote = self._retry(
            lambda: self.gateway.update_note(snapshot.server_id, snapshot),
            f"Update {snapshot.id}",
        )
        if (
            remote.version > snapshot.version
            and self.detector.inspect(snapshot, remote) == ConflictOutcome.CONFLICT
        ):
            self.detector.flag(snapshot, remote)
            result.conflicts += 1
            return
        self._acknowledge(snapshot, remote)
        result.pushed += 1

    def _push_delete(self, snapshot: NoteSnapshot, result: SyncResult) -> None:
        if not snapshot.is_new:
            self._retry(
                lambda: self.gateway.delete_note(snapshot.server_id),
                f"Delete {snapshot.id}",
            )
        with self.store.locked():
            current = self.store.get_note(snapshot.id)
            if current is not None and current.deleted:
                self.store.purge_note(snapshot.id)
        result.deleted += 1

    def _acknowledge(self, snapshot: NoteSnapshot, remote: RemoteNote) -> Optional[NoteSnapshot]:
        """Apply a server acknowledgment to the stored note.

        The note is only marked Synced if it still holds the version that
        was sent; otherwise the newer local edit stays pending.
        """
        with self.store.locked():
            current = self.store.get_note(snapshot.id)
            if current is None:
                return None

            update: dict = {"synced_version": remote.version}
            if remote.id != current.id:
                update["remote_id"] = remote.id
            synced = current.version == snapshot.version
            if synced:
                update.update(
                    version=max(current.version, remote.version),
                    sync_status=SyncStatus.SYNCED,
                    last_sync_at=utcnow(),
                )
            note = current.model_copy(update=update)
            self.store.save_note(note)
            if synced:
                self.store.clear_failed_syncs(note.id)

        if synced:
            self.events.emit(SyncEvent.NOTE_SYNCED, NoteSynced(note=note))
        return note

    def _handle_version_conflict(
        self, snapshot: NoteSnapshot, remote: RemoteNote, result: SyncResult
    ) -> None:
        """Route a rejected update through the conflict detector."""
        outcome = self.detector.inspect(snapshot, remote)

        if outcome == ConflictOutcome.IDENTICAL:
            self._acknowledge(snapshot, remote)
            result.pushed += 1
            return

        if outcome == ConflictOutcome.CONFLICT:
            self.detector.flag(snapshot, remote)
            result.conflicts += 1
            return

        # Server holds nothing newer than what we last saw: rebase once and resend
        with self.store.locked():
            current = self.store.get_note(snapshot.id)
            if current is None or current.version != snapshot.version:
                result.skipped += 1
                return
            rebased = current.model_copy(
                update={
                    "version": max(current.version, remote.version) + 1,
                    "synced_version": remote.version,
                }
            )
            self.store.save_note(rebased)

        try:
            remote = self._retry(
                lambda: self.gateway.update_note(rebased.server_id, rebased),
                f"Update {rebased.id}",
            )
        except VersionConflictError as e:
            self._fail(
                rebased,
                SemanticError(f"Update rejected after rebase (server v{e.remote_note.version})", 409),
                result,
            )
            return
        except Exception as e:
            self._fail(rebased, e, result)
            return
        self._acknowledge(rebased, remote)
        result.pushed += 1

    def _fail(self, snapshot: NoteSnapshot, error: Exception, result: SyncResult) -> None:
        """Demote a note to Error and record it in the failed-sync ledger."""
        with self.store.locked():
            current = self.store.get_note(snapshot.id)
            if current is not None and current.version == snapshot.version:
                self.store.save_note(current.model_copy(update={"sync_status": SyncStatus.ERROR}))
            self.store.add_failed_sync(
                FailedSync(note_id=snapshot.id, snapshot=snapshot, error=str(error))
            )

        result.failed += 1
        result.errors.append((snapshot.id, str(error)))
        console.print(f"[red]Sync failed for note {snapshot.id}:[/red] {error}")
        self.events.emit(
            SyncEvent.SYNC_FAILED,
            SyncFailed(note_id=snapshot.id, snapshot=snapshot, error=str(error)),
        )

    # ========================================================================
    # Pulling
    # ========================================================================

    def pull(self, show_progress: bool = False) -> SyncResult:
        """Bring the server's notes into the local store.

        Notes this device has not seen are added, and synced notes the
        server has moved past are updated. Notes with unsent local
        changes are left to the queue, or flagged as conflicts when the
        server copy diverged.

        Args:
            show_progress: Show tqdm progress bar

        Returns:
            SyncResult with pull statistics
        """
        result = SyncResult()

        try:
            remote_notes = self._retry(self.gateway.list_notes, "List remote notes")
        except GatewayError as e:
            result.errors.append(("List remote notes", str(e)))
            console.print(f"[red]Could not fetch notes from the server:[/red] {e}")
            return result

        if not remote_notes:
            console.print("[dim]No notes on the server.[/dim]")
            return result

        for remote in tqdm(remote_notes, desc="Pulling", disable=not show_progress):
            try:
                self._apply_remote(remote, result)
            except Exception as e:
                result.errors.append((remote.id, str(e)))
                console.print(f"[red]Could not pull note {remote.id}:[/red] {e}")

        if result.pulled or result.conflicts:
            console.print(
                f"[dim]Pull finished: {result.pulled} updated, {result.conflicts} conflicts.[/dim]"
            )
        return result

    def _apply_remote(self, remote: RemoteNote, result: SyncResult) -> None:
        """Reconcile a single server note with the local store."""
        with self.store.locked():
            local = self.store.get_note(remote.id) or self.store.find_by_remote_id(remote.id)

            if local is None:
                now = utcnow()
                note = NoteSnapshot(
                    id=remote.id,
                    owner_id=self.store.identity_id,
                    title=remote.title,
                    body=remote.body,
                    color=remote.color,
                    tags=list(remote.tags),
                    created_at=remote.created_at or now,
                    updated_at=remote.updated_at or now,
                    version=remote.version,
                    synced_version=remote.version,
                    sync_status=SyncStatus.SYNCED,
                    last_sync_at=now,
                )
            else:
                if (
                    local.deleted
                    or local.sync_status in (SyncStatus.CONFLICT, SyncStatus.SYNCING)
                    or self.is_reserved(local.id)
                ):
                    result.skipped += 1
                    return

                if local.sync_status != SyncStatus.SYNCED or self.get_entry(local.id):
                    # Unsent local changes win unless the server copy diverged
                    if self.detector.inspect(local, remote) == ConflictOutcome.CONFLICT:
                        self.detector.flag(local, remote)
                        result.conflicts += 1
                    else:
                        result.skipped += 1
                    return

                if remote.version <= local.version:
                    return

                note = local.model_copy(
                    update={
                        "title": remote.title,
                        "body": remote.body,
                        "color": remote.color,
                        "tags": list(remote.tags),
                        "updated_at": remote.updated_at or utcnow(),
                        "version": remote.version,
                        "synced_version": remote.version,
                        "last_sync_at": utcnow(),
                    }
                )

            self.store.save_note(note)
            result.pulled += 1

        self.events.emit(SyncEvent.NOTE_SYNCED, NoteSynced(note=note))

    # ========================================================================
    # Background Sync
    # ========================================================================

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background drain timer."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="notesync-queue", daemon=True)
        self._thread.start()
        console.print(f"[dim]Auto sync started, interval {self.sync_interval}s.[/dim]")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background drain timer."""
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            woken = self._wake.wait(self.sync_interval)
            self._wake.clear()
            if woken and self.debounce:
                self._stop.wait(self.debounce)
            if self._stop.is_set():
                break
            if len(self) and not self.is_syncing:
                try:
                    self.trigger_sync()
                except Exception as e:
                    console.print(f"[red]Background sync failed:[/red] {e}")
