"""Bidirectional sync between the local SQLite store and the cloud collection.

``SyncReconciler`` owns the push pipeline (local commits → cloud), the pull
pipeline (cloud snapshots → local), the enable/disable gate, the bulk
operations and the observable status fields. All session state is guarded by
one lock. A pull and a push are tracked separately:

* a push only starts when nothing else is running;
* a pull only refuses to start while another pull is applying a batch, so
  cloud changes arriving during a long bulk upload are still applied;
* local commits made by the pull pipeline itself are never pushed back;
* a cloud batch arriving within the debounce window after a local mutation is
  dropped, which swallows the echo of our own writes.

The lock is never held across network or disk I/O.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from PySide6.QtCore import QObject, Signal, Slot

from moodmapper.codec import entry_from_document, entry_to_document, tombstone_document
from moodmapper.constants import PULL_DEBOUNCE_SECONDS
from moodmapper.errors import CodecError, LocalStoreError, RemoteStoreError, SyncBusyError
from moodmapper.identity import IdentityProvider
from moodmapper.models import (
    BatchOperation,
    ChangeKind,
    EntryChanges,
    MoodEntry,
    RemoteChangeBatch,
    SyncPhase,
    SyncResult,
    SyncStatus,
)
from moodmapper.observer import LocalChangeObserver
from moodmapper.remote import RemoteStore
from moodmapper.resolver import ConflictResolver
from moodmapper.status import SyncStatusEstimator
from moodmapper.storage import LocalStore, SyncCursor
from moodmapper.subscriber import RemoteChangeSubscriber
from moodmapper.utils import ensure_utc, utc_now

NO_USER_MESSAGE = "Sync unavailable: no authenticated user"
ANONYMOUS_MESSAGE = "Sync unavailable: anonymous accounts are not synced"
PULL_FAILED_MESSAGE = "Could not save cloud changes locally"
CLOUD_UNREACHABLE_MESSAGE = "Cloud unreachable"


class SyncReconciler(QObject):
    """Orchestrates push, pull and bulk reconciliation for the signed-in user.

    Signals:
        status_changed: emitted with a ``SyncStatus`` whenever it is recomputed
        gate_changed: emitted with the new ``is_enabled`` value
    """

    status_changed = Signal(object)
    gate_changed = Signal(bool)

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        identity: IdentityProvider,
        cursor: SyncCursor,
        clock: Callable[[], datetime] = utc_now,
        debounce_seconds: float = PULL_DEBOUNCE_SECONDS,
        estimator: SyncStatusEstimator | None = None,
        resolver: ConflictResolver | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._local = local
        self._remote = remote
        self._identity = identity
        self._clock = clock
        self._debounce = timedelta(seconds=debounce_seconds)
        self._estimator = estimator or SyncStatusEstimator()
        self._resolver = resolver or ConflictResolver()

        self._lock = threading.RLock()
        # thread applying a cloud batch, None when no pull is running
        self._pull_thread: int | None = None
        self._pushing = False
        self._enabled = True
        # bulk operations nest their own push suspension under the user gate
        self._suspended = 0
        self._last_local_change: datetime | None = None
        self._last_sync_time: datetime | None = None
        self._local_count = 0
        self._remote_count: int | None = None
        self._is_synced = False
        self._last_error = ""
        self._started = False

        self._observer = LocalChangeObserver(local, self.handle_local_changes, self)
        self._subscriber = RemoteChangeSubscriber(
            remote, identity, cursor, self.handle_remote_batch, clock, self
        )

    # ---- observable fields ----

    @property
    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    @property
    def is_synced(self) -> bool:
        with self._lock:
            return self._is_synced

    @property
    def last_sync_time(self) -> datetime | None:
        with self._lock:
            return self._last_sync_time

    @property
    def local_count(self) -> int:
        with self._lock:
            return self._local_count

    @property
    def remote_count(self) -> int:
        with self._lock:
            return self._remote_count or 0

    @property
    def phase(self) -> SyncPhase:
        with self._lock:
            return self._current_phase()

    @property
    def last_local_change_time(self) -> datetime | None:
        with self._lock:
            return self._last_local_change

    @property
    def subscriber(self) -> RemoteChangeSubscriber:
        return self._subscriber

    def status(self) -> SyncStatus:
        with self._lock:
            return SyncStatus(
                is_enabled=self._enabled,
                is_synced=self._is_synced,
                local_count=self._local_count,
                remote_count=self._remote_count or 0,
                last_sync_time=self._last_sync_time,
                last_error=self._last_error,
            )

    # ---- lifecycle and gate ----

    def start(self) -> None:
        """Observe local commits, open the cloud listener and compute status."""
        if self._started:
            return
        self._started = True
        logging.info("Starting sync reconciler")
        if self._identity.sync_user() is None:
            logging.info("No authenticated user - sync will not work until sign-in")
        self._observer.attach()
        self._identity.user_changed.connect(self._on_user_changed)
        self._subscriber.start()
        self.refresh_status()

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._observer.detach()
        self._identity.user_changed.disconnect(self._on_user_changed)
        self._subscriber.stop()
        logging.info("Sync reconciler stopped")

    def enable(self) -> None:
        self._set_enabled(True)

    def disable(self) -> None:
        """Stop pushing local changes; the cloud listener stays attached."""
        self._set_enabled(False)

    def _set_enabled(self, enabled: bool) -> None:
        with self._lock:
            if self._enabled == enabled:
                return
            self._enabled = enabled
        logging.info("Sync %s", "enabled" if enabled else "disabled")
        self.gate_changed.emit(enabled)
        self.refresh_status()

    @Slot(object)
    def _on_user_changed(self, _user: object) -> None:
        with self._lock:
            self._last_sync_time = None
            self._remote_count = None
            self._last_error = ""
        self.refresh_status()

    # ---- phase state machine ----

    def _current_phase(self) -> SyncPhase:
        if self._pull_thread is not None:
            return SyncPhase.PULLING
        if self._pushing:
            return SyncPhase.PUSHING
        return SyncPhase.IDLE

    def _claim(self, phase: SyncPhase) -> None:
        """Take ``phase`` for a bulk operation; only allowed when nothing runs."""
        with self._lock:
            current = self._current_phase()
            if current is not SyncPhase.IDLE:
                raise SyncBusyError(f"Sync is busy ({current.value})")
            if phase is SyncPhase.PULLING:
                self._pull_thread = threading.get_ident()
            else:
                self._pushing = True

    def _release(self, phase: SyncPhase) -> None:
        with self._lock:
            if phase is SyncPhase.PULLING:
                self._pull_thread = None
            else:
                self._pushing = False

    def _is_own_pull_commit(self) -> bool:
        return self._pull_thread == threading.get_ident()

    @contextmanager
    def _gate_suspended(self) -> Iterator[None]:
        """Hold back incremental pushes for the block; the user gate is untouched."""
        with self._lock:
            self._suspended += 1
        try:
            yield
        finally:
            with self._lock:
                self._suspended -= 1

    # ---- push pipeline ----

    def handle_local_changes(self, changes: EntryChanges) -> None:
        """Push one committed local transaction to the cloud.

        Skipped pushes are not queued; the next local mutation pushes the
        then-current state.
        """
        with self._lock:
            if self._is_own_pull_commit():
                logging.debug("Skipping push - applying remote changes")
                return
            self._last_local_change = ensure_utc(self._clock())
            if not self._enabled:
                logging.info("Sync disabled - %d local change(s) not pushed", _size(changes))
                return
            if self._suspended:
                logging.info("Skipping push - bulk operation in progress")
                return
            current = self._current_phase()
            if current is not SyncPhase.IDLE:
                logging.info("Skipping push - %s in progress", current.value)
                return
            user = self._identity.sync_user()
            if user is None:
                logging.debug("Skipping push - no sync-eligible user")
                return
            self._pushing = True

        failures = 0
        try:
            logging.info(
                "Pushing %d changed and %d deleted entries",
                len(changes.upserts),
                len(changes.deleted),
            )
            for entry in changes.upserts:
                if not self._push_upsert(user.uid, entry):
                    failures += 1
            for entry in changes.deleted:
                if not self._push_tombstone(user.uid, entry):
                    failures += 1
        finally:
            self._release(SyncPhase.PUSHING)

        self._record_error(f"{failures} change(s) failed to upload" if failures else "")
        self.refresh_status()

    def _push_upsert(self, uid: str, entry: MoodEntry) -> bool:
        try:
            self._remote.set_document(uid, entry.id, entry_to_document(entry), merge=True)
        except RemoteStoreError:
            logging.exception("Failed to push entry %s", entry.id)
            return False
        logging.debug("Pushed entry %s", entry.id)
        return True

    def _push_tombstone(self, uid: str, entry: MoodEntry) -> bool:
        deleted_at = ensure_utc(self._clock())
        if entry.last_modified is not None:
            deleted_at = max(deleted_at, ensure_utc(entry.last_modified))
        try:
            self._remote.set_document(
                uid, entry.id, tombstone_document(entry.id, deleted_at), merge=True
            )
        except RemoteStoreError:
            logging.exception("Failed to mark entry %s deleted in the cloud", entry.id)
            return False
        logging.debug("Soft-deleted entry %s in the cloud", entry.id)
        return True

    # ---- pull pipeline ----

    def handle_remote_batch(self, batch: RemoteChangeBatch) -> bool:
        """Apply one cloud snapshot locally.

        The batch is dropped only while another batch is being applied or
        inside the debounce window; a running push does not block it.
        Returns True when the batch was persisted and the gate is enabled,
        i.e. when the caller may advance the sync cursor.
        """
        now = ensure_utc(self._clock())
        with self._lock:
            if self._pull_thread is not None:
                logging.info("Skipping pull - already applying cloud changes")
                return False
            if (
                self._last_local_change is not None
                and now - self._last_local_change < self._debounce
            ):
                logging.info(
                    "Skipping pull - local change %.1fs ago",
                    (now - self._last_local_change).total_seconds(),
                )
                return False
            if self._identity.sync_user() is None:
                return False
            self._pull_thread = threading.get_ident()

        try:
            self._apply_remote_changes(batch)
        except LocalStoreError:
            logging.exception("Abandoning cloud batch of %d change(s)", len(batch))
            self._record_error(PULL_FAILED_MESSAGE)
            self.refresh_status()
            return False
        finally:
            self._release(SyncPhase.PULLING)

        with self._lock:
            # an empty snapshot says nothing about how current local data is
            if not batch.is_empty():
                self._last_sync_time = now
                self._last_error = ""
            advance = self._enabled
        self.refresh_status()
        return advance

    def _apply_remote_changes(self, batch: RemoteChangeBatch) -> int:
        applied = 0
        with self._local.transaction(touch=False) as txn:
            for change in batch.changes:
                if change.kind is ChangeKind.REMOVED:
                    # deletions travel as tombstones, not as removed documents
                    continue
                try:
                    remote_entry = entry_from_document(
                        change.document.data, change.document.doc_id
                    )
                except CodecError:
                    logging.warning(
                        "Skipping malformed cloud document %s", change.document.doc_id
                    )
                    continue

                local_entry = txn.get(remote_entry.id)
                if self._resolver.resolve(remote_entry, local_entry) is None:
                    logging.debug("Discarding stale cloud version of %s", remote_entry.id)
                    continue
                if remote_entry.is_soft_deleted:
                    if local_entry is not None:
                        txn.delete(local_entry)
                        applied += 1
                    continue
                txn.save(remote_entry)
                applied += 1
        logging.info("Applied %d of %d cloud change(s)", applied, len(batch))
        return applied

    # ---- bulk operations ----

    def force_push_all(self) -> SyncResult:
        """Upload every live local entry to the cloud."""
        return self._run_bulk("Force sync", SyncPhase.PUSHING, self._force_push_all)

    def pull_all_overwriting_local(self) -> SyncResult:
        """Replace every local entry with the cloud collection's live documents."""
        return self._run_bulk(
            "Restore from cloud", SyncPhase.PULLING, self._pull_all_overwriting_local
        )

    def push_all_overwriting_remote(self) -> SyncResult:
        """Delete the whole cloud collection and upload local entries in its place.

        Irreversible for any data that only exists in the cloud.
        """
        return self._run_bulk(
            "Overwrite cloud with local",
            SyncPhase.PUSHING,
            self._push_all_overwriting_remote,
        )

    def _run_bulk(
        self,
        name: str,
        phase: SyncPhase,
        operation: Callable[[str], SyncResult],
    ) -> SyncResult:
        user = self._identity.sync_user()
        if user is None:
            return SyncResult(False, NO_USER_MESSAGE)

        logging.info("%s started", name)
        with self._gate_suspended():
            try:
                self._claim(phase)
            except SyncBusyError as exc:
                logging.info("%s refused: %s", name, exc)
                return SyncResult(False, str(exc))
            try:
                result = operation(user.uid)
            except (RemoteStoreError, LocalStoreError) as exc:
                logging.exception("%s failed", name)
                result = SyncResult(False, f"{name} failed: {exc}")
            finally:
                self._release(phase)

        logging.info("%s finished: %s", name, result.message)
        self._record_error("" if result.ok else result.message)
        self.refresh_status()
        return result

    def _force_push_all(self, uid: str) -> SyncResult:
        entries = self._local.fetch()
        failures = sum(1 for entry in entries if not self._push_upsert(uid, entry))
        pushed = len(entries) - failures
        if failures:
            return SyncResult(
                False, f"Uploaded {pushed} of {len(entries)} entries; {failures} failed", pushed
            )
        return SyncResult(True, f"Uploaded {pushed} entries to the cloud", pushed)

    def _pull_all_overwriting_local(self, uid: str) -> SyncResult:
        entries: list[MoodEntry] = []
        for document in self._remote.get_all(uid):
            try:
                entry = entry_from_document(document.data, document.doc_id)
            except CodecError:
                logging.warning("Skipping malformed cloud document %s", document.doc_id)
                continue
            if not entry.is_soft_deleted:
                entries.append(entry)

        with self._local.transaction(touch=False) as txn:
            txn.clear()
            for entry in entries:
                txn.save(entry)

        with self._lock:
            self._last_sync_time = ensure_utc(self._clock())
        return SyncResult(True, f"Restored {len(entries)} entries from the cloud", len(entries))

    def _push_all_overwriting_remote(self, uid: str) -> SyncResult:
        entries = self._local.fetch()
        existing = self._remote.get_all(uid)
        self._remote.batch_write(uid, [BatchOperation.delete(doc.doc_id) for doc in existing])
        logging.info("Deleted %d cloud documents", len(existing))
        try:
            self._remote.batch_write(
                uid,
                [
                    BatchOperation.set(entry.id, entry_to_document(entry), merge=False)
                    for entry in entries
                ],
            )
        except RemoteStoreError as exc:
            logging.exception("Upload after clearing the cloud collection failed")
            return SyncResult(
                False,
                f"Deleted {len(existing)} cloud entries but uploading local entries "
                f"failed: {exc}",
            )
        return SyncResult(
            True, f"Replaced cloud data with {len(entries)} local entries", len(entries)
        )

    # ---- diagnostics and status ----

    def test_connection(self) -> SyncResult:
        user = self._identity.current_user
        if user is None:
            return SyncResult(False, NO_USER_MESSAGE)
        if user.is_anonymous:
            return SyncResult(False, ANONYMOUS_MESSAGE)
        try:
            count = self._remote.count_live(user.uid)
        except RemoteStoreError as exc:
            logging.exception("Cloud connection test failed")
            return SyncResult(False, f"Connection failed: {exc}")
        return SyncResult(True, f"Connected as {user.uid}. {count} entries in the cloud.", count)

    def _record_error(self, message: str) -> None:
        with self._lock:
            self._last_error = message

    def refresh_status(self) -> SyncStatus:
        """Recount both sides and recompute ``is_synced``."""
        try:
            local_count = self._local.count()
        except LocalStoreError:
            with self._lock:
                local_count = self._local_count

        user = self._identity.sync_user()
        remote_count: int | None = None
        remote_error = ""
        if user is not None:
            try:
                remote_count = self._remote.count_live(user.uid)
            except RemoteStoreError as exc:
                logging.warning("Could not count cloud entries: %s", exc)
                remote_error = CLOUD_UNREACHABLE_MESSAGE

        now = ensure_utc(self._clock())
        with self._lock:
            self._local_count = local_count
            if remote_count is not None:
                self._remote_count = remote_count
                if self._last_error == CLOUD_UNREACHABLE_MESSAGE:
                    self._last_error = ""
            if remote_error:
                self._last_error = remote_error
            self._is_synced = (
                user is not None
                and not self._last_error
                and self._estimator.estimate(
                    local_count, remote_count, self._last_sync_time, now
                )
            )
        status = self.status()
        self.status_changed.emit(status)
        return status


def _size(changes: EntryChanges) -> int:
    return len(changes.inserted) + len(changes.updated) + len(changes.deleted)
