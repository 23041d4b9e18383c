"""Live subscription to the signed-in user's cloud collection."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from PySide6.QtCore import QObject, Signal, Slot

from moodmapper.errors import LocalStoreError, RemoteStoreError
from moodmapper.identity import IdentityProvider
from moodmapper.models import RemoteChangeBatch, User
from moodmapper.remote import RemoteStore, Subscription
from moodmapper.storage import SyncCursor
from moodmapper.utils import utc_now

# Returns True when the batch was applied and the cursor may move.
BatchHandler = Callable[[RemoteChangeBatch], bool]


class RemoteChangeSubscriber(QObject):
    """Keeps exactly one live query open for the current sync-eligible user.

    The query is scoped to documents modified after the user's ``SyncCursor``
    (everything on first run). Snapshot callbacks may arrive on a foreign
    thread; they are re-emitted through ``_snapshot_arrived`` so the handler
    runs on this object's thread. After a non-empty batch is applied the
    cursor moves to "now"; empty batches never move it.

    Signals:
        batch_received: emitted with every delivered ``RemoteChangeBatch``
        subscription_changed: emitted with the uid being watched, or ""
    """

    batch_received = Signal(object)
    subscription_changed = Signal(str)
    _snapshot_arrived = Signal(int, str, object)

    def __init__(
        self,
        remote: RemoteStore,
        identity: IdentityProvider,
        cursor: SyncCursor,
        handler: BatchHandler,
        clock: Callable[[], datetime] = utc_now,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._remote = remote
        self._identity = identity
        self._cursor = cursor
        self._handler = handler
        self._clock = clock
        self._subscription: Subscription | None = None
        self._uid = ""
        # bumped on every (re)subscribe so late callbacks from old queries are dropped
        self._generation = 0
        self._started = False
        self._snapshot_arrived.connect(self._deliver)

    @property
    def uid(self) -> str:
        return self._uid

    @property
    def is_active(self) -> bool:
        return self._subscription is not None

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._identity.user_changed.connect(self._on_user_changed)
        self.resubscribe()

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._identity.user_changed.disconnect(self._on_user_changed)
        self._teardown()

    @Slot(object)
    def _on_user_changed(self, _user: User | None) -> None:
        self.resubscribe()

    def resubscribe(self) -> None:
        """Drop the current query and open a new one for the current user."""
        self._teardown()
        user = self._identity.sync_user()
        if user is None:
            logging.info("No authenticated non-anonymous user - remote sync idle")
            return

        self._generation += 1
        generation = self._generation
        uid = user.uid
        since = self._cursor.load(uid)
        logging.info(
            "Subscribing to cloud changes for %s since %s",
            uid,
            since.isoformat() if since else "the beginning",
        )

        def on_batch(batch: RemoteChangeBatch) -> None:
            self._snapshot_arrived.emit(generation, uid, batch)

        self._uid = uid
        try:
            self._subscription = self._remote.subscribe(uid, since, on_batch)
        except RemoteStoreError:
            logging.exception("Failed to attach remote listener for %s", uid)
            self._uid = ""
            self._subscription = None
            return
        self.subscription_changed.emit(uid)

    def _teardown(self) -> None:
        subscription, self._subscription = self._subscription, None
        self._generation += 1
        if subscription is None:
            return
        try:
            subscription.unsubscribe()
        except RemoteStoreError:
            logging.exception("Failed to detach remote listener for %s", self._uid)
        logging.info("Detached remote listener for %s", self._uid)
        self._uid = ""
        self.subscription_changed.emit("")

    @Slot(int, str, object)
    def _deliver(self, generation: int, uid: str, batch: RemoteChangeBatch) -> None:
        if generation != self._generation or uid != self._uid:
            logging.debug("Dropping batch from stale subscription for %s", uid)
            return
        self.batch_received.emit(batch)
        applied = self._handler(batch)
        if applied and not batch.is_empty():
            try:
                self._cursor.advance(uid, self._clock())
            except LocalStoreError:
                logging.exception("Sync cursor not advanced; batch will be pulled again")
