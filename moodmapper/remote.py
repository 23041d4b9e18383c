"""Cloud collection interface and an in-process implementation.

Every operation is scoped to one user's collection, ``users/{uid}/moodEntries``.
Documents are keyed by the string form of the entry id.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any

from moodmapper.codec import document_is_tombstone, document_last_modified
from moodmapper.constants import ENTRIES_COLLECTION, USERS_COLLECTION
from moodmapper.errors import CodecError, RemoteStoreError
from moodmapper.models import (
    BatchOperation,
    BatchOpKind,
    ChangeKind,
    RemoteChange,
    RemoteChangeBatch,
    RemoteDocument,
)
from moodmapper.utils import ensure_utc

BatchCallback = Callable[[RemoteChangeBatch], None]


def collection_path(uid: str) -> str:
    if not uid:
        raise RemoteStoreError("A user id is required to address the cloud collection")
    return f"{USERS_COLLECTION}/{uid}/{ENTRIES_COLLECTION}"


class Subscription(ABC):
    """Handle for a live query; ``unsubscribe`` is idempotent."""

    @abstractmethod
    def unsubscribe(self) -> None: ...


class RemoteStore(ABC):
    """Per-user document collection with a live change feed."""

    @abstractmethod
    def set_document(
        self, uid: str, doc_id: str, fields: dict[str, Any], merge: bool = True
    ) -> None: ...

    @abstractmethod
    def delete_document(self, uid: str, doc_id: str) -> None: ...

    @abstractmethod
    def get_all(self, uid: str) -> list[RemoteDocument]: ...

    @abstractmethod
    def count_live(self, uid: str) -> int:
        """Number of documents that are not soft-deleted."""

    @abstractmethod
    def subscribe(
        self, uid: str, since: datetime | None, callback: BatchCallback
    ) -> Subscription:
        """Open a live query for documents with ``lastModified > since``.

        ``since=None`` watches the whole collection. The callback receives an
        initial snapshot (possibly empty) followed by one batch per change.
        It may be invoked on a background thread.
        """

    @abstractmethod
    def batch_write(self, uid: str, operations: list[BatchOperation]) -> None:
        """Apply all operations atomically or none of them."""


class _MemorySubscription(Subscription):
    def __init__(self, store: MemoryRemoteStore, token: int) -> None:
        self._store = store
        self._token = token

    def unsubscribe(self) -> None:
        self._store._remove_listener(self._token)


class _Listener:
    def __init__(self, uid: str, since: datetime | None, callback: BatchCallback) -> None:
        self.uid = uid
        self.since = since
        self.callback = callback
        # doc ids currently inside the query window
        self.visible: set[str] = set()

    def matches(self, data: dict[str, Any]) -> bool:
        if self.since is None:
            return True
        try:
            last_modified = document_last_modified(data)
        except CodecError:
            return False
        return last_modified is not None and last_modified > self.since


class MemoryRemoteStore(RemoteStore):
    """Thread-safe in-process collection with Firestore-like semantics.

    Listeners are notified synchronously on the writing thread, after the
    store lock has been released.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._listeners: dict[int, _Listener] = {}
        self._next_token = 0

    def documents(self, uid: str) -> dict[str, dict[str, Any]]:
        """Copy of the raw documents for ``uid``, keyed by document id."""
        with self._lock:
            return copy.deepcopy(self._collections.get(collection_path(uid), {}))

    def listener_count(self, uid: str | None = None) -> int:
        with self._lock:
            return sum(
                1 for listener in self._listeners.values() if uid is None or listener.uid == uid
            )

    def set_document(
        self, uid: str, doc_id: str, fields: dict[str, Any], merge: bool = True
    ) -> None:
        self.batch_write(uid, [BatchOperation.set(doc_id, fields, merge)])

    def delete_document(self, uid: str, doc_id: str) -> None:
        self.batch_write(uid, [BatchOperation.delete(doc_id)])

    def get_all(self, uid: str) -> list[RemoteDocument]:
        with self._lock:
            collection = self._collections.get(collection_path(uid), {})
            return [
                RemoteDocument(doc_id, copy.deepcopy(data))
                for doc_id, data in collection.items()
            ]

    def count_live(self, uid: str) -> int:
        with self._lock:
            collection = self._collections.get(collection_path(uid), {})
            return sum(1 for data in collection.values() if not document_is_tombstone(data))

    def batch_write(self, uid: str, operations: list[BatchOperation]) -> None:
        path = collection_path(uid)
        touched: list[str] = []
        with self._lock:
            collection = dict(self._collections.get(path, {}))
            for op in operations:
                if op.kind is BatchOpKind.SET:
                    fields = copy.deepcopy(op.fields or {})
                    if op.merge and op.doc_id in collection:
                        merged = dict(collection[op.doc_id])
                        merged.update(fields)
                        fields = merged
                    collection[op.doc_id] = fields
                else:
                    collection.pop(op.doc_id, None)
                touched.append(op.doc_id)
            before = self._collections.get(path, {})
            self._collections[path] = collection
            notifications = self._collect_notifications(uid, before, collection, touched)
        self._deliver(notifications)

    def subscribe(
        self, uid: str, since: datetime | None, callback: BatchCallback
    ) -> Subscription:
        path = collection_path(uid)
        listener = _Listener(uid, ensure_utc(since) if since else None, callback)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener
            initial = RemoteChangeBatch()
            for doc_id, data in self._collections.get(path, {}).items():
                if listener.matches(data):
                    listener.visible.add(doc_id)
                    initial.changes.append(
                        RemoteChange(ChangeKind.ADDED, RemoteDocument(doc_id, copy.deepcopy(data)))
                    )
        logging.debug("Memory listener %d attached to %s", token, path)
        self._deliver([(listener, initial)])
        return _MemorySubscription(self, token)

    def _remove_listener(self, token: int) -> None:
        with self._lock:
            if self._listeners.pop(token, None) is not None:
                logging.debug("Memory listener %d detached", token)

    def _collect_notifications(
        self,
        uid: str,
        before: dict[str, dict[str, Any]],
        after: dict[str, dict[str, Any]],
        touched: list[str],
    ) -> list[tuple[_Listener, RemoteChangeBatch]]:
        notifications = []
        for listener in self._listeners.values():
            if listener.uid != uid:
                continue
            batch = RemoteChangeBatch()
            for doc_id in dict.fromkeys(touched):
                data = after.get(doc_id)
                was_visible = doc_id in listener.visible
                if data is not None and listener.matches(data):
                    kind = ChangeKind.MODIFIED if was_visible else ChangeKind.ADDED
                    listener.visible.add(doc_id)
                    batch.changes.append(
                        RemoteChange(kind, RemoteDocument(doc_id, copy.deepcopy(data)))
                    )
                elif was_visible:
                    listener.visible.discard(doc_id)
                    last = before.get(doc_id, data) or {}
                    batch.changes.append(
                        RemoteChange(ChangeKind.REMOVED, RemoteDocument(doc_id, copy.deepcopy(last)))
                    )
            if not batch.is_empty():
                notifications.append((listener, batch))
        return notifications

    def _deliver(self, notifications: list[tuple[_Listener, RemoteChangeBatch]]) -> None:
        for listener, batch in notifications:
            with self._lock:
                if listener not in self._listeners.values():
                    continue
            listener.callback(batch)
