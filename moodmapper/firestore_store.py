"""Cloud Firestore implementation of ``RemoteStore``."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from moodmapper.codec import FIELD_LAST_MODIFIED, FIELD_SOFT_DELETED
from moodmapper.constants import (
    ENTRIES_COLLECTION,
    FIRESTORE_BATCH_LIMIT,
    USERS_COLLECTION,
)
from moodmapper.errors import RemoteStoreError
from moodmapper.models import (
    BatchOperation,
    BatchOpKind,
    ChangeKind,
    RemoteChange,
    RemoteChangeBatch,
    RemoteDocument,
)
from moodmapper.remote import BatchCallback, RemoteStore, Subscription

_CHANGE_KINDS = {
    "ADDED": ChangeKind.ADDED,
    "MODIFIED": ChangeKind.MODIFIED,
    "REMOVED": ChangeKind.REMOVED,
}


class _WatchSubscription(Subscription):
    def __init__(self, watch: Any) -> None:
        self._watch = watch

    def unsubscribe(self) -> None:
        if self._watch is None:
            return
        try:
            self._watch.unsubscribe()
        finally:
            self._watch = None


class FirestoreRemoteStore(RemoteStore):
    """Talks to ``users/{uid}/moodEntries`` through the Firestore client.

    Snapshot callbacks are invoked on the client's watch thread.
    """

    def __init__(self, client: firestore.Client | None = None) -> None:
        self._client = client or firestore.Client()

    def _collection(self, uid: str) -> firestore.CollectionReference:
        if not uid:
            raise RemoteStoreError("A user id is required to address the cloud collection")
        return (
            self._client.collection(USERS_COLLECTION)
            .document(uid)
            .collection(ENTRIES_COLLECTION)
        )

    def set_document(
        self, uid: str, doc_id: str, fields: dict[str, Any], merge: bool = True
    ) -> None:
        try:
            self._collection(uid).document(doc_id).set(fields, merge=merge)
        except google_exceptions.GoogleAPIError as exc:
            raise RemoteStoreError(f"Failed to write document {doc_id}: {exc}") from exc

    def delete_document(self, uid: str, doc_id: str) -> None:
        try:
            self._collection(uid).document(doc_id).delete()
        except google_exceptions.GoogleAPIError as exc:
            raise RemoteStoreError(f"Failed to delete document {doc_id}: {exc}") from exc

    def get_all(self, uid: str) -> list[RemoteDocument]:
        try:
            return [
                RemoteDocument(snapshot.id, snapshot.to_dict() or {})
                for snapshot in self._collection(uid).stream()
            ]
        except google_exceptions.GoogleAPIError as exc:
            raise RemoteStoreError(f"Failed to read collection: {exc}") from exc

    def count_live(self, uid: str) -> int:
        """Server-side aggregation; never downloads the documents."""
        query = self._collection(uid).where(
            filter=FieldFilter(FIELD_SOFT_DELETED, "==", False)
        )
        try:
            results = query.count(alias="live").get()
        except google_exceptions.GoogleAPIError as exc:
            raise RemoteStoreError(f"Failed to count collection: {exc}") from exc
        return int(results[0][0].value)

    def subscribe(
        self, uid: str, since: datetime | None, callback: BatchCallback
    ) -> Subscription:
        query: Any = self._collection(uid)
        if since is not None:
            query = query.where(filter=FieldFilter(FIELD_LAST_MODIFIED, ">", since))

        def on_snapshot(_docs: Any, changes: Any, _read_time: Any) -> None:
            batch = RemoteChangeBatch()
            for change in changes:
                kind = _CHANGE_KINDS.get(change.type.name)
                if kind is None:
                    logging.warning("Ignoring unknown change type %s", change.type)
                    continue
                batch.changes.append(
                    RemoteChange(
                        kind,
                        RemoteDocument(change.document.id, change.document.to_dict() or {}),
                    )
                )
            callback(batch)

        try:
            watch = query.on_snapshot(on_snapshot)
        except google_exceptions.GoogleAPIError as exc:
            raise RemoteStoreError(f"Failed to subscribe to collection: {exc}") from exc
        return _WatchSubscription(watch)

    def batch_write(self, uid: str, operations: list[BatchOperation]) -> None:
        """Commit ``operations`` in chunks of ``FIRESTORE_BATCH_LIMIT``.

        Each chunk is atomic on the server. A failing chunk stops the run and
        earlier chunks stay committed.
        """
        collection = self._collection(uid)
        for start in range(0, len(operations), FIRESTORE_BATCH_LIMIT):
            chunk = operations[start : start + FIRESTORE_BATCH_LIMIT]
            batch = self._client.batch()
            for op in chunk:
                ref = collection.document(op.doc_id)
                if op.kind is BatchOpKind.SET:
                    batch.set(ref, op.fields or {}, merge=op.merge)
                else:
                    batch.delete(ref)
            try:
                batch.commit()
            except google_exceptions.GoogleAPIError as exc:
                raise RemoteStoreError(
                    f"Batch write failed after {start} operations: {exc}"
                ) from exc
            logging.info("Committed remote batch of %d operations", len(chunk))
