"""Local change observer: turns store commits into entry change sets."""

from __future__ import annotations

import logging
from collections.abc import Callable

from PySide6.QtCore import QObject, Qt, Signal, Slot

from moodmapper.models import ChangeSet, EntryChanges, MoodEntry
from moodmapper.storage import LocalStore


def entry_changes_from(change_set: ChangeSet) -> EntryChanges:
    """Keep only ``MoodEntry`` records; other record kinds are ignored."""
    return EntryChanges(
        inserted=[obj for obj in change_set.inserted if isinstance(obj, MoodEntry)],
        updated=[obj for obj in change_set.updated if isinstance(obj, MoodEntry)],
        deleted=[obj for obj in change_set.deleted if isinstance(obj, MoodEntry)],
    )


class LocalChangeObserver(QObject):
    """Watches ``LocalStore`` commits and forwards entry changes once per commit.

    The store signal is connected with a direct connection, so the handler runs
    synchronously on whichever thread committed the transaction.

    Signals:
        entries_changed: emitted with an ``EntryChanges`` for every commit that
            touched at least one entry
    """

    entries_changed = Signal(object)

    def __init__(
        self,
        store: LocalStore,
        handler: Callable[[EntryChanges], None] | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._store = store
        self._handler = handler
        self._attached = False

    @property
    def is_attached(self) -> bool:
        return self._attached

    def attach(self) -> None:
        if self._attached:
            return
        self._store.changes_committed.connect(
            self._on_commit, Qt.ConnectionType.DirectConnection
        )
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        self._store.changes_committed.disconnect(self._on_commit)
        self._attached = False

    @Slot(object)
    def _on_commit(self, change_set: ChangeSet) -> None:
        changes = entry_changes_from(change_set)
        if changes.is_empty():
            return
        logging.debug(
            "Local commit: %d inserts, %d updates, %d deletes",
            len(changes.inserted),
            len(changes.updated),
            len(changes.deleted),
        )
        if self._handler is not None:
            self._handler(changes)
        self.entries_changed.emit(changes)
