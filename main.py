"""Main entry point for the MoodMapper sync service."""

from __future__ import annotations

import logging
import sys

from PySide6.QtWidgets import QApplication

from moodmapper.constants import (
    DATABASE_PATH,
    REMOTE_BACKEND,
    SYNC_USER_ID,
    SYNC_USER_IS_ANONYMOUS,
)
from moodmapper.identity import IdentityProvider
from moodmapper.models import User
from moodmapper.reconciler import SyncReconciler
from moodmapper.remote import MemoryRemoteStore, RemoteStore
from moodmapper.storage import LocalStore, SyncCursor
from moodmapper.ui import SyncSettingsWindow


def build_remote_store(backend: str) -> RemoteStore:
    if backend == "firestore":
        from moodmapper.firestore_store import FirestoreRemoteStore

        return FirestoreRemoteStore()
    if backend != "memory":
        logging.warning("Unknown remote backend %r, keeping data in memory", backend)
    return MemoryRemoteStore()


def main() -> int:
    """Initialize storage, wire the reconciler and launch the settings panel."""
    local_store = LocalStore(DATABASE_PATH)
    local_store.initialize()

    user = User(SYNC_USER_ID, is_anonymous=SYNC_USER_IS_ANONYMOUS) if SYNC_USER_ID else None
    identity = IdentityProvider(user)

    app = QApplication(sys.argv)
    reconciler = SyncReconciler(
        local_store,
        build_remote_store(REMOTE_BACKEND),
        identity,
        SyncCursor(DATABASE_PATH),
    )
    # the window moves the reconciler to its sync thread and starts it there
    window = SyncSettingsWindow(reconciler)
    window.resize(420, 520)
    window.show()
    exit_code = int(app.exec())
    reconciler.stop()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
