"""Background sync worker running in its own QThread.

This module exposes SyncWorker, a QObject that runs reconciler requests off
the UI thread and emits signals with the outcome. The reconciler itself is
moved to the same thread, so cloud snapshots, status refreshes and gate
changes never block the UI. The reconciler serializes its own state; the
worker only has to make sure one request runs at a time, which a single
worker thread does.
"""

from __future__ import annotations

import logging

from PySide6.QtCore import QObject, Signal, Slot

from moodmapper.models import SyncResult
from moodmapper.reconciler import SyncReconciler

OP_FORCE_PUSH = "force_push_all"
OP_RESTORE = "pull_all_overwriting_local"
OP_OVERWRITE_REMOTE = "push_all_overwriting_remote"
OP_TEST_CONNECTION = "test_connection"

# housekeeping requests: no progress indicator, no result dialog
OP_START = "start"
OP_ENABLE = "enable"
OP_DISABLE = "disable"
OP_REFRESH = "refresh_status"

OPERATIONS = (OP_FORCE_PUSH, OP_RESTORE, OP_OVERWRITE_REMOTE, OP_TEST_CONNECTION)
BACKGROUND_OPERATIONS = (OP_START, OP_ENABLE, OP_DISABLE, OP_REFRESH)


class SyncWorker(QObject):
    """Worker living on a dedicated QThread that performs sync requests.

    Signals:
        operation_started: emitted with the operation name before it runs
        operation_finished: emitted with (operation name, SyncResult)
    """

    operation_started = Signal(str)
    operation_finished = Signal(str, object)

    def __init__(self, reconciler: SyncReconciler) -> None:
        super().__init__()
        self._reconciler = reconciler

    @Slot(str)
    def run_operation(self, name: str) -> None:
        """Run one named reconciler operation and report its result."""
        if name not in OPERATIONS and name not in BACKGROUND_OPERATIONS:
            logging.error("SyncWorker received unknown operation %r", name)
            self.operation_finished.emit(name, SyncResult(False, f"Unknown operation {name}"))
            return

        self.operation_started.emit(name)
        try:
            result = getattr(self._reconciler, name)()
        except Exception as exc:  # report instead of killing the worker thread
            logging.exception("SyncWorker operation %s failed", name)
            result = SyncResult(False, f"{name} failed: {exc}")
        if not isinstance(result, SyncResult):
            result = SyncResult(True, name)
        self.operation_finished.emit(name, result)
