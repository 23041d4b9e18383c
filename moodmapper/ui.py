"""Sync settings panel and its event handling."""

from __future__ import annotations

import logging

from PySide6.QtCore import QThread, Signal, Slot
from PySide6.QtGui import QCloseEvent, QPalette, QShowEvent
from PySide6.QtWidgets import (
    QApplication,
    QLabel,
    QMessageBox,
    QProgressBar,
    QPushButton,
    QTextBrowser,
    QVBoxLayout,
    QWidget,
)

from moodmapper.models import SyncResult, SyncStatus
from moodmapper.reconciler import SyncReconciler
from moodmapper.sync_worker import (
    BACKGROUND_OPERATIONS,
    OP_DISABLE,
    OP_ENABLE,
    OP_FORCE_PUSH,
    OP_OVERWRITE_REMOTE,
    OP_REFRESH,
    OP_RESTORE,
    OP_START,
    OP_TEST_CONNECTION,
    SyncWorker,
)
from moodmapper.utils import render_confirmation_text, render_sync_status_html

# operation → (title, description, destructive)
BULK_OPERATIONS = {
    OP_FORCE_PUSH: (
        "Force Sync to Cloud",
        "This will upload all your local mood entries to the cloud.",
        False,
    ),
    OP_RESTORE: (
        "Overwrite Local with Cloud",
        "This will replace ALL your local mood entries with cloud data.",
        True,
    ),
    OP_OVERWRITE_REMOTE: (
        "Overwrite Cloud with Local",
        "This will replace ALL cloud data with your local mood entries.",
        True,
    ),
}


class SyncSettingsWindow(QWidget):
    """Sync status indicator plus the gate toggle and bulk operations."""

    # Request signal (emitted from UI thread, handled by SyncWorker in worker thread)
    operation_request = Signal(str)

    def __init__(self, reconciler: SyncReconciler) -> None:
        super().__init__()
        self.setWindowTitle("MoodMapper Sync")
        self._reconciler = reconciler

        layout = QVBoxLayout()
        layout.setContentsMargins(28, 28, 28, 24)
        layout.setSpacing(14)

        layout.addWidget(QLabel("Sync Status"))
        self.status_view = QTextBrowser()
        self.status_view.setReadOnly(True)
        self.status_view.setMinimumHeight(150)
        layout.addWidget(self.status_view)

        self.gate_button = QPushButton()
        self.gate_button.clicked.connect(self.toggle_gate)
        layout.addWidget(self.gate_button)

        layout.addWidget(QLabel("Data Management"))
        self._bulk_buttons: dict[str, QPushButton] = {}
        for operation, (title, _description, _destructive) in BULK_OPERATIONS.items():
            button = QPushButton(title)
            button.clicked.connect(
                lambda _checked=False, op=operation: self.confirm_and_run(op)
            )
            layout.addWidget(button)
            self._bulk_buttons[operation] = button

        self.test_button = QPushButton("Test Cloud Connection")
        self.test_button.clicked.connect(
            lambda _checked=False: self.operation_request.emit(OP_TEST_CONNECTION)
        )
        layout.addWidget(self.test_button)

        self.progress = QProgressBar()
        self.progress.setRange(0, 0)  # busy indicator
        self.progress.setVisible(False)
        layout.addWidget(self.progress)

        self.setLayout(layout)

        # Start sync worker thread and wire signals; the reconciler (with its
        # observer and subscriber children) lives on the same thread
        self._sync_thread = QThread(self)
        self._sync_worker = SyncWorker(reconciler)
        self._sync_worker.moveToThread(self._sync_thread)
        reconciler.moveToThread(self._sync_thread)
        self.operation_request.connect(self._sync_worker.run_operation)
        self._sync_worker.operation_started.connect(self._on_operation_started)
        self._sync_worker.operation_finished.connect(self._on_operation_finished)
        reconciler.status_changed.connect(self._on_status_changed)
        self._sync_thread.start()
        self._on_status_changed(reconciler.status())
        self.operation_request.emit(OP_START)

    def is_dark_theme(self) -> bool:
        palette = self.status_view.palette()
        return palette.color(QPalette.ColorRole.Base).lightnessF() < 0.5

    def toggle_gate(self) -> None:
        self.operation_request.emit(OP_DISABLE if self._reconciler.is_enabled else OP_ENABLE)

    def confirm_and_run(self, operation: str) -> None:
        """Ask before any bulk operation; destructive ones carry a warning."""
        title, description, destructive = BULK_OPERATIONS[operation]
        answer = QMessageBox.question(
            self,
            title,
            render_confirmation_text(description, destructive),
            QMessageBox.StandardButton.Cancel | QMessageBox.StandardButton.Yes,
            QMessageBox.StandardButton.Cancel,
        )
        if answer != QMessageBox.StandardButton.Yes:
            return
        self.operation_request.emit(operation)

    def _set_busy(self, busy: bool) -> None:
        self.progress.setVisible(busy)
        for button in self._bulk_buttons.values():
            button.setEnabled(not busy)
        self.test_button.setEnabled(not busy)
        self.gate_button.setEnabled(not busy)

    # ---- background worker callbacks ----
    @Slot(object)
    def _on_status_changed(self, status: SyncStatus) -> None:
        self.status_view.setHtml(render_sync_status_html(status, self.is_dark_theme()))
        self.gate_button.setText("Disable Sync" if status.is_enabled else "Enable Sync")

    @Slot(str)
    def _on_operation_started(self, operation: str) -> None:
        if operation in BACKGROUND_OPERATIONS:
            return
        self._set_busy(True)

    @Slot(str, object)
    def _on_operation_finished(self, operation: str, result: SyncResult) -> None:
        if operation in BACKGROUND_OPERATIONS:
            if not result.ok:
                logging.error("%s failed: %s", operation, result.message)
            return
        self._set_busy(False)
        title = (
            "Cloud Connection Test"
            if operation == OP_TEST_CONNECTION
            else BULK_OPERATIONS.get(operation, (operation,))[0]
        )
        if result.ok:
            QMessageBox.information(self, title, result.message)
        else:
            logging.error("%s failed: %s", operation, result.message)
            QMessageBox.critical(self, title, result.message)

    def shutdown(self) -> None:
        """Stop the worker thread cleanly."""
        try:
            if self._sync_thread.isRunning():
                self._sync_thread.quit()
                self._sync_thread.wait(2000)
        except RuntimeError:
            logging.exception("Failed to stop sync worker thread cleanly")

    def showEvent(self, event: QShowEvent) -> None:
        super().showEvent(event)
        # recount on the sync thread whenever the panel comes back into view
        self.operation_request.emit(OP_REFRESH)

    def closeEvent(self, event: QCloseEvent) -> None:
        self.shutdown()
        super().closeEvent(event)
        app = QApplication.instance()
        if app is not None:
            app.quit()
