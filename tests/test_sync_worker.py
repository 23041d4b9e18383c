"""Tests for SyncWorker dispatch and for the reconciler running on its thread."""

from __future__ import annotations

import threading
import time

from PySide6.QtCore import QCoreApplication, QObject, QThread, Qt, Signal

from conftest import UID, cloud_fields, make_entry
from moodmapper.reconciler import SyncReconciler
from moodmapper.sync_worker import (
    OP_DISABLE,
    OP_FORCE_PUSH,
    OP_REFRESH,
    OP_START,
    OP_TEST_CONNECTION,
    SyncWorker,
)


class _Requester(QObject):
    operation_request = Signal(str)


def _wait_for(condition, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "timed out waiting for the sync thread"
        QCoreApplication.processEvents()
        time.sleep(0.01)


def _record(worker: SyncWorker) -> tuple[list, list]:
    started, finished = [], []
    worker.operation_started.connect(started.append)
    worker.operation_finished.connect(lambda name, result: finished.append((name, result)))
    return started, finished


def test_runs_named_operation(reconciler, local_store, remote):
    reconciler.disable()
    local_store.create(make_entry(4))
    worker = SyncWorker(reconciler)
    started, finished = _record(worker)

    worker.run_operation(OP_FORCE_PUSH)

    assert started == [OP_FORCE_PUSH]
    name, result = finished[0]
    assert name == OP_FORCE_PUSH
    assert result.ok
    assert remote.count_live(UID) == 1


def test_unknown_operation_is_rejected(reconciler):
    worker = SyncWorker(reconciler)
    started, finished = _record(worker)

    worker.run_operation("drop_everything")

    assert started == []
    assert not finished[0][1].ok


def test_unexpected_exception_becomes_failed_result(reconciler, monkeypatch):
    worker = SyncWorker(reconciler)
    started, finished = _record(worker)

    def explode():
        raise RuntimeError("boom")

    monkeypatch.setattr(reconciler, "test_connection", explode)
    worker.run_operation(OP_TEST_CONNECTION)

    name, result = finished[0]
    assert name == OP_TEST_CONNECTION
    assert not result.ok
    assert "boom" in result.message


def test_background_operations_report_success(reconciler):
    worker = SyncWorker(reconciler)
    started, finished = _record(worker)

    worker.run_operation(OP_DISABLE)
    worker.run_operation(OP_REFRESH)

    assert started == [OP_DISABLE, OP_REFRESH]
    assert [name for name, _result in finished] == [OP_DISABLE, OP_REFRESH]
    assert all(result.ok for _name, result in finished)
    assert not reconciler.is_enabled


def test_cloud_snapshots_are_applied_on_the_sync_thread(
    local_store, remote, identity, cursor, clock
):
    """云端快照在同步线程上落地，而不是在写入云端的线程上。"""
    reconciler = SyncReconciler(local_store, remote, identity, cursor, clock=clock)
    worker = SyncWorker(reconciler)
    requester = _Requester()
    thread = QThread()
    worker.moveToThread(thread)
    reconciler.moveToThread(thread)
    requester.operation_request.connect(worker.run_operation)

    finished: list[str] = []
    worker.operation_finished.connect(
        lambda name, _result: finished.append(name), Qt.ConnectionType.DirectConnection
    )
    delivered_on: list[int] = []
    reconciler.subscriber.batch_received.connect(
        lambda _batch: delivered_on.append(threading.get_ident()),
        Qt.ConnectionType.DirectConnection,
    )

    thread.start()
    try:
        requester.operation_request.emit(OP_START)
        _wait_for(lambda: OP_START in finished)

        clock.advance(10)
        incoming = make_entry(5, "from my phone", last_modified=clock.now)
        remote.set_document(UID, incoming.id, cloud_fields(incoming))
        _wait_for(lambda: local_store.get(incoming.id) is not None)

        assert delivered_on
        assert threading.get_ident() not in delivered_on

        requester.operation_request.emit(OP_DISABLE)
        _wait_for(lambda: OP_DISABLE in finished)
        assert not reconciler.is_enabled
    finally:
        thread.quit()
        thread.wait(2000)
        reconciler.stop()
