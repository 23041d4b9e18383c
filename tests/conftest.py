"""Shared fixtures: fake clock, fault-injecting cloud store, wired reconciler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest
from PySide6.QtCore import QCoreApplication

from moodmapper.codec import entry_to_document
from moodmapper.errors import RemoteStoreError
from moodmapper.identity import IdentityProvider
from moodmapper.models import BatchOperation, MoodEntry, RemoteDocument, User
from moodmapper.reconciler import SyncReconciler
from moodmapper.remote import MemoryRemoteStore
from moodmapper.storage import LocalStore, SyncCursor

UID = "user-1"


class FakeClock:
    """Manually advanced clock; every call returns the current instant."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 10, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FlakyRemoteStore(MemoryRemoteStore):
    """In-memory cloud that records writes and fails on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False
        self.fail_reads = False
        # 1-based index of the batch_write call that should fail
        self.fail_on_batch_call: int | None = None
        self.batch_calls = 0
        self.writes: list[BatchOperation] = []
        # runs once, at the start of the next batch_write call
        self.before_write: Callable[[], None] | None = None

    def batch_write(self, uid: str, operations: list[BatchOperation]) -> None:
        hook, self.before_write = self.before_write, None
        if hook is not None:
            hook()
        self.batch_calls += 1
        if self.fail_writes or self.batch_calls == self.fail_on_batch_call:
            raise RemoteStoreError("simulated network outage")
        self.writes.extend(operations)
        super().batch_write(uid, operations)

    def get_all(self, uid: str) -> list[RemoteDocument]:
        if self.fail_reads:
            raise RemoteStoreError("simulated network outage")
        return super().get_all(uid)

    def count_live(self, uid: str) -> int:
        if self.fail_reads:
            raise RemoteStoreError("simulated network outage")
        return super().count_live(uid)


def make_entry(
    score: int = 3,
    note: str = "",
    last_modified: datetime | None = None,
    **fields: object,
) -> MoodEntry:
    entry = MoodEntry.create(score=score, note=note, **fields)  # type: ignore[arg-type]
    entry.last_modified = last_modified
    return entry


def cloud_fields(entry: MoodEntry, **overrides: object) -> dict[str, object]:
    fields = entry_to_document(entry)
    fields.update(overrides)
    return fields


@pytest.fixture(scope="session", autouse=True)
def qt_app():
    """One Qt application object for the whole run."""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "moods.sqlite3"


@pytest.fixture
def local_store(db_path: Path, clock: FakeClock) -> LocalStore:
    store = LocalStore(db_path, clock=clock)
    store.initialize()
    return store


@pytest.fixture
def cursor(local_store: LocalStore) -> SyncCursor:
    return SyncCursor(local_store.db_path)


@pytest.fixture
def remote() -> FlakyRemoteStore:
    return FlakyRemoteStore()


@pytest.fixture
def identity() -> IdentityProvider:
    return IdentityProvider(User(UID, email="someone@example.com"))


@pytest.fixture
def reconciler(local_store, remote, identity, cursor, clock):
    sync = SyncReconciler(
        local_store, remote, identity, cursor, clock=clock, debounce_seconds=3.0
    )
    sync.start()
    yield sync
    sync.stop()
