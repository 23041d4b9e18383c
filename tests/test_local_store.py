"""Tests for the SQLite entry store, its change feed and the sync cursor."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_entry
from moodmapper.errors import LocalStoreError
from moodmapper.models import ChangeSet
from moodmapper.storage import SyncCursor


def _collect(store) -> list[ChangeSet]:
    received: list[ChangeSet] = []
    store.changes_committed.connect(received.append)
    return received


def test_create_stamps_last_modified(local_store, clock):
    """Saving through a user transaction stamps the commit time."""
    stored = local_store.create(make_entry(4, "coffee with Sam"))
    assert stored.last_modified == clock.now
    assert local_store.count() == 1


def test_update_never_moves_last_modified_backwards(local_store, clock):
    """A version pulled from a fast clock keeps its later stamp on local edit."""
    future = clock.now + timedelta(minutes=10)
    entry = make_entry(2, last_modified=future)
    with local_store.transaction(touch=False) as txn:
        txn.save(entry)

    clock.advance(60)
    updated = local_store.update(entry.copy(note="felt better after lunch"))
    assert updated.last_modified == future
    assert updated.note == "felt better after lunch"


def test_user_transaction_rejects_out_of_range_score(local_store):
    entry = make_entry(3).copy(score=6)
    with pytest.raises(ValueError):
        local_store.create(entry)
    assert local_store.count() == 0


def test_remote_transaction_keeps_incoming_values(local_store):
    """Remote application keeps the cloud stamp and does not validate scores."""
    stamp = datetime(2025, 1, 1, tzinfo=timezone.utc)
    entry = make_entry(3, last_modified=stamp).copy(score=9)
    with local_store.transaction(touch=False) as txn:
        txn.save(entry)
    stored = local_store.get(entry.id)
    assert stored is not None
    assert stored.score == 9
    assert stored.last_modified == stamp


def test_fetch_orders_newest_first_and_hides_soft_deleted(local_store):
    base = datetime(2025, 10, 1, 8, 0, tzinfo=timezone.utc)
    older = make_entry(2, timestamp=base)
    newer = make_entry(4, timestamp=base + timedelta(hours=3))
    hidden = make_entry(5, timestamp=base + timedelta(hours=1)).copy(is_soft_deleted=True)
    with local_store.transaction(touch=False) as txn:
        for entry in (older, newer, hidden):
            txn.save(entry)

    assert [entry.id for entry in local_store.fetch()] == [newer.id, older.id]
    assert len(local_store.fetch(include_deleted=True)) == 3
    assert local_store.count() == 2
    assert local_store.count(include_deleted=True) == 3


def test_one_change_set_per_commit(local_store):
    """多个写入在同一事务内只触发一次提交通知。"""
    existing = local_store.create(make_entry(3))
    received = _collect(local_store)

    fresh = make_entry(5, "promotion!")
    with local_store.transaction() as txn:
        txn.save(fresh)
        txn.save(existing.copy(note="edited"))

    assert len(received) == 1
    change_set = received[0]
    assert [entry.id for entry in change_set.inserted] == [fresh.id]
    assert [entry.id for entry in change_set.updated] == [existing.id]
    assert change_set.deleted == []


def test_delete_reports_the_removed_entry(local_store):
    entry = local_store.create(make_entry(1, "rough day"))
    received = _collect(local_store)

    local_store.delete(entry.id)

    assert local_store.get(entry.id) is None
    assert len(received) == 1
    assert received[0].deleted == [entry]


def test_clear_reports_every_entry_as_deleted(local_store):
    first = local_store.create(make_entry(2))
    second = local_store.create(make_entry(4))
    received = _collect(local_store)

    local_store.clear()

    assert local_store.count() == 0
    assert {entry.id for entry in received[0].deleted} == {first.id, second.id}


def test_empty_transaction_emits_nothing(local_store):
    received = _collect(local_store)
    with local_store.transaction():
        pass
    # deleting an id that does not exist changes nothing
    local_store.delete(make_entry(3).id)
    assert received == []


def test_transaction_reads_its_own_writes(local_store):
    entry = make_entry(3)
    with local_store.transaction() as txn:
        txn.save(entry)
        assert txn.get(entry.id) == entry
        txn.delete(entry)
        assert txn.get(entry.id) is None
    assert local_store.get(entry.id) is None


def test_exception_inside_block_discards_staged_writes(local_store):
    received = _collect(local_store)
    with pytest.raises(RuntimeError):
        with local_store.transaction() as txn:
            txn.save(make_entry(3))
            raise RuntimeError("user cancelled")
    assert local_store.count() == 0
    assert received == []


def test_failed_commit_rolls_back_and_emits_nothing(local_store, monkeypatch):
    """SQLite 出错时整笔事务回滚，删除也不会生效。"""
    existing = local_store.create(make_entry(3))
    received = _collect(local_store)
    # wrong number of bindings makes the INSERT fail after the DELETE ran
    monkeypatch.setattr("moodmapper.storage.entry_to_row", lambda entry: (entry.id,))

    with pytest.raises(LocalStoreError):
        with local_store.transaction() as txn:
            txn.delete(existing)
            txn.save(make_entry(4))

    monkeypatch.undo()
    assert local_store.get(existing.id) == existing
    assert local_store.count() == 1
    assert received == []


def test_cursor_is_persisted_per_user(db_path, local_store):
    when = datetime(2025, 10, 5, 9, 30, tzinfo=timezone.utc)
    cursor = SyncCursor(db_path)
    assert cursor.load("alice") is None

    cursor.advance("alice", when)

    reopened = SyncCursor(db_path)
    assert reopened.load("alice") == when
    assert reopened.load("bob") is None

    reopened.reset("alice")
    assert cursor.load("alice") is None
