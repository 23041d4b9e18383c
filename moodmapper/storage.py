"""Local SQLite persistence: mood entries, transactional change feed, sync cursor."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from PySide6.QtCore import QObject, Signal

from moodmapper.codec import (
    ROW_COLUMNS,
    entry_from_row,
    entry_to_row,
    normalize_entry_id,
)
from moodmapper.errors import CodecError, LocalStoreError
from moodmapper.models import ChangeSet, MoodEntry
from moodmapper.utils import ensure_utc, utc_now

_COLUMN_LIST = ", ".join(ROW_COLUMNS)
_PLACEHOLDERS = ", ".join("?" for _ in ROW_COLUMNS)
_LIVE_FILTER = "is_soft_deleted = 0"


def apply_sqlite_pragmas(conn: sqlite3.Connection) -> None:
    """Apply recommended PRAGMA tunings to an open SQLite connection.

    This centralizes the WAL and sync/temp_store settings so all code paths
    opening the DB get consistent behavior.
    """
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.DatabaseError:
        logging.exception("Failed to apply SQLite PRAGMA settings.")


def initialize_storage(db_path: Path) -> None:
    """Ensure the SQLite schema for entries and sync state exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with sqlite3.connect(db_path) as conn:
            apply_sqlite_pragmas(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS mood_entries (
                    id TEXT PRIMARY KEY,
                    score INTEGER NOT NULL,
                    note TEXT NOT NULL DEFAULT '',
                    timestamp TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    place_name TEXT NOT NULL DEFAULT '',
                    last_modified TEXT,
                    is_soft_deleted INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_mood_entries_last_modified "
                "ON mood_entries(last_modified)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
    except sqlite3.DatabaseError:
        logging.exception("Failed to initialize mood database at %s", db_path)
        raise
    logging.info("Mood database ready at %s", db_path)


@contextmanager
def _connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a tuned connection that commits on success and always closes."""
    conn = sqlite3.connect(db_path)
    try:
        apply_sqlite_pragmas(conn)
        conn.row_factory = sqlite3.Row
        with conn:
            yield conn
    finally:
        conn.close()


class LocalTransaction:
    """Stages entry writes that are committed together by ``LocalStore``.

    ``get`` sees the staged state first, so code applying a batch can read its
    own writes before the commit.
    """

    def __init__(self, store: LocalStore, touch: bool) -> None:
        self._store = store
        self.touch = touch
        # id → staged entry, or None when staged for deletion
        self._staged: dict[str, MoodEntry | None] = {}
        self._cleared = False

    @property
    def staged(self) -> dict[str, MoodEntry | None]:
        return self._staged

    @property
    def cleared(self) -> bool:
        return self._cleared

    def get(self, entry_id: str) -> MoodEntry | None:
        entry_id = normalize_entry_id(entry_id)
        if entry_id in self._staged:
            return self._staged[entry_id]
        if self._cleared:
            return None
        return self._store.get(entry_id)

    def save(self, entry: MoodEntry) -> None:
        """Stage a create-or-replace of ``entry`` keyed by its id."""
        if self.touch and not 1 <= int(entry.score) <= 5:
            raise ValueError(f"Mood score must be between 1 and 5, got {entry.score}")
        self._staged[normalize_entry_id(entry.id)] = entry.copy()

    def delete(self, entry: MoodEntry | str) -> None:
        entry_id = entry if isinstance(entry, str) else entry.id
        self._staged[normalize_entry_id(entry_id)] = None

    def clear(self) -> None:
        """Stage removal of every entry, including ones staged earlier."""
        self._staged.clear()
        self._cleared = True

    def is_empty(self) -> bool:
        return not self._staged and not self._cleared


class LocalStore(QObject):
    """SQLite-backed entry store that announces every successful commit.

    Signals:
        changes_committed: emitted once per commit with a ``ChangeSet``
    """

    changes_committed = Signal(object)

    def __init__(
        self,
        db_path: Path,
        clock: Callable[[], datetime] = utc_now,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._db_path = db_path
        self._clock = clock

    @property
    def db_path(self) -> Path:
        return self._db_path

    def initialize(self) -> None:
        initialize_storage(self._db_path)

    # ---- reads ----

    def get(self, entry_id: str) -> MoodEntry | None:
        entry_id = normalize_entry_id(entry_id)
        try:
            with _connect(self._db_path) as conn:
                row = conn.execute(
                    f"SELECT {_COLUMN_LIST} FROM mood_entries WHERE id = ?",
                    (entry_id,),
                ).fetchone()
        except sqlite3.DatabaseError as exc:
            logging.exception("Failed to read mood entry %s", entry_id)
            raise LocalStoreError(f"Could not read entry {entry_id}") from exc
        return entry_from_row(row) if row is not None else None

    def fetch(self, include_deleted: bool = False) -> list[MoodEntry]:
        """Return entries ordered by mood timestamp, newest first.

        Sync never writes ``is_soft_deleted = 1``: deletions remove the row.
        The filter only hides rows written that way through
        ``transaction(touch=False)`` by other callers.
        """
        where = "" if include_deleted else f"WHERE {_LIVE_FILTER}"
        try:
            with _connect(self._db_path) as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_COLUMN_LIST}
                    FROM mood_entries
                    {where}
                    ORDER BY timestamp DESC, id DESC
                    """
                ).fetchall()
        except sqlite3.DatabaseError as exc:
            logging.exception("Failed to load mood entries from SQLite.")
            raise LocalStoreError("Could not load entries") from exc

        entries: list[MoodEntry] = []
        for row in rows:
            try:
                entries.append(entry_from_row(row))
            except CodecError:
                logging.exception("Skipping malformed database row: %s", dict(row))
        return entries

    def count(self, include_deleted: bool = False) -> int:
        where = "" if include_deleted else f"WHERE {_LIVE_FILTER}"
        try:
            with _connect(self._db_path) as conn:
                return int(
                    conn.execute(f"SELECT COUNT(*) FROM mood_entries {where}").fetchone()[0]
                )
        except sqlite3.DatabaseError as exc:
            logging.exception("Failed to count mood entries.")
            raise LocalStoreError("Could not count entries") from exc

    # ---- writes ----

    @contextmanager
    def transaction(self, touch: bool = True) -> Iterator[LocalTransaction]:
        """Stage writes and commit them atomically when the block exits.

        With ``touch`` set (user edits) every saved entry gets a fresh
        ``last_modified``; without it (remote application) incoming values are
        kept. An exception inside the block discards the staged writes.

        Raises:
            LocalStoreError: if SQLite fails; nothing is written or emitted.
        """
        txn = LocalTransaction(self, touch)
        yield txn
        if txn.is_empty():
            return
        changes = self._commit(txn)
        if not changes.is_empty():
            self.changes_committed.emit(changes)

    def create(self, entry: MoodEntry) -> MoodEntry:
        with self.transaction() as txn:
            txn.save(entry)
        return self.get(entry.id) or entry

    def update(self, entry: MoodEntry) -> MoodEntry:
        return self.create(entry)

    def delete(self, entry: MoodEntry | str) -> None:
        with self.transaction() as txn:
            txn.delete(entry)

    def clear(self) -> None:
        with self.transaction() as txn:
            txn.clear()

    def _commit(self, txn: LocalTransaction) -> ChangeSet:
        now = ensure_utc(self._clock())
        try:
            with _connect(self._db_path) as conn:
                if txn.cleared:
                    rows = conn.execute(
                        f"SELECT {_COLUMN_LIST} FROM mood_entries"
                    ).fetchall()
                else:
                    ids = list(txn.staged)
                    rows = conn.execute(
                        f"SELECT {_COLUMN_LIST} FROM mood_entries "
                        f"WHERE id IN ({', '.join('?' for _ in ids)})",
                        ids,
                    ).fetchall()
                before = {row["id"]: entry_from_row(row) for row in rows}

                changes = ChangeSet()
                to_write: list[MoodEntry] = []
                for entry_id, staged in txn.staged.items():
                    previous = before.get(entry_id)
                    if staged is None:
                        if previous is not None:
                            changes.deleted.append(previous)
                        continue
                    if txn.touch:
                        stamp = now
                        if previous is not None and previous.last_modified is not None:
                            stamp = max(now, previous.last_modified)
                        staged = staged.copy(last_modified=stamp)
                    to_write.append(staged)
                    if previous is None:
                        changes.inserted.append(staged)
                    else:
                        changes.updated.append(staged)
                if txn.cleared:
                    changes.deleted.extend(
                        entry
                        for entry_id, entry in before.items()
                        if entry_id not in txn.staged
                    )

                if txn.cleared:
                    conn.execute("DELETE FROM mood_entries")
                else:
                    conn.executemany(
                        "DELETE FROM mood_entries WHERE id = ?",
                        [(entry.id,) for entry in changes.deleted],
                    )
                conn.executemany(
                    f"INSERT OR REPLACE INTO mood_entries ({_COLUMN_LIST}) "
                    f"VALUES ({_PLACEHOLDERS})",
                    [entry_to_row(entry) for entry in to_write],
                )
        except sqlite3.DatabaseError as exc:
            logging.exception("Local transaction failed and was rolled back.")
            raise LocalStoreError("Could not commit local changes") from exc

        logging.debug(
            "Committed local transaction: %d inserted, %d updated, %d deleted",
            len(changes.inserted),
            len(changes.updated),
            len(changes.deleted),
        )
        return changes


class SyncCursor:
    """Persisted last-pull watermark, one per signed-in user."""

    KEY_PREFIX = "sync.lastPull"

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    def _key(self, uid: str) -> str:
        return f"{self.KEY_PREFIX}.{uid}"

    def load(self, uid: str) -> datetime | None:
        try:
            with _connect(self._db_path) as conn:
                row = conn.execute(
                    "SELECT value FROM sync_state WHERE key = ?", (self._key(uid),)
                ).fetchone()
        except sqlite3.DatabaseError:
            logging.exception("Failed to read sync cursor; pulling everything.")
            return None
        if row is None:
            return None
        try:
            return ensure_utc(datetime.fromisoformat(row["value"]))
        except ValueError:
            logging.warning("Ignoring malformed sync cursor value %r", row["value"])
            return None

    def advance(self, uid: str, when: datetime) -> None:
        value = ensure_utc(when).isoformat()
        try:
            with _connect(self._db_path) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                    (self._key(uid), value),
                )
        except sqlite3.DatabaseError as exc:
            logging.exception("Failed to persist sync cursor.")
            raise LocalStoreError("Could not persist sync cursor") from exc
        logging.info("Advanced sync cursor for %s to %s", uid, value)

    def reset(self, uid: str) -> None:
        try:
            with _connect(self._db_path) as conn:
                conn.execute("DELETE FROM sync_state WHERE key = ?", (self._key(uid),))
        except sqlite3.DatabaseError as exc:
            logging.exception("Failed to reset sync cursor.")
            raise LocalStoreError("Could not reset sync cursor") from exc
