"""Data models for mood entries and the sync session."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from moodmapper.utils import utc_now


@dataclass
class MoodEntry:
    """Represents a single mood journal record plus its sync metadata."""

    id: str
    score: int
    timestamp: datetime
    note: str = ""
    latitude: float | None = None
    longitude: float | None = None
    place_name: str = ""
    last_modified: datetime | None = None
    # mirrors the wire flag; stored rows are always live because local deletes
    # remove the row and cloud tombstones are never saved locally
    is_soft_deleted: bool = False

    @classmethod
    def create(
        cls,
        score: int,
        note: str = "",
        timestamp: datetime | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        place_name: str = "",
    ) -> MoodEntry:
        """Build a brand-new entry with a fresh id.

        Raises:
            ValueError: if ``score`` is outside the 1-5 scale.
        """
        if not 1 <= int(score) <= 5:
            raise ValueError(f"Mood score must be between 1 and 5, got {score}")
        return cls(
            # uppercase, matching the ids the mobile app writes
            id=str(uuid.uuid4()).upper(),
            score=int(score),
            timestamp=timestamp or utc_now(),
            note=note or "",
            latitude=latitude,
            longitude=longitude,
            place_name=place_name or "",
        )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def copy(self, **changes: object) -> MoodEntry:
        return replace(self, **changes)  # type: ignore[arg-type]


@dataclass
class ChangeSet:
    """One committed local transaction as seen by the change feed.

    The three lists are disjoint. Items are usually ``MoodEntry`` objects but
    the feed does not promise that; the observer filters by type.
    """

    inserted: list[object] = field(default_factory=list)
    updated: list[object] = field(default_factory=list)
    deleted: list[object] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.inserted or self.updated or self.deleted)


@dataclass
class EntryChanges:
    """Entry-only view of a ``ChangeSet`` handed to the push pipeline."""

    inserted: list[MoodEntry] = field(default_factory=list)
    updated: list[MoodEntry] = field(default_factory=list)
    deleted: list[MoodEntry] = field(default_factory=list)

    @property
    def upserts(self) -> list[MoodEntry]:
        return self.inserted + self.updated

    def is_empty(self) -> bool:
        return not (self.inserted or self.updated or self.deleted)


class ChangeKind(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class RemoteDocument:
    """A document in the user's cloud collection, in wire form."""

    doc_id: str
    data: dict[str, object]


@dataclass
class RemoteChange:
    kind: ChangeKind
    document: RemoteDocument


@dataclass
class RemoteChangeBatch:
    """Changes delivered by one live-query snapshot."""

    changes: list[RemoteChange] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.changes

    def __len__(self) -> int:
        return len(self.changes)


class BatchOpKind(Enum):
    SET = "set"
    DELETE = "delete"


@dataclass
class BatchOperation:
    """A single write inside an atomic remote batch."""

    kind: BatchOpKind
    doc_id: str
    fields: dict[str, object] | None = None
    merge: bool = True

    @classmethod
    def set(cls, doc_id: str, fields: dict[str, object], merge: bool = True) -> BatchOperation:
        return cls(BatchOpKind.SET, doc_id, fields, merge)

    @classmethod
    def delete(cls, doc_id: str) -> BatchOperation:
        return cls(BatchOpKind.DELETE, doc_id)


@dataclass(frozen=True)
class User:
    """Authenticated identity as reported by the sign-in flow."""

    uid: str
    is_anonymous: bool = False
    email: str = ""


class SyncPhase(Enum):
    IDLE = "idle"
    PULLING = "pulling"
    PUSHING = "pushing"


@dataclass
class SyncResult:
    """Outcome reported to callers of bulk operations and connection tests."""

    ok: bool
    message: str
    count: int = 0


@dataclass
class SyncStatus:
    """Snapshot of the observable reconciler fields."""

    is_enabled: bool
    is_synced: bool
    local_count: int
    remote_count: int
    last_sync_time: datetime | None = None
    last_error: str = ""
