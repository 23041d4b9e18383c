"""Conversion between MoodEntry objects, cloud documents and SQLite rows.

Every field crossing a boundary goes through one of the two function pairs in
this module: ``entry_to_document``/``entry_from_document`` for the wire form
and ``entry_to_row``/``entry_from_row`` for the local table. Optional fields
fall back to defined defaults on read; ``lastModified`` is always written.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from moodmapper.errors import CodecError
from moodmapper.models import MoodEntry
from moodmapper.utils import ensure_utc, utc_now

# Wire field names
FIELD_ID = "id"
FIELD_SCORE = "score"
FIELD_NOTE = "note"
FIELD_TIMESTAMP = "timestamp"
FIELD_LATITUDE = "latitude"
FIELD_LONGITUDE = "longitude"
FIELD_PLACE_NAME = "placename"
FIELD_SOFT_DELETED = "isSoftDeleted"
FIELD_LAST_MODIFIED = "lastModified"

ROW_COLUMNS = (
    "id",
    "score",
    "note",
    "timestamp",
    "latitude",
    "longitude",
    "place_name",
    "last_modified",
    "is_soft_deleted",
)


def normalize_entry_id(raw: object) -> str:
    """Validate an entry id and return it as the document key string.

    The text is kept as received (only surrounding whitespace is dropped):
    cloud document keys are case-sensitive, so re-casing an id would make
    the next push land on a second document.

    Raises:
        CodecError: if the value is not a UUID.
    """
    if isinstance(raw, uuid.UUID):
        return str(raw).upper()
    if not isinstance(raw, str) or not raw.strip():
        raise CodecError(f"Missing or non-string entry id: {raw!r}")
    entry_id = raw.strip()
    try:
        uuid.UUID(entry_id)
    except ValueError as exc:
        raise CodecError(f"Invalid entry id: {raw!r}") from exc
    return entry_id


def _parse_datetime(raw: object, field_name: str) -> datetime | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if isinstance(raw, str):
        try:
            return ensure_utc(datetime.fromisoformat(raw))
        except ValueError as exc:
            raise CodecError(f"Invalid {field_name} value: {raw!r}") from exc
    raise CodecError(f"Unsupported {field_name} type: {type(raw).__name__}")


def _parse_score(raw: object) -> int:
    # bool is an int subclass but never a score
    if isinstance(raw, bool) or raw is None:
        raise CodecError(f"Invalid score: {raw!r}")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise CodecError(f"Non-integral score: {raw!r}")
        return int(raw)
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise CodecError(f"Invalid score: {raw!r}") from exc


def _parse_coordinate(raw: object, field_name: str) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise CodecError(f"Invalid {field_name}: {raw!r}") from exc
    if value != value:  # NaN means the device had no fix
        return None
    return value


def _text(raw: object) -> str:
    if raw is None:
        return ""
    return raw if isinstance(raw, str) else str(raw)


def entry_to_document(entry: MoodEntry) -> dict[str, Any]:
    """Serialize an entry into the flat field map stored in the cloud."""
    return {
        FIELD_ID: entry.id,
        FIELD_SCORE: int(entry.score),
        FIELD_NOTE: entry.note or "",
        FIELD_TIMESTAMP: ensure_utc(entry.timestamp),
        FIELD_LATITUDE: entry.latitude,
        FIELD_LONGITUDE: entry.longitude,
        FIELD_PLACE_NAME: entry.place_name or "",
        FIELD_SOFT_DELETED: bool(entry.is_soft_deleted),
        FIELD_LAST_MODIFIED: ensure_utc(entry.last_modified or utc_now()),
    }


def tombstone_document(entry_id: str, last_modified: datetime) -> dict[str, Any]:
    """Fields merged onto a cloud document to mark it soft-deleted."""
    return {
        FIELD_ID: entry_id,
        FIELD_SOFT_DELETED: True,
        FIELD_LAST_MODIFIED: ensure_utc(last_modified),
    }


def document_last_modified(data: Mapping[str, Any]) -> datetime | None:
    return _parse_datetime(data.get(FIELD_LAST_MODIFIED), FIELD_LAST_MODIFIED)


def document_is_tombstone(data: Mapping[str, Any]) -> bool:
    return data.get(FIELD_SOFT_DELETED) is True


def entry_from_document(data: Mapping[str, Any], doc_id: str | None = None) -> MoodEntry:
    """Build an entry from cloud document fields.

    A tombstone only needs ``id`` and ``lastModified``; its score defaults to
    the middle of the scale since it is never shown.

    Raises:
        CodecError: if the id is missing/invalid or a typed field is malformed.
    """
    entry_id = normalize_entry_id(data.get(FIELD_ID, doc_id))
    is_soft_deleted = document_is_tombstone(data)
    if is_soft_deleted and FIELD_SCORE not in data:
        score = 3
    else:
        score = _parse_score(data.get(FIELD_SCORE))
    timestamp = _parse_datetime(data.get(FIELD_TIMESTAMP), FIELD_TIMESTAMP)
    return MoodEntry(
        id=entry_id,
        score=score,
        timestamp=timestamp or utc_now(),
        note=_text(data.get(FIELD_NOTE)),
        latitude=_parse_coordinate(data.get(FIELD_LATITUDE), FIELD_LATITUDE),
        longitude=_parse_coordinate(data.get(FIELD_LONGITUDE), FIELD_LONGITUDE),
        place_name=_text(data.get(FIELD_PLACE_NAME)),
        last_modified=document_last_modified(data),
        is_soft_deleted=is_soft_deleted,
    )


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def entry_to_row(entry: MoodEntry) -> tuple[Any, ...]:
    """Flatten an entry into a tuple ordered like ``ROW_COLUMNS``."""
    return (
        entry.id,
        int(entry.score),
        entry.note or "",
        _format_datetime(entry.timestamp),
        entry.latitude,
        entry.longitude,
        entry.place_name or "",
        _format_datetime(entry.last_modified),
        1 if entry.is_soft_deleted else 0,
    )


def entry_from_row(row: Mapping[str, Any]) -> MoodEntry:
    """Rebuild an entry from a ``sqlite3.Row`` (or any mapping of columns)."""
    timestamp = _parse_datetime(row["timestamp"], "timestamp")
    return MoodEntry(
        id=normalize_entry_id(row["id"]),
        score=_parse_score(row["score"]),
        timestamp=timestamp or utc_now(),
        note=_text(row["note"]),
        latitude=_parse_coordinate(row["latitude"], "latitude"),
        longitude=_parse_coordinate(row["longitude"], "longitude"),
        place_name=_text(row["place_name"]),
        last_modified=_parse_datetime(row["last_modified"], "last_modified"),
        is_soft_deleted=bool(row["is_soft_deleted"]),
    )
