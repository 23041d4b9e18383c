"""Last-write-wins conflict resolution between cloud and local versions."""

from __future__ import annotations

from datetime import datetime, timezone

from moodmapper.models import MoodEntry
from moodmapper.utils import ensure_utc

# Missing modification times sort before everything else.
DISTANT_PAST = datetime.min.replace(tzinfo=timezone.utc)


def _modified_at(entry: MoodEntry | None) -> datetime:
    if entry is None or entry.last_modified is None:
        return DISTANT_PAST
    return ensure_utc(entry.last_modified)


def should_apply_remote(remote: MoodEntry, local: MoodEntry | None) -> bool:
    """Return True when ``remote`` wins over ``local``.

    Whole-record last-write-wins on ``last_modified``: ties go to the remote
    version so a round-tripped echo converges. A missing local version always
    loses.
    """
    if local is None:
        return True
    return _modified_at(remote) >= _modified_at(local)


class ConflictResolver:
    """Decides, per entry id, whether a cloud version replaces the local one."""

    def __init__(self) -> None:
        self.discarded = 0

    def resolve(self, remote: MoodEntry, local: MoodEntry | None) -> MoodEntry | None:
        """Return the version to keep locally, or None to leave local state alone."""
        if should_apply_remote(remote, local):
            return remote
        self.discarded += 1
        return None
