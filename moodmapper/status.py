"""Heuristic "are we in sync" signal derived from counts and pull recency."""

from __future__ import annotations

from datetime import datetime, timedelta

from moodmapper.constants import SYNC_RECENCY_WINDOW_SECONDS
from moodmapper.utils import ensure_utc


class SyncStatusEstimator:
    """Approximates sync state without diffing content.

    Matching counts can hide differing content; that false positive is
    accepted in exchange for never downloading the whole collection twice.
    """

    def __init__(self, recency_window_seconds: float = SYNC_RECENCY_WINDOW_SECONDS) -> None:
        self.recency_window = timedelta(seconds=recency_window_seconds)

    def estimate(
        self,
        local_count: int,
        remote_count: int | None,
        last_pull_time: datetime | None,
        now: datetime,
    ) -> bool:
        if remote_count is not None:
            if local_count == remote_count:
                return True
        if last_pull_time is not None:
            if ensure_utc(now) - ensure_utc(last_pull_time) <= self.recency_window:
                return True
        return False
