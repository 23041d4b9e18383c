"""Utility functions for time handling, score lookups and rendering."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from moodmapper.constants import (
    CONFIRM_OPERATION_TEMPLATE,
    MOOD_COLOURS,
    MOOD_EMOJIS,
    MOOD_FEELINGS,
    SYNC_STATUS_TEMPLATE,
)

if TYPE_CHECKING:
    from moodmapper.models import SyncStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def clamp_score(raw: object, default: int = 3) -> int:
    """Convert raw mood scores to the canonical 1-5 scale."""
    try:
        value = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        value = default
    return max(1, min(5, value))


def emoji_for(score: object) -> str:
    return MOOD_EMOJIS[clamp_score(score) - 1]


def feeling_for(score: object) -> str:
    return MOOD_FEELINGS[clamp_score(score) - 1]


def colour_for(score: object) -> str:
    return MOOD_COLOURS[clamp_score(score) - 1]


def format_timestamp_display(value: datetime | None) -> str:
    """Render timestamps into a compact, reader-friendly local time string."""
    if value is None:
        return "Never"
    return ensure_utc(value).astimezone().strftime("%Y-%m-%d %H:%M")


def status_theme_colors(dark_mode: bool) -> dict[str, str]:
    """Choose status card colors based on the current palette."""
    if dark_mode:
        return {
            "text": "#dfe6e9",
            "secondary": "#a4b0be",
            "divider": "#3a3f44",
        }
    return {
        "text": "#2d3436",
        "secondary": "#636e72",
        "divider": "#dfe6e9",
    }


def render_sync_status_html(status: SyncStatus, dark_mode: bool = False) -> str:
    """Render the sync indicator card via the Jinja2 template."""
    return SYNC_STATUS_TEMPLATE.render(
        status=status,
        colors=status_theme_colors(dark_mode),
        gate_colour="#27ae60" if status.is_enabled else "#c0392b",
        sync_colour="#27ae60" if status.is_synced else "#e67e22",
        last_sync_display=format_timestamp_display(status.last_sync_time),
    )


def render_confirmation_text(description: str, destructive: bool) -> str:
    """Render the confirmation prompt shown before a bulk operation."""
    return CONFIRM_OPERATION_TEMPLATE.render(
        description=description, destructive=destructive
    )
