"""Tests for score lookups and rendering helpers."""

from __future__ import annotations

from datetime import datetime, timezone

from moodmapper.models import SyncStatus
from moodmapper.utils import (
    clamp_score,
    colour_for,
    emoji_for,
    ensure_utc,
    feeling_for,
    format_timestamp_display,
    render_confirmation_text,
    render_sync_status_html,
)


def test_clamp_score():
    assert clamp_score(0) == 1
    assert clamp_score(6) == 5
    assert clamp_score("4") == 4
    assert clamp_score(None) == 3


def test_lookups_follow_the_scale():
    assert feeling_for(1) == "Sad"
    assert feeling_for(5) == "Euphoric"
    assert feeling_for(99) == "Euphoric"
    assert emoji_for(3) == "😐"
    assert colour_for(4) == "#2ecc71"


def test_ensure_utc():
    naive = datetime(2025, 10, 5, 9, 0)
    assert ensure_utc(naive) == datetime(2025, 10, 5, 9, 0, tzinfo=timezone.utc)
    assert ensure_utc(naive).tzinfo is timezone.utc


def test_never_synced_is_displayed_as_never():
    assert format_timestamp_display(None) == "Never"


def test_status_card_lists_counts_and_state():
    status = SyncStatus(
        is_enabled=True,
        is_synced=False,
        local_count=12,
        remote_count=10,
        last_error="<timeout>",
    )
    html = render_sync_status_html(status, dark_mode=True)
    assert "Sync is Enabled" in html
    assert "Not synced" in html
    assert "Local Entries:" in html and ">12<" in html
    assert "Cloud Entries:" in html and ">10<" in html
    assert "Last Sync: Never" in html
    assert "&lt;timeout&gt;" in html


def test_disabled_and_synced_card():
    html = render_sync_status_html(SyncStatus(False, True, 0, 0))
    assert "Sync is Disabled" in html
    assert "Synced" in html
    assert "Not synced" not in html


def test_confirmation_text_warns_only_for_destructive_operations():
    """破坏性操作才显示不可撤销警告。"""
    safe = render_confirmation_text("Upload everything.", destructive=False)
    risky = render_confirmation_text("Replace everything.", destructive=True)
    assert safe.startswith("Upload everything.")
    assert "cannot be undone" not in safe
    assert "WARNING: This action cannot be undone." in risky
    assert risky.rstrip().endswith("Continue?")
