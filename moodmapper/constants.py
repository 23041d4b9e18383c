"""Configuration constants and templates for the sync service."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from textwrap import dedent

from jinja2 import DictLoader, Environment, select_autoescape

# Local persistence
DATABASE_PATH = Path(os.environ.get("MOODMAPPER_DB", "moodmapper.sqlite3"))

# Remote collection layout: users/{uid}/moodEntries
USERS_COLLECTION = "users"
ENTRIES_COLLECTION = "moodEntries"
FIRESTORE_BATCH_LIMIT = 500

# "memory" keeps the cloud copy in-process, "firestore" talks to Cloud Firestore
REMOTE_BACKEND = os.environ.get("MOODMAPPER_REMOTE", "memory")
SYNC_USER_ID = os.environ.get("MOODMAPPER_UID", "")
SYNC_USER_IS_ANONYMOUS = os.environ.get("MOODMAPPER_ANONYMOUS", "0") == "1"

# Sync timing
PULL_DEBOUNCE_SECONDS = 3.0
SYNC_RECENCY_WINDOW_SECONDS = 5 * 60

# Mood scale, index 0 is score 1
MOOD_EMOJIS = ["😞", "😕", "😐", "🙂", "😄"]
MOOD_FEELINGS = ["Sad", "Unhappy", "Neutral", "Happy", "Euphoric"]
MOOD_COLOURS = ["#e74c3c", "#f1c40f", "#e67e22", "#2ecc71", "#3498db"]

# Basic logging setup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)

# Jinja2 template environment for HTML rendering
TEMPLATE_ENV = Environment(
    loader=DictLoader(
        {
            "sync_status.html": dedent(
                """\
                <div style='font-family:"Segoe UI",sans-serif; line-height:1.6; color:{{ colors.text }};'>
                    <div style='font-size:16px; font-weight:bold; color:{{ gate_colour }};'>
                        {{ "Sync is Enabled" if status.is_enabled else "Sync is Disabled" }}
                    </div>
                    <div style='color:{{ sync_colour }};'>
                        {{ "Synced" if status.is_synced else "Not synced" }}
                    </div>
                    <hr style='border:0; height:1px; background:{{ colors.divider }}; margin:12px 0;'>
                    <div style='color:{{ colors.secondary }};'>Local Entries: <strong style='color:{{ colors.text }};'>{{ status.local_count }}</strong></div>
                    <div style='color:{{ colors.secondary }};'>Cloud Entries: <strong style='color:{{ colors.text }};'>{{ status.remote_count }}</strong></div>
                    <div style='color:{{ colors.secondary }};'>Last Sync: {{ last_sync_display }}</div>
                    {% if status.last_error %}
                    <div style='color:#c0392b; margin-top:8px;'>{{ status.last_error | e }}</div>
                    {% endif %}
                </div>
                """
            ),
            "confirm_operation.txt": dedent(
                """\
                {{ description }}
                {% if destructive %}

                WARNING: This action cannot be undone.
                {% endif %}

                Continue?"""
            ),
        }
    ),
    autoescape=select_autoescape(["html", "xml"]),
    trim_blocks=True,
    lstrip_blocks=True,
)

SYNC_STATUS_TEMPLATE = TEMPLATE_ENV.get_template("sync_status.html")
CONFIRM_OPERATION_TEMPLATE = TEMPLATE_ENV.get_template("confirm_operation.txt")
