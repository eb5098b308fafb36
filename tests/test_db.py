"""Tests for screentimed database functionality."""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from screentimed.db import ActivityDB, get_connection
from screentimed.models import AppDuration, EventKind, FocusEvent, UsageSummary


@pytest.fixture
def db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    try:
        db = ActivityDB(db_path)
        yield db
    finally:
        os.unlink(db_path)


class TestFocusEvents:
    """Tests for the focus event log."""

    def test_record_and_query(self, db):
        """Test events come back oldest first within the bounds."""
        db.record_focus_event(FocusEvent(300, "code", EventKind.FOREGROUND))
        db.record_focus_event(FocusEvent(100, "firefox", EventKind.FOREGROUND))
        db.record_focus_event(FocusEvent(200, "firefox", EventKind.BACKGROUND))
        db.record_focus_event(FocusEvent(900, "code", EventKind.BACKGROUND))

        events = db.get_focus_events(100, 300)
        assert [e.timestamp_ms for e in events] == [100, 200, 300]
        assert events[1].kind == EventKind.BACKGROUND

    def test_same_timestamp_keeps_insert_order(self, db):
        """Test a BACKGROUND/FOREGROUND pair at one instant stays ordered."""
        db.record_focus_event(FocusEvent(500, "a", EventKind.BACKGROUND))
        db.record_focus_event(FocusEvent(500, "b", EventKind.FOREGROUND))

        events = db.get_focus_events(0, 1000)
        assert [(e.app_id, e.kind) for e in events] == [
            ("a", EventKind.BACKGROUND), ("b", EventKind.FOREGROUND)]

    def test_last_event(self, db):
        assert db.get_last_focus_event() is None

        db.record_focus_event(FocusEvent(100, "a", EventKind.FOREGROUND))
        db.record_focus_event(FocusEvent(200, "a", EventKind.BACKGROUND))
        assert db.get_last_focus_event() == FocusEvent(200, "a", EventKind.BACKGROUND)

    def test_recent_events_newest_first(self, db):
        for ts in range(5):
            db.record_focus_event(FocusEvent(ts, "a", EventKind.FOREGROUND))

        recent = db.get_recent_focus_events(limit=3)
        assert [e.timestamp_ms for e in recent] == [4, 3, 2]


class TestSettingsCache:
    """Tests for the settings cache table."""

    def test_empty_cache(self, db):
        assert db.get_cached_settings() == {}

    def test_set_and_overwrite(self, db):
        """Test values are stored as strings and upserted."""
        db.set_cached_settings({"screenTimeLimit": 120, "chainId": "C1"})
        db.set_cached_settings({"screenTimeLimit": 90})

        assert db.get_cached_settings() == {"screenTimeLimit": "90", "chainId": "C1"}


class TestUsageSnapshot:
    """Tests for the published summary snapshot."""

    def test_save_and_get(self, db):
        summary = UsageSummary(
            total_ms=180000,
            per_app=[AppDuration("zoom", 120000), AppDuration("anki", 60000)],
            window_end=999,
        )
        db.save_usage_snapshot(summary, day="2026-03-10")

        snapshot = db.get_usage_snapshot("2026-03-10")
        assert snapshot['total_ms'] == 180000
        assert snapshot['window_end_ms'] == 999
        assert [a['app_id'] for a in snapshot['apps']] == ["zoom", "anki"]

    def test_save_replaces_apps(self, db):
        """Test a newer summary fully replaces the day's app list."""
        db.save_usage_snapshot(UsageSummary(60000, [AppDuration("a", 60000)], 1), day="2026-03-10")
        db.save_usage_snapshot(UsageSummary(30000, [AppDuration("b", 30000)], 2), day="2026-03-10")

        snapshot = db.get_usage_snapshot("2026-03-10")
        assert snapshot['total_ms'] == 30000
        assert snapshot['apps'] == [{'app_id': 'b', 'duration_ms': 30000}]

    def test_missing_day(self, db):
        assert db.get_usage_snapshot("1999-01-01") is None


class TestMessageLog:
    """Tests for message logging."""

    def test_log_message(self, db):
        """Test logging a delivered notification."""
        db.log_message(
            user="anders",
            intention="limit_reached",
            rendered_title="Screen Time Limit Reached",
            rendered_body="You've used 61 minutes today.",
            notification_id=12345,
            backend="freedesktop",
        )

        messages = db.get_recent_messages(user="anders")
        assert len(messages) == 1
        assert messages[0]['intention'] == "limit_reached"
        assert messages[0]['notification_id'] == 12345

    def test_get_recent_messages(self, db):
        """Test user filter and limit."""
        for i in range(5):
            db.log_message("anders", "approaching_limit", f"Title {i}", "", i, "log")
        db.log_message("other", "limit_reached", "x", "", 99, "log")

        assert len(db.get_recent_messages(user="anders", limit=3)) == 3
        assert len(db.get_recent_messages()) == 6


class TestMaintenance:
    """Tests for cleanup and stats."""

    def test_cleanup_old_data(self, db):
        """Test old events, messages and snapshots are deleted."""
        old_ms = int((datetime.now() - timedelta(days=40)).timestamp() * 1000)
        new_ms = int(datetime.now().timestamp() * 1000)
        db.record_focus_event(FocusEvent(old_ms, "a", EventKind.FOREGROUND))
        db.record_focus_event(FocusEvent(new_ms, "a", EventKind.FOREGROUND))

        with get_connection(db.db_path) as conn:
            conn.execute("""
                INSERT INTO message_log (timestamp, user, intention)
                VALUES (?, 'anders', 'limit_reached')
            """, ((datetime.now() - timedelta(days=10)).isoformat(),))

        old_day = (datetime.now() - timedelta(days=40)).date().isoformat()
        db.save_usage_snapshot(UsageSummary(1, [AppDuration("a", 1)], 0), day=old_day)
        db.save_usage_snapshot(UsageSummary(1, [AppDuration("a", 1)], 0))

        deleted = db.cleanup_old_data(events_days=30, messages_days=7)
        assert deleted == {'focus_events': 1, 'message_log': 1, 'usage_snapshot': 1}
        assert db.get_usage_snapshot(old_day) is None
        assert db.get_usage_snapshot() is not None

    def test_maintenance_reports_stats(self, db):
        db.record_focus_event(FocusEvent(int(datetime.now().timestamp() * 1000),
                                         "a", EventKind.FOREGROUND))

        result = db.maintenance()
        assert result['before']['events_count'] == 1
        assert result['after']['events_count'] == 1
        assert result['deleted']['focus_events'] == 0
        assert result['after']['file_size_mb'] > 0
