"""
SQLite database for screentimed.

Holds the recorded focus event log, the settings cache, the latest
published usage snapshot and the notification delivery log.
"""

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, date, timedelta
from pathlib import Path
from typing import Optional

from .models import EventKind, FocusEvent, UsageSummary

DEFAULT_DB_PATH = "/var/lib/screentimed/screentimed.db"


def init_db(db_path: str = DEFAULT_DB_PATH) -> None:
    """Initialize database schema."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    with get_connection(db_path) as conn:
        conn.executescript("""
            -- Focus transitions (append-only log, read back by the event source)
            CREATE TABLE IF NOT EXISTS focus_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp_ms INTEGER NOT NULL,
                app_id TEXT NOT NULL,
                kind TEXT NOT NULL  -- 'foreground' or 'background'
            );

            CREATE INDEX IF NOT EXISTS idx_focus_events_time
                ON focus_events(timestamp_ms);

            -- Fast-path copy of the settings record (durable copy lives in JSON)
            CREATE TABLE IF NOT EXISTS settings_cache (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            -- Latest published summary, one row per day
            CREATE TABLE IF NOT EXISTS usage_snapshot (
                date TEXT PRIMARY KEY,
                total_ms INTEGER NOT NULL DEFAULT 0,
                window_end_ms INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS app_usage (
                date TEXT NOT NULL,
                app_id TEXT NOT NULL,
                duration_ms INTEGER NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (date, app_id)
            );

            -- Message delivery log
            CREATE TABLE IF NOT EXISTS message_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user TEXT NOT NULL,
                intention TEXT NOT NULL,
                rendered_title TEXT,
                rendered_body TEXT,
                notification_id INTEGER,
                backend TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_message_log_user_time
                ON message_log(user, timestamp);
        """)


@contextmanager
def get_connection(db_path: str = DEFAULT_DB_PATH):
    """Context manager for database connections."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class ActivityDB:
    """Database interface for focus tracking."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        init_db(db_path)

    # --- Focus events ---

    def record_focus_event(self, event: FocusEvent):
        """Append a focus transition to the log."""
        with get_connection(self.db_path) as conn:
            conn.execute("""
                INSERT INTO focus_events (timestamp_ms, app_id, kind)
                VALUES (?, ?, ?)
            """, (event.timestamp_ms, event.app_id, event.kind.value))

    def get_focus_events(self, start_ms: int, end_ms: int) -> list[FocusEvent]:
        """Get focus events in [start_ms, end_ms], oldest first."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute("""
                SELECT timestamp_ms, app_id, kind FROM focus_events
                WHERE timestamp_ms >= ? AND timestamp_ms <= ?
                ORDER BY timestamp_ms, id
            """, (start_ms, end_ms)).fetchall()
            return [_row_to_event(row) for row in rows]

    def get_last_focus_event(self) -> Optional[FocusEvent]:
        """Get the most recently recorded focus event."""
        with get_connection(self.db_path) as conn:
            row = conn.execute("""
                SELECT timestamp_ms, app_id, kind FROM focus_events
                ORDER BY timestamp_ms DESC, id DESC
                LIMIT 1
            """).fetchone()
            return _row_to_event(row) if row else None

    def get_recent_focus_events(self, limit: int = 50) -> list[FocusEvent]:
        """Get the newest focus events, newest first."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute("""
                SELECT timestamp_ms, app_id, kind FROM focus_events
                ORDER BY timestamp_ms DESC, id DESC
                LIMIT ?
            """, (limit,)).fetchall()
            return [_row_to_event(row) for row in rows]

    # --- Settings cache ---

    def get_cached_settings(self) -> dict:
        """Get all settings cache entries as a dict of strings."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute("SELECT key, value FROM settings_cache").fetchall()
            return {row['key']: row['value'] for row in rows}

    def set_cached_settings(self, values: dict):
        """Replace settings cache entries in a single transaction."""
        with get_connection(self.db_path) as conn:
            conn.executemany("""
                INSERT INTO settings_cache (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, [(k, str(v)) for k, v in values.items()])

    # --- Usage snapshot ---

    def save_usage_snapshot(self, summary: UsageSummary, day: str = None):
        """Replace the stored snapshot for a day with a fresh summary."""
        if day is None:
            day = date.today().isoformat()

        with get_connection(self.db_path) as conn:
            conn.execute("""
                INSERT INTO usage_snapshot (date, total_ms, window_end_ms, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    total_ms = excluded.total_ms,
                    window_end_ms = excluded.window_end_ms,
                    updated_at = excluded.updated_at
            """, (day, summary.total_ms, summary.window_end, datetime.now().isoformat()))
            conn.execute("DELETE FROM app_usage WHERE date = ?", (day,))
            conn.executemany("""
                INSERT INTO app_usage (date, app_id, duration_ms, position)
                VALUES (?, ?, ?, ?)
            """, [(day, app.app_id, app.duration_ms, i)
                  for i, app in enumerate(summary.per_app)])

    def get_usage_snapshot(self, day: str = None) -> Optional[dict]:
        """Get the stored snapshot for a day, apps in first-seen order."""
        if day is None:
            day = date.today().isoformat()

        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM usage_snapshot WHERE date = ?", (day,)
            ).fetchone()
            if not row:
                return None
            snapshot = dict(row)
            apps = conn.execute("""
                SELECT app_id, duration_ms FROM app_usage
                WHERE date = ? ORDER BY position
            """, (day,)).fetchall()
            snapshot['apps'] = [dict(a) for a in apps]
            return snapshot

    # --- Message log ---

    def log_message(self, user: str, intention: str, rendered_title: str,
                    rendered_body: str, notification_id: int, backend: str):
        """Log a delivered notification."""
        with get_connection(self.db_path) as conn:
            conn.execute("""
                INSERT INTO message_log (timestamp, user, intention, rendered_title,
                                         rendered_body, notification_id, backend)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (datetime.now().isoformat(), user, intention, rendered_title,
                  rendered_body, notification_id, backend))

    def get_recent_messages(self, user: str = None, limit: int = 50) -> list[dict]:
        """Get recent message log entries, newest first."""
        with get_connection(self.db_path) as conn:
            if user:
                rows = conn.execute("""
                    SELECT * FROM message_log WHERE user = ?
                    ORDER BY timestamp DESC, id DESC LIMIT ?
                """, (user, limit)).fetchall()
            else:
                rows = conn.execute("""
                    SELECT * FROM message_log
                    ORDER BY timestamp DESC, id DESC LIMIT ?
                """, (limit,)).fetchall()
            return [dict(row) for row in rows]

    # --- Maintenance ---

    def cleanup_old_data(self, events_days: int = 30, messages_days: int = 7) -> dict:
        """Delete old focus events, message log rows and snapshots."""
        events_cutoff = datetime.now() - timedelta(days=events_days)
        events_cutoff_ms = int(events_cutoff.timestamp() * 1000)
        messages_cutoff = (datetime.now() - timedelta(days=messages_days)).isoformat()
        snapshot_cutoff = (date.today() - timedelta(days=events_days)).isoformat()

        deleted = {}
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM focus_events WHERE timestamp_ms < ?", (events_cutoff_ms,)
            )
            deleted['focus_events'] = cursor.rowcount

            cursor = conn.execute(
                "DELETE FROM message_log WHERE timestamp < ?", (messages_cutoff,)
            )
            deleted['message_log'] = cursor.rowcount

            conn.execute("DELETE FROM app_usage WHERE date < ?", (snapshot_cutoff,))
            cursor = conn.execute(
                "DELETE FROM usage_snapshot WHERE date < ?", (snapshot_cutoff,)
            )
            deleted['usage_snapshot'] = cursor.rowcount

        return deleted

    def vacuum(self):
        """Reclaim space after deletes."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("VACUUM")
        finally:
            conn.close()

    def get_db_stats(self) -> dict:
        """Get database size and row counts."""
        with get_connection(self.db_path) as conn:
            events = conn.execute("SELECT COUNT(*) FROM focus_events").fetchone()[0]
            messages = conn.execute("SELECT COUNT(*) FROM message_log").fetchone()[0]

        return {
            'file_size_mb': os.path.getsize(self.db_path) / (1024 * 1024),
            'events_count': events,
            'messages_count': messages,
        }

    def maintenance(self, events_days: int = 30, messages_days: int = 7) -> dict:
        """Run cleanup and vacuum, reporting stats before and after."""
        before = self.get_db_stats()
        deleted = self.cleanup_old_data(events_days, messages_days)
        self.vacuum()
        after = self.get_db_stats()
        return {'before': before, 'deleted': deleted, 'after': after}


def _row_to_event(row) -> FocusEvent:
    return FocusEvent(
        timestamp_ms=row['timestamp_ms'],
        app_id=row['app_id'],
        kind=EventKind(row['kind']),
    )
