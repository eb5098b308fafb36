"""
Focus event sources.

EventSource is the pull interface the reconstructor reads from. The
daemon ships one implementation backed by the activity database, fed by
FocusRecorder polling the focused window.
"""

import logging
import os
import sqlite3
import time
from typing import Callable, Optional, Protocol, Sequence, runtime_checkable

from .db import ActivityDB
from .detection import get_active_app
from .errors import AdapterUnavailable, PermissionDenied
from .models import EventKind, FocusEvent

log = logging.getLogger("screentimed.sources")


@runtime_checkable
class EventSource(Protocol):
    """Supplies time-ordered focus events for an interval."""

    def query_events(self, start_ms: int, end_ms: int) -> Sequence[FocusEvent]:
        """
        Return events with start_ms <= timestamp <= end_ms, oldest first.

        Raises PermissionDenied or AdapterUnavailable.
        """
        ...


class DatabaseEventSource:
    """Reads focus events recorded in the activity database."""

    def __init__(self, db: ActivityDB):
        self.db = db

    def query_events(self, start_ms: int, end_ms: int) -> list[FocusEvent]:
        if not os.path.exists(self.db.db_path):
            raise AdapterUnavailable(f"Event database missing: {self.db.db_path}")
        if not os.access(self.db.db_path, os.R_OK):
            raise PermissionDenied(f"Cannot read event database: {self.db.db_path}")

        try:
            return self.db.get_focus_events(start_ms, end_ms)
        except sqlite3.Error as e:
            raise AdapterUnavailable(f"Event query failed: {e}") from e


def now_ms() -> int:
    return int(time.time() * 1000)


# A poll later than this after the previous one means the machine slept or
# the daemon was stopped; time in between is not credited.
DEFAULT_MAX_GAP_MS = 30 * 1000


class FocusRecorder:
    """
    Records focus transitions for one desktop user.

    Each poll compares the focused app with the last one seen and writes a
    BACKGROUND for the old app followed by a FOREGROUND for the new one.
    When polls stop for longer than max_gap_ms (suspend, crash) the tracked
    app is backgrounded at the last poll, so the gap never counts as use.
    """

    def __init__(self, db: ActivityDB, username: str,
                 detect: Callable[[str], Optional[str]] = get_active_app,
                 clock: Callable[[], int] = now_ms,
                 max_gap_ms: int = DEFAULT_MAX_GAP_MS):
        self.db = db
        self.username = username
        self.detect = detect
        self.clock = clock
        self.max_gap_ms = max_gap_ms
        self.current_app: Optional[str] = None
        self.last_poll_ms: Optional[int] = None
        self._close_interrupted_session()

    def _close_interrupted_session(self):
        """
        Background an app left in the foreground by an unclean shutdown.

        When the last poll happened is unknown, so the interval ends at the
        last recorded event and the downtime is not credited.
        """
        last = self.db.get_last_focus_event()
        if last and last.kind == EventKind.FOREGROUND:
            log.info(f"Closing {last.app_id} left open by previous run")
            self.db.record_focus_event(
                FocusEvent(last.timestamp_ms, last.app_id, EventKind.BACKGROUND))

    def _gap_exceeded(self, now: int) -> bool:
        return (self.last_poll_ms is not None
                and now - self.last_poll_ms > self.max_gap_ms)

    def poll(self) -> Optional[str]:
        """Sample the focused app once, recording any transition."""
        app = self.detect(self.username)
        now = self.clock()

        if self.current_app is not None and self._gap_exceeded(now):
            log.info(f"No poll for {(now - self.last_poll_ms) / 1000:.0f}s, "
                     f"closing {self.current_app} at last poll")
            self.db.record_focus_event(
                FocusEvent(self.last_poll_ms, self.current_app, EventKind.BACKGROUND))
            self.current_app = None
        self.last_poll_ms = now

        if app == self.current_app:
            return app

        if self.current_app is not None:
            self.db.record_focus_event(
                FocusEvent(now, self.current_app, EventKind.BACKGROUND))
        if app is not None:
            self.db.record_focus_event(FocusEvent(now, app, EventKind.FOREGROUND))

        log.debug(f"Focus changed: {self.current_app} -> {app}")
        self.current_app = app
        return app

    def close(self):
        """Background the tracked app so the log ends cleanly."""
        if self.current_app is None:
            return
        now = self.clock()
        ts = self.last_poll_ms if self._gap_exceeded(now) else now
        self.db.record_focus_event(FocusEvent(ts, self.current_app, EventKind.BACKGROUND))
        self.current_app = None
