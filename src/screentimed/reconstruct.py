"""
Session reconstruction.

Turns the focus event stream for a window into accumulated foreground
time per app. Only BACKGROUND events close an interval; a FOREGROUND
event just moves tracking to the new app. Whatever is still tracked when
the events run out is credited up to the window end.
"""

import logging
from typing import Iterable, Optional

from .models import EventKind, FocusEvent, UsageWindow
from .sources import EventSource

log = logging.getLogger("screentimed.reconstruct")


def reconstruct_sessions(events: Iterable[FocusEvent],
                         window: UsageWindow) -> dict[str, int]:
    """
    Build app_id -> foreground milliseconds for events inside a window.

    Events must be in timestamp order. Timestamps are clamped to the
    window so no interval reaches outside it.
    """
    durations: dict[str, int] = {}
    current_app: Optional[str] = None
    last_event_time = window.start_ms

    def credit(app: str, until: int):
        delta = until - last_event_time
        if delta > 0:
            durations[app] = durations.get(app, 0) + delta
            log.debug(f"Credited {app}: +{delta} ms (total: {durations[app]} ms)")
        else:
            log.debug(f"Discarded non-positive delta {delta} ms for {app}")

    for event in events:
        ts = window.clamp(event.timestamp_ms)

        if event.kind == EventKind.FOREGROUND:
            current_app = event.app_id
            last_event_time = ts

        elif event.kind == EventKind.BACKGROUND:
            if current_app is None or event.app_id != current_app:
                # Lossy source: stray or duplicated background
                log.debug(f"Ignoring background for untracked app {event.app_id}")
                continue
            credit(current_app, ts)
            current_app = None

    if current_app is not None:
        credit(current_app, window.end_ms)

    return durations


class SessionReconstructor:
    """Pulls events from an event source and reconstructs a window."""

    def __init__(self, source: EventSource):
        self.source = source

    def reconstruct(self, window: UsageWindow) -> dict[str, int]:
        """
        Reconstruct per-app durations for a window.

        PermissionDenied and AdapterUnavailable from the source propagate;
        retrying is the scheduler's job.
        """
        events = self.source.query_events(window.start_ms, window.end_ms)
        if not events:
            log.debug("No focus events in window")
            return {}
        return reconstruct_sessions(events, window)
