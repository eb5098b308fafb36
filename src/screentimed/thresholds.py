"""
Threshold alerts.

Decides, once per cycle, whether the day's screen time warrants a
"limit reached" or "approaching limit" alert. Each kind has its own
time-based cooldown so a user is not re-alerted every cycle.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from .models import UsageSummary
from .settings import Settings

log = logging.getLogger("screentimed.thresholds")

LIMIT_COOLDOWN_MS = 5 * 60 * 1000
APPROACHING_THRESHOLD_MINUTES = 5


class AlertKind(str, Enum):
    LIMIT_REACHED = "limit_reached"
    APPROACHING_LIMIT = "approaching_limit"


@dataclass(frozen=True)
class AlertEvent:
    """An alert handed to the alert sink."""
    kind: AlertKind
    total_minutes: float
    limit: int
    remaining_minutes: float


@dataclass
class AlertState:
    """Last fire times per alert kind. Lives only as long as the process."""
    last_approaching_fire_ms: Optional[int] = None
    last_limit_reached_fire_ms: Optional[int] = None


class AlertSink(Protocol):
    def emit(self, event: AlertEvent) -> None:
        ...


def _cooled_down(last_fire_ms: Optional[int], now_ms: int, cooldown_ms: int) -> bool:
    return last_fire_ms is None or now_ms - last_fire_ms >= cooldown_ms


class ThresholdNotifier:
    """Evaluates summaries against the configured limit."""

    def __init__(self, sink: AlertSink, state: Optional[AlertState] = None,
                 limit_cooldown_ms: int = LIMIT_COOLDOWN_MS):
        self.sink = sink
        self.state = state or AlertState()
        self.limit_cooldown_ms = limit_cooldown_ms
        # Alert decided by the most recent cycle, None when it fired nothing.
        # The on-screen notification slot is kept by the sink (AlertRouter).
        self.pending: Optional[AlertEvent] = None

    def approaching_cooldown_ms(self, settings: Settings) -> int:
        """Approaching alerts repeat at the user's notification frequency."""
        return max(self.limit_cooldown_ms,
                   settings.notification_frequency * 60 * 1000)

    def evaluate(self, summary: UsageSummary, settings: Settings,
                 now_ms: int) -> Optional[AlertEvent]:
        """Decide on at most one alert for this cycle, emitting it if fired."""
        self.pending = None

        total_minutes = summary.total_minutes
        limit = settings.screen_time_limit
        remaining = limit - total_minutes

        if total_minutes >= limit:
            if not _cooled_down(self.state.last_limit_reached_fire_ms, now_ms,
                                self.limit_cooldown_ms):
                log.debug("Limit reached alert suppressed by cooldown")
                return None
            kind = AlertKind.LIMIT_REACHED
            self.state.last_limit_reached_fire_ms = now_ms

        elif remaining <= APPROACHING_THRESHOLD_MINUTES:
            if not _cooled_down(self.state.last_approaching_fire_ms, now_ms,
                                self.approaching_cooldown_ms(settings)):
                log.debug("Approaching limit alert suppressed by cooldown")
                return None
            kind = AlertKind.APPROACHING_LIMIT
            self.state.last_approaching_fire_ms = now_ms

        else:
            return None

        event = AlertEvent(kind=kind, total_minutes=total_minutes,
                           limit=limit, remaining_minutes=remaining)
        self.pending = event
        log.info(f"Firing {kind.value}: {total_minutes:.1f} of {limit} min used")

        try:
            self.sink.emit(event)
        except Exception as e:
            # Delivery is best effort; the cooldown still applies
            log.error(f"Alert sink failed for {kind.value}: {e}")

        return event
