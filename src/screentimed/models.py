"""
Data types shared by the screentimed pipeline.

Timestamps are epoch milliseconds throughout; durations are milliseconds
with minute conversions exposed as properties.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

MILLIS_PER_MINUTE = 60000.0


class EventKind(str, Enum):
    """Focus transition reported by the event source."""
    FOREGROUND = "foreground"
    BACKGROUND = "background"


@dataclass(frozen=True)
class FocusEvent:
    """A single app focus change."""
    timestamp_ms: int
    app_id: str
    kind: EventKind


@dataclass(frozen=True)
class UsageWindow:
    """Half-open interval [start_ms, end_ms) usage is aggregated over."""
    start_ms: int
    end_ms: int

    def __post_init__(self):
        if self.start_ms > self.end_ms:
            raise ValueError(
                f"window start {self.start_ms} is after end {self.end_ms}"
            )

    @property
    def length_ms(self) -> int:
        return self.end_ms - self.start_ms

    def clamp(self, timestamp_ms: int) -> int:
        """Pull a timestamp into the window bounds."""
        return min(max(timestamp_ms, self.start_ms), self.end_ms)


def day_window(now: Optional[datetime] = None) -> UsageWindow:
    """Window from local midnight to now."""
    if now is None:
        now = datetime.now()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return UsageWindow(
        start_ms=int(midnight.timestamp() * 1000),
        end_ms=int(now.timestamp() * 1000),
    )


@dataclass(frozen=True)
class AppDuration:
    """Accumulated foreground time for one app."""
    app_id: str
    duration_ms: int

    @property
    def minutes(self) -> float:
        return self.duration_ms / MILLIS_PER_MINUTE


@dataclass
class UsageSummary:
    """Result of one aggregation cycle."""
    total_ms: int = 0
    per_app: list[AppDuration] = field(default_factory=list)
    window_end: int = 0

    @property
    def total_minutes(self) -> float:
        return self.total_ms / MILLIS_PER_MINUTE

    def to_dict(self) -> dict:
        """Convert to the shape consumers (widget, status) expect."""
        return {
            'totalScreenTime': self.total_minutes,
            'windowEnd': self.window_end,
            'apps': [
                {'packageName': app.app_id, 'time': app.minutes}
                for app in self.per_app
            ],
        }
