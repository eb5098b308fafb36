"""Tests for threshold alert decisions."""

from screentimed.models import AppDuration, UsageSummary
from screentimed.settings import Settings
from screentimed.thresholds import (
    LIMIT_COOLDOWN_MS,
    AlertKind,
    AlertState,
    ThresholdNotifier,
)

MINUTE = 60000


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)


class FailingSink:
    def emit(self, event):
        raise RuntimeError("notification daemon gone")


def summary_of(minutes: float) -> UsageSummary:
    ms = int(minutes * MINUTE)
    return UsageSummary(total_ms=ms, per_app=[AppDuration("app", ms)], window_end=0)


def settings(limit=60, frequency=5) -> Settings:
    return Settings(screen_time_limit=limit, notification_frequency=frequency,
                    user_has_set_limit=True, chain_id="SETTINGS_CHAIN_1")


class TestThresholdPolicy:
    """Tests for which alert fires."""

    def test_over_limit_fires_limit_reached(self):
        """61 of 60 minutes fires LIMIT_REACHED."""
        sink = RecordingSink()
        event = ThresholdNotifier(sink).evaluate(summary_of(61), settings(), now_ms=0)

        assert event.kind == AlertKind.LIMIT_REACHED
        assert event.total_minutes == 61
        assert event.limit == 60
        assert event.remaining_minutes == -1
        assert sink.events == [event]

    def test_exactly_at_limit_fires_limit_reached(self):
        event = ThresholdNotifier(RecordingSink()).evaluate(summary_of(60), settings(), 0)
        assert event.kind == AlertKind.LIMIT_REACHED

    def test_within_five_minutes_fires_approaching(self):
        """56 of 60 minutes leaves 4, which is within 5."""
        sink = RecordingSink()
        event = ThresholdNotifier(sink).evaluate(summary_of(56), settings(), 0)

        assert event.kind == AlertKind.APPROACHING_LIMIT
        assert event.remaining_minutes == 4
        assert len(sink.events) == 1

    def test_far_from_limit_no_alert(self):
        """50 of 60 minutes is no alert."""
        sink = RecordingSink()
        event = ThresholdNotifier(sink).evaluate(summary_of(50), settings(), 0)
        assert event is None
        assert sink.events == []


class TestCooldowns:
    """Tests for cooldown suppression."""

    def test_limit_reached_suppressed_within_cooldown(self):
        """A second eligible cycle inside the cooldown emits nothing."""
        sink = RecordingSink()
        notifier = ThresholdNotifier(sink)

        assert notifier.evaluate(summary_of(61), settings(), now_ms=1_000_000)
        assert notifier.evaluate(summary_of(62), settings(), now_ms=1_060_000) is None
        assert len(sink.events) == 1

    def test_limit_reached_fires_again_after_cooldown(self):
        sink = RecordingSink()
        notifier = ThresholdNotifier(sink)

        notifier.evaluate(summary_of(61), settings(), now_ms=1_000_000)
        event = notifier.evaluate(summary_of(66), settings(),
                                  now_ms=1_000_000 + LIMIT_COOLDOWN_MS)
        assert event.kind == AlertKind.LIMIT_REACHED
        assert len(sink.events) == 2

    def test_cooldowns_are_independent(self):
        """An approaching alert doesn't hold back the limit alert."""
        sink = RecordingSink()
        notifier = ThresholdNotifier(sink)

        notifier.evaluate(summary_of(57), settings(), now_ms=1_000_000)
        event = notifier.evaluate(summary_of(60), settings(), now_ms=1_030_000)

        assert event.kind == AlertKind.LIMIT_REACHED
        assert [e.kind for e in sink.events] == [AlertKind.APPROACHING_LIMIT,
                                                 AlertKind.LIMIT_REACHED]

    def test_approaching_cooldown_follows_frequency(self):
        """With a 10 minute frequency, approaching repeats after 10 minutes."""
        sink = RecordingSink()
        notifier = ThresholdNotifier(sink)
        cfg = settings(limit=120, frequency=10)
        start = 5_000_000

        notifier.evaluate(summary_of(116), cfg, now_ms=start)
        assert notifier.evaluate(summary_of(116), cfg, now_ms=start + 6 * MINUTE) is None
        event = notifier.evaluate(summary_of(116), cfg, now_ms=start + 10 * MINUTE)

        assert event.kind == AlertKind.APPROACHING_LIMIT
        assert len(sink.events) == 2

    def test_state_records_fire_times(self):
        state = AlertState()
        notifier = ThresholdNotifier(RecordingSink(), state=state)

        notifier.evaluate(summary_of(58), settings(), now_ms=123)
        assert state.last_approaching_fire_ms == 123
        assert state.last_limit_reached_fire_ms is None


class TestPendingDecision:
    """Tests for the per-cycle pending decision."""

    def test_pending_is_this_cycles_decision(self):
        """pending holds exactly what evaluate returned."""
        notifier = ThresholdNotifier(RecordingSink())

        event = notifier.evaluate(summary_of(57), settings(), now_ms=0)
        assert notifier.pending is event

        assert notifier.evaluate(summary_of(10), settings(), now_ms=1000) is None
        assert notifier.pending is None

    def test_new_cycle_clears_pending(self):
        """A quiet cycle supersedes the previous cycle's alert."""
        notifier = ThresholdNotifier(RecordingSink())

        notifier.evaluate(summary_of(61), settings(), now_ms=0)
        assert notifier.pending.kind == AlertKind.LIMIT_REACHED

        notifier.evaluate(summary_of(61), settings(), now_ms=1000)
        assert notifier.pending is None

    def test_sink_failure_keeps_cooldown(self):
        """A failed delivery is logged and still counts for cooldown."""
        notifier = ThresholdNotifier(FailingSink())

        event = notifier.evaluate(summary_of(61), settings(), now_ms=0)
        assert event.kind == AlertKind.LIMIT_REACHED
        assert notifier.state.last_limit_reached_fire_ms == 0
        assert notifier.evaluate(summary_of(61), settings(), now_ms=1000) is None
