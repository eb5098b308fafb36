"""Tests for session reconstruction."""

import random

import pytest

from screentimed.errors import AdapterUnavailable, PermissionDenied
from screentimed.models import EventKind, FocusEvent, UsageWindow
from screentimed.reconstruct import SessionReconstructor, reconstruct_sessions

FG = EventKind.FOREGROUND
BG = EventKind.BACKGROUND


def ev(ts, app, kind):
    return FocusEvent(ts, app, kind)


class FakeSource:
    """Event source returning a fixed list, or raising."""

    def __init__(self, events=None, error=None):
        self.events = events or []
        self.error = error
        self.calls = []

    def query_events(self, start_ms, end_ms):
        self.calls.append((start_ms, end_ms))
        if self.error:
            raise self.error
        return self.events


class TestReconstructSessions:
    """Tests for the reconstruction state machine."""

    def test_two_app_scenario(self):
        """A for 10 minutes then B for 20 minutes."""
        events = [
            ev(0, "A", FG),
            ev(600000, "A", BG),
            ev(600000, "B", FG),
            ev(1800000, "B", BG),
        ]
        durations = reconstruct_sessions(events, UsageWindow(0, 1800000))

        assert durations == {"A": 600000, "B": 1200000}
        assert sum(durations.values()) / 60000.0 == 30.0

    def test_no_events_gives_empty_mapping(self):
        """An empty stream is not an error."""
        assert reconstruct_sessions([], UsageWindow(0, 1000)) == {}

    def test_open_interval_flushed_at_window_end(self):
        """An app still in the foreground is credited up to the window end."""
        events = [ev(1000, "A", FG)]
        durations = reconstruct_sessions(events, UsageWindow(0, 5000))
        assert durations == {"A": 4000}

    def test_foreground_switch_does_not_credit_previous_app(self):
        """Only BACKGROUND closes an interval; a bare switch credits nothing."""
        events = [
            ev(0, "A", FG),
            ev(100, "B", FG),
            ev(300, "B", BG),
        ]
        durations = reconstruct_sessions(events, UsageWindow(0, 1000))
        assert durations == {"B": 200}

    def test_background_for_other_app_ignored(self):
        """BACKGROUND for an app that isn't tracked is adapter noise."""
        events = [
            ev(0, "A", FG),
            ev(100, "B", BG),
            ev(400, "A", BG),
        ]
        durations = reconstruct_sessions(events, UsageWindow(0, 1000))
        assert durations == {"A": 400}

    def test_duplicate_background_is_noop(self):
        """A repeated BACKGROUND finds no tracked app and is ignored."""
        events = [
            ev(0, "A", FG),
            ev(100, "A", BG),
            ev(200, "A", BG),
        ]
        durations = reconstruct_sessions(events, UsageWindow(0, 1000))
        assert durations == {"A": 100}

    def test_missing_initial_foreground_tolerated(self):
        """A BACKGROUND with no earlier FOREGROUND is dropped (under-count)."""
        events = [
            ev(500, "A", BG),
            ev(600, "B", FG),
            ev(900, "B", BG),
        ]
        durations = reconstruct_sessions(events, UsageWindow(0, 1000))
        assert durations == {"B": 300}

    def test_zero_and_negative_deltas_discarded(self):
        """Clock skew never produces zero or negative durations."""
        events = [
            ev(500, "A", FG),
            ev(500, "A", BG),
            ev(700, "B", FG),
            ev(600, "B", BG),
        ]
        durations = reconstruct_sessions(events, UsageWindow(0, 1000))
        assert durations == {}

    def test_times_clamped_to_window(self):
        """Intervals reaching outside the window only count the inside part."""
        events = [
            ev(0, "A", FG),
            ev(2000, "A", BG),
            ev(4000, "B", FG),
            ev(9000, "B", BG),
        ]
        durations = reconstruct_sessions(events, UsageWindow(1000, 5000))
        assert durations == {"A": 1000, "B": 1000}

    def test_first_seen_order(self):
        """Mapping order follows the order apps were first credited."""
        events = [
            ev(0, "Z", FG), ev(10, "Z", BG),
            ev(10, "A", FG), ev(20, "A", BG),
            ev(20, "Z", FG), ev(30, "Z", BG),
        ]
        durations = reconstruct_sessions(events, UsageWindow(0, 100))
        assert list(durations) == ["Z", "A"]
        assert durations["Z"] == 20

    def test_idempotent(self):
        """Same events and window give the same mapping every time."""
        events = [
            ev(0, "A", FG), ev(250, "A", BG),
            ev(300, "B", FG),
        ]
        window = UsageWindow(0, 1000)
        assert reconstruct_sessions(events, window) == reconstruct_sessions(events, window)

    def test_random_closed_intervals_sum(self):
        """Non-overlapping closed intervals reconstruct to their exact sums."""
        rng = random.Random(42)
        apps = ["A", "B", "C", "D"]
        window = UsageWindow(0, 10_000_000)

        for _ in range(50):
            t = 0
            events = []
            expected = {}
            while True:
                start = t + rng.randint(0, 50_000)
                end = start + rng.randint(1, 200_000)
                if end > window.end_ms:
                    break
                app = rng.choice(apps)
                events += [ev(start, app, FG), ev(end, app, BG)]
                expected[app] = expected.get(app, 0) + (end - start)
                t = end

            durations = reconstruct_sessions(events, window)
            assert durations == expected
            for value in durations.values():
                assert value <= window.length_ms


class TestSessionReconstructor:
    """Tests for the source-backed reconstructor."""

    def test_queries_window_bounds(self):
        """The source is asked for exactly the window."""
        source = FakeSource([ev(0, "A", FG), ev(100, "A", BG)])
        result = SessionReconstructor(source).reconstruct(UsageWindow(0, 1000))

        assert source.calls == [(0, 1000)]
        assert result == {"A": 100}

    def test_permission_denied_propagates(self):
        """Permission errors surface to the caller without retry."""
        source = FakeSource(error=PermissionDenied("no usage access"))
        with pytest.raises(PermissionDenied):
            SessionReconstructor(source).reconstruct(UsageWindow(0, 1000))
        assert len(source.calls) == 1

    def test_unavailable_propagates(self):
        """Transient source errors surface too."""
        source = FakeSource(error=AdapterUnavailable("down"))
        with pytest.raises(AdapterUnavailable):
            SessionReconstructor(source).reconstruct(UsageWindow(0, 1000))


class TestUsageWindow:
    """Tests for window construction."""

    def test_start_after_end_rejected(self):
        with pytest.raises(ValueError):
            UsageWindow(10, 5)

    def test_clamp(self):
        window = UsageWindow(100, 200)
        assert window.clamp(50) == 100
        assert window.clamp(150) == 150
        assert window.clamp(250) == 200
