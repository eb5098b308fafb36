"""
Aggregation scheduler.

Runs reconstruct -> aggregate -> evaluate -> publish on a fixed interval
or on request. Cycles never overlap; a tick that arrives while a cycle is
still running is skipped.
"""

import logging
import threading
from datetime import datetime
from typing import Optional

from .aggregate import AppClassifier, aggregate_usage
from .errors import AdapterUnavailable, PermissionDenied
from .models import UsageSummary, day_window
from .publish import SummaryPublisher
from .reconstruct import SessionReconstructor
from .settings import Settings, SettingsStore
from .thresholds import ThresholdNotifier

log = logging.getLogger("screentimed.scheduler")

DEFAULT_CYCLE_INTERVAL = 60  # seconds


class Scheduler:
    """Drives aggregation cycles."""

    def __init__(self, reconstructor: SessionReconstructor,
                 classifier: AppClassifier,
                 notifier: ThresholdNotifier,
                 settings_store: SettingsStore,
                 publisher: SummaryPublisher,
                 interval: float = DEFAULT_CYCLE_INTERVAL):
        self.reconstructor = reconstructor
        self.classifier = classifier
        self.notifier = notifier
        self.settings_store = settings_store
        self.publisher = publisher
        self.interval = interval

        self.settings: Optional[Settings] = None
        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def on_settings_changed(self, settings: Settings):
        """Settings listener: take new values without re-reading the store."""
        log.info(f"Settings changed: limit={settings.screen_time_limit} min, "
                 f"frequency={settings.notification_frequency} min")
        self.settings = settings

    def run_cycle(self, now: Optional[datetime] = None) -> Optional[UsageSummary]:
        """
        Run one cycle and return its summary.

        Returns None if another cycle is in progress. Errors propagate.
        """
        if not self._cycle_lock.acquire(blocking=False):
            log.debug("Cycle already running, skipping")
            return None

        try:
            window = day_window(now)
            durations = self.reconstructor.reconstruct(window)
            summary = aggregate_usage(durations, self.classifier, window.end_ms)

            if self.settings is None:
                self.settings = self.settings_store.read()
            self.notifier.evaluate(summary, self.settings, window.end_ms)

            self.publisher.publish(summary)
            log.info(f"Cycle complete: {summary.total_minutes:.1f} min across "
                     f"{len(summary.per_app)} apps")
            return summary
        finally:
            self._cycle_lock.release()

    def tick(self, now: Optional[datetime] = None) -> Optional[UsageSummary]:
        """Run a cycle, logging any failure instead of raising it."""
        try:
            return self.run_cycle(now)
        except PermissionDenied as e:
            log.error(f"Usage access denied, cycle aborted: {e}")
        except AdapterUnavailable as e:
            log.warning(f"Event source unavailable, retrying next tick: {e}")
        except Exception as e:
            log.error(f"Cycle failed: {e}", exc_info=True)
        return None

    def run(self):
        """Tick every interval until stop() is called."""
        log.info(f"Scheduler running every {self.interval}s")
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.interval)
        log.info("Scheduler stopped")

    def start(self):
        """Run the loop on a background thread."""
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="screentimed-scheduler",
                                        daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """Stop between ticks; a running cycle finishes first."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
