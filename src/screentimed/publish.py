"""Summary publishing: hands each cycle's summary to its consumers."""

import logging
from typing import Iterable, Protocol

from .db import ActivityDB
from .models import UsageSummary

log = logging.getLogger("screentimed.publish")


class SummarySink(Protocol):
    def publish(self, summary: UsageSummary) -> None:
        ...


class DatabaseSummarySink:
    """Stores the latest summary for `status` and widget readers."""

    def __init__(self, db: ActivityDB):
        self.db = db

    def publish(self, summary: UsageSummary) -> None:
        self.db.save_usage_snapshot(summary)


class SummaryPublisher:
    """Fans a summary out to every sink; one failing sink doesn't stop the rest."""

    def __init__(self, sinks: Iterable[SummarySink] = ()):
        self.sinks = list(sinks)

    def publish(self, summary: UsageSummary) -> None:
        for sink in self.sinks:
            try:
                sink.publish(summary)
            except Exception as e:
                log.error(f"Summary sink {type(sink).__name__} failed: {e}")
