#!/usr/bin/env python3
"""
screentimed - daily screen time tracker

Records which app has focus, totals the day's usage per app and warns
as the day's screen time approaches or passes the configured limit.
"""

import argparse
import logging
import os
import signal
import sqlite3
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml

from .aggregate import DEFAULT_SELF_APPS, SystemAppClassifier, aggregate_usage
from .db import ActivityDB, DEFAULT_DB_PATH
from .errors import ScreentimeError, SettingsIOError, ValidationError
from .models import UsageSummary, day_window
from .notify import NotificationDispatcher
from .publish import DatabaseSummarySink, SummaryPublisher
from .reconstruct import SessionReconstructor
from .router import AlertRouter
from .scheduler import DEFAULT_CYCLE_INTERVAL, Scheduler
from .settings import (
    DEFAULT_SETTINGS_PATH,
    DatabaseSettingsCache,
    JsonSettingsFile,
    Settings,
    SettingsStore,
)
from .sources import DEFAULT_MAX_GAP_MS, DatabaseEventSource, FocusRecorder
from .thresholds import ThresholdNotifier

DEFAULT_CONFIG = "/etc/screentimed/config.yaml"
DEFAULT_POLL_INTERVAL = 5

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger("screentimed")


def default_config() -> dict:
    """Return default configuration."""
    return {
        "daemon": {
            "cycle_interval": DEFAULT_CYCLE_INTERVAL,
            "poll_interval": DEFAULT_POLL_INTERVAL,
            "db_path": DEFAULT_DB_PATH,
            "settings_path": DEFAULT_SETTINGS_PATH,
            "user": None,
        },
        "apps": {
            "self": sorted(DEFAULT_SELF_APPS),
            "system": [],
        },
    }


def load_config(path: str) -> dict:
    """Load YAML configuration, filling gaps from the defaults."""
    config = default_config()
    config_path = Path(path)
    if not config_path.exists():
        log.warning(f"Config not found at {path}, using defaults")
        return config

    with open(config_path) as f:
        loaded = yaml.safe_load(f) or {}

    for section, values in loaded.items():
        if isinstance(values, dict) and isinstance(config.get(section), dict):
            config[section].update(values)
        else:
            config[section] = values
    return config


def build_settings_store(db: ActivityDB, settings_path: str) -> SettingsStore:
    return SettingsStore(JsonSettingsFile(settings_path), DatabaseSettingsCache(db))


def format_minutes(minutes: float) -> str:
    """Format minutes as human-readable duration."""
    total = int(minutes)
    if total < 60:
        return f"{total} minute{'s' if total != 1 else ''}"

    hours, mins = divmod(total, 60)
    if mins == 0:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{hours}h {mins}m"


class ScreentimeDaemon:
    """Main daemon class: focus recorder in the foreground, scheduler on a thread."""

    def __init__(self, config: dict, db_path: Optional[str] = None,
                 settings_path: Optional[str] = None):
        self.config = config
        self.running = True

        daemon_cfg = config["daemon"]
        self.poll_interval = daemon_cfg.get("poll_interval", DEFAULT_POLL_INTERVAL)
        self.user = (daemon_cfg.get("user") or os.environ.get("SUDO_USER")
                     or os.environ.get("USER", ""))

        db_path = db_path or daemon_cfg.get("db_path", DEFAULT_DB_PATH)
        self.db = ActivityDB(db_path)
        log.info(f"Database initialized at {db_path}")

        self.settings_store = build_settings_store(
            self.db, settings_path or daemon_cfg.get("settings_path", DEFAULT_SETTINGS_PATH))

        apps = config.get("apps", {})
        classifier = SystemAppClassifier(apps.get("self") or DEFAULT_SELF_APPS,
                                         apps.get("system") or [])

        self.router = AlertRouter(NotificationDispatcher(), self.db, self.user)
        self.scheduler = Scheduler(
            reconstructor=SessionReconstructor(DatabaseEventSource(self.db)),
            classifier=classifier,
            notifier=ThresholdNotifier(self.router),
            settings_store=self.settings_store,
            publisher=SummaryPublisher([DatabaseSummarySink(self.db)]),
            interval=daemon_cfg.get("cycle_interval", DEFAULT_CYCLE_INTERVAL),
        )
        self.settings_store.add_listener(self.scheduler.on_settings_changed)
        self.settings_store.add_listener(self._on_settings_changed)

        # Three missed polls count as a gap (suspend or stall)
        max_gap_ms = max(DEFAULT_MAX_GAP_MS, int(self.poll_interval * 3 * 1000))
        self.recorder = FocusRecorder(self.db, self.user, max_gap_ms=max_gap_ms)

        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        log.info(f"Received signal {signum}, shutting down...")
        self.running = False

    def _on_settings_changed(self, settings: Settings):
        # An alert rendered against the old limit is stale now
        self.router.clear()

    def run(self):
        """Main daemon loop."""
        log.info(f"screentimed starting up, tracking {self.user}")

        self.settings_store.repair()
        self.settings_store.refresh()
        self.scheduler.start()

        try:
            while self.running:
                try:
                    self.recorder.poll()
                    self.settings_store.refresh()
                except Exception as e:
                    log.error(f"Error polling focus: {e}", exc_info=True)

                time.sleep(self.poll_interval)
        finally:
            self.scheduler.stop()
            self.recorder.close()

        log.info("screentimed shutdown complete")


def open_db(path: str) -> ActivityDB:
    """Open the database or exit with a hint."""
    try:
        return ActivityDB(path)
    except (sqlite3.Error, OSError):
        print(f"Error: Cannot access database at {path}", file=sys.stderr)
        print("Try: sudo screentimed ...", file=sys.stderr)
        sys.exit(1)


def compute_today(db: ActivityDB, config: dict) -> UsageSummary:
    """Reconstruct today's usage from recorded events."""
    apps = config.get("apps", {})
    classifier = SystemAppClassifier(apps.get("self") or DEFAULT_SELF_APPS,
                                     apps.get("system") or [])
    window = day_window()
    durations = SessionReconstructor(DatabaseEventSource(db)).reconstruct(window)
    return aggregate_usage(durations, classifier, window.end_ms)


def cmd_run(args):
    """Run the daemon."""
    config = load_config(args.config)
    daemon = ScreentimeDaemon(config, db_path=args.db, settings_path=args.settings)
    daemon.run()


def cmd_status(args):
    """Show today's screen time."""
    config = load_config(args.config)
    db = open_db(args.db or config["daemon"]["db_path"])
    store = build_settings_store(db, args.settings or config["daemon"]["settings_path"])

    try:
        summary = compute_today(db, config)
        settings = store.read()
    except ScreentimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    limit = settings.screen_time_limit
    remaining = max(0.0, limit - summary.total_minutes)

    print(f"Screen Time Status")
    print(f"   Date: {datetime.now().date().isoformat()}")
    print()
    for app in sorted(summary.per_app, key=lambda a: a.duration_ms, reverse=True):
        print(f"   {app.app_id:<30} {format_minutes(app.minutes)}")
    if summary.per_app:
        print()
    print(f"   Total:  {format_minutes(summary.total_minutes)} used")
    print(f"           {format_minutes(remaining)} remaining of {format_minutes(limit)}")


def cmd_settings(args):
    """Show or change limit and notification frequency."""
    config = load_config(args.config)
    db = open_db(args.db or config["daemon"]["db_path"])
    store = build_settings_store(db, args.settings or config["daemon"]["settings_path"])

    if args.action == "show":
        try:
            settings = store.read()
        except SettingsIOError as e:
            print(f"Error: {e}", file=sys.stderr)
            print("Try: sudo screentimed settings show", file=sys.stderr)
            sys.exit(1)
        print(f"Screen time limit:      {settings.screen_time_limit} min")
        print(f"Notification frequency: {settings.notification_frequency} min")
        print(f"User has set limit:     {'yes' if settings.user_has_set_limit else 'no'}")
        print(f"Chain ID:               {settings.chain_id}")

    elif args.action == "set":
        try:
            applied = store.update(args.limit, args.frequency)
        except ValidationError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        except SettingsIOError as e:
            print(f"Error: {e}", file=sys.stderr)
            print("Try: sudo screentimed settings set ...", file=sys.stderr)
            sys.exit(1)

        if applied:
            print(f"Set limit to {args.limit} min, notifications every {args.frequency} min")
        else:
            print("Settings were changed concurrently; update not applied.", file=sys.stderr)
            sys.exit(1)


def cmd_events(args):
    """List recent focus events."""
    config = load_config(args.config)
    db = open_db(args.db or config["daemon"]["db_path"])

    events = db.get_recent_focus_events(limit=args.limit)
    if not events:
        print("No focus events recorded.")
        return

    print(f"{'Time':<20} {'Kind':<11} {'App'}")
    print("-" * 60)
    for event in reversed(events):
        when = datetime.fromtimestamp(event.timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")
        print(f"{when:<20} {event.kind.value:<11} {event.app_id}")


def cmd_maintenance(args):
    """Run database maintenance."""
    config = load_config(args.config)
    db = open_db(args.db or config["daemon"]["db_path"])

    print("Running maintenance...")
    result = db.maintenance(events_days=args.events_days,
                            messages_days=args.messages_days)

    print(f"\nBefore:")
    print(f"  Size: {result['before']['file_size_mb']:.2f} MB")
    print(f"  Events: {result['before']['events_count']}")
    print(f"  Messages: {result['before']['messages_count']}")

    print(f"\nDeleted:")
    for table, count in result['deleted'].items():
        print(f"  {table}: {count} rows")

    print(f"\nAfter:")
    print(f"  Size: {result['after']['file_size_mb']:.2f} MB")
    print(f"  Events: {result['after']['events_count']}")
    print(f"  Messages: {result['after']['messages_count']}")


def build_parser() -> tuple[argparse.ArgumentParser, argparse.ArgumentParser]:
    examples = """
Examples:
  # Set a 2 hour daily limit with reminders every 10 minutes
  screentimed settings set 120 10

  # Check today's usage
  screentimed status

  # Run the daemon (usually via systemd)
  screentimed run -c /etc/screentimed/config.yaml
"""
    parser = argparse.ArgumentParser(
        description="Daily screen time tracker",
        epilog=examples,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG,
                        help="Path to config file")
    parser.add_argument("--db", help="Path to database (overrides config)")
    parser.add_argument("--settings", help="Path to settings file (overrides config)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the daemon")
    subparsers.add_parser("status", help="Show today's screen time")

    settings_parser = subparsers.add_parser("settings", help="Show or change settings")
    settings_sub = settings_parser.add_subparsers(dest="action")
    settings_sub.add_parser("show", help="Show current settings")
    set_parser = settings_sub.add_parser("set", help="Set limit and frequency")
    set_parser.add_argument("limit", type=int, help="Daily limit in minutes (30-480)")
    set_parser.add_argument("frequency", type=int,
                            help="Notification frequency in minutes (5-60)")

    events_parser = subparsers.add_parser("events", help="List recent focus events")
    events_parser.add_argument("--limit", type=int, default=50,
                               help="Number of events to show")

    maint_parser = subparsers.add_parser("maintenance", help="Run database maintenance")
    maint_parser.add_argument("--events-days", type=int, default=30,
                              help="Keep focus events for this many days")
    maint_parser.add_argument("--messages-days", type=int, default=7,
                              help="Keep message log for this many days")

    return parser, settings_parser


def main():
    parser, settings_parser = build_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command == "run":
        cmd_run(args)
    elif args.command == "status":
        cmd_status(args)
    elif args.command == "settings":
        if args.action:
            cmd_settings(args)
        else:
            settings_parser.print_help()
    elif args.command == "events":
        cmd_events(args)
    elif args.command == "maintenance":
        cmd_maintenance(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
