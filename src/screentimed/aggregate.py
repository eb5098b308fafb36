"""
Usage aggregation.

Filters reconstructed durations down to the apps that count as screen
time and totals them into a UsageSummary.
"""

import logging
from typing import Iterable, Protocol

from .models import AppDuration, UsageSummary

log = logging.getLogger("screentimed.aggregate")

# Shells and desktop session processes that own windows
# but are not "apps" the user spends time in.
DEFAULT_SYSTEM_APPS = frozenset({
    'bash', 'zsh', 'fish', 'sh', 'python', 'python3',
    'systemd', 'dbus-daemon', 'pipewire', 'pulseaudio',
    'plasmashell', 'kwin_x11', 'kwin_wayland', 'krunner',
    'gnome-shell', 'Xorg', 'Xwayland', 'xfdesktop', 'xfce4-panel',
    'polkit-kde-authentication-agent-1', 'ksmserver', 'lockscreen',
})

DEFAULT_SELF_APPS = frozenset({'screentimed'})


class AppClassifier(Protocol):
    """Decides which apps are left out of screen time."""

    def is_excluded(self, app_id: str) -> bool:
        ...

    def is_self(self, app_id: str) -> bool:
        ...


class SystemAppClassifier:
    """Name-based classifier with a built-in system app list."""

    def __init__(self, self_apps: Iterable[str] = DEFAULT_SELF_APPS,
                 system_apps: Iterable[str] = ()):
        self.self_apps = frozenset(self_apps)
        self.system_apps = DEFAULT_SYSTEM_APPS | frozenset(system_apps)

    def is_self(self, app_id: str) -> bool:
        return app_id in self.self_apps

    def is_excluded(self, app_id: str) -> bool:
        return self.is_self(app_id) or app_id in self.system_apps


def aggregate_usage(durations: dict[str, int], classifier: AppClassifier,
                    window_end: int) -> UsageSummary:
    """
    Build a summary from reconstructed durations.

    Excluded and zero-length apps are dropped in one pass so the total is
    always the exact sum of the per-app entries. Order follows the mapping.
    """
    per_app = []
    for app_id, duration_ms in durations.items():
        if classifier.is_self(app_id) or classifier.is_excluded(app_id):
            continue
        if duration_ms <= 0:
            continue
        per_app.append(AppDuration(app_id, duration_ms))

    summary = UsageSummary(
        total_ms=sum(app.duration_ms for app in per_app),
        per_app=per_app,
        window_end=window_end,
    )
    log.debug(f"Aggregated {len(per_app)} of {len(durations)} apps, "
              f"total {summary.total_minutes:.1f} min")
    return summary
