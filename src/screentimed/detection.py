"""
Focused window detection.

Resolves the app that currently has focus for a desktop user by asking
xdotool for the active window's PID (run as the target user, since root
cannot reach the user's display directly) and naming it with psutil.
"""

import logging
import os
import pwd
import subprocess
from typing import Optional

import psutil

log = logging.getLogger(__name__)

DISPLAY_ENV_KEYS = ('DISPLAY', 'WAYLAND_DISPLAY', 'DBUS_SESSION_BUS_ADDRESS', 'XDG_RUNTIME_DIR')


def get_user_display_env(username: str) -> Optional[dict]:
    """
    Get the GUI environment of a user's running session.

    Scans the user's processes for one that carries DISPLAY or
    WAYLAND_DISPLAY. Returns None when the user has no graphical session.
    """
    for proc in psutil.process_iter(['pid', 'username', 'environ']):
        try:
            if proc.info['username'] != username:
                continue
            penv = proc.info.get('environ') or {}
            if 'DISPLAY' in penv or 'WAYLAND_DISPLAY' in penv:
                return {k: v for k, v in penv.items() if k in DISPLAY_ENV_KEYS}
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return None


def get_active_window_pid(username: str) -> Optional[int]:
    """Get the PID owning the focused window, or None."""
    display_env = get_user_display_env(username)
    if not display_env:
        log.debug("No graphical session for %s", username)
        return None

    env = os.environ.copy()
    env.update(display_env)

    cmd = ['xdotool', 'getactivewindow', 'getwindowpid']
    if os.geteuid() == 0 and pwd.getpwuid(0).pw_name != username:
        cmd = ['sudo', '-u', username, '--preserve-env=DISPLAY,XAUTHORITY'] + cmd

    try:
        result = subprocess.run(cmd, capture_output=True, text=True,
                                timeout=5, env=env)
    except subprocess.TimeoutExpired:
        log.debug("xdotool timed out for %s", username)
        return None
    except FileNotFoundError:
        log.debug("xdotool not found")
        return None

    if result.returncode != 0:
        log.debug("xdotool failed: %s", result.stderr.strip())
        return None

    try:
        return int(result.stdout.strip())
    except ValueError:
        return None


def get_active_app(username: str) -> Optional[str]:
    """Get the process name of the focused window's owner."""
    pid = get_active_window_pid(username)
    if pid is None:
        return None

    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        log.debug("Could not name PID %d", pid)
        return None
