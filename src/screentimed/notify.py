"""
Desktop notification delivery for screentimed.

Backends are tried in priority order:
1. NotifySendBackend - notify-send run as the target user (daemon runs as root)
2. FreedesktopBackend - org.freedesktop.Notifications on the session bus
3. LogOnlyBackend - always available, just logs
"""

import logging
import os
import pwd
import subprocess
from typing import Optional, Protocol, runtime_checkable

log = logging.getLogger("screentimed.notify")

try:
    import dbus
    import dbus.bus
    DBUS_AVAILABLE = True
except ImportError:
    DBUS_AVAILABLE = False
    log.debug("dbus module not available")

APP_NAME = "screentimed"

URGENCY_LOW = 0
URGENCY_NORMAL = 1
URGENCY_CRITICAL = 2

URGENCY_NAMES = {URGENCY_LOW: "low", URGENCY_NORMAL: "normal", URGENCY_CRITICAL: "critical"}


@runtime_checkable
class NotificationBackend(Protocol):
    """Protocol for notification delivery backends."""

    @property
    def name(self) -> str:
        ...

    def is_available(self) -> bool:
        ...

    def send(
        self,
        title: str,
        body: str,
        urgency: int = URGENCY_NORMAL,
        icon: str = "dialog-information",
        replaces_id: int = 0,
        timeout: int = -1,
    ) -> int:
        """
        Send a notification.

        Returns notification ID (>0) on success, 0 on failure, and a
        negative value when delivered without an ID that can be replaced.
        """
        ...

    def close(self, notification_id: int) -> bool:
        ...


class NotifySendBackend:
    """
    Runs notify-send as the target user via runuser.

    Root cannot talk to a user's session bus directly, so the command is
    run inside the user's runtime environment instead.
    """

    def __init__(self, username: str, app_name: str = APP_NAME):
        self.username = username
        self.app_name = app_name
        self._uid = None
        self._available = False

        try:
            self._uid = pwd.getpwnam(username).pw_uid
            if os.path.isdir(f"/run/user/{self._uid}"):
                self._available = True
        except KeyError:
            log.warning(f"User {username} not found")

    @property
    def name(self) -> str:
        return f"notify-send@{self.username}"

    def is_available(self) -> bool:
        return self._available

    def send(
        self,
        title: str,
        body: str,
        urgency: int = URGENCY_NORMAL,
        icon: str = "dialog-information",
        replaces_id: int = 0,
        timeout: int = -1,
    ) -> int:
        if not self._available:
            return 0

        cmd = [
            "runuser", "-u", self.username, "--",
            "notify-send",
            "--app-name", self.app_name,
            "--urgency", URGENCY_NAMES.get(urgency, "normal"),
            "--icon", icon,
            "--print-id",
        ]
        if replaces_id > 0:
            cmd += ["--replace-id", str(replaces_id)]
        cmd += [title, body]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                timeout=5,
                env={
                    "XDG_RUNTIME_DIR": f"/run/user/{self._uid}",
                    "DBUS_SESSION_BUS_ADDRESS": f"unix:path=/run/user/{self._uid}/bus",
                }
            )
        except subprocess.TimeoutExpired:
            log.warning(f"notify-send timed out for {self.username}")
            return 0
        except OSError as e:
            log.error(f"Failed to run notify-send for {self.username}: {e}")
            return 0

        if result.returncode != 0:
            log.warning(f"notify-send failed: {result.stderr.decode().strip()}")
            return 0

        log.debug(f"Sent notification to {self.username}: {title}")
        try:
            return int(result.stdout.decode().strip())
        except ValueError:
            # Delivered, but no ID to replace or close later
            log.debug(f"notify-send printed no notification ID: {result.stdout!r}")
            return -1

    def close(self, notification_id: int) -> bool:
        return False


class FreedesktopBackend:
    """Standard freedesktop.org notifications over D-Bus."""

    DBUS_SERVICE = "org.freedesktop.Notifications"
    DBUS_PATH = "/org/freedesktop/Notifications"
    DBUS_INTERFACE = "org.freedesktop.Notifications"

    def __init__(self, app_name: str = APP_NAME, bus_address: Optional[str] = None):
        self.app_name = app_name
        self._bus_address = bus_address
        self._interface = None
        self._server_name = None
        self._available = False

        if DBUS_AVAILABLE:
            self._connect()

    def _connect(self) -> bool:
        """Connect to the session bus and notification service."""
        try:
            if self._bus_address:
                bus = dbus.bus.BusConnection(self._bus_address)
            else:
                bus = dbus.SessionBus()
            notify_obj = bus.get_object(self.DBUS_SERVICE, self.DBUS_PATH)
            self._interface = dbus.Interface(notify_obj, self.DBUS_INTERFACE)

            info = self._interface.GetServerInformation()
            self._server_name = str(info[0])
            log.info(f"Connected to notification server: {self._server_name}")

            self._available = True
            return True

        except dbus.exceptions.DBusException as e:
            log.warning(f"Could not connect to notification service: {e}")
            self._available = False
            return False

    @property
    def name(self) -> str:
        return "freedesktop"

    @property
    def server_name(self) -> Optional[str]:
        return self._server_name

    def is_available(self) -> bool:
        return self._available

    def send(
        self,
        title: str,
        body: str,
        urgency: int = URGENCY_NORMAL,
        icon: str = "dialog-information",
        replaces_id: int = 0,
        timeout: int = -1,
    ) -> int:
        if not self._available:
            return 0

        hints = {'urgency': dbus.Byte(urgency)}

        try:
            notification_id = self._interface.Notify(
                self.app_name, replaces_id, icon, title, body, [], hints, timeout
            )
            log.debug(f"Sent notification {notification_id}: {title}")
            return int(notification_id)
        except dbus.exceptions.DBusException as e:
            log.error(f"Failed to send notification: {e}")
            return 0

    def close(self, notification_id: int) -> bool:
        if not self._available or notification_id <= 0:
            return False

        try:
            self._interface.CloseNotification(notification_id)
            return True
        except dbus.exceptions.DBusException:
            return False


class LogOnlyBackend:
    """Fallback backend that just logs notifications."""

    @property
    def name(self) -> str:
        return "log"

    def is_available(self) -> bool:
        return True

    def send(
        self,
        title: str,
        body: str,
        urgency: int = URGENCY_NORMAL,
        icon: str = "dialog-information",
        replaces_id: int = 0,
        timeout: int = -1,
    ) -> int:
        log.info(f"[{URGENCY_NAMES.get(urgency, '?').upper()}] {title}: {body}")
        # Negative ID marks a notification nobody can replace or close
        return -1

    def close(self, notification_id: int) -> bool:
        return True


class NotificationDispatcher:
    """
    Sends through the first backend that accepts a notification.

    A per-user notify-send backend is tried first when a target user is
    given, then the default backends in order.
    """

    def __init__(self, app_name: str = APP_NAME,
                 backends: Optional[list] = None):
        self.app_name = app_name
        if backends is None:
            backends = [FreedesktopBackend(app_name), LogOnlyBackend()]
        self.backends: list[NotificationBackend] = backends
        self._user_backends: dict[str, NotifySendBackend] = {}
        # notification_id -> backend that issued it
        self._issued: dict[int, NotificationBackend] = {}

    def _get_user_backend(self, username: str) -> Optional[NotifySendBackend]:
        """Get or create the notify-send backend for a user."""
        backend = self._user_backends.get(username)
        if backend and backend.is_available():
            return backend

        backend = NotifySendBackend(username, self.app_name)
        if backend.is_available():
            self._user_backends[username] = backend
            log.info(f"Created notify-send backend for {username}")
            return backend
        self._user_backends.pop(username, None)
        return None

    @property
    def backend_name(self) -> str:
        for backend in self.backends:
            if backend.is_available():
                return backend.name
        return "none"

    def send(
        self,
        title: str,
        body: str,
        urgency: int = URGENCY_NORMAL,
        icon: str = "dialog-information",
        replaces_id: int = 0,
        timeout: int = -1,
        target_user: Optional[str] = None,
    ) -> tuple[int, str]:
        """
        Send through the first backend that succeeds.

        Returns (notification_id, backend_name); (0, "failed") if none did.
        """
        candidates = []
        if target_user:
            user_backend = self._get_user_backend(target_user)
            if user_backend:
                candidates.append(user_backend)
        candidates.extend(b for b in self.backends if b.is_available())

        for backend in candidates:
            result = backend.send(title, body, urgency, icon, replaces_id, timeout)
            if result != 0:
                self._issued[result] = backend
                return result, backend.name
        return 0, "failed"

    def close(self, notification_id: int) -> bool:
        """Close a notification via the backend that sent it."""
        backend = self._issued.pop(notification_id, None)
        if backend is None:
            return False
        return backend.close(notification_id)
