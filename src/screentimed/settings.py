"""
Settings consistency store.

User settings live in two places: a durable JSON file that is the source
of truth, and a cache in the activity database that the write path keeps
in step with it. Every update carries a chain ID; an update whose chain ID
does not sort after the durable copy's is dropped, so the newest logical
write wins regardless of arrival order.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from .db import ActivityDB
from .errors import SettingsIOError, ValidationError

log = logging.getLogger("screentimed.settings")

DEFAULT_SETTINGS_PATH = "/var/lib/screentimed/settings.json"

# Minutes
MIN_SCREEN_TIME_LIMIT = 30
MAX_SCREEN_TIME_LIMIT = 480
DEFAULT_SCREEN_TIME_LIMIT = 180

MIN_NOTIFICATION_FREQUENCY = 5
MAX_NOTIFICATION_FREQUENCY = 60
DEFAULT_NOTIFICATION_FREQUENCY = 5

INITIAL_CHAIN_PREFIX = "INITIAL_CHAIN_"
SETTINGS_CHAIN_PREFIX = "SETTINGS_CHAIN_"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Settings:
    """User-configurable limits plus arbitration metadata."""
    screen_time_limit: int = DEFAULT_SCREEN_TIME_LIMIT
    notification_frequency: int = DEFAULT_NOTIFICATION_FREQUENCY
    user_has_set_limit: bool = False
    chain_id: str = ""
    last_update_ms: int = 0

    @classmethod
    def defaults(cls, now_ms: Optional[int] = None) -> "Settings":
        if now_ms is None:
            now_ms = _now_ms()
        return cls(chain_id=f"{INITIAL_CHAIN_PREFIX}{now_ms}", last_update_ms=now_ms)

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        """Build from the persisted layout. Raises on missing/bad fields."""
        return cls(
            screen_time_limit=int(data["screenTimeLimit"]),
            notification_frequency=int(data["notificationFrequency"]),
            user_has_set_limit=_to_bool(data.get("userHasSetLimit", False)),
            chain_id=str(data["chainId"]),
            last_update_ms=int(data.get("lastUpdateTime", 0)),
        )

    def to_dict(self) -> dict:
        return {
            "screenTimeLimit": self.screen_time_limit,
            "notificationFrequency": self.notification_frequency,
            "userHasSetLimit": self.user_has_set_limit,
            "chainId": self.chain_id,
            "lastUpdateTime": self.last_update_ms,
        }

    def same_values(self, other: "Settings") -> bool:
        """Compare the fields the verification pass checks."""
        return (self.screen_time_limit == other.screen_time_limit
                and self.notification_frequency == other.notification_frequency
                and self.user_has_set_limit == other.user_has_set_limit
                and self.chain_id == other.chain_id)


def _to_bool(value) -> bool:
    if isinstance(value, str):
        return value.lower() in ("1", "true", "yes")
    return bool(value)


def validate(limit: int, frequency: int):
    """Raise ValidationError when either value is out of range."""
    if not MIN_SCREEN_TIME_LIMIT <= limit <= MAX_SCREEN_TIME_LIMIT:
        raise ValidationError(
            f"Invalid screen time limit: {limit} "
            f"(must be {MIN_SCREEN_TIME_LIMIT}-{MAX_SCREEN_TIME_LIMIT} minutes)")
    if not MIN_NOTIFICATION_FREQUENCY <= frequency <= MAX_NOTIFICATION_FREQUENCY:
        raise ValidationError(
            f"Invalid notification frequency: {frequency} "
            f"(must be {MIN_NOTIFICATION_FREQUENCY}-{MAX_NOTIFICATION_FREQUENCY} minutes)")


class ChainClock:
    """
    Issues chain IDs that sort after every ID this clock issued before.

    IDs are timestamp derived and zero padded so string order matches
    numeric order; a stalled or rewound wall clock still moves forward.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self.clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            self._last = max(self.clock(), self._last + 1)
            return f"{SETTINGS_CHAIN_PREFIX}{self._last:016d}"


class SettingsStorage(Protocol):
    def read(self) -> Optional[Settings]:
        """Return the stored settings, or None when absent."""
        ...

    def write(self, settings: Settings) -> None:
        ...


class JsonSettingsFile:
    """Durable copy: a JSON document replaced atomically on write."""

    def __init__(self, path: str = DEFAULT_SETTINGS_PATH):
        self.path = Path(path)

    def read(self) -> Optional[Settings]:
        if not self.path.exists():
            return None
        try:
            with open(self.path) as f:
                return Settings.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            log.warning(f"Corrupted settings file {self.path}, treating as absent: {e}")
            return None

    def write(self, settings: Settings) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent,
                                            prefix=".settings-", suffix=".tmp")
            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump(settings.to_dict(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise SettingsIOError(f"Could not write {self.path}: {e}") from e
        log.debug(f"Settings saved to {self.path}: {settings.to_dict()}")


class DatabaseSettingsCache:
    """Cache copy: key/value rows in the activity database."""

    def __init__(self, db: ActivityDB):
        self.db = db

    def read(self) -> Optional[Settings]:
        values = self.db.get_cached_settings()
        if not values:
            return None
        try:
            return Settings.from_dict(values)
        except (KeyError, TypeError, ValueError) as e:
            log.warning(f"Incomplete settings cache: {e}")
            return None

    def write(self, settings: Settings) -> None:
        self.db.set_cached_settings(settings.to_dict())


SettingsListener = Callable[[Settings], None]


class SettingsStore:
    """
    Arbitrates between the cache and durable copies of Settings.

    Updates run start to finish under one lock. Reads go straight to the
    durable file, which is only ever replaced atomically.
    """

    def __init__(self, durable: SettingsStorage, cache: SettingsStorage,
                 clock: Optional[ChainClock] = None):
        self.durable = durable
        self.cache = cache
        self.clock = clock or ChainClock()
        self._lock = threading.RLock()
        self._listeners: list[SettingsListener] = []
        self._last_broadcast_chain: Optional[str] = None

    def add_listener(self, listener: SettingsListener):
        self._listeners.append(listener)

    def read(self) -> Settings:
        """Current settings, initializing defaults on first use."""
        settings = self.durable.read()
        if settings is not None:
            return settings

        with self._lock:
            # Another thread may have initialized while we waited
            settings = self.durable.read()
            if settings is not None:
                return settings

            cached = self.cache.read()
            settings = cached if cached is not None else Settings.defaults()
            log.info(f"Initializing settings file with chain {settings.chain_id}")
            self.durable.write(settings)
            if cached is None:
                self.cache.write(settings)
            return settings

    def update(self, limit: int, frequency: int,
               chain_id: Optional[str] = None) -> bool:
        """
        Apply new limit and frequency.

        Returns False when the update lost arbitration to a newer chain ID.
        Raises ValidationError (nothing written) or SettingsIOError.
        """
        with self._lock:
            validate(limit, frequency)

            new_chain_id = chain_id or self.clock.next()
            current = self.durable.read()
            current_chain_id = current.chain_id if current else ""

            if new_chain_id <= current_chain_id:
                log.info(f"[{new_chain_id}] Dropping stale settings update "
                         f"(current chain {current_chain_id})")
                return False

            settings = Settings(
                screen_time_limit=limit,
                notification_frequency=frequency,
                user_has_set_limit=True,
                chain_id=new_chain_id,
                last_update_ms=_now_ms(),
            )

            self.cache.write(settings)
            self.durable.write(settings)

            settings = self._verify(new_chain_id) or settings
            log.info(f"[{new_chain_id}] Settings updated: limit={limit} min, "
                     f"frequency={frequency} min")

            self._broadcast(settings)
            return True

    def _verify(self, chain_id: str) -> Optional[Settings]:
        """Re-read both copies and repair the cache from the durable one."""
        durable = self.durable.read()
        cached = self.cache.read()

        if durable is None:
            log.error(f"[{chain_id}] Durable settings unreadable after write")
            return None

        if cached is None or not cached.same_values(durable):
            log.warning(f"[{chain_id}] Settings mismatch detected, "
                        f"cache={cached and cached.to_dict()} durable={durable.to_dict()}")
            self.cache.write(durable)
            log.info(f"[{chain_id}] Settings re-synchronized")

        return durable

    def refresh(self) -> Settings:
        """
        Re-read the durable copy and broadcast it if another process changed it.

        Listeners are only called directly by update() in this process; the
        daemon calls this to notice updates made by the CLI.
        """
        settings = self.read()
        if settings.chain_id != self._last_broadcast_chain:
            if self._last_broadcast_chain is not None:
                log.info(f"[{settings.chain_id}] Settings changed externally")
                self._broadcast(settings)
            else:
                self._last_broadcast_chain = settings.chain_id
        return settings

    def _broadcast(self, settings: Settings):
        self._last_broadcast_chain = settings.chain_id
        for listener in self._listeners:
            try:
                listener(settings)
            except Exception as e:
                log.error(f"Settings listener failed: {e}", exc_info=True)

    def repair(self) -> bool:
        """Bring the cache back in line with the durable copy. True if it changed."""
        with self._lock:
            durable = self.read()
            cached = self.cache.read()
            if cached is not None and cached.same_values(durable):
                return False
            log.warning(f"Settings mismatch detected, restoring cache to {durable.chain_id}")
            self.cache.write(durable)
            return True
