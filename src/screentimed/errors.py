"""Error kinds raised by screentimed components."""


class ScreentimeError(Exception):
    """Base class for screentimed errors."""


class PermissionDenied(ScreentimeError):
    """The event source refused access (usage access not granted)."""


class AdapterUnavailable(ScreentimeError):
    """The event source could not be reached. Transient; retried next cycle."""


class ValidationError(ScreentimeError, ValueError):
    """Settings input outside the accepted range."""


class SettingsIOError(ScreentimeError, OSError):
    """Durable settings write failed."""
