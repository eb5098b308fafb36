"""
Alert router for screentimed.

Renders AlertEvents into notification text and delivers them through the
NotificationDispatcher. All alerts share one notification slot, so a new
alert replaces whatever alert is still on screen.
"""

import logging
import re
from typing import Optional

from .db import ActivityDB
from .notify import NotificationDispatcher, URGENCY_CRITICAL, URGENCY_NORMAL
from .thresholds import AlertEvent, AlertKind

log = logging.getLogger("screentimed.router")

# intention -> (title, body, icon, urgency)
TEMPLATES = {
    AlertKind.APPROACHING_LIMIT: (
        "Screen Time Limit Approaching",
        "Total screen time: {total} minutes\n"
        "Daily limit: {limit} minutes\n"
        "{remaining} minutes remaining",
        "dialog-warning",
        URGENCY_NORMAL,
    ),
    AlertKind.LIMIT_REACHED: (
        "Screen Time Limit Reached",
        "Total screen time: {total} minutes\n"
        "Daily limit: {limit} minutes\n"
        "You have reached your daily limit!",
        "dialog-error",
        URGENCY_CRITICAL,
    ),
}


def render(template: str, context: dict) -> str:
    """Fill {variable} placeholders, leaving unknown ones as-is."""
    def replace_var(match):
        return context.get(match.group(1), match.group(0))

    return re.sub(r'\{(\w+)\}', replace_var, template)


class AlertRouter:
    """AlertSink that shows alerts as desktop notifications."""

    def __init__(self, dispatcher: NotificationDispatcher,
                 db: Optional[ActivityDB] = None, user: str = ""):
        self.dispatcher = dispatcher
        self.db = db
        self.user = user
        self._slot_id = 0

    def emit(self, event: AlertEvent) -> None:
        title, body, icon, urgency = TEMPLATES[event.kind]
        context = {
            'total': str(round(event.total_minutes)),
            'limit': str(event.limit),
            'remaining': str(max(0, round(event.remaining_minutes))),
        }
        title = render(title, context)
        body = render(body, context)

        notification_id, backend = self.dispatcher.send(
            title=title,
            body=body,
            urgency=urgency,
            icon=icon,
            replaces_id=max(self._slot_id, 0),
            timeout=0 if urgency == URGENCY_CRITICAL else -1,
            target_user=self.user or None,
        )
        if notification_id != 0:
            self._slot_id = notification_id
        else:
            log.warning(f"No backend delivered {event.kind.value}")

        self._log_message(event.kind.value, title, body, notification_id, backend)
        log.debug(f"Sent {event.kind.value} via {backend}: {title}")

    def clear(self) -> bool:
        """Dismiss the alert currently in the slot."""
        if self._slot_id > 0 and self.dispatcher.close(self._slot_id):
            self._slot_id = 0
            return True
        return False

    def _log_message(self, intention: str, title: str, body: str,
                     notification_id: int, backend: str):
        if self.db is None:
            return
        try:
            self.db.log_message(
                user=self.user,
                intention=intention,
                rendered_title=title,
                rendered_body=body,
                notification_id=notification_id,
                backend=backend,
            )
        except Exception as e:
            # Logging failure shouldn't break notifications
            log.error(f"Failed to log message: {e}")
