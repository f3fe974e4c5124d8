"""Post-commit side-effect buffer.

Services queue notifications and activity events here while the settlement
transaction is open. ``dispatch`` is called only after a successful commit;
each delivery failure is logged and swallowed so a flaky push service can
never undo or block a settlement.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from barter_settlement.domain.collaborators import ActivityEvent, Notification
from barter_settlement.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from barter_settlement.domain.collaborators import ActivityFeed, NotificationSink
    from barter_settlement.domain.enums import NotificationEvent

logger = get_logger(__name__)


class Outbox:
    def __init__(self) -> None:
        self.notifications: list[Notification] = []
        self.activity: list[ActivityEvent] = []

    def notify(
        self,
        user_id: uuid.UUID,
        event_type: NotificationEvent,
        **payload: Any,
    ) -> None:
        self.notifications.append(Notification(user_id, event_type, payload))

    def record_activity(self, event: ActivityEvent) -> None:
        self.activity.append(event)

    def clear(self) -> None:
        self.notifications.clear()
        self.activity.clear()

    async def dispatch(self, sink: NotificationSink, feed: ActivityFeed) -> int:
        """Deliver everything queued, then empty the buffer. Returns failures."""
        notifications, activity = list(self.notifications), list(self.activity)
        self.clear()
        failures = 0

        for note in notifications:
            try:
                await sink.notify(note.user_id, note.event_type, note.payload)
            except Exception:
                failures += 1
                logger.warning(
                    "outbox.notification_failed",
                    user_id=str(note.user_id),
                    event_type=str(note.event_type),
                    exc_info=True,
                )

        for event in activity:
            try:
                await feed.record(event)
            except Exception:
                failures += 1
                logger.warning("outbox.activity_failed", kind=event.kind, exc_info=True)

        return failures
