import logging
from datetime import datetime
from typing import Optional

from fallhelp.db.pool import persistence_errors
from fallhelp.shared.metrics import notifications_created_total
from fallhelp.shared.models import Notification, NotificationType

logger = logging.getLogger(__name__)

INSERT_NOTIFICATION_SQL = """
INSERT INTO notifications (user_id, event_id, type, title, message)
VALUES ($1, $2, $3, $4, $5)
ON CONFLICT (user_id, event_id) WHERE event_id IS NOT NULL
DO UPDATE SET title = EXCLUDED.title
RETURNING id, user_id, event_id, type, title, message, is_read, is_sent, sent_at
"""

MARK_SENT_SQL = """
UPDATE notifications
SET is_sent = true, sent_at = $2
WHERE id = ANY($1::text[])
"""


def notification_from_row(row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        event_id=row["event_id"],
        type=NotificationType(row["type"]),
        title=row["title"],
        message=row["message"],
        is_read=bool(row["is_read"]),
        is_sent=bool(row["is_sent"]),
        sent_at=row["sent_at"],
    )


class NotificationStore:
    """Caregiver inbox rows. One row per caregiver per event."""

    def __init__(self, pool):
        self.pool = pool

    async def create_notification(
        self,
        user_id: str,
        event_id: Optional[str],
        notification_type: NotificationType,
        title: str,
        message: str,
    ) -> Notification:
        with persistence_errors("create_notification"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    INSERT_NOTIFICATION_SQL,
                    user_id,
                    event_id,
                    notification_type.value,
                    title,
                    message,
                )
        notifications_created_total.labels(notification_type=notification_type.value).inc()
        return notification_from_row(row)

    async def mark_sent(self, notification_ids: list[str], sent_at: datetime) -> int:
        if not notification_ids:
            return 0
        with persistence_errors("mark_sent"):
            async with self.pool.acquire() as conn:
                result = await conn.execute(MARK_SENT_SQL, notification_ids, sent_at)
        try:
            return int(result.split()[-1])
        except (AttributeError, IndexError, ValueError):
            return 0
