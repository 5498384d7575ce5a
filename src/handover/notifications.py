"""Notification sinks for handover notices.

Delivery is best-effort: the engine schedules notify() as a detached task
and only logs failures.
"""

import logging
import uuid
from typing import Optional

from src.handover.transfers.models import utcnow
from src.handover.transfers.repository import DatabaseError, PostgresDatabase
from src.handover.transfers.stores import NotificationKind


logger = logging.getLogger(__name__)


class LoggingNotificationSink:
    """Writes notifications to the log instead of delivering them."""

    async def notify(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        message: str,
        action_url: Optional[str] = None,
    ) -> None:
        logger.info(
            "Notification: %s",
            title,
            extra={
                "user_id": user_id,
                "kind": kind.value,
                "notification_message": message,
                "action_url": action_url,
            },
        )


class PostgresNotificationSink:
    """Stores notifications in the notifications table for the web app to show.

    Attributes:
        database: Shared connection pool.
    """

    def __init__(self, database: PostgresDatabase):
        self.database = database

    async def notify(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        message: str,
        action_url: Optional[str] = None,
    ) -> None:
        """Insert one notification row.

        Raises:
            DatabaseError: If the insert fails.
        """
        try:
            async with self.database.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO notifications (
                        id, user_id, kind, title, message, action_url, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    str(uuid.uuid4()),
                    user_id,
                    kind.value,
                    title,
                    message,
                    action_url,
                    utcnow(),
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to store notification: {e}",
                original_error=e,
            ) from e
