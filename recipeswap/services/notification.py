from datetime import UTC, datetime
from uuid import uuid4

import structlog
from neo4j import AsyncManagedTransaction
from pydantic import UUID4

from recipeswap.db import DatabaseManager
from recipeswap.models.notification import Notification, NotificationKind

logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Base exception for notification-related errors."""

    pass


class NotificationService:
    """Service for storing and reading comment activity notifications.

    Comment trees hand notifications to :meth:`notify` without awaiting the
    outcome; the notification panel reads them back through
    :meth:`get_unread_count` and :meth:`mark_all_read`.
    """

    def __init__(self) -> None:
        self.logger = logger.bind(service="notification_service")

    async def notify(
        self,
        recipient_id: UUID4,
        kind: NotificationKind,
        reference_id: UUID4,
        from_user_id: UUID4,
    ) -> Notification:
        """Create a notification for a user.

        Args:
            recipient_id: ID of the user to notify
            kind: What happened
            reference_id: ID of the recipe or comment the notification is about
            from_user_id: ID of the user who triggered it

        Returns:
            The stored notification

        Raises:
            NotificationError: If the notification cannot be created
        """
        notification = Notification(
            notification_id=uuid4(),
            kind=kind,
            recipient_id=recipient_id,
            from_user_id=from_user_id,
            reference_id=reference_id,
            created_at=datetime.now(UTC),
        )
        try:
            db_manager = DatabaseManager()
            async with db_manager.driver.session(
                database=db_manager.database
            ) as session:
                await session.execute_write(self._create_notification, notification)
        except Exception as e:
            raise NotificationError(f"Failed to create notification: {str(e)}")

        self.logger.info(
            "notification_created",
            notification_id=str(notification.notification_id),
            kind=kind.value,
            recipient_id=str(recipient_id),
        )
        return notification

    async def _create_notification(
        self, tx: AsyncManagedTransaction, notification: Notification
    ) -> None:
        query = """
        CREATE (notification:Notification {
            notification_id: $notification_id,
            kind: $kind,
            recipient_id: $recipient_id,
            from_user_id: $from_user_id,
            reference_id: $reference_id,
            is_read: false,
            created_at: $created_at
        })
        """
        await tx.run(
            query,
            notification_id=str(notification.notification_id),
            kind=notification.kind.value,
            recipient_id=str(notification.recipient_id),
            from_user_id=str(notification.from_user_id),
            reference_id=str(notification.reference_id),
            created_at=notification.created_at.isoformat(),
        )

    async def get_unread_count(self, user_id: UUID4) -> int:
        """Count a user's unread notifications.

        Raises:
            NotificationError: If the query fails
        """
        try:
            db_manager = DatabaseManager()
            async with db_manager.driver.session(
                database=db_manager.database
            ) as session:
                return await session.execute_read(self._get_unread_count, user_id)
        except Exception as e:
            raise NotificationError(f"Failed to count notifications: {str(e)}")

    async def _get_unread_count(
        self, tx: AsyncManagedTransaction, user_id: UUID4
    ) -> int:
        query = """
        MATCH (notification:Notification {recipient_id: $user_id, is_read: false})
        RETURN count(notification) AS unread
        """
        result = await tx.run(query, user_id=str(user_id))
        if record := await result.single():
            return int(record["unread"])
        return 0

    async def mark_all_read(self, user_id: UUID4) -> int:
        """Mark every unread notification of a user as read.

        Returns:
            Number of notifications that were marked

        Raises:
            NotificationError: If the update fails
        """
        try:
            db_manager = DatabaseManager()
            async with db_manager.driver.session(
                database=db_manager.database
            ) as session:
                return await session.execute_write(self._mark_all_read, user_id)
        except Exception as e:
            raise NotificationError(f"Failed to mark notifications read: {str(e)}")

    async def _mark_all_read(self, tx: AsyncManagedTransaction, user_id: UUID4) -> int:
        query = """
        MATCH (notification:Notification {recipient_id: $user_id, is_read: false})
        SET notification.is_read = true
        RETURN count(notification) AS marked
        """
        result = await tx.run(query, user_id=str(user_id))
        if record := await result.single():
            return int(record["marked"])
        return 0
