"""
Notification service.

Creates and manages per-user notification records and tells live listeners
about every change through the event hub.

Design decisions:
- One service owns all notification writes; messaging and booking call it
  instead of touching the store themselves
- Mark-read operations are idempotent and publish only when something changed
- create() raises like any primary action; create_safely() is the variant the
  other services use for side notices, so a failed notice never fails the
  action that triggered it
"""

import logging
from typing import Optional

from realtime import events
from realtime.event_hub import EventHub
from realtime.events import Topics
from shared.errors import ValidationError
from shared.ids import Clock, IdGenerator, RandomIdGenerator, utc_now
from shared.models import Notification, NotificationType
from shared.persistence import PersistencePort

logger = logging.getLogger("notification_service")

DEFAULT_LIST_LIMIT = 20


class NotificationService:
    """
    Per-user notifications backed by the Persistence Port.

    Example:
        service = NotificationService(store, hub)
        await service.create("user-1", "appointment", "Appointment Requested",
                             "Your appointment request was submitted successfully.",
                             link="/portal")
        await service.unread_count("user-1")   # 1
    """

    def __init__(
        self,
        data_store: PersistencePort,
        event_hub: EventHub,
        id_generator: Optional[IdGenerator] = None,
        clock: Optional[Clock] = None,
    ):
        self.data_store = data_store
        self.event_hub = event_hub
        self.id_generator = id_generator or RandomIdGenerator()
        self.clock = clock or utc_now

    async def create(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        link: Optional[str] = None,
    ) -> Notification:
        """
        Store a new unread notification and publish it.

        Raises:
            ValidationError: unknown notification type or missing user
        """
        if not user_id:
            raise ValidationError("Notification needs a recipient", {"operation": "create_notification"})
        try:
            notification_type = NotificationType(type)
        except ValueError:
            raise ValidationError(
                f"Unknown notification type: {type!r}",
                {"operation": "create_notification", "type": type},
            )

        notification = Notification(
            id=self.id_generator.new_id("notif"),
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            link=link,
            created_at=self.clock(),
        )
        stored = await self.data_store.insert_notification(notification)
        logger.info(f"Created {stored.type} notification {stored.id} for {user_id}")
        self._publish(events.notification_created(stored))
        return stored

    async def create_safely(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        link: Optional[str] = None,
    ) -> Optional[Notification]:
        """Like create(), but logs failures and returns None instead of raising."""
        try:
            return await self.create(user_id, type, title, message, link)
        except Exception as e:
            logger.error(f"Failed to create notification for {user_id}: {e}")
            return None

    async def list_notifications(self, user_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[Notification]:
        """Newest first, capped at ``limit``."""
        if limit <= 0:
            return []
        return await self.data_store.list_notifications(user_id, limit)

    async def unread_count(self, user_id: str) -> int:
        return await self.data_store.count_unread_notifications(user_id)

    async def mark_read(self, notification_id: str) -> bool:
        changed = await self.data_store.mark_notification_read(notification_id)
        if changed:
            self._publish(events.notification_updated(notification_id))
        return changed

    async def mark_all_read(self, user_id: str) -> int:
        count = await self.data_store.mark_all_notifications_read(user_id)
        if count > 0:
            logger.info(f"Marked {count} notification(s) read for {user_id}")
            self._publish(events.notifications_marked_all_read(user_id, count))
        return count

    async def delete(self, notification_id: str) -> bool:
        removed = await self.data_store.delete_notification(notification_id)
        if removed:
            self._publish(events.notification_deleted(notification_id))
        return removed

    def _publish(self, payload: dict) -> None:
        try:
            self.event_hub.publish(Topics.NOTIFICATIONS, payload)
        except Exception as e:
            logger.error(f"Failed to publish notification event: {e}")
