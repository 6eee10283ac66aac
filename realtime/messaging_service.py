"""
Messaging service.

Conversations pair exactly two participants; messages inside one are ordered
by created_at. Every send and every read publishes a "messages" event, and a
send also leaves a notification for the receiver.

Design decisions:
- At most one conversation per unordered pair. Lookup-then-create runs under
  a lock keyed by the pair so two concurrent calls cannot both create
- The receiver is always derived from the conversation, never trusted from
  the caller
- Sends within one conversation are serialised, and a message's created_at
  is strictly later than the conversation's last_message_at. Call order and
  created_at order agree even when the clock stalls or jumps backwards
- Locks are held per key only while in use (shared.locks.KeyedLock)
- Whether the caller may act for sender_id is decided by the access layer
  in front of this service
"""

import logging
from datetime import timedelta
from typing import Optional

from realtime import events
from realtime.event_hub import EventHub
from realtime.events import Topics
from realtime.notification_service import NotificationService
from shared.errors import NotFoundError, ValidationError
from shared.ids import Clock, IdGenerator, RandomIdGenerator, utc_now
from shared.locks import KeyedLock
from shared.models import Conversation, Message, NotificationType, UserRole
from shared.persistence import PersistencePort

logger = logging.getLogger("messaging_service")


# Where the receiver's "new message" notification points, by role
MESSAGE_LINKS = {
    UserRole.ADMIN.value: "/admin?tab=messages",
    UserRole.PROVIDER.value: "/console/support",
    UserRole.CLIENT.value: "/portal",
}
DEFAULT_MESSAGE_LINK = "/notifications"

# Smallest step between two messages of one conversation
MESSAGE_TICK = timedelta(microseconds=1)


class MessagingService:
    """
    Conversations and messages between two participants.

    Example:
        messaging = MessagingService(store, hub, notifications)
        conversation = await messaging.get_or_create_conversation("c1", "u-provider-1")
        await messaging.send_message(conversation.id, "c1", "Hello!")
        await messaging.unread_count("u-provider-1")   # 1
    """

    def __init__(
        self,
        data_store: PersistencePort,
        event_hub: EventHub,
        notifications: NotificationService,
        id_generator: Optional[IdGenerator] = None,
        clock: Optional[Clock] = None,
    ):
        self.data_store = data_store
        self.event_hub = event_hub
        self.notifications = notifications
        self.id_generator = id_generator or RandomIdGenerator()
        self.clock = clock or utc_now
        self._pair_locks = KeyedLock()
        self._send_locks = KeyedLock()

    # =========================================================================
    # Conversations
    # =========================================================================

    async def get_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        """
        Return the conversation for the unordered pair, creating it if needed.

        Raises:
            ValidationError: missing participant or user_a == user_b
        """
        if not user_a or not user_b:
            raise ValidationError(
                "A conversation needs two participants",
                {"operation": "get_or_create_conversation"},
            )
        if user_a == user_b:
            raise ValidationError(
                "Cannot start a conversation with yourself",
                {"operation": "get_or_create_conversation", "user_id": user_a},
            )

        async with self._pair_locks.hold(frozenset((user_a, user_b))):
            existing = await self.data_store.find_conversation(user_a, user_b)
            if existing is not None:
                return existing

            now = self.clock()
            conversation = Conversation(
                id=self.id_generator.new_id("conv"),
                participant_1_id=user_a,
                participant_2_id=user_b,
                created_at=now,
                last_message_at=now,
            )
            stored = await self.data_store.insert_conversation(conversation)
            logger.info(f"Created conversation {stored.id} between {user_a} and {user_b}")
            return stored

    async def get_conversations(self, user_id: Optional[str] = None) -> list[Conversation]:
        """Most recently active first; all conversations when user_id is None."""
        return await self.data_store.list_conversations(user_id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Remove the conversation together with all of its messages."""
        removed = await self.data_store.delete_conversation(conversation_id)
        if removed:
            logger.info(f"Deleted conversation {conversation_id}")
            self._publish(events.conversation_deleted(conversation_id))
        return removed

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(self, conversation_id: str, sender_id: str, text: str) -> Message:
        """
        Append a message and notify the other participant.

        Raises:
            NotFoundError: the conversation does not exist (nothing is written)
            ValidationError: empty text
        """
        content = (text or "").strip()

        async with self._send_locks.hold(conversation_id):
            conversation = await self.data_store.get_conversation(conversation_id)
            if conversation is None:
                raise NotFoundError(
                    f"Conversation {conversation_id} not found",
                    {"operation": "send_message", "conversation_id": conversation_id},
                )
            if not content:
                raise ValidationError(
                    "Message text cannot be empty",
                    {"operation": "send_message", "conversation_id": conversation_id},
                )

            created_at = self.clock()
            if created_at <= conversation.last_message_at:
                created_at = conversation.last_message_at + MESSAGE_TICK
            message = Message(
                id=self.id_generator.new_id("msg"),
                conversation_id=conversation_id,
                sender_id=sender_id,
                receiver_id=conversation.other_participant(sender_id),
                content=content,
                created_at=created_at,
            )
            stored = await self.data_store.insert_message(message)
            await self.data_store.touch_conversation(conversation_id, stored.created_at)
        logger.info(f"Message {stored.id} sent in {conversation_id} by {sender_id}")

        self._publish(events.message_sent(stored))
        await self.notifications.create_safely(
            stored.receiver_id,
            NotificationType.MESSAGE.value,
            "New Message",
            "You received a new message.",
            link=await self._message_link_for(stored.receiver_id),
        )
        return stored

    async def get_messages(self, conversation_id: str) -> list[Message]:
        """Oldest first."""
        return await self.data_store.list_messages(conversation_id)

    async def mark_as_read(self, conversation_id: str, user_id: str) -> int:
        """Mark every unread message addressed to user_id in the conversation."""
        count = await self.data_store.mark_messages_read(conversation_id, user_id)
        if count > 0:
            self._publish(events.messages_marked_read(conversation_id, user_id, count))
        return count

    async def unread_count(self, user_id: str) -> int:
        return await self.data_store.count_unread_messages(user_id)

    async def delete_message(self, message_id: str) -> bool:
        removed = await self.data_store.delete_message(message_id)
        if removed:
            self._publish(events.message_deleted(message_id))
        return removed

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _message_link_for(self, user_id: str) -> str:
        try:
            user = await self.data_store.get_user(user_id)
        except Exception as e:
            logger.warning(f"Could not look up {user_id} for notification link: {e}")
            return DEFAULT_MESSAGE_LINK
        if user is None:
            return DEFAULT_MESSAGE_LINK
        return MESSAGE_LINKS.get(user.role, DEFAULT_MESSAGE_LINK)

    def _publish(self, payload: dict) -> None:
        try:
            self.event_hub.publish(Topics.MESSAGES, payload)
        except Exception as e:
            logger.error(f"Failed to publish message event: {e}")
