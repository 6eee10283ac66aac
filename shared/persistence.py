"""
Persistence Port: the storage-agnostic contract every service depends on.

Two implementations exist and must be indistinguishable to callers:
- LocalDataStore (shared.data_store): in-memory collections with a JSON snapshot
- RemoteDataStore (shared.remote_store): a PostgREST-style HTTP API

Both raise the same AppError subclasses for the same conditions
(NotFoundError, AppointmentCollisionError, ForbiddenError). The active
implementation is chosen once at startup by create_data_store() and injected
into the services; nothing else branches on the backend.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from shared.config import Settings
from shared.models import (
    Appointment,
    Conversation,
    Message,
    Notification,
    Provider,
    User,
)

logger = logging.getLogger("persistence")


class PersistencePort(ABC):
    """Async storage contract shared by the local and remote backends."""

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @abstractmethod
    async def init(self) -> None:
        """Load existing state or seed it. Safe to call more than once."""

    @abstractmethod
    async def save(self) -> None:
        """Persist pending state. A no-op where every write is already durable."""

    async def close(self) -> None:
        """Release resources (connections, files)."""

    # =========================================================================
    # Notifications
    # =========================================================================

    @abstractmethod
    async def insert_notification(self, notification: Notification) -> Notification: ...

    @abstractmethod
    async def list_notifications(self, user_id: str, limit: int) -> list[Notification]:
        """Newest first, at most ``limit`` records."""

    @abstractmethod
    async def count_unread_notifications(self, user_id: str) -> int: ...

    @abstractmethod
    async def mark_notification_read(self, notification_id: str) -> bool:
        """Flip is_read false->true. Returns True only if the record changed."""

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: str) -> int:
        """Returns how many records changed."""

    @abstractmethod
    async def delete_notification(self, notification_id: str) -> bool: ...

    # =========================================================================
    # Conversations and messages
    # =========================================================================

    @abstractmethod
    async def find_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """Lookup by unordered pair."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    @abstractmethod
    async def insert_conversation(self, conversation: Conversation) -> Conversation: ...

    @abstractmethod
    async def list_conversations(self, user_id: Optional[str] = None) -> list[Conversation]:
        """Newest last_message_at first, optionally only those involving user_id."""

    @abstractmethod
    async def touch_conversation(self, conversation_id: str, last_message_at: datetime) -> None:
        """Advance last_message_at; never moves it backwards."""

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        """Remove the conversation and all of its messages."""

    @abstractmethod
    async def insert_message(self, message: Message) -> Message: ...

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> list[Message]:
        """Ascending created_at, insertion order on ties."""

    @abstractmethod
    async def mark_messages_read(self, conversation_id: str, user_id: str) -> int:
        """Mark unread messages addressed to user_id. Returns how many changed."""

    @abstractmethod
    async def count_unread_messages(self, user_id: str) -> int: ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> bool: ...

    @abstractmethod
    async def delete_messages_for_conversation(self, conversation_id: str) -> int: ...

    # =========================================================================
    # Appointments
    # =========================================================================

    @abstractmethod
    async def book_appointment(self, appointment: Appointment) -> Appointment:
        """
        Atomically check the provider's schedule and insert.

        Raises:
            AppointmentCollisionError: an active appointment of the same
                provider overlaps [date_time, date_time + duration)
        """

    @abstractmethod
    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]: ...

    @abstractmethod
    async def list_appointments(
        self,
        provider_ids: Optional[list[str]] = None,
        client_id: Optional[str] = None,
    ) -> list[Appointment]:
        """All appointments, optionally filtered. Order is unspecified."""

    @abstractmethod
    async def update_appointment(
        self,
        appointment_id: str,
        changes: dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Appointment:
        """
        Apply field changes.

        With ``expected_status`` the write only happens if the stored status
        still equals it, as one atomic compare-and-set.

        Raises:
            NotFoundError: no appointment with that id
            InvalidTransitionError: the stored status differs from expected_status
        """

    @abstractmethod
    async def reschedule_appointment(
        self,
        appointment_id: str,
        new_start: datetime,
        expected_status: Optional[str] = None,
    ) -> Appointment:
        """
        Move an appointment, collision-checked against the provider's other
        active appointments, and return it to PENDING.

        Raises:
            NotFoundError: no appointment with that id
            InvalidTransitionError: the stored status differs from expected_status
            AppointmentCollisionError: the new slot is taken
        """

    # =========================================================================
    # Reference data
    # =========================================================================

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def get_provider(self, provider_id: str) -> Optional[Provider]: ...

    @abstractmethod
    async def list_providers_for_user(self, user_id: str) -> list[Provider]:
        """Providers where provider.user_id == user_id or provider.id == user_id."""


def create_data_store(settings: Settings) -> PersistencePort:
    """
    Pick the backend from the static USE_REMOTE_STORE flag.

    Called once at startup; the returned store is passed to every service.
    """
    if settings.use_remote_store:
        from shared.remote_store import RemoteDataStore

        logger.info(f"Using remote store at {settings.remote_api_url}")
        return RemoteDataStore(
            base_url=settings.remote_api_url,
            api_key=settings.remote_api_key,
            timeout=settings.remote_timeout_seconds,
        )

    from shared.data_store import LocalDataStore

    logger.info(f"Using local store at {settings.store_path}")
    return LocalDataStore(store_path=settings.store_path, seed_path=settings.seed_path)
