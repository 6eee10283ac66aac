"""
Local persistence backend: in-memory collections with a durable JSON snapshot.

This is the disconnected/offline implementation of the Persistence Port.
It keeps every collection in memory and writes the whole snapshot to disk
after each mutation.

Design decisions:
- init() loads the snapshot if present, otherwise seeds from data/seed.json
- Every mutation is applied in memory first and then persisted. If the
  snapshot write fails the mutation is undone and the failure surfaces as
  AppError(UNKNOWN), so memory never holds a change the caller saw fail
- Snapshots are serialised on the event loop and written from a worker
  thread under a single save lock; a later save always carries a later
  snapshot. The file goes to a temp path and is swapped in with os.replace
- Rewriting the whole file per mutation is accepted at this store's scale
  (one practice's data, offline use)
- Booking holds a per-provider lock and performs the collision scan and the
  insert with no await in between. Status changes take the same lock and
  only apply when the stored status is still the one the caller read
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from shared.errors import (
    AppointmentCollisionError,
    InvalidTransitionError,
    NotFoundError,
    wrap_unexpected,
)
from shared.locks import KeyedLock
from shared.models import (
    Appointment,
    AppointmentStatus,
    Conversation,
    Message,
    Notification,
    Provider,
    User,
    ensure_utc,
)
from shared.persistence import PersistencePort
from shared.scheduling import collision_context, find_collision, sort_newest_first

logger = logging.getLogger("local_store")

COLLECTIONS = ("users", "providers", "conversations", "messages", "notifications", "appointments")


def _index_by_id(records: list, record_id: str) -> Optional[int]:
    for idx, record in enumerate(records):
        if record.id == record_id:
            return idx
    return None


def _discard(records: list, record_id: str) -> None:
    idx = _index_by_id(records, record_id)
    if idx is not None:
        del records[idx]


def _put_back(records: list, originals: list) -> None:
    """Restore records that were replaced in place."""
    for original in originals:
        idx = _index_by_id(records, original.id)
        if idx is not None:
            records[idx] = original


def _write_file(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(text)
    os.replace(tmp_path, path)


class LocalDataStore(PersistencePort):
    """
    Persistence Port backed by process memory and a JSON file.

    Example:
        store = LocalDataStore(store_path=Path("data/store.json"))
        await store.init()
        await store.insert_notification(notification)

    Pass ``store_path=None`` for a purely in-memory store (tests).
    """

    def __init__(self, store_path: Optional[Path] = None, seed_path: Optional[Path] = None):
        self.store_path = Path(store_path) if store_path else None
        self.seed_path = Path(seed_path) if seed_path else None

        self._users: dict[str, User] = {}
        self._providers: dict[str, Provider] = {}
        self._conversations: list[Conversation] = []
        self._messages: list[Message] = []
        self._notifications: list[Notification] = []
        self._appointments: list[Appointment] = []

        self._provider_locks = KeyedLock()
        self._save_lock = asyncio.Lock()
        self._initialized = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _read_json(self, path: Optional[Path]) -> Optional[dict]:
        if path is None or not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def load_snapshot(self, data: dict[str, list[dict]]) -> None:
        """Replace all collections with the given raw rows."""
        self._users = {u["id"]: User(**u) for u in data.get("users", [])}
        self._providers = {p["id"]: Provider(**p) for p in data.get("providers", [])}
        self._conversations = [Conversation(**c) for c in data.get("conversations", [])]
        self._messages = [Message(**m) for m in data.get("messages", [])]
        self._notifications = [Notification(**n) for n in data.get("notifications", [])]
        self._appointments = [Appointment(**a) for a in data.get("appointments", [])]

    def snapshot(self) -> dict[str, list[dict]]:
        return {
            "users": [u.to_row() for u in self._users.values()],
            "providers": [p.to_row() for p in self._providers.values()],
            "conversations": [c.to_row() for c in self._conversations],
            "messages": [m.to_row() for m in self._messages],
            "notifications": [n.to_row() for n in self._notifications],
            "appointments": [a.to_row() for a in self._appointments],
        }

    async def init(self) -> None:
        if self._initialized:
            return

        stored = self._read_json(self.store_path)
        if stored is not None:
            self.load_snapshot(stored)
            logger.info(f"Loaded snapshot from {self.store_path}")
        else:
            seed = self._read_json(self.seed_path)
            if seed is not None:
                self.load_snapshot(seed)
                logger.info(f"Seeded store from {self.seed_path}")
            await self.save()

        self._initialized = True

    async def save(self) -> None:
        if self.store_path is None:
            return
        async with self._save_lock:
            text = json.dumps(self.snapshot(), indent=2)
            await asyncio.to_thread(_write_file, self.store_path, text)

    async def _persist(self, operation: str, rollback: Callable[[], None]) -> None:
        """Save, or undo the in-memory change and raise AppError."""
        try:
            await self.save()
        except Exception as e:
            rollback()
            logger.error(f"Snapshot write failed during {operation}; change rolled back: {e}")
            raise wrap_unexpected(e, operation) from e

    def reset(self) -> None:
        """Drop all in-memory state (useful for tests)."""
        self.load_snapshot({})

    # =========================================================================
    # Notifications
    # =========================================================================

    async def insert_notification(self, notification: Notification) -> Notification:
        self._notifications.append(notification)
        await self._persist(
            "insert_notification",
            lambda: _discard(self._notifications, notification.id),
        )
        return notification

    async def list_notifications(self, user_id: str, limit: int) -> list[Notification]:
        owned = [n for n in self._notifications if n.user_id == user_id]
        return sort_newest_first(owned, lambda n: n.created_at)[:max(limit, 0)]

    async def count_unread_notifications(self, user_id: str) -> int:
        return sum(1 for n in self._notifications if n.user_id == user_id and not n.is_read)

    async def mark_notification_read(self, notification_id: str) -> bool:
        for idx, notification in enumerate(self._notifications):
            if notification.id == notification_id and not notification.is_read:
                self._notifications[idx] = notification.model_copy(update={"is_read": True})
                await self._persist(
                    "mark_notification_read",
                    lambda: _put_back(self._notifications, [notification]),
                )
                return True
        return False

    async def mark_all_notifications_read(self, user_id: str) -> int:
        originals = []
        for idx, notification in enumerate(self._notifications):
            if notification.user_id == user_id and not notification.is_read:
                originals.append(notification)
                self._notifications[idx] = notification.model_copy(update={"is_read": True})
        if originals:
            await self._persist(
                "mark_all_notifications_read",
                lambda: _put_back(self._notifications, originals),
            )
        return len(originals)

    async def delete_notification(self, notification_id: str) -> bool:
        idx = _index_by_id(self._notifications, notification_id)
        if idx is None:
            return False
        removed = self._notifications.pop(idx)
        await self._persist(
            "delete_notification",
            lambda: self._notifications.insert(idx, removed),
        )
        return True

    # =========================================================================
    # Conversations and messages
    # =========================================================================

    async def find_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.matches_pair(user_a, user_b):
                return conversation
        return None

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        existing = await self.find_conversation(conversation.participant_1_id, conversation.participant_2_id)
        if existing is not None:
            return existing
        self._conversations.append(conversation)
        await self._persist(
            "insert_conversation",
            lambda: _discard(self._conversations, conversation.id),
        )
        return conversation

    async def list_conversations(self, user_id: Optional[str] = None) -> list[Conversation]:
        source = self._conversations
        if user_id:
            source = [c for c in source if c.involves(user_id)]
        return sort_newest_first(source, lambda c: c.last_message_at)

    async def touch_conversation(self, conversation_id: str, last_message_at: datetime) -> None:
        last_message_at = ensure_utc(last_message_at)
        idx = _index_by_id(self._conversations, conversation_id)
        if idx is None:
            raise NotFoundError(
                "Conversation not found",
                {"operation": "touch_conversation", "conversation_id": conversation_id},
            )
        conversation = self._conversations[idx]
        if last_message_at > conversation.last_message_at:
            self._conversations[idx] = conversation.model_copy(
                update={"last_message_at": last_message_at}
            )
            await self._persist(
                "touch_conversation",
                lambda: _put_back(self._conversations, [conversation]),
            )

    async def delete_conversation(self, conversation_id: str) -> bool:
        idx = _index_by_id(self._conversations, conversation_id)
        removed_messages = [m for m in self._messages if m.conversation_id == conversation_id]
        if idx is None and not removed_messages:
            return False
        removed = self._conversations.pop(idx) if idx is not None else None
        self._messages[:] = [m for m in self._messages if m.conversation_id != conversation_id]

        def rollback() -> None:
            if removed is not None:
                self._conversations.insert(idx, removed)
            self._messages.extend(removed_messages)

        await self._persist("delete_conversation", rollback)
        return removed is not None

    async def insert_message(self, message: Message) -> Message:
        self._messages.append(message)
        await self._persist("insert_message", lambda: _discard(self._messages, message.id))
        return message

    async def list_messages(self, conversation_id: str) -> list[Message]:
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(
            (m for m in self._messages if m.conversation_id == conversation_id),
            key=lambda m: m.created_at,
        )

    async def mark_messages_read(self, conversation_id: str, user_id: str) -> int:
        originals = []
        for idx, message in enumerate(self._messages):
            if (
                message.conversation_id == conversation_id
                and message.receiver_id == user_id
                and not message.is_read
            ):
                originals.append(message)
                self._messages[idx] = message.model_copy(update={"is_read": True})
        if originals:
            await self._persist(
                "mark_messages_read",
                lambda: _put_back(self._messages, originals),
            )
        return len(originals)

    async def count_unread_messages(self, user_id: str) -> int:
        return sum(1 for m in self._messages if m.receiver_id == user_id and not m.is_read)

    async def delete_message(self, message_id: str) -> bool:
        idx = _index_by_id(self._messages, message_id)
        if idx is None:
            return False
        removed = self._messages.pop(idx)
        await self._persist("delete_message", lambda: self._messages.insert(idx, removed))
        return True

    async def delete_messages_for_conversation(self, conversation_id: str) -> int:
        removed = [m for m in self._messages if m.conversation_id == conversation_id]
        if not removed:
            return 0
        self._messages[:] = [m for m in self._messages if m.conversation_id != conversation_id]
        await self._persist(
            "delete_messages_for_conversation",
            lambda: self._messages.extend(removed),
        )
        return len(removed)

    # =========================================================================
    # Appointments
    # =========================================================================

    async def book_appointment(self, appointment: Appointment) -> Appointment:
        async with self._provider_locks.hold(appointment.provider_id):
            # Scan and insert without suspending in between
            conflict = find_collision(
                self._appointments,
                appointment.provider_id,
                appointment.date_time,
                appointment.duration_minutes,
            )
            if conflict is not None:
                raise AppointmentCollisionError(
                    context=collision_context(
                        appointment.provider_id,
                        appointment.date_time,
                        appointment.duration_minutes,
                        conflict,
                    )
                )
            self._appointments.append(appointment)
            await self._persist(
                "book_appointment",
                lambda: _discard(self._appointments, appointment.id),
            )
        return appointment

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        for appointment in self._appointments:
            if appointment.id == appointment_id:
                return appointment
        return None

    async def list_appointments(
        self,
        provider_ids: Optional[list[str]] = None,
        client_id: Optional[str] = None,
    ) -> list[Appointment]:
        results = list(self._appointments)
        if provider_ids is not None:
            wanted = set(provider_ids)
            results = [a for a in results if a.provider_id in wanted]
        if client_id is not None:
            results = [a for a in results if a.client_id == client_id]
        return results

    def _current(self, appointment_id: str, operation: str) -> Appointment:
        idx = _index_by_id(self._appointments, appointment_id)
        if idx is None:
            raise NotFoundError(
                "Appointment not found",
                {"operation": operation, "appointment_id": appointment_id},
            )
        return self._appointments[idx]

    def _check_expected(self, current: Appointment, expected_status: Optional[str], operation: str) -> None:
        if expected_status is not None and current.status != expected_status:
            raise InvalidTransitionError(
                f"Appointment {current.id} is {current.status}, no longer {expected_status}",
                {
                    "operation": operation,
                    "appointment_id": current.id,
                    "expected_status": expected_status,
                    "status": current.status,
                },
            )

    async def update_appointment(
        self,
        appointment_id: str,
        changes: dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Appointment:
        provider_id = self._current(appointment_id, "update_appointment").provider_id
        async with self._provider_locks.hold(provider_id):
            current = self._current(appointment_id, "update_appointment")
            self._check_expected(current, expected_status, "update_appointment")
            updated = Appointment.model_validate({**current.model_dump(), **changes})
            self._appointments[_index_by_id(self._appointments, appointment_id)] = updated
            await self._persist(
                "update_appointment",
                lambda: _put_back(self._appointments, [current]),
            )
        return updated

    async def reschedule_appointment(
        self,
        appointment_id: str,
        new_start: datetime,
        expected_status: Optional[str] = None,
    ) -> Appointment:
        new_start = ensure_utc(new_start)
        provider_id = self._current(appointment_id, "reschedule_appointment").provider_id

        async with self._provider_locks.hold(provider_id):
            current = self._current(appointment_id, "reschedule_appointment")
            self._check_expected(current, expected_status, "reschedule_appointment")
            conflict = find_collision(
                self._appointments,
                current.provider_id,
                new_start,
                current.duration_minutes,
                exclude_id=appointment_id,
            )
            if conflict is not None:
                raise AppointmentCollisionError(
                    "Requested reschedule slot is already booked.",
                    context=collision_context(
                        current.provider_id,
                        new_start,
                        current.duration_minutes,
                        conflict,
                        operation="reschedule_appointment",
                    ),
                )
            updated = current.model_copy(
                update={"date_time": new_start, "status": AppointmentStatus.PENDING.value}
            )
            self._appointments[_index_by_id(self._appointments, appointment_id)] = updated
            await self._persist(
                "reschedule_appointment",
                lambda: _put_back(self._appointments, [current]),
            )
        return updated

    # =========================================================================
    # Reference data
    # =========================================================================

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        return self._providers.get(provider_id)

    async def list_providers_for_user(self, user_id: str) -> list[Provider]:
        return [
            p for p in self._providers.values()
            if p.user_id == user_id or p.id == user_id
        ]

    def add_user(self, user: User) -> None:
        """Register reference data directly (seeding and tests)."""
        self._users[user.id] = user

    def add_provider(self, provider: Provider) -> None:
        self._providers[provider.id] = provider
