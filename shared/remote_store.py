"""
Remote persistence backend: a PostgREST-style HTTP API reached with httpx.

Table endpoints live under ``/rest/v1/<table>`` and take column filters such
as ``user_id=eq.abc`` or ``is_read=is.false``. Mutations ask for
``Prefer: return=representation`` so the changed rows come back and the
store can report exactly what changed, matching the local backend.

Booking and rescheduling go through RPC endpoints. The network round-trip
makes an in-process check-then-insert unsafe, so the backend owns the
guarantee: an exclusion constraint on (provider_id, interval) rejects
overlaps with HTTP 409 / SQLSTATE 23P01, mapped here to
AppointmentCollisionError. The store then looks up the overlapping
appointment so the error carries the same context as the local backend.

Design decisions:
- Status changes are conditional writes: the PATCH filters on the status the
  caller read, and the reschedule RPC takes ``p_expected_status`` and raises
  P0001 when it no longer matches. Both surface as InvalidTransitionError
- The conversations table carries a unique index on the unordered
  participant pair (least(p1, p2), greatest(p1, p2)). A losing concurrent
  insert gets 409 / 23505 and the store returns the row that won
- Messages are listed by (created_at, id) so equal timestamps still come
  back in a stable order
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import httpx

from shared.errors import (
    AppError,
    AppointmentCollisionError,
    ErrorCode,
    ErrorSeverity,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
)
from shared.models import (
    Appointment,
    Conversation,
    Message,
    Notification,
    Provider,
    User,
    ensure_utc,
)
from shared.persistence import PersistencePort
from shared.scheduling import collision_context, find_collision, sort_newest_first

logger = logging.getLogger("remote_store")

EXCLUSION_VIOLATION = "23P01"
UNIQUE_VIOLATION = "23505"
STATUS_CHANGED = "P0001"
RETURN_ROWS = {"Prefer": "return=representation"}


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat().replace("+00:00", "Z")
    if isinstance(value, Enum):
        return value.value
    return value


def _eq(value: Any) -> str:
    return f"eq.{_encode(value)}"


class RemoteDataStore(PersistencePort):
    """
    Persistence Port backed by a remote REST API.

    Example:
        store = RemoteDataStore("https://db.example.com", api_key="...")
        await store.init()
        rows = await store.list_notifications("user-1", limit=20)
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self) -> None:
        if self._client is not None:
            return
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def save(self) -> None:
        # Every request is already durable on the server
        return None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> Any:
        if self._client is None:
            await self.init()
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"{operation} failed: {e}")
            raise AppError(
                "Could not reach the data service",
                ErrorCode.UNKNOWN,
                ErrorSeverity.ERROR,
                {"operation": operation, "cause": repr(e)},
            ) from e

        if response.status_code >= 400:
            self._raise_for_status(response, operation, context or {})

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _raise_for_status(
        self, response: httpx.Response, operation: str, context: dict[str, Any]
    ) -> None:
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        if not isinstance(body, dict):
            body = {"message": str(body)}

        context = {**context, "operation": operation, "status_code": response.status_code}
        message = body.get("message") or f"Request failed with HTTP {response.status_code}"
        logger.warning(f"{operation} -> HTTP {response.status_code}: {message}")

        is_booking = operation in ("book_appointment", "reschedule_appointment")
        if body.get("code") == EXCLUSION_VIOLATION or (is_booking and response.status_code == 409):
            raise AppointmentCollisionError(context={**context, "details": body.get("details")})
        if is_booking and body.get("code") == STATUS_CHANGED:
            raise InvalidTransitionError(message, context)
        if response.status_code == 404:
            raise NotFoundError(message, context)
        if response.status_code == 401:
            raise UnauthorizedError(message, context)
        if response.status_code == 403:
            raise ForbiddenError(message, context)
        raise AppError(message, ErrorCode.UNKNOWN, ErrorSeverity.ERROR, context)

    async def _select(self, table: str, operation: str, **params: Any) -> list[dict]:
        rows = await self._request("GET", f"/{table}", operation, params=params)
        return rows or []

    async def _insert(self, table: str, row: dict, operation: str) -> dict:
        rows = await self._request(
            "POST", f"/{table}", operation, json=row, headers=RETURN_ROWS
        )
        return rows[0] if isinstance(rows, list) else rows

    async def _update(self, table: str, changes: dict, operation: str, **params: Any) -> list[dict]:
        rows = await self._request(
            "PATCH",
            f"/{table}",
            operation,
            params=params,
            json={k: _encode(v) for k, v in changes.items()},
            headers=RETURN_ROWS,
        )
        return rows or []

    async def _delete(self, table: str, operation: str, **params: Any) -> list[dict]:
        rows = await self._request(
            "DELETE", f"/{table}", operation, params=params, headers=RETURN_ROWS
        )
        return rows or []

    # =========================================================================
    # Notifications
    # =========================================================================

    async def insert_notification(self, notification: Notification) -> Notification:
        row = await self._insert("notifications", notification.to_row(), "insert_notification")
        return Notification(**row)

    async def list_notifications(self, user_id: str, limit: int) -> list[Notification]:
        if limit <= 0:
            return []
        rows = await self._select(
            "notifications",
            "list_notifications",
            user_id=_eq(user_id),
            order="created_at.desc",
            limit=limit,
        )
        return [Notification(**r) for r in rows]

    async def count_unread_notifications(self, user_id: str) -> int:
        rows = await self._select(
            "notifications",
            "count_unread_notifications",
            user_id=_eq(user_id),
            is_read="is.false",
            select="id",
        )
        return len(rows)

    async def mark_notification_read(self, notification_id: str) -> bool:
        rows = await self._update(
            "notifications",
            {"is_read": True},
            "mark_notification_read",
            id=_eq(notification_id),
            is_read="is.false",
        )
        return len(rows) > 0

    async def mark_all_notifications_read(self, user_id: str) -> int:
        rows = await self._update(
            "notifications",
            {"is_read": True},
            "mark_all_notifications_read",
            user_id=_eq(user_id),
            is_read="is.false",
        )
        return len(rows)

    async def delete_notification(self, notification_id: str) -> bool:
        rows = await self._delete("notifications", "delete_notification", id=_eq(notification_id))
        return len(rows) > 0

    # =========================================================================
    # Conversations and messages
    # =========================================================================

    async def find_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
        for first, second in ((user_a, user_b), (user_b, user_a)):
            rows = await self._select(
                "conversations",
                "find_conversation",
                participant_1_id=_eq(first),
                participant_2_id=_eq(second),
                limit=1,
            )
            if rows:
                return Conversation(**rows[0])
        return None

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        rows = await self._select(
            "conversations", "get_conversation", id=_eq(conversation_id), limit=1
        )
        return Conversation(**rows[0]) if rows else None

    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        try:
            row = await self._insert("conversations", conversation.to_row(), "insert_conversation")
        except AppError as e:
            if e.context.get("status_code") != 409:
                raise
            # Another writer created the pair first
            existing = await self.find_conversation(
                conversation.participant_1_id, conversation.participant_2_id
            )
            if existing is None:
                raise
            logger.info(f"Conversation for pair already exists, reusing {existing.id}")
            return existing
        return Conversation(**row)

    async def list_conversations(self, user_id: Optional[str] = None) -> list[Conversation]:
        if user_id is None:
            rows = await self._select(
                "conversations", "list_conversations", order="last_message_at.desc"
            )
        else:
            rows = []
            for column in ("participant_1_id", "participant_2_id"):
                rows.extend(await self._select(
                    "conversations", "list_conversations", **{column: _eq(user_id)}
                ))
        unique = {r["id"]: Conversation(**r) for r in rows}
        return sort_newest_first(unique.values(), lambda c: c.last_message_at)

    async def touch_conversation(self, conversation_id: str, last_message_at: datetime) -> None:
        rows = await self._update(
            "conversations",
            {"last_message_at": last_message_at},
            "touch_conversation",
            id=_eq(conversation_id),
            last_message_at=f"lt.{_encode(last_message_at)}",
        )
        if not rows and await self.get_conversation(conversation_id) is None:
            raise NotFoundError(
                "Conversation not found",
                {"operation": "touch_conversation", "conversation_id": conversation_id},
            )

    async def delete_conversation(self, conversation_id: str) -> bool:
        await self.delete_messages_for_conversation(conversation_id)
        rows = await self._delete("conversations", "delete_conversation", id=_eq(conversation_id))
        return len(rows) > 0

    async def insert_message(self, message: Message) -> Message:
        row = await self._insert("messages", message.to_row(), "insert_message")
        return Message(**row)

    async def list_messages(self, conversation_id: str) -> list[Message]:
        rows = await self._select(
            "messages",
            "list_messages",
            conversation_id=_eq(conversation_id),
            order="created_at.asc,id.asc",
        )
        return [Message(**r) for r in rows]

    async def mark_messages_read(self, conversation_id: str, user_id: str) -> int:
        rows = await self._update(
            "messages",
            {"is_read": True},
            "mark_messages_read",
            conversation_id=_eq(conversation_id),
            receiver_id=_eq(user_id),
            is_read="is.false",
        )
        return len(rows)

    async def count_unread_messages(self, user_id: str) -> int:
        rows = await self._select(
            "messages",
            "count_unread_messages",
            receiver_id=_eq(user_id),
            is_read="is.false",
            select="id",
        )
        return len(rows)

    async def delete_message(self, message_id: str) -> bool:
        rows = await self._delete("messages", "delete_message", id=_eq(message_id))
        return len(rows) > 0

    async def delete_messages_for_conversation(self, conversation_id: str) -> int:
        rows = await self._delete(
            "messages", "delete_messages_for_conversation", conversation_id=_eq(conversation_id)
        )
        return len(rows)

    # =========================================================================
    # Appointments
    # =========================================================================

    async def _describe_collision(
        self,
        error: AppointmentCollisionError,
        provider_id: str,
        start: datetime,
        duration_minutes: int,
        exclude_id: Optional[str] = None,
    ) -> AppointmentCollisionError:
        """Add the overlapping appointment to a collision reported by the server."""
        try:
            existing = await self.list_appointments(provider_ids=[provider_id])
        except AppError as e:
            logger.warning(f"Could not look up the conflicting appointment: {e}")
            return error
        conflict = find_collision(existing, provider_id, start, duration_minutes, exclude_id=exclude_id)
        if conflict is None:
            return error
        enriched = collision_context(
            provider_id, start, duration_minutes, conflict, operation=error.context.get("operation")
        )
        return AppointmentCollisionError(error.message, {**error.context, **enriched})

    async def book_appointment(self, appointment: Appointment) -> Appointment:
        row = appointment.to_row()
        params = {f"p_{key}": value for key, value in row.items()}
        try:
            result = await self._request(
                "POST",
                "/rpc/book_appointment",
                "book_appointment",
                json=params,
                context=collision_context(
                    appointment.provider_id, appointment.date_time, appointment.duration_minutes
                ),
            )
        except AppointmentCollisionError as e:
            raise await self._describe_collision(
                e, appointment.provider_id, appointment.date_time, appointment.duration_minutes
            ) from e
        if isinstance(result, list):
            result = result[0]
        return Appointment(**result)

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        rows = await self._select("appointments", "get_appointment", id=_eq(appointment_id), limit=1)
        return Appointment(**rows[0]) if rows else None

    async def list_appointments(
        self,
        provider_ids: Optional[list[str]] = None,
        client_id: Optional[str] = None,
    ) -> list[Appointment]:
        params: dict[str, Any] = {}
        if provider_ids is not None:
            if not provider_ids:
                return []
            params["provider_id"] = f"in.({','.join(provider_ids)})"
        if client_id is not None:
            params["client_id"] = _eq(client_id)
        rows = await self._select("appointments", "list_appointments", **params)
        return [Appointment(**r) for r in rows]

    async def update_appointment(
        self,
        appointment_id: str,
        changes: dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Appointment:
        params = {"id": _eq(appointment_id)}
        if expected_status is not None:
            params["status"] = _eq(expected_status)
        rows = await self._update("appointments", changes, "update_appointment", **params)
        if rows:
            return Appointment(**rows[0])

        context = {"operation": "update_appointment", "appointment_id": appointment_id}
        current = await self.get_appointment(appointment_id) if expected_status is not None else None
        if current is None:
            raise NotFoundError("Appointment not found", context)
        raise InvalidTransitionError(
            f"Appointment {appointment_id} is {current.status}, no longer {expected_status}",
            {**context, "expected_status": expected_status, "status": current.status},
        )

    async def reschedule_appointment(
        self,
        appointment_id: str,
        new_start: datetime,
        expected_status: Optional[str] = None,
    ) -> Appointment:
        payload = {"p_appointment_id": appointment_id, "p_new_start": _encode(new_start)}
        if expected_status is not None:
            payload["p_expected_status"] = _encode(expected_status)
        try:
            result = await self._request(
                "POST",
                "/rpc/reschedule_appointment",
                "reschedule_appointment",
                json=payload,
                context={
                    "appointment_id": appointment_id,
                    "requested_start": _encode(new_start),
                    "expected_status": expected_status,
                },
            )
        except AppointmentCollisionError as e:
            current = await self.get_appointment(appointment_id)
            if current is None:
                raise
            raise await self._describe_collision(
                e, current.provider_id, new_start, current.duration_minutes, exclude_id=appointment_id
            ) from e
        if isinstance(result, list):
            result = result[0]
        return Appointment(**result)

    # =========================================================================
    # Reference data
    # =========================================================================

    async def get_user(self, user_id: str) -> Optional[User]:
        rows = await self._select("users", "get_user", id=_eq(user_id), limit=1)
        return User(**rows[0]) if rows else None

    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        rows = await self._select("providers", "get_provider", id=_eq(provider_id), limit=1)
        return Provider(**rows[0]) if rows else None

    async def list_providers_for_user(self, user_id: str) -> list[Provider]:
        rows = await self._select("providers", "list_providers_for_user", user_id=_eq(user_id))
        rows.extend(await self._select("providers", "list_providers_for_user", id=_eq(user_id)))
        unique = {r["id"]: Provider(**r) for r in rows}
        return list(unique.values())
