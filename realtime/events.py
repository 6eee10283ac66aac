"""
Topics and payload builders for the event hub.

Payload keys are camelCase because these envelopes cross into UI layers
(and other contexts) as-is. Records are embedded in their JSON row form so
every envelope survives a round trip through the broadcast channel.
"""

from datetime import datetime
from typing import Any, Optional

from shared.models import Appointment, Message, Notification, ensure_utc


class Topics:
    """The closed set of hub topics."""
    MESSAGES = "messages"
    NOTIFICATIONS = "notifications"
    APPOINTMENTS = "appointments"

    ALL = frozenset({MESSAGES, NOTIFICATIONS, APPOINTMENTS})

    @classmethod
    def validate(cls, topic: str) -> str:
        if topic not in cls.ALL:
            raise ValueError(f"Unknown topic: {topic!r}")
        return topic


# =============================================================================
# Notifications
# =============================================================================

def notification_created(notification: Notification) -> dict[str, Any]:
    return {"action": "created", "notification": notification.to_row()}


def notification_updated(notification_id: str) -> dict[str, Any]:
    return {"action": "updated", "notificationId": notification_id}


def notifications_marked_all_read(user_id: str, count: int) -> dict[str, Any]:
    return {"action": "mark-all-read", "userId": user_id, "count": count}


def notification_deleted(notification_id: str) -> dict[str, Any]:
    return {"action": "deleted", "notificationId": notification_id}


# =============================================================================
# Messages
# =============================================================================

def message_sent(message: Message) -> dict[str, Any]:
    return {
        "action": "sent",
        "conversationId": message.conversation_id,
        "message": message.to_row(),
    }


def messages_marked_read(conversation_id: str, user_id: str, count: int) -> dict[str, Any]:
    return {
        "action": "mark-read",
        "conversationId": conversation_id,
        "userId": user_id,
        "count": count,
    }


def message_deleted(message_id: str) -> dict[str, Any]:
    return {"action": "deleted", "messageId": message_id}


def conversation_deleted(conversation_id: str) -> dict[str, Any]:
    return {"action": "conversation-deleted", "conversationId": conversation_id}


# =============================================================================
# Appointments
# =============================================================================

def _iso(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def appointment_created(appointment: Appointment) -> dict[str, Any]:
    """Published after a successful booking."""
    return {
        "action": "created",
        "appointmentId": appointment.id,
        "status": appointment.status,
        "providerId": appointment.provider_id,
        "clientId": appointment.client_id,
        "dateTime": _iso(appointment.date_time),
    }


def appointment_status_updated(appointment: Appointment, previous_status: Optional[str]) -> dict[str, Any]:
    return {
        "action": "status-updated",
        "appointmentId": appointment.id,
        "status": appointment.status,
        "previousStatus": previous_status,
        "providerId": appointment.provider_id,
        "clientId": appointment.client_id,
    }


def appointment_rescheduled(appointment: Appointment) -> dict[str, Any]:
    return {
        "action": "rescheduled",
        "appointmentId": appointment.id,
        "status": appointment.status,
        "dateTime": _iso(appointment.date_time),
    }


def appointment_field_updated(appointment_id: str, field: str, value: Any) -> dict[str, Any]:
    return {
        "action": "updated",
        "appointmentId": appointment_id,
        "field": field,
        "value": value,
    }
