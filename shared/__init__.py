"""
Shared infrastructure for the realtime coordination core.

This package contains code used by every service:
- Domain models (Conversation, Message, Notification, Appointment, ...)
- The error taxonomy
- Configuration, id generation and clocks
- The Persistence Port and its local and remote implementations
"""

from shared.errors import (
    AppError,
    AppointmentCollisionError,
    ErrorCode,
    ErrorSeverity,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from shared.models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    AppointmentView,
    Conversation,
    Message,
    Notification,
    NotificationType,
    PaymentStatus,
    Provider,
    User,
    UserRole,
)
from shared.persistence import PersistencePort, create_data_store
from shared.data_store import LocalDataStore

__all__ = [
    "AppError",
    "AppointmentCollisionError",
    "ErrorCode",
    "ErrorSeverity",
    "ForbiddenError",
    "InvalidTransitionError",
    "NotFoundError",
    "ValidationError",
    "Appointment",
    "AppointmentStatus",
    "AppointmentType",
    "AppointmentView",
    "Conversation",
    "Message",
    "Notification",
    "NotificationType",
    "PaymentStatus",
    "Provider",
    "User",
    "UserRole",
    "PersistencePort",
    "create_data_store",
    "LocalDataStore",
]
