"""
Domain models for the realtime coordination core.

Design decisions:
- Using Pydantic for validation and serialization
- Field names are snake_case and double as the REST column names, so the
  local snapshot and the remote API share one shape
- All timestamps are timezone-aware UTC; naive values are assumed to be UTC
- Reference data (User, Provider) is read-only here and only used for
  notification targeting and list enrichment
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# Enums
# =============================================================================

class NotificationType(str, Enum):
    MESSAGE = "message"
    APPOINTMENT = "appointment"
    PAYMENT = "payment"
    SYSTEM = "system"


class AppointmentStatus(str, Enum):
    """
    Appointment lifecycle.

    PENDING -> CONFIRMED -> COMPLETED
    PENDING -> REJECTED
    PENDING/CONFIRMED -> CANCELLED
    """
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


# Statuses that no longer hold a slot on the provider's schedule
INACTIVE_STATUSES = frozenset({AppointmentStatus.CANCELLED.value, AppointmentStatus.REJECTED.value})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    AppointmentStatus.PENDING.value: frozenset({
        AppointmentStatus.CONFIRMED.value,
        AppointmentStatus.REJECTED.value,
        AppointmentStatus.CANCELLED.value,
    }),
    AppointmentStatus.CONFIRMED.value: frozenset({
        AppointmentStatus.COMPLETED.value,
        AppointmentStatus.CANCELLED.value,
    }),
    AppointmentStatus.COMPLETED.value: frozenset(),
    AppointmentStatus.REJECTED.value: frozenset(),
    AppointmentStatus.CANCELLED.value: frozenset(),
}


class AppointmentType(str, Enum):
    """Session medium."""
    VIDEO = "video"
    IN_PERSON = "in_person"
    PHONE = "phone"
    CHAT = "chat"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXEMPTED = "exempted"
    FAILED = "failed"
    REFUNDED = "refunded"


class UserRole(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Record(BaseModel):
    """Base for every stored record."""

    model_config = ConfigDict(use_enum_values=True)

    @field_validator("*", mode="after")
    @classmethod
    def _normalise_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return ensure_utc(value)
        return value

    def to_row(self) -> dict[str, Any]:
        """JSON-safe dict used by both the snapshot file and the REST API."""
        return self.model_dump(mode="json")


# =============================================================================
# Messaging
# =============================================================================

class Conversation(Record):
    """
    A durable pairing of exactly two participants.

    The pair is unordered: (A, B) and (B, A) identify the same conversation.
    """
    id: str
    participant_1_id: str
    participant_2_id: str
    created_at: datetime
    last_message_at: datetime

    @model_validator(mode="after")
    def _reject_self_pair(self) -> "Conversation":
        if self.participant_1_id == self.participant_2_id:
            raise ValueError("A conversation needs two distinct participants")
        return self

    def involves(self, user_id: str) -> bool:
        return user_id in (self.participant_1_id, self.participant_2_id)

    def matches_pair(self, user_a: str, user_b: str) -> bool:
        return {self.participant_1_id, self.participant_2_id} == {user_a, user_b}

    def other_participant(self, user_id: str) -> str:
        """The participant that is not ``user_id``."""
        if user_id == self.participant_1_id:
            return self.participant_2_id
        return self.participant_1_id


class Message(Record):
    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    is_read: bool = False
    created_at: datetime


# =============================================================================
# Notifications
# =============================================================================

class Notification(Record):
    """A per-user notice. Only mark-read operations mutate it."""
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    link: Optional[str] = None
    is_read: bool = False
    created_at: datetime


# =============================================================================
# Appointments
# =============================================================================

class Appointment(Record):
    """
    A booked session between a provider and a client.

    The slot occupied is the half-open interval [date_time, end_time).
    """
    id: str
    provider_id: str
    client_id: str
    date_time: datetime
    duration_minutes: int = Field(default=60, gt=0)
    status: AppointmentStatus = AppointmentStatus.PENDING
    type: AppointmentType = AppointmentType.VIDEO
    payment_status: PaymentStatus = PaymentStatus.EXEMPTED
    amount_cents: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None
    meeting_link: Optional[str] = None
    created_at: datetime

    @property
    def end_time(self) -> datetime:
        return self.date_time + timedelta(minutes=self.duration_minutes)

    @property
    def is_active(self) -> bool:
        """True while the appointment still holds its slot."""
        return self.status not in INACTIVE_STATUSES

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap: touching boundaries do not collide."""
        return start < self.end_time and end > self.date_time


class User(Record):
    id: str
    first_name: str
    last_name: str
    email: str
    role: UserRole = UserRole.CLIENT
    image_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Provider(Record):
    """A provider identity. One user may own several."""
    id: str
    user_id: str
    professional_title: str
    image_url: Optional[str] = None


class ClientSnapshot(BaseModel):
    first_name: str
    last_name: str
    email: str
    image_url: Optional[str] = None


class ProviderSnapshot(BaseModel):
    display_name: Optional[str] = None
    professional_title: str
    image_url: Optional[str] = None


class AppointmentView(Appointment):
    """
    Appointment plus a read-time snapshot of both parties for list rendering.

    The snapshots are joined on read and never stored.
    """
    client: Optional[ClientSnapshot] = None
    provider: Optional[ProviderSnapshot] = None
