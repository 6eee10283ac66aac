"""
Tests for shared domain models.

These tests verify that our models normalise timestamps, reject invalid
records and implement the schedule arithmetic correctly.
"""

import pytest
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError as PydanticValidationError

from shared.models import (
    ALLOWED_TRANSITIONS,
    Appointment,
    AppointmentStatus,
    Conversation,
    Message,
    Notification,
    NotificationType,
    User,
    UserRole,
    ensure_utc,
)


T0 = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


def make_appointment(**overrides) -> Appointment:
    fields = {
        "id": "appt-1",
        "provider_id": "p1",
        "client_id": "c1",
        "date_time": T0,
        "duration_minutes": 60,
        "created_at": T0 - timedelta(days=1),
    }
    fields.update(overrides)
    return Appointment(**fields)


class TestEnsureUtc:
    """Tests for timestamp normalisation."""

    def test_naive_is_assumed_utc(self):
        result = ensure_utc(datetime(2024, 3, 15, 9, 0))
        assert result.tzinfo is not None
        assert result == T0

    def test_aware_is_converted(self):
        plus_two = timezone(timedelta(hours=2))
        result = ensure_utc(datetime(2024, 3, 15, 11, 0, tzinfo=plus_two))
        assert result == T0
        assert result.utcoffset() == timedelta(0)


class TestConversation:
    """Tests for Conversation model."""

    def test_create_conversation(self):
        conversation = Conversation(
            id="conv-1",
            participant_1_id="c1",
            participant_2_id="u-provider-1",
            created_at=T0,
            last_message_at=T0,
        )
        assert conversation.involves("c1")
        assert conversation.involves("u-provider-1")
        assert not conversation.involves("c2")

    def test_pair_is_unordered(self):
        conversation = Conversation(
            id="conv-1", participant_1_id="a", participant_2_id="b",
            created_at=T0, last_message_at=T0,
        )
        assert conversation.matches_pair("a", "b")
        assert conversation.matches_pair("b", "a")
        assert not conversation.matches_pair("a", "c")

    def test_other_participant(self):
        conversation = Conversation(
            id="conv-1", participant_1_id="a", participant_2_id="b",
            created_at=T0, last_message_at=T0,
        )
        assert conversation.other_participant("a") == "b"
        assert conversation.other_participant("b") == "a"

    def test_self_pair_rejected(self):
        with pytest.raises(PydanticValidationError):
            Conversation(
                id="conv-1", participant_1_id="a", participant_2_id="a",
                created_at=T0, last_message_at=T0,
            )

    def test_naive_timestamps_become_utc(self):
        conversation = Conversation(
            id="conv-1", participant_1_id="a", participant_2_id="b",
            created_at=datetime(2024, 3, 15, 9, 0),
            last_message_at=datetime(2024, 3, 15, 9, 0),
        )
        assert conversation.created_at.tzinfo is not None


class TestMessageAndNotification:
    """Tests for Message and Notification defaults."""

    def test_message_starts_unread(self):
        message = Message(
            id="msg-1", conversation_id="conv-1", sender_id="a",
            receiver_id="b", content="hi", created_at=T0,
        )
        assert message.is_read is False

    def test_notification_type_serialised_as_string(self):
        notification = Notification(
            id="notif-1", user_id="c1", type=NotificationType.APPOINTMENT,
            title="t", message="m", created_at=T0,
        )
        assert notification.type == "appointment"
        assert notification.is_read is False
        assert notification.link is None

    def test_unknown_notification_type_rejected(self):
        with pytest.raises(PydanticValidationError):
            Notification(id="n", user_id="c1", type="carrier-pigeon", title="t", message="m", created_at=T0)

    def test_to_row_is_json_safe(self):
        notification = Notification(
            id="notif-1", user_id="c1", type="system",
            title="t", message="m", created_at=T0,
        )
        row = notification.to_row()
        assert isinstance(row["created_at"], str)
        assert Notification(**row) == notification


class TestAppointment:
    """Tests for Appointment model."""

    def test_defaults(self):
        appointment = make_appointment()
        assert appointment.status == "PENDING"
        assert appointment.type == "video"
        assert appointment.payment_status == "exempted"
        assert appointment.amount_cents is None

    def test_end_time(self):
        appointment = make_appointment(duration_minutes=45)
        assert appointment.end_time == T0 + timedelta(minutes=45)

    def test_duration_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            make_appointment(duration_minutes=0)

    def test_amount_cannot_be_negative(self):
        with pytest.raises(PydanticValidationError):
            make_appointment(amount_cents=-1)

    @pytest.mark.parametrize("status,active", [
        (AppointmentStatus.PENDING, True),
        (AppointmentStatus.CONFIRMED, True),
        (AppointmentStatus.COMPLETED, True),
        (AppointmentStatus.CANCELLED, False),
        (AppointmentStatus.REJECTED, False),
    ])
    def test_is_active(self, status, active):
        assert make_appointment(status=status).is_active is active

    def test_overlap_is_half_open(self):
        appointment = make_appointment()  # 09:00-10:00
        assert appointment.overlaps(T0 + timedelta(minutes=30), T0 + timedelta(minutes=60))
        assert appointment.overlaps(T0 - timedelta(minutes=30), T0 + timedelta(minutes=1))
        assert not appointment.overlaps(T0 + timedelta(minutes=60), T0 + timedelta(minutes=120))
        assert not appointment.overlaps(T0 - timedelta(minutes=60), T0)

    def test_overlap_when_containing(self):
        appointment = make_appointment(duration_minutes=30)
        assert appointment.overlaps(T0 - timedelta(hours=1), T0 + timedelta(hours=1))


class TestTransitions:
    """Tests for the appointment state machine table."""

    def test_pending_transitions(self):
        assert ALLOWED_TRANSITIONS["PENDING"] == {"CONFIRMED", "REJECTED", "CANCELLED"}

    def test_confirmed_transitions(self):
        assert ALLOWED_TRANSITIONS["CONFIRMED"] == {"COMPLETED", "CANCELLED"}

    @pytest.mark.parametrize("terminal", ["COMPLETED", "CANCELLED", "REJECTED"])
    def test_terminal_states(self, terminal):
        assert ALLOWED_TRANSITIONS[terminal] == frozenset()


class TestUser:
    def test_display_name(self):
        user = User(id="u", first_name="Dana", last_name="Reyes", email="d@example.com", role=UserRole.PROVIDER)
        assert user.display_name == "Dana Reyes"
        assert user.role == "provider"
