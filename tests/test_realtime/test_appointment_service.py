"""
Tests for the appointment/booking service.

The central property: for one provider, active appointments never overlap,
and intervals are half-open so back-to-back bookings are fine.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from realtime.appointment_service import AppointmentService
from shared.errors import (
    AppError,
    AppointmentCollisionError,
    ErrorCode,
    ErrorSeverity,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

T0 = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


class TestBookingScenario:
    """The p1/c1 walk-through: book, collide, book back-to-back."""

    async def test_book_collide_then_back_to_back(self, appointments: AppointmentService, store):
        first = await appointments.create_appointment(
            provider_id="p1", client_id="c1",
            date_time="2024-03-15T09:00:00Z", duration_minutes=60, type="video",
        )
        assert first.status == "PENDING"

        with pytest.raises(AppointmentCollisionError) as exc_info:
            await appointments.create_appointment(
                provider_id="p1", client_id="c1",
                date_time="2024-03-15T09:30:00Z", duration_minutes=30, type="video",
            )
        assert exc_info.value.code == ErrorCode.APPOINTMENT_COLLISION

        third = await appointments.create_appointment(
            provider_id="p1", client_id="c1",
            date_time="2024-03-15T10:00:00Z", duration_minutes=60, type="video",
        )
        assert third.status == "PENDING"

        booked = await store.list_appointments(provider_ids=["p1"])
        assert {a.id for a in booked} == {first.id, third.id}


class TestCreateAppointment:

    async def test_fields(self, appointments: AppointmentService):
        appointment = await appointments.create_appointment(
            "p1", "c1", T0, 45, type="phone", notes="first visit",
        )

        assert appointment.id == "appt-0001"
        assert appointment.date_time == T0
        assert appointment.duration_minutes == 45
        assert appointment.type == "phone"
        assert appointment.notes == "first visit"
        assert appointment.payment_status == "exempted"
        assert appointment.amount_cents is None

    @pytest.mark.parametrize("amount,payment_status", [(None, "exempted"), (0, "exempted"), (15000, "pending")])
    async def test_payment_status_from_amount(self, appointments: AppointmentService, amount, payment_status):
        appointment = await appointments.create_appointment("p1", "c1", T0, amount_cents=amount)
        assert appointment.payment_status == payment_status

    async def test_collision_is_retryable_warning_with_context(self, appointments: AppointmentService):
        existing = await appointments.create_appointment("p1", "c1", T0, 60)

        with pytest.raises(AppointmentCollisionError) as exc_info:
            await appointments.create_appointment("p1", "c2", T0 + timedelta(minutes=30), 30)

        error = exc_info.value
        assert error.severity == ErrorSeverity.WARNING
        assert error.retryable is True
        assert error.context["requested_start"] == "2024-03-15T09:30:00+00:00"
        assert error.context["requested_end"] == "2024-03-15T10:00:00+00:00"
        assert error.context["conflicting_appointment_id"] == existing.id
        assert error.context["conflicting_start"] == "2024-03-15T09:00:00+00:00"

    async def test_collision_leaves_state_unchanged(self, appointments: AppointmentService, notifications, recorder):
        await appointments.create_appointment("p1", "c1", T0, 60)
        recorder.clear()
        unread_before = await notifications.unread_count("c2")

        with pytest.raises(AppointmentCollisionError):
            await appointments.create_appointment("p1", "c2", T0, 60)

        assert len(await appointments.get_all_appointments()) == 1
        assert await notifications.unread_count("c2") == unread_before
        assert recorder.events == []

    async def test_same_slot_with_another_provider(self, appointments: AppointmentService):
        await appointments.create_appointment("p1", "c1", T0, 60)
        await appointments.create_appointment("p3", "c1", T0, 60)

    async def test_same_user_different_provider_identities_are_independent(self, appointments: AppointmentService):
        await appointments.create_appointment("p1", "c1", T0, 60)
        await appointments.create_appointment("p2", "c2", T0, 60)

    async def test_cancelled_slot_can_be_rebooked(self, appointments: AppointmentService):
        first = await appointments.create_appointment("p1", "c1", T0, 60)
        await appointments.cancel_appointment(first.id, "sick")

        again = await appointments.create_appointment("p1", "c2", T0, 60)
        assert again.status == "PENDING"

    async def test_rejected_slot_can_be_rebooked(self, appointments: AppointmentService):
        first = await appointments.create_appointment("p1", "c1", T0, 60)
        await appointments.reject(first.id)

        await appointments.create_appointment("p1", "c2", T0 + timedelta(minutes=15), 15)

    @pytest.mark.parametrize("duration", [0, -30])
    async def test_duration_must_be_positive(self, appointments: AppointmentService, duration):
        with pytest.raises(ValidationError):
            await appointments.create_appointment("p1", "c1", T0, duration)

    async def test_unknown_type_rejected(self, appointments: AppointmentService):
        with pytest.raises(ValidationError):
            await appointments.create_appointment("p1", "c1", T0, 60, type="telepathy")

    async def test_bad_date_rejected(self, appointments: AppointmentService):
        with pytest.raises(ValidationError):
            await appointments.create_appointment("p1", "c1", "not-a-date", 60)

    async def test_notifies_both_parties(self, appointments: AppointmentService, notifications, provider_user_id):
        await appointments.create_appointment("p1", "c1", T0, 60)

        provider_notes = await notifications.list_notifications(provider_user_id)
        client_notes = await notifications.list_notifications("c1")

        assert [n.title for n in provider_notes] == ["New Appointment Request"]
        assert provider_notes[0].link == "/console/patients"
        assert provider_notes[0].type == "appointment"
        assert [n.title for n in client_notes] == ["Appointment Requested"]
        assert client_notes[0].link == "/portal"

    async def test_unknown_provider_still_books(self, appointments: AppointmentService, notifications):
        appointment = await appointments.create_appointment("p-unknown", "c1", T0, 60)
        assert appointment.status == "PENDING"
        assert len(await notifications.list_notifications("c1")) == 1

    async def test_publishes_created_event(self, appointments: AppointmentService, recorder):
        appointment = await appointments.create_appointment("p1", "c1", T0, 60)

        events = recorder.on("appointments")
        assert len(events) == 1
        assert events[0].payload == {
            "action": "created",
            "appointmentId": appointment.id,
            "status": "PENDING",
            "providerId": "p1",
            "clientId": "c1",
            "dateTime": "2024-03-15T09:00:00+00:00",
        }

    async def test_notification_failure_does_not_fail_booking(self, appointments: AppointmentService, store, monkeypatch, recorder):
        async def broken(notification):
            raise AppError("notifications table unavailable")

        monkeypatch.setattr(store, "insert_notification", broken)

        appointment = await appointments.create_appointment("p1", "c1", T0, 60)

        assert await store.get_appointment(appointment.id) is not None
        assert recorder.actions("appointments") == ["created"]

    async def test_concurrent_requests_for_one_slot(self, appointments: AppointmentService):
        results = await asyncio.gather(
            *(appointments.create_appointment("p1", f"c{i}", T0, 60) for i in range(4)),
            return_exceptions=True,
        )

        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert all(isinstance(r, AppointmentCollisionError) for r in results if isinstance(r, Exception))
        assert len(await appointments.get_all_appointments()) == 1


class TestBookAppointment:
    """The human-readable convenience entry point."""

    async def test_parses_phrase(self, appointments: AppointmentService):
        appointment = await appointments.book_appointment("p1", "c1", "March 15, 2024 at 9:00 AM")

        assert appointment.date_time == T0
        assert appointment.duration_minutes == 60
        assert appointment.type == "video"

    async def test_unparseable_defaults_to_now(self, appointments: AppointmentService, clock):
        expected = clock.current
        appointment = await appointments.book_appointment("p1", "c1", "whenever suits")
        assert appointment.date_time == expected

    async def test_collisions_still_apply(self, appointments: AppointmentService):
        await appointments.book_appointment("p1", "c1", "2024-03-15T09:00:00Z")
        with pytest.raises(AppointmentCollisionError):
            await appointments.book_appointment("p1", "c2", "March 15, 2024 at 9:30 AM")


class TestQueries:

    @pytest.fixture
    async def booked(self, appointments: AppointmentService):
        return [
            await appointments.create_appointment("p1", "c1", T0, 60),
            await appointments.create_appointment("p2", "c2", T0 + timedelta(days=1), 60),
            await appointments.create_appointment("p3", "c1", T0 + timedelta(days=2), 60),
            await appointments.create_appointment("p1", "c2", T0 - timedelta(days=1), 60),
        ]

    async def test_provider_sees_all_owned_identities(self, appointments: AppointmentService, booked, provider_user_id):
        result = await appointments.get_appointments_for_user(provider_user_id, "provider")

        assert [a.id for a in result] == [booked[1].id, booked[0].id, booked[3].id]

    async def test_provider_without_identities(self, appointments: AppointmentService, booked):
        assert await appointments.get_appointments_for_user("c1", "provider") == []

    async def test_client_sees_own(self, appointments: AppointmentService, booked):
        result = await appointments.get_appointments_for_user("c1", "client")
        assert [a.id for a in result] == [booked[2].id, booked[0].id]

    async def test_enriched_with_counterparty(self, appointments: AppointmentService, booked):
        result = await appointments.get_appointments_for_user("c1", "client")
        view = result[-1]  # p1 with Dana

        assert view.provider.display_name == "Dana Reyes"
        assert view.provider.professional_title == "Licensed Clinical Social Worker"
        assert view.provider.image_url == "https://images.example.com/providers/dana.jpg"
        assert view.client.first_name == "Alice"
        assert view.client.email == "alice@example.com"

    async def test_enrichment_tolerates_unknown_parties(self, appointments: AppointmentService):
        await appointments.create_appointment("p-unknown", "c-unknown", T0, 60)
        [view] = await appointments.get_all_appointments()
        assert view.client is None
        assert view.provider is None

    async def test_all_appointments_newest_first(self, appointments: AppointmentService, booked):
        result = await appointments.get_all_appointments()
        assert [a.date_time for a in result] == sorted((a.date_time for a in booked), reverse=True)

    async def test_get_missing_appointment(self, appointments: AppointmentService):
        with pytest.raises(NotFoundError):
            await appointments.get_appointment("missing")


class TestLifecycle:

    @pytest.fixture
    async def appointment(self, appointments: AppointmentService):
        return await appointments.create_appointment("p1", "c1", T0, 60)

    async def test_confirm_then_complete(self, appointments: AppointmentService, appointment):
        assert (await appointments.confirm(appointment.id)).status == "CONFIRMED"
        assert (await appointments.complete(appointment.id)).status == "COMPLETED"

    async def test_reject(self, appointments: AppointmentService, appointment):
        assert (await appointments.reject(appointment.id)).status == "REJECTED"

    @pytest.mark.parametrize("path,target", [
        (["REJECTED"], "CONFIRMED"),
        (["CONFIRMED", "COMPLETED"], "CANCELLED"),
        (["CONFIRMED"], "REJECTED"),
        ([], "COMPLETED"),
        (["CANCELLED"], "PENDING"),
    ])
    async def test_illegal_transitions(self, appointments: AppointmentService, appointment, path, target):
        for status in path:
            await appointments.update_status(appointment.id, status)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await appointments.update_status(appointment.id, target)

        assert exc_info.value.context["to"] == target

    async def test_unknown_status(self, appointments: AppointmentService, appointment):
        with pytest.raises(ValidationError):
            await appointments.update_status(appointment.id, "LOST")

    async def test_status_change_notifies_both_and_publishes(
        self, appointments: AppointmentService, notifications, recorder, appointment, provider_user_id,
    ):
        recorder.clear()
        await appointments.confirm(appointment.id)

        client_latest = (await notifications.list_notifications("c1"))[0]
        provider_latest = (await notifications.list_notifications(provider_user_id))[0]
        assert client_latest.title == "Appointment Updated"
        assert client_latest.message == "Your appointment status is now CONFIRMED."
        assert provider_latest.message == f"Appointment {appointment.id} is now CONFIRMED."

        payload = recorder.on("appointments")[0].payload
        assert payload["action"] == "status-updated"
        assert payload["status"] == "CONFIRMED"
        assert payload["previousStatus"] == "PENDING"

    async def test_cancel_appends_reason(self, appointments: AppointmentService, store):
        appointment = await appointments.create_appointment("p1", "c1", T0, 60, notes="bring x-rays")

        cancelled = await appointments.cancel_appointment(appointment.id, "feeling better")

        assert cancelled.status == "CANCELLED"
        assert cancelled.notes == "bring x-rays\nCancellation reason: feeling better"
        assert (await store.get_appointment(appointment.id)).status == "CANCELLED"

    async def test_cancel_without_reason_keeps_notes(self, appointments: AppointmentService, appointment):
        cancelled = await appointments.cancel_appointment(appointment.id)
        assert cancelled.notes is None

    async def test_cancel_twice(self, appointments: AppointmentService, appointment):
        await appointments.cancel_appointment(appointment.id, "x")
        with pytest.raises(InvalidTransitionError):
            await appointments.cancel_appointment(appointment.id, "y")

    async def test_reschedule(self, appointments: AppointmentService, recorder, appointment):
        await appointments.confirm(appointment.id)
        recorder.clear()

        moved = await appointments.reschedule_appointment(appointment.id, "2024-03-16T14:00:00Z")

        assert moved.date_time == datetime(2024, 3, 16, 14, 0, tzinfo=timezone.utc)
        assert moved.status == "PENDING"
        assert recorder.actions("appointments") == ["rescheduled"]

    async def test_reschedule_overlapping_itself(self, appointments: AppointmentService, appointment):
        moved = await appointments.reschedule_appointment(appointment.id, T0 + timedelta(minutes=30))
        assert moved.date_time == T0 + timedelta(minutes=30)

    async def test_reschedule_collision(self, appointments: AppointmentService, appointment):
        other = await appointments.create_appointment("p1", "c2", T0 + timedelta(hours=3), 60)

        with pytest.raises(AppointmentCollisionError):
            await appointments.reschedule_appointment(other.id, T0 + timedelta(minutes=30))

        assert (await appointments.get_appointment(other.id)).date_time == T0 + timedelta(hours=3)

    async def test_reschedule_inactive(self, appointments: AppointmentService, appointment):
        await appointments.cancel_appointment(appointment.id)
        with pytest.raises(InvalidTransitionError):
            await appointments.reschedule_appointment(appointment.id, T0 + timedelta(days=1))

    async def test_stale_confirm_does_not_revive_cancelled(
        self, appointments: AppointmentService, store, appointment, monkeypatch,
    ):
        """A confirm validated against an old read must not undo a cancel."""
        stale = await appointments.get_appointment(appointment.id)
        await appointments.cancel_appointment(appointment.id, "changed plans")
        rebooked = await appointments.create_appointment("p1", "c2", T0, 60)

        async def stale_read(appointment_id):
            return stale

        monkeypatch.setattr(appointments, "get_appointment", stale_read)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await appointments.confirm(appointment.id)

        assert exc_info.value.context["status"] == "CANCELLED"
        assert (await store.get_appointment(appointment.id)).status == "CANCELLED"
        active = [a for a in await store.list_appointments(provider_ids=["p1"]) if a.status != "CANCELLED"]
        assert [a.id for a in active] == [rebooked.id]

    async def test_stale_reschedule_refused(
        self, appointments: AppointmentService, store, appointment, recorder, monkeypatch,
    ):
        stale = await appointments.get_appointment(appointment.id)
        await appointments.cancel_appointment(appointment.id)
        recorder.clear()

        async def stale_read(appointment_id):
            return stale

        monkeypatch.setattr(appointments, "get_appointment", stale_read)

        with pytest.raises(InvalidTransitionError):
            await appointments.reschedule_appointment(appointment.id, T0 + timedelta(days=1))

        stored = await store.get_appointment(appointment.id)
        assert stored.status == "CANCELLED"
        assert stored.date_time == T0
        assert recorder.events == []

    async def test_update_meeting_link(self,appointments: AppointmentService, recorder, appointment):
        recorder.clear()
        updated = await appointments.update_meeting_link(appointment.id, "https://meet.example.com/abc")

        assert updated.meeting_link == "https://meet.example.com/abc"
        assert recorder.on("appointments")[0].payload == {
            "action": "updated",
            "appointmentId": appointment.id,
            "field": "meeting_link",
            "value": "https://meet.example.com/abc",
        }

    async def test_update_meeting_link_missing(self, appointments: AppointmentService):
        with pytest.raises(NotFoundError):
            await appointments.update_meeting_link("missing", "https://meet.example.com/abc")
