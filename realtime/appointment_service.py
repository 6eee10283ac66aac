"""
Appointment/booking service.

Books sessions between a provider and a client without ever letting two
active appointments of one provider overlap, and drives the appointment
state machine afterwards.

Design decisions:
- The overlap check and the insert are one store operation
  (PersistencePort.book_appointment). The local store runs it under a
  per-provider lock; the remote backend enforces an exclusion constraint
- Intervals are half-open, so back-to-back bookings are allowed
- A collision is a warning the caller can fix by picking another slot; it is
  logged and re-raised untouched
- Status writes are conditional on the status that was validated. If
  another request moved the appointment in between, the write is refused
  with InvalidTransitionError instead of resurrecting a stale state
- Notifications and hub events after a write are best-effort. A booking that
  was stored stays stored even if its notices fail

State machine:
    PENDING -> CONFIRMED -> COMPLETED
    PENDING -> REJECTED
    PENDING/CONFIRMED -> CANCELLED
"""

import logging
from datetime import datetime
from typing import Optional, Union

from dateutil import parser as date_parser

from realtime import events
from realtime.event_hub import EventHub
from realtime.events import Topics
from realtime.notification_service import NotificationService
from shared.errors import (
    AppointmentCollisionError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from shared.ids import Clock, IdGenerator, RandomIdGenerator, utc_now
from shared.models import (
    ALLOWED_TRANSITIONS,
    Appointment,
    AppointmentStatus,
    AppointmentType,
    AppointmentView,
    ClientSnapshot,
    NotificationType,
    PaymentStatus,
    ProviderSnapshot,
    UserRole,
    ensure_utc,
)
from shared.persistence import PersistencePort
from shared.scheduling import parse_appointment_datetime, sort_newest_first

logger = logging.getLogger("appointment_service")

DEFAULT_DURATION_MINUTES = 60

PROVIDER_LINK = "/console/patients"
CLIENT_LINK = "/portal"


class AppointmentService:
    """
    Booking and lifecycle of appointments.

    Example:
        booking = AppointmentService(store, hub, notifications)
        appointment = await booking.create_appointment(
            provider_id="p1",
            client_id="c1",
            date_time="2024-03-15T09:00:00Z",
            duration_minutes=60,
        )
        await booking.confirm(appointment.id)
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

    # =========================================================================
    # Booking
    # =========================================================================

    async def create_appointment(
        self,
        provider_id: str,
        client_id: str,
        date_time: Union[str, datetime],
        duration_minutes: int = DEFAULT_DURATION_MINUTES,
        type: str = AppointmentType.VIDEO.value,
        notes: Optional[str] = None,
        amount_cents: Optional[int] = None,
    ) -> Appointment:
        """
        Book [date_time, date_time + duration_minutes) on the provider's schedule.

        Raises:
            ValidationError: bad duration, type, amount or date_time
            AppointmentCollisionError: the slot overlaps an active appointment
        """
        context = {"operation": "create_appointment", "provider_id": provider_id, "client_id": client_id}
        if not provider_id or not client_id:
            raise ValidationError("Both provider and client are required", context)
        if duration_minutes is None or duration_minutes <= 0:
            raise ValidationError("Duration must be a positive number of minutes", context)
        if amount_cents is not None and amount_cents < 0:
            raise ValidationError("Amount cannot be negative", context)
        try:
            session_type = AppointmentType(type)
        except ValueError:
            raise ValidationError(f"Unknown appointment type: {type!r}", context)

        start = self._coerce_datetime(date_time, context)
        payment_status = PaymentStatus.PENDING if (amount_cents or 0) > 0 else PaymentStatus.EXEMPTED

        appointment = Appointment(
            id=self.id_generator.new_id("appt"),
            provider_id=provider_id,
            client_id=client_id,
            date_time=start,
            duration_minutes=duration_minutes,
            status=AppointmentStatus.PENDING,
            type=session_type,
            payment_status=payment_status,
            amount_cents=amount_cents,
            notes=notes,
            created_at=self.clock(),
        )

        try:
            stored = await self.data_store.book_appointment(appointment)
        except AppointmentCollisionError as e:
            logger.warning(f"Booking collision for provider {provider_id} at {start.isoformat()}: {e.context}")
            raise

        logger.info(f"Booked {stored.id} for provider {provider_id} at {start.isoformat()}")

        provider_user_id = await self._provider_user_id(provider_id)
        if provider_user_id:
            await self.notifications.create_safely(
                provider_user_id,
                NotificationType.APPOINTMENT.value,
                "New Appointment Request",
                "A client requested a new session.",
                link=PROVIDER_LINK,
            )
        await self.notifications.create_safely(
            client_id,
            NotificationType.APPOINTMENT.value,
            "Appointment Requested",
            "Your appointment request was submitted successfully.",
            link=CLIENT_LINK,
        )
        self._publish(events.appointment_created(stored))
        return stored

    async def book_appointment(self, provider_id: str, client_id: str, time_text: str) -> Appointment:
        """
        Convenience entry point taking a human-readable time.

        Unparseable text books at the current time instead of failing.
        """
        start = parse_appointment_datetime(time_text, self.clock)
        return await self.create_appointment(
            provider_id=provider_id,
            client_id=client_id,
            date_time=start,
            duration_minutes=DEFAULT_DURATION_MINUTES,
            type=AppointmentType.VIDEO.value,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_appointment(self, appointment_id: str) -> Appointment:
        appointment = await self.data_store.get_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError(
                "Appointment not found",
                {"operation": "get_appointment", "appointment_id": appointment_id},
            )
        return appointment

    async def get_appointments_for_user(self, user_id: str, role: str) -> list[AppointmentView]:
        """
        Appointments involving the user, newest date_time first.

        Providers see appointments of every provider identity they own;
        everyone else sees the appointments where they are the client.
        """
        if role == UserRole.PROVIDER.value:
            providers = await self.data_store.list_providers_for_user(user_id)
            provider_ids = [p.id for p in providers]
            if not provider_ids:
                return []
            appointments = await self.data_store.list_appointments(provider_ids=provider_ids)
        else:
            appointments = await self.data_store.list_appointments(client_id=user_id)
        return await self._enrich(sort_newest_first(appointments, key=lambda a: a.date_time))

    async def get_all_appointments(self) -> list[AppointmentView]:
        appointments = await self.data_store.list_appointments()
        return await self._enrich(sort_newest_first(appointments, key=lambda a: a.date_time))

    async def _enrich(self, appointments: list[Appointment]) -> list[AppointmentView]:
        """Join a read-time snapshot of both parties onto each appointment."""
        users: dict = {}
        providers: dict = {}
        views = []
        for appointment in appointments:
            if appointment.client_id not in users:
                users[appointment.client_id] = await self.data_store.get_user(appointment.client_id)
            if appointment.provider_id not in providers:
                providers[appointment.provider_id] = await self.data_store.get_provider(appointment.provider_id)

            client = users[appointment.client_id]
            provider = providers[appointment.provider_id]
            provider_snapshot = None
            if provider is not None:
                if provider.user_id not in users:
                    users[provider.user_id] = await self.data_store.get_user(provider.user_id)
                owner = users[provider.user_id]
                provider_snapshot = ProviderSnapshot(
                    display_name=owner.display_name if owner else None,
                    professional_title=provider.professional_title,
                    image_url=provider.image_url or (owner.image_url if owner else None),
                )
            client_snapshot = None
            if client is not None:
                client_snapshot = ClientSnapshot(
                    first_name=client.first_name,
                    last_name=client.last_name,
                    email=client.email,
                    image_url=client.image_url,
                )
            views.append(AppointmentView(
                **appointment.model_dump(),
                client=client_snapshot,
                provider=provider_snapshot,
            ))
        return views

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def update_status(self, appointment_id: str, status: str) -> Appointment:
        """
        Move an appointment along the state machine.

        Raises:
            NotFoundError: no such appointment
            InvalidTransitionError: the move is not allowed from the current status
        """
        try:
            target = AppointmentStatus(status).value
        except ValueError:
            raise ValidationError(
                f"Unknown appointment status: {status!r}",
                {"operation": "update_status", "appointment_id": appointment_id},
            )
        current = await self.get_appointment(appointment_id)
        self._check_transition(current, target)
        return await self._apply_status(current, target, {"status": target})

    async def confirm(self, appointment_id: str) -> Appointment:
        return await self.update_status(appointment_id, AppointmentStatus.CONFIRMED.value)

    async def reject(self, appointment_id: str) -> Appointment:
        return await self.update_status(appointment_id, AppointmentStatus.REJECTED.value)

    async def complete(self, appointment_id: str) -> Appointment:
        return await self.update_status(appointment_id, AppointmentStatus.COMPLETED.value)

    async def cancel_appointment(self, appointment_id: str, reason: Optional[str] = None) -> Appointment:
        """Cancel and append the reason, if any, to the notes."""
        target = AppointmentStatus.CANCELLED.value
        current = await self.get_appointment(appointment_id)
        self._check_transition(current, target)
        changes = {"status": target}
        if reason:
            changes["notes"] = f"{current.notes or ''}\nCancellation reason: {reason}".strip()
        return await self._apply_status(current, target, changes)

    async def reschedule_appointment(
        self,
        appointment_id: str,
        new_start: Union[str, datetime],
    ) -> Appointment:
        """
        Move an appointment to a new start. It goes back to PENDING.

        Raises:
            NotFoundError: no such appointment
            InvalidTransitionError: the appointment is no longer active
            AppointmentCollisionError: the new slot is taken
        """
        context = {"operation": "reschedule_appointment", "appointment_id": appointment_id}
        current = await self.get_appointment(appointment_id)
        if current.status not in (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value):
            raise InvalidTransitionError(
                f"Cannot reschedule an appointment that is {current.status}",
                {**context, "status": current.status},
            )
        start = self._coerce_datetime(new_start, context)
        try:
            updated = await self.data_store.reschedule_appointment(
                appointment_id, start, expected_status=current.status
            )
        except AppointmentCollisionError as e:
            logger.warning(f"Reschedule collision for {appointment_id}: {e.context}")
            raise

        logger.info(f"Rescheduled {appointment_id} to {start.isoformat()}")
        await self._notify_status_change(updated, updated.status)
        self._publish(events.appointment_rescheduled(updated))
        return updated

    async def update_meeting_link(self, appointment_id: str, meeting_link: str) -> Appointment:
        updated = await self.data_store.update_appointment(appointment_id, {"meeting_link": meeting_link})
        self._publish(events.appointment_field_updated(appointment_id, "meeting_link", meeting_link))
        return updated

    # =========================================================================
    # Helpers
    # =========================================================================

    def _check_transition(self, current: Appointment, target: str) -> None:
        allowed = ALLOWED_TRANSITIONS.get(current.status, frozenset())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot move appointment from {current.status} to {target}",
                {
                    "operation": "update_status",
                    "appointment_id": current.id,
                    "from": current.status,
                    "to": target,
                },
            )

    async def _apply_status(self, current: Appointment, target: str, changes: dict) -> Appointment:
        updated = await self.data_store.update_appointment(
            current.id, changes, expected_status=current.status
        )
        logger.info(f"Appointment {current.id}: {current.status} -> {target}")
        await self._notify_status_change(updated, target)
        self._publish(events.appointment_status_updated(updated, current.status))
        return updated

    async def _notify_status_change(self, appointment: Appointment, status: str) -> None:
        await self.notifications.create_safely(
            appointment.client_id,
            NotificationType.APPOINTMENT.value,
            "Appointment Updated",
            f"Your appointment status is now {status}.",
            link=CLIENT_LINK,
        )
        provider_user_id = await self._provider_user_id(appointment.provider_id)
        if provider_user_id:
            await self.notifications.create_safely(
                provider_user_id,
                NotificationType.APPOINTMENT.value,
                "Appointment Updated",
                f"Appointment {appointment.id} is now {status}.",
                link=PROVIDER_LINK,
            )

    async def _provider_user_id(self, provider_id: str) -> Optional[str]:
        """The user who owns a provider identity, or None if unknown."""
        try:
            provider = await self.data_store.get_provider(provider_id)
        except Exception as e:
            logger.warning(f"Could not look up provider {provider_id}: {e}")
            return None
        return provider.user_id if provider is not None else None

    def _coerce_datetime(self, value: Union[str, datetime], context: dict) -> datetime:
        if isinstance(value, datetime):
            return ensure_utc(value)
        try:
            return ensure_utc(date_parser.isoparse(str(value)))
        except ValueError:
            raise ValidationError(f"Invalid date/time: {value!r}", {**context, "date_time": value})

    def _publish(self, payload: dict) -> None:
        try:
            self.event_hub.publish(Topics.APPOINTMENTS, payload)
        except Exception as e:
            logger.error(f"Failed to publish appointment event: {e}")
