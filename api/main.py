"""
FastAPI application exposing the realtime coordination core.

This application provides:
1. Notification endpoints (create, list, unread count, mark read, delete)
2. Messaging endpoints (conversations, messages, read receipts)
3. Appointment endpoints (booking, listing, status changes)

Authentication and authorization belong to the access layer in front of
this app; every route here trusts the ids it is given.

Run with:
    uv run uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from realtime.appointment_service import AppointmentService
from realtime.broadcast import RedisBroadcastChannel, create_broadcast_channel
from realtime.event_hub import EventHub
from realtime.messaging_service import MessagingService
from realtime.notification_service import NotificationService
from shared.config import Settings, load_settings
from shared.errors import AppError, ErrorCode
from shared.models import (
    Appointment,
    AppointmentType,
    AppointmentView,
    Conversation,
    Message,
    Notification,
    UserRole,
)
from shared.persistence import PersistencePort, create_data_store

logger = logging.getLogger("api")


STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.APPOINTMENT_COLLISION: 409,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.VALIDATION: 422,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.UNKNOWN: 500,
}


# =============================================================================
# Request models
# =============================================================================

class CreateNotificationRequest(BaseModel):
    user_id: str
    type: str
    title: str
    message: str
    link: Optional[str] = None


class ConversationRequest(BaseModel):
    user_a: str
    user_b: str


class SendMessageRequest(BaseModel):
    sender_id: str
    text: str


class MarkReadRequest(BaseModel):
    user_id: str


class CreateAppointmentRequest(BaseModel):
    provider_id: str
    client_id: str
    date_time: Union[datetime, str]
    duration_minutes: int = 60
    type: str = AppointmentType.VIDEO.value
    notes: Optional[str] = None
    amount_cents: Optional[int] = None


class BookAppointmentRequest(BaseModel):
    provider_id: str
    client_id: str
    time_text: str


class StatusRequest(BaseModel):
    status: str


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    new_start: Union[datetime, str]


class MeetingLinkRequest(BaseModel):
    meeting_link: str = Field(min_length=1)


# =============================================================================
# Wiring
# =============================================================================

@dataclass
class Services:
    """Everything a request handler needs, built once per app."""
    settings: Settings
    store: PersistencePort
    hub: EventHub
    notifications: NotificationService
    messaging: MessagingService
    appointments: AppointmentService


def build_services(settings: Settings, store: Optional[PersistencePort] = None) -> Services:
    store = store or create_data_store(settings)
    hub = EventHub(channel=create_broadcast_channel(settings))
    notifications = NotificationService(store, hub)
    return Services(
        settings=settings,
        store=store,
        hub=hub,
        notifications=notifications,
        messaging=MessagingService(store, hub, notifications),
        appointments=AppointmentService(store, hub, notifications),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    status_code = STATUS_BY_CODE.get(exc.code, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


def create_app(settings: Optional[Settings] = None, store: Optional[PersistencePort] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration (defaults to load_settings())
        store: Persistence Port to use instead of the configured one (tests)
    """
    settings = settings or load_settings()
    services = build_services(settings, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting realtime coordination API")
        await services.store.init()
        if isinstance(services.hub.channel, RedisBroadcastChannel):
            await services.hub.channel.start()
        yield
        if isinstance(services.hub.channel, RedisBroadcastChannel):
            await services.hub.channel.aclose()
        services.hub.close()
        await services.store.close()
        logger.info("Shutting down")

    app = FastAPI(
        title="Care Marketplace Realtime Core",
        description="""
        Notifications, messaging and appointment booking for the care marketplace.

        Every write publishes a live event on the hub (topics: messages,
        notifications, appointments). Booking never lets two active
        appointments of one provider overlap.
        """,
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.add_exception_handler(AppError, handle_app_error)
    app.include_router(_build_router())
    return app


def _build_router() -> APIRouter:
    router = APIRouter()

    # =========================================================================
    # Health Check
    # =========================================================================

    @router.get("/health", tags=["Health"])
    def health_check(services: Services = Depends(get_services)):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "care-realtime-core",
            "store": "remote" if services.settings.use_remote_store else "local",
        }

    # =========================================================================
    # Notifications
    # =========================================================================

    @router.post("/notifications", response_model=Notification, status_code=201, tags=["Notifications"])
    async def create_notification(body: CreateNotificationRequest, services: Services = Depends(get_services)):
        return await services.notifications.create(body.user_id, body.type, body.title, body.message, body.link)

    @router.get("/users/{user_id}/notifications", response_model=list[Notification], tags=["Notifications"])
    async def list_notifications(
        user_id: str,
        limit: int = Query(default=20, ge=1, le=100),
        services: Services = Depends(get_services),
    ):
        return await services.notifications.list_notifications(user_id, limit)

    @router.get("/users/{user_id}/notifications/unread-count", tags=["Notifications"])
    async def notification_unread_count(user_id: str, services: Services = Depends(get_services)):
        return {"user_id": user_id, "count": await services.notifications.unread_count(user_id)}

    @router.post("/notifications/{notification_id}/read", tags=["Notifications"])
    async def mark_notification_read(notification_id: str, services: Services = Depends(get_services)):
        return {"changed": await services.notifications.mark_read(notification_id)}

    @router.post("/users/{user_id}/notifications/read-all", tags=["Notifications"])
    async def mark_all_notifications_read(user_id: str, services: Services = Depends(get_services)):
        return {"count": await services.notifications.mark_all_read(user_id)}

    @router.delete("/notifications/{notification_id}", tags=["Notifications"])
    async def delete_notification(notification_id: str, services: Services = Depends(get_services)):
        return {"deleted": await services.notifications.delete(notification_id)}

    # =========================================================================
    # Messaging
    # =========================================================================

    @router.post("/conversations", response_model=Conversation, tags=["Messaging"])
    async def get_or_create_conversation(body: ConversationRequest, services: Services = Depends(get_services)):
        return await services.messaging.get_or_create_conversation(body.user_a, body.user_b)

    @router.get("/conversations", response_model=list[Conversation], tags=["Messaging"])
    async def list_conversations(user_id: Optional[str] = None, services: Services = Depends(get_services)):
        return await services.messaging.get_conversations(user_id)

    @router.get("/conversations/{conversation_id}/messages", response_model=list[Message], tags=["Messaging"])
    async def get_messages(conversation_id: str, services: Services = Depends(get_services)):
        return await services.messaging.get_messages(conversation_id)

    @router.post(
        "/conversations/{conversation_id}/messages",
        response_model=Message,
        status_code=201,
        tags=["Messaging"],
    )
    async def send_message(
        conversation_id: str,
        body: SendMessageRequest,
        services: Services = Depends(get_services),
    ):
        return await services.messaging.send_message(conversation_id, body.sender_id, body.text)

    @router.post("/conversations/{conversation_id}/read", tags=["Messaging"])
    async def mark_conversation_read(
        conversation_id: str,
        body: MarkReadRequest,
        services: Services = Depends(get_services),
    ):
        return {"count": await services.messaging.mark_as_read(conversation_id, body.user_id)}

    @router.delete("/conversations/{conversation_id}", tags=["Messaging"])
    async def delete_conversation(conversation_id: str, services: Services = Depends(get_services)):
        return {"deleted": await services.messaging.delete_conversation(conversation_id)}

    @router.delete("/messages/{message_id}", tags=["Messaging"])
    async def delete_message(message_id: str, services: Services = Depends(get_services)):
        return {"deleted": await services.messaging.delete_message(message_id)}

    @router.get("/users/{user_id}/messages/unread-count", tags=["Messaging"])
    async def message_unread_count(user_id: str, services: Services = Depends(get_services)):
        return {"user_id": user_id, "count": await services.messaging.unread_count(user_id)}

    # =========================================================================
    # Appointments
    # =========================================================================

    @router.post("/appointments", response_model=Appointment, status_code=201, tags=["Appointments"])
    async def create_appointment(body: CreateAppointmentRequest, services: Services = Depends(get_services)):
        return await services.appointments.create_appointment(
            provider_id=body.provider_id,
            client_id=body.client_id,
            date_time=body.date_time,
            duration_minutes=body.duration_minutes,
            type=body.type,
            notes=body.notes,
            amount_cents=body.amount_cents,
        )

    @router.post("/appointments/book", response_model=Appointment, status_code=201, tags=["Appointments"])
    async def book_appointment(body: BookAppointmentRequest, services: Services = Depends(get_services)):
        return await services.appointments.book_appointment(body.provider_id, body.client_id, body.time_text)

    @router.get("/appointments", response_model=list[AppointmentView], tags=["Appointments"])
    async def get_all_appointments(services: Services = Depends(get_services)):
        return await services.appointments.get_all_appointments()

    @router.get("/users/{user_id}/appointments", response_model=list[AppointmentView], tags=["Appointments"])
    async def get_appointments_for_user(
        user_id: str,
        role: str = UserRole.CLIENT.value,
        services: Services = Depends(get_services),
    ):
        return await services.appointments.get_appointments_for_user(user_id, role)

    @router.post("/appointments/{appointment_id}/status", response_model=Appointment, tags=["Appointments"])
    async def update_status(
        appointment_id: str,
        body: StatusRequest,
        services: Services = Depends(get_services),
    ):
        return await services.appointments.update_status(appointment_id, body.status)

    @router.post("/appointments/{appointment_id}/cancel", response_model=Appointment, tags=["Appointments"])
    async def cancel_appointment(
        appointment_id: str,
        body: CancelRequest,
        services: Services = Depends(get_services),
    ):
        return await services.appointments.cancel_appointment(appointment_id, body.reason)

    @router.post("/appointments/{appointment_id}/reschedule", response_model=Appointment, tags=["Appointments"])
    async def reschedule_appointment(
        appointment_id: str,
        body: RescheduleRequest,
        services: Services = Depends(get_services),
    ):
        return await services.appointments.reschedule_appointment(appointment_id, body.new_start)

    @router.put("/appointments/{appointment_id}/meeting-link", response_model=Appointment, tags=["Appointments"])
    async def update_meeting_link(
        appointment_id: str,
        body: MeetingLinkRequest,
        services: Services = Depends(get_services),
    ):
        return await services.appointments.update_meeting_link(appointment_id, body.meeting_link)

    return router


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _default_app() -> FastAPI:
    settings = load_settings()
    configure_logging(settings.log_level)
    return create_app(settings)


app = _default_app()
