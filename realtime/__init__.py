"""
Realtime coordination services.

This package wires the live side of the marketplace:
- The event hub dispatches topic events in-process and forwards them to
  other execution contexts through a broadcast channel
- Notification, messaging and appointment services write through the
  Persistence Port and publish after every durable change
"""

from realtime.broadcast import (
    BroadcastChannel,
    LocalBroadcastChannel,
    NullBroadcastChannel,
    RedisBroadcastChannel,
    create_broadcast_channel,
)
from realtime.event_hub import Event, EventHub
from realtime.events import Topics
from realtime.notification_service import NotificationService
from realtime.messaging_service import MessagingService
from realtime.appointment_service import AppointmentService

__all__ = [
    "BroadcastChannel",
    "LocalBroadcastChannel",
    "NullBroadcastChannel",
    "RedisBroadcastChannel",
    "create_broadcast_channel",
    "Event",
    "EventHub",
    "Topics",
    "NotificationService",
    "MessagingService",
    "AppointmentService",
]
