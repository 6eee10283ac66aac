"""
Demonstration scripts for the realtime coordination core.

These functions wire the services against an in-memory store seeded from
data/seed.json and print every event the hub dispatches, so the live side of
booking and messaging can be watched from a terminal.
"""

import asyncio
import logging
from datetime import datetime, timezone

from realtime.appointment_service import AppointmentService
from realtime.broadcast import LocalBroadcastChannel
from realtime.event_hub import Event, EventHub
from realtime.events import Topics
from realtime.messaging_service import MessagingService
from realtime.notification_service import NotificationService
from shared.config import PROJECT_ROOT
from shared.data_store import LocalDataStore
from shared.errors import AppointmentCollisionError

# Configure logging to see what's happening
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)

SEED_PATH = PROJECT_ROOT / "data" / "seed.json"


async def _setup():
    store = LocalDataStore(seed_path=SEED_PATH)
    await store.init()
    hub = EventHub()
    notifications = NotificationService(store, hub)
    messaging = MessagingService(store, hub, notifications)
    appointments = AppointmentService(store, hub, notifications)
    return store, hub, notifications, messaging, appointments


def _print_event(event: Event) -> None:
    print(f"  [{event.topic}] {event.payload.get('action')}: {event.payload}")


def _subscribe_all(hub: EventHub) -> list:
    return [hub.subscribe(topic, _print_event) for topic in sorted(Topics.ALL)]


async def booking_demo() -> None:
    """
    Book three sessions with provider p1 for client c1.

    This shows:
    1. 09:00-10:00 is booked and both parties are notified
    2. 09:30-10:00 collides and is refused with a retryable warning
    3. 10:00-11:00 is accepted because intervals are half-open
    """
    print("\n" + "=" * 70)
    print("BOOKING DEMO: collision-free scheduling")
    print("=" * 70 + "\n")

    store, hub, notifications, _, appointments = await _setup()
    unsubscribers = _subscribe_all(hub)

    requests = [
        (datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc), 60),
        (datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc), 30),
        (datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc), 60),
    ]
    for start, duration in requests:
        print("-" * 70)
        print(f"ACTION: p1 / c1 at {start.isoformat()} for {duration} minutes")
        print("-" * 70)
        try:
            appointment = await appointments.create_appointment("p1", "c1", start, duration)
            print(f"  -> booked {appointment.id} ({appointment.status})")
        except AppointmentCollisionError as e:
            print(f"  -> refused: {e.message} (retryable={e.retryable})")

    print("\nProvider's schedule (newest first):")
    for view in await appointments.get_appointments_for_user("u-provider-1", "provider"):
        print(f"  {view.date_time.isoformat()} {view.duration_minutes}m {view.status} with {view.client.first_name}")

    print(f"\nUnread notifications for c1: {await notifications.unread_count('c1')}")
    print(f"Unread notifications for u-provider-1: {await notifications.unread_count('u-provider-1')}")

    for unsubscribe in unsubscribers:
        unsubscribe()


async def messaging_demo() -> None:
    """
    Exchange messages between a client and a provider.

    Also attaches a second hub over a local broadcast channel to show the
    same events arriving in another execution context.
    """
    print("\n" + "=" * 70)
    print("MESSAGING DEMO: conversations, read receipts and cross-context events")
    print("=" * 70 + "\n")

    store, hub, notifications, messaging, _ = await _setup()
    hub.attach_channel(LocalBroadcastChannel("demo-tabs"))
    other_tab = EventHub(channel=LocalBroadcastChannel("demo-tabs"))
    other_tab.subscribe(Topics.MESSAGES, lambda e: print(f"  (other tab) {e.payload.get('action')}"))
    _subscribe_all(hub)

    conversation = await messaging.get_or_create_conversation("c1", "u-provider-1")
    same = await messaging.get_or_create_conversation("u-provider-1", "c1")
    print(f"Conversation {conversation.id} (reverse lookup -> {same.id})\n")

    await messaging.send_message(conversation.id, "c1", "Hi Dana, can we move Friday's session?")
    await messaging.send_message(conversation.id, "u-provider-1", "Sure, does 10:00 work?")
    await messaging.send_message(conversation.id, "c1", "Perfect, thanks!")

    print(f"\nUnread for u-provider-1: {await messaging.unread_count('u-provider-1')}")
    await messaging.mark_as_read(conversation.id, "u-provider-1")
    print(f"Unread for u-provider-1 after reading: {await messaging.unread_count('u-provider-1')}")

    print("\nTranscript:")
    for message in await messaging.get_messages(conversation.id):
        print(f"  {message.created_at.isoformat()} {message.sender_id}: {message.content}")

    hub.close()
    other_tab.close()


def run_booking_demo() -> None:
    asyncio.run(booking_demo())


def run_messaging_demo() -> None:
    asyncio.run(messaging_demo())


if __name__ == "__main__":
    run_booking_demo()
    run_messaging_demo()
