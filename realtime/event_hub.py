"""
In-process event hub for live updates.

This module provides a small topic-based pub/sub mechanism. Services publish
after every durable write; UI-facing layers subscribe by topic. The same
envelope is also forwarded, best-effort, to other execution contexts of the
same deployment through a BroadcastChannel.

Design decisions:
- Synchronous dispatch in subscription order; publish never suspends
- Topics form a closed set (see realtime.events.Topics)
- A failing handler is logged and skipped; siblings still run and the
  publisher never sees the exception
- At-most-once and not durable: late subscribers miss past events
- Events arriving from the broadcast channel are dispatched locally only,
  never forwarded again
- The event log keeps only the most recent max_log_size events
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from dateutil import parser as date_parser

from realtime.broadcast import BroadcastChannel, NullBroadcastChannel
from realtime.events import Topics
from shared.ids import Clock, IdGenerator, RandomIdGenerator, utc_now
from shared.models import ensure_utc

logger = logging.getLogger("event_hub")

DEFAULT_EVENT_LOG_SIZE = 1000


@dataclass
class Event:
    """
    Envelope for everything published on the hub.

    Wire format: {id, topic, timestamp (ISO-8601), payload}.
    """
    id: str
    topic: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def __str__(self) -> str:
        return f"Event({self.topic}, id={self.id})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            id=data["id"],
            topic=data["topic"],
            payload=data.get("payload") or {},
            timestamp=ensure_utc(date_parser.isoparse(data["timestamp"])),
        )


EventHandler = Callable[[Event], None]


class _Subscription:
    __slots__ = ("handler",)

    def __init__(self, handler: EventHandler):
        self.handler = handler


class EventHub:
    """
    Topic-based pub/sub hub local to one running instance.

    Example usage:
        hub = EventHub()

        unsubscribe = hub.subscribe("messages", lambda event: print(event.payload))
        hub.publish("messages", {"action": "sent", "conversationId": "conv-1"})
        unsubscribe()
    """

    def __init__(
        self,
        id_generator: Optional[IdGenerator] = None,
        clock: Optional[Clock] = None,
        channel: Optional[BroadcastChannel] = None,
        max_log_size: int = DEFAULT_EVENT_LOG_SIZE,
    ):
        self.id_generator = id_generator or RandomIdGenerator()
        self.clock = clock or utc_now
        self._subscribers: dict[str, list[_Subscription]] = defaultdict(list)

        # Debug history of the most recent dispatches, not a durable log
        self._event_log: deque[Event] = deque(maxlen=max_log_size)
        self._log_events: bool = True

        self.channel: BroadcastChannel = NullBroadcastChannel()
        if channel is not None:
            self.attach_channel(channel)

    def attach_channel(self, channel: BroadcastChannel) -> None:
        """Forward published events to ``channel`` and dispatch what it receives."""
        self.channel = channel
        channel.listen(self._receive_from_channel)

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler for a topic.

        Returns:
            A function that removes exactly this registration. Calling it
            more than once is harmless.

        Raises:
            ValueError: if topic is not one of Topics.ALL
        """
        Topics.validate(topic)
        subscription = _Subscription(handler)
        self._subscribers[topic].append(subscription)
        logger.debug(f"Subscribed handler to '{topic}'")

        def unsubscribe() -> None:
            entries = self._subscribers.get(topic)
            if not entries:
                return
            for idx, entry in enumerate(entries):
                if entry is subscription:
                    del entries[idx]
                    logger.debug(f"Unsubscribed handler from '{topic}'")
                    break
            if not entries:
                self._subscribers.pop(topic, None)

        return unsubscribe

    def publish(self, topic: str, payload: dict[str, Any]) -> Event:
        """
        Wrap payload in an envelope, dispatch it locally, then forward it.

        Raises:
            ValueError: if topic is not one of Topics.ALL
        """
        Topics.validate(topic)
        event = Event(
            id=self.id_generator.new_id("evt"),
            topic=topic,
            payload=payload,
            timestamp=self.clock(),
        )
        logger.info(f"Publishing: {event}")
        self._dispatch(event)
        self._forward(event)
        return event

    def _dispatch(self, event: Event) -> int:
        if self._log_events:
            self._event_log.append(event)

        # Copy so handlers may unsubscribe while we iterate
        subscriptions = list(self._subscribers.get(event.topic, []))
        for subscription in subscriptions:
            try:
                subscription.handler(event)
            except Exception as e:
                logger.error(f"Handler raised exception for {event}: {e}")
        return len(subscriptions)

    def _forward(self, event: Event) -> None:
        try:
            self.channel.post(event.to_dict())
        except Exception as e:
            logger.warning(f"Broadcast of {event} failed: {e}")

    def _receive_from_channel(self, data: dict[str, Any]) -> None:
        try:
            event = Event.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed broadcast message: {e}")
            return
        if event.topic not in Topics.ALL:
            logger.warning(f"Dropping broadcast for unknown topic '{event.topic}'")
            return
        self._dispatch(event)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    def event_log(self) -> list[Event]:
        return list(self._event_log)

    def clear_event_log(self) -> None:
        self._event_log.clear()

    def clear_subscribers(self) -> None:
        self._subscribers.clear()

    def set_logging(self, enabled: bool) -> None:
        self._log_events = enabled

    def close(self) -> None:
        """Detach from the broadcast channel."""
        self.channel.close()
        self.channel = NullBroadcastChannel()
