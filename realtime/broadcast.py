"""
Cross-context broadcast channels.

The event hub forwards every envelope to a BroadcastChannel so that other
execution contexts of the same deployment (other worker processes, other
hubs in the same process) see live updates too. Delivery is best-effort:
nothing is retried and nothing is stored.

Channels:
- NullBroadcastChannel: no cross-context transport configured; posts are dropped
- LocalBroadcastChannel: named in-process group, every other member receives
- RedisBroadcastChannel: redis pub/sub, for several processes
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, ClassVar, Optional
from uuid import uuid4

from shared.config import Settings

logger = logging.getLogger("broadcast")

MessageCallback = Callable[[dict[str, Any]], None]


class BroadcastChannel(ABC):
    """A named channel shared by several execution contexts."""

    def __init__(self, name: str):
        self.name = name
        self._listeners: list[MessageCallback] = []

    @abstractmethod
    def post(self, message: dict[str, Any]) -> None:
        """Send to every other context. Must not block the caller."""

    def listen(self, callback: MessageCallback) -> None:
        """Register a callback for messages posted by other contexts."""
        self._listeners.append(callback)

    def _deliver(self, message: dict[str, Any]) -> None:
        for callback in list(self._listeners):
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Broadcast listener on '{self.name}' failed: {e}")

    def close(self) -> None:
        self._listeners.clear()


class NullBroadcastChannel(BroadcastChannel):
    """Used when no cross-context transport is available."""

    def __init__(self, name: str = "null"):
        super().__init__(name)

    def post(self, message: dict[str, Any]) -> None:
        return None


class LocalBroadcastChannel(BroadcastChannel):
    """
    In-process channel group keyed by name.

    Every instance created with the same name joins the group; a post reaches
    all other members, never the poster itself.

    Example:
        tab_a = LocalBroadcastChannel("care-realtime-hub")
        tab_b = LocalBroadcastChannel("care-realtime-hub")
        tab_b.listen(print)
        tab_a.post({"topic": "messages"})   # printed by tab_b only
    """

    _groups: ClassVar[dict[str, list["LocalBroadcastChannel"]]] = defaultdict(list)

    def __init__(self, name: str):
        super().__init__(name)
        self._closed = False
        self._groups[name].append(self)

    def post(self, message: dict[str, Any]) -> None:
        if self._closed:
            return
        for peer in list(self._groups.get(self.name, [])):
            if peer is self:
                continue
            # Each context gets its own copy, as with structured cloning
            peer._deliver(copy.deepcopy(message))

    def close(self) -> None:
        super().close()
        self._closed = True
        members = self._groups.get(self.name, [])
        if self in members:
            members.remove(self)
        if not members:
            self._groups.pop(self.name, None)

    @classmethod
    def reset_groups(cls) -> None:
        """Forget every group (useful for testing)."""
        cls._groups.clear()


class RedisBroadcastChannel(BroadcastChannel):
    """
    Broadcast over redis pub/sub.

    post() schedules the publish on the running event loop and returns
    immediately; without a running loop the post is skipped. Each instance
    tags its messages with an origin id and ignores its own echoes.
    """

    def __init__(self, name: str, redis_client: Any):
        super().__init__(name)
        self._redis = redis_client
        self.origin = uuid4().hex
        self._pending: set[asyncio.Task] = set()
        self._listen_task: Optional[asyncio.Task] = None
        self._pubsub = None
        self._running = False

    @classmethod
    def from_url(cls, url: str, name: str) -> "RedisBroadcastChannel":
        import redis.asyncio as redis

        return cls(name, redis.from_url(url))

    def post(self, message: dict[str, Any]) -> None:
        data = json.dumps({"origin": self.origin, "event": message})
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, skipping broadcast on '{self.name}'")
            return
        task = loop.create_task(self._publish(data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, data: str) -> None:
        try:
            await self._redis.publish(self.name, data)
        except Exception as e:
            logger.warning(f"Redis publish on '{self.name}' failed: {e}")

    async def start(self) -> None:
        """Subscribe and start relaying messages from other processes."""
        if self._listen_task is not None:
            return
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.name)
        self._running = True
        self._listen_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if msg and msg.get("type") == "message":
                    self.handle_raw(msg.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Redis listener on '{self.name}' error: {e}")
                await asyncio.sleep(0.5)

    def handle_raw(self, data: Any) -> None:
        """Decode one pub/sub payload and deliver it unless it is our own echo."""
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            envelope = json.loads(data)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring undecodable broadcast on '{self.name}'")
            return
        if not isinstance(envelope, dict) or envelope.get("origin") == self.origin:
            return
        event = envelope.get("event")
        if isinstance(event, dict):
            self._deliver(event)

    async def aclose(self) -> None:
        self._running = False
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.name)
            except Exception as e:
                logger.warning(f"Redis unsubscribe from '{self.name}' failed: {e}")
            self._pubsub = None
        self.close()


def create_broadcast_channel(settings: Settings) -> BroadcastChannel:
    """Build the channel selected by BROADCAST_BACKEND."""
    if settings.broadcast_backend == "local":
        return LocalBroadcastChannel(settings.broadcast_channel_name)
    if settings.broadcast_backend == "redis":
        if not settings.redis_url:
            logger.warning("BROADCAST_BACKEND=redis without REDIS_URL, broadcasting disabled")
            return NullBroadcastChannel(settings.broadcast_channel_name)
        return RedisBroadcastChannel.from_url(settings.redis_url, settings.broadcast_channel_name)
    return NullBroadcastChannel(settings.broadcast_channel_name)
