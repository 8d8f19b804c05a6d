#!/usr/bin/env python3
"""
Channel relay: station presence, message history and push fan-out.

RelayService is the only writer of the station registry and the channel
log. All mutations run under one asyncio lock; fan-out never awaits a
subscriber, it only queues events and drops subscribers whose queue is full.
"""
import asyncio
import json
import time
import uuid
from collections import defaultdict
from typing import Any, Callable

from . import errors
from .channel_log import ChannelLog, InMemoryChannelLog
from .config_loader import RECENT_LIMIT_DEFAULT, RECENT_LIMIT_MAX
from .errors import RelayError
from .logging_setup import get_logger
from .models import (
    EventKind,
    Message,
    Station,
    hello_event,
    join_event,
    message_event,
    new_message_id,
    normalize_callsign,
    normalize_channel,
    now_ms,
)
from .registry import DEFAULT_PRESENCE_TIMEOUT_MS, InMemoryStationRegistry, StationRegistry

logger = get_logger(__name__)


class Subscriber:
    """A live push connection (WebSocket or SSE) on one channel."""

    def __init__(self, callsign: str, channel: str, queue_size: int = 256):
        self.subscriber_id = str(uuid.uuid4())[:8]
        self.callsign = callsign
        self.channel = channel
        self.queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=queue_size)
        self.connected = True
        self.connected_at = time.time()

    def offer(self, event: dict[str, Any]) -> bool:
        """Queue an event without waiting. False if the subscriber cannot take it."""
        if not self.connected:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def next_event(self) -> dict[str, Any] | None:
        """Wait for the next event; None once disconnected."""
        if not self.connected and self.queue.empty():
            return None
        event = await self.queue.get()
        if event is None or not self.connected:
            return None
        return event

    def disconnect(self) -> None:
        """Mark subscriber as disconnected and wake its writer."""
        self.connected = False
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __repr__(self) -> str:
        return f"Subscriber({self.subscriber_id}, {self.callsign or '-'}@{self.channel})"


class ChannelHub:
    """Channel-keyed subscriber sets."""

    def __init__(self):
        self._channels: dict[str, dict[str, Subscriber]] = defaultdict(dict)

    def add(self, subscriber: Subscriber) -> None:
        self._channels[subscriber.channel][subscriber.subscriber_id] = subscriber

    def remove(self, subscriber: Subscriber) -> bool:
        members = self._channels.get(subscriber.channel)
        if not members or subscriber.subscriber_id not in members:
            return False
        del members[subscriber.subscriber_id]
        if not members:
            del self._channels[subscriber.channel]
        return True

    def subscribers(self, channel: str) -> list[Subscriber]:
        return list(self._channels.get(channel, {}).values())

    def clear(self) -> list[Subscriber]:
        members = [s for channel in self._channels.values() for s in channel.values()]
        self._channels.clear()
        return members

    def count(self) -> int:
        return sum(len(members) for members in self._channels.values())

    def publish(
        self, channel: str, event: dict[str, Any], exclude: Subscriber | None = None
    ) -> int:
        """Queue an event for every subscriber of a channel; returns deliveries."""
        delivered = 0
        for subscriber in self.subscribers(channel):
            if subscriber is exclude:
                continue
            if subscriber.offer(event):
                delivered += 1
                continue
            # Station stays until pruned by timeout
            logger.warning("Dropping unresponsive subscriber %s", subscriber)
            self.remove(subscriber)
            subscriber.disconnect()
        return delivered


class RelayService:
    """
    Registration, message submission, pull queries and push subscriptions.

    Storage is injected so a persistent registry/log can replace the
    in-memory defaults.
    """

    def __init__(
        self,
        registry: StationRegistry | None = None,
        channel_log: ChannelLog | None = None,
        presence_timeout_ms: int = DEFAULT_PRESENCE_TIMEOUT_MS,
        subscriber_queue_size: int = 256,
        clock: Callable[[], int] = now_ms,
    ):
        self._clock = clock
        self.registry = registry or InMemoryStationRegistry(clock=clock)
        self.channel_log = channel_log or InMemoryChannelLog()
        self.presence_timeout_ms = presence_timeout_ms
        self.subscriber_queue_size = subscriber_queue_size
        self.hub = ChannelHub()
        self._write_lock = asyncio.Lock()

    # --- Pull path ---

    async def register_station(self, callsign: Any) -> Station:
        """Register (or re-register) a call-sign; duplicates overwrite."""
        key = normalize_callsign(callsign)
        if not key:
            raise RelayError(errors.CALLSIGN_REQUIRED)

        async with self._write_lock:
            station = await self.registry.register(key)

        logger.info("📻 Station registered: %s", key)
        return station

    async def submit_message(
        self,
        from_callsign: Any,
        channel: Any,
        type: Any,
        payload: dict[str, Any] | None = None,
        to_callsign: Any = None,
    ) -> Message:
        """Validate, store and fan out a message."""
        sender = normalize_callsign(from_callsign)
        channel = normalize_channel(channel)
        msg_type = str(type or "").strip()

        if not sender:
            raise RelayError(errors.FROM_CALLSIGN_REQUIRED)
        if not channel:
            raise RelayError(errors.CHANNEL_REQUIRED)
        if not msg_type:
            raise RelayError(errors.TYPE_REQUIRED)

        message = Message(
            id=new_message_id(),
            ts=self._clock(),
            channel=channel,
            from_callsign=sender,
            to_callsign=normalize_callsign(to_callsign) or None,
            type=msg_type,
            payload=dict(payload or {}),
        )

        async with self._write_lock:
            await self.channel_log.append(message)
            await self.registry.touch(sender, channel)
            delivered = self.hub.publish(channel, message_event(message))

        logger.debug(
            "Message %s %s→%s on %s pushed to %d subscriber(s)",
            message.id, sender, message.to_callsign or "*", channel, delivered,
        )
        return message

    async def recent_messages(self, channel: Any, limit: int = RECENT_LIMIT_DEFAULT) -> list[Message]:
        channel = normalize_channel(channel)
        if not channel:
            raise RelayError(errors.CHANNEL_REQUIRED)
        limit = min(RECENT_LIMIT_MAX, max(1, int(limit)))
        return await self.channel_log.recent(channel, limit)

    async def online_stations(self, channel: Any) -> list[Station]:
        """Stations on a channel; prunes stale stations first."""
        channel = normalize_channel(channel)
        if not channel:
            raise RelayError(errors.CHANNEL_REQUIRED)
        async with self._write_lock:
            return await self.registry.list_by_channel(channel, self.presence_timeout_ms)

    # --- Push path ---

    async def attach(self, callsign: Any, channel: Any) -> Subscriber:
        """
        Open a push subscription.

        The new subscriber receives `hello` first. With a call-sign the
        station is created or moved to the channel and a `join` goes to
        the other subscribers of that channel.
        """
        key = normalize_callsign(callsign)
        channel = normalize_channel(channel)
        if not channel:
            raise RelayError(errors.CHANNEL_REQUIRED)

        subscriber = Subscriber(key, channel, queue_size=self.subscriber_queue_size)
        subscriber.offer(hello_event())

        async with self._write_lock:
            self.hub.add(subscriber)
            if key:
                await self.registry.register(key)
                await self.registry.touch(key, channel)
                station = await self.registry.get(key)
                if station:
                    self.hub.publish(channel, join_event(station), exclude=subscriber)

        logger.info("Subscriber attached: %s", subscriber)
        return subscriber

    async def detach(self, subscriber: Subscriber) -> None:
        """Remove from fan-out; the station is left for timeout pruning."""
        async with self._write_lock:
            removed = self.hub.remove(subscriber)
        subscriber.disconnect()
        if removed:
            logger.info("Subscriber detached: %s", subscriber)

    async def heartbeat(self, callsign: Any) -> None:
        """Refresh lastSeenAt only; unknown call-signs are ignored."""
        key = normalize_callsign(callsign)
        if not key:
            return
        async with self._write_lock:
            await self.registry.touch(key)

    async def handle_client_frame(self, subscriber: Subscriber, raw: str | bytes) -> None:
        """Inbound frame on a push connection. Anything but a ping is ignored."""
        try:
            event = json.loads(raw)
        except (ValueError, TypeError):
            logger.debug("Ignoring unparseable frame from %s", subscriber)
            return
        if not isinstance(event, dict) or event.get("kind") != EventKind.PING.value:
            return
        await self.heartbeat(subscriber.callsign)

    def subscriber_count(self) -> int:
        return self.hub.count()

    async def close(self) -> None:
        """Disconnect every subscriber (shutdown)."""
        async with self._write_lock:
            subscribers = self.hub.clear()
        for subscriber in subscribers:
            subscriber.disconnect()
        if subscribers:
            logger.info("Disconnected %d subscriber(s)", len(subscribers))
