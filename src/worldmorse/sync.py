"""
Client-side synchronisation with a relay.

ClientSync keeps a local merged view of one channel. Polling and the push
stream run side by side: polling always continues so a dropped push
connection never loses messages, and the push stream only shortens the
latency. Both feed the same idempotent merge keyed by message id.
"""
import asyncio
import itertools
from collections import OrderedDict
from enum import Enum
from typing import Any, Callable

from .client import RelayClient
from .config_loader import ClientConfig
from .errors import RelayClientError
from .logging_setup import get_logger
from .models import EventKind, Message, Station, normalize_callsign, normalize_channel

logger = get_logger(__name__)

SSE_BACKOFF_INITIAL = 5
SSE_BACKOFF_MAX = 60
DEFAULT_MAX_MESSAGES = 1000


class ConnectionState(Enum):
    """Push stream states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class MergedView:
    """
    Messages of one channel, deduplicated by id.

    Ordered by server timestamp, ties broken by local arrival order.
    The oldest entries are evicted once max_messages is exceeded; their ids
    are forgotten with them.
    """

    def __init__(self, max_messages: int = DEFAULT_MAX_MESSAGES):
        self.max_messages = max_messages
        self._messages: OrderedDict[str, tuple[int, int, Message]] = OrderedDict()
        self._arrival = itertools.count()

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    def merge(self, messages: list[Message]) -> list[Message]:
        """Add messages not seen before; returns the newly added ones."""
        added = []
        for message in messages:
            if not message.id or message.id in self._messages:
                continue
            self._messages[message.id] = (message.ts, next(self._arrival), message)
            added.append(message)

        overflow = len(self._messages) - self.max_messages
        if overflow > 0:
            for _, _, message in sorted(self._messages.values(), key=lambda e: e[:2])[:overflow]:
                del self._messages[message.id]
        return added

    def messages(self) -> list[Message]:
        return [m for _, _, m in sorted(self._messages.values(), key=lambda e: e[:2])]

    def clear(self) -> None:
        self._messages.clear()


class ClientSync:
    """
    Keeps one channel of a relay in sync with local state.

    Callbacks:
        on_messages(list[Message]): newly merged messages, in view order
        on_stations(list[Station]): full station list after each poll or join
        on_status(ConnectionState): push stream state changes
    """

    def __init__(
        self,
        client: RelayClient,
        callsign: str,
        channel: str,
        poll_interval: float = 3.0,
        recent_limit: int = 200,
        heartbeat_interval: float = 20.0,
        on_messages: Callable[[list[Message]], Any] | None = None,
        on_stations: Callable[[list[Station]], Any] | None = None,
        on_status: Callable[[ConnectionState], Any] | None = None,
        use_push: bool = True,
    ):
        self.client = client
        self.callsign = normalize_callsign(callsign)
        self.channel = normalize_channel(channel)
        self.poll_interval = poll_interval
        self.recent_limit = recent_limit
        self.heartbeat_interval = heartbeat_interval
        self.on_messages = on_messages
        self.on_stations = on_stations
        self.on_status = on_status
        self.use_push = use_push

        self.view = MergedView()
        self.stations: list[Station] = []
        self.state = ConnectionState.DISCONNECTED
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._sse_backoff = SSE_BACKOFF_INITIAL

    @classmethod
    def from_config(cls, client: RelayClient, callsign: str, channel: str, cfg: ClientConfig, **kwargs):
        return cls(
            client,
            callsign,
            channel,
            poll_interval=cfg.poll_interval_s,
            recent_limit=cfg.recent_limit,
            heartbeat_interval=cfg.heartbeat_interval_s,
            **kwargs,
        )

    @property
    def running(self) -> bool:
        return self._running

    def messages(self) -> list[Message]:
        return self.view.messages()

    async def start(self) -> None:
        """Register (if a call-sign is set) and start the background loops"""
        if self._running:
            return
        if not self.channel:
            raise ValueError("channel required")

        self._running = True
        if self.callsign:
            try:
                await self.client.register_station(self.callsign)
            except RelayClientError as e:
                logger.warning("Registration of %s failed: %s", self.callsign, e)

        logger.info("Syncing channel %s as %s", self.channel, self.callsign or "listener")
        self._tasks.append(asyncio.create_task(self._poll_loop()))
        if self.use_push:
            self._tasks.append(asyncio.create_task(self._sse_loop()))
        if self.callsign and self.heartbeat_interval > 0:
            self._tasks.append(asyncio.create_task(self._heartbeat_loop()))

    async def stop(self) -> None:
        """Stop all loops; the relay client is left open for the caller"""
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(ConnectionState.DISCONNECTED)

    async def send_message(self, text: str, morse: str, to_callsign: str | None = None) -> bool:
        """
        Submit a CW message on the synced channel.

        The stored message is merged locally right away. Returns False when
        no call-sign is set or the relay rejects or cannot be reached.
        """
        if not self.callsign:
            logger.warning("Cannot send without a call-sign")
            return False
        if not morse:
            return False
        try:
            message = await self.client.send_cw(
                self.callsign, self.channel, morse, text_preview=text, to_callsign=to_callsign
            )
        except RelayClientError as e:
            logger.warning("Send failed: %s", e)
            return False

        self._deliver([message])
        return True

    async def poll_once(self) -> None:
        """One pull cycle: recent messages, then online stations"""
        messages = await self.client.recent_messages(self.channel, self.recent_limit)
        self._deliver(messages)
        stations = await self.client.online_stations(self.channel)
        self._set_stations(stations)

    async def handle_event(self, event: dict[str, Any]) -> None:
        """Apply one parsed push event to local state"""
        kind = event.get("kind")
        if kind == EventKind.HELLO.value:
            self._sse_backoff = SSE_BACKOFF_INITIAL
            self._set_state(ConnectionState.CONNECTED)
        elif kind == EventKind.MESSAGE.value:
            try:
                message = Message.from_dict(event["message"])
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("Dropped malformed message event: %s", e)
                return
            if message.channel == self.channel:
                self._deliver([message])
        elif kind == EventKind.STATION.value:
            # A join only tells us someone arrived; the list comes from the relay
            try:
                stations = await self.client.online_stations(self.channel)
            except RelayClientError as e:
                logger.debug("Station refresh failed: %s", e)
                return
            self._set_stations(stations)

    # --- Background loops ---

    async def _poll_loop(self):
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except RelayClientError as e:
                logger.debug("Poll failed: %s", e)
            except Exception as e:
                logger.warning("Poll cycle error: %s", e, exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def _heartbeat_loop(self):
        while self._running:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.client.heartbeat(self.callsign)
            except RelayClientError as e:
                logger.debug("Heartbeat failed: %s", e)

    async def _sse_loop(self):
        """Push listener loop with exponential reconnect backoff"""
        while self._running:
            self._set_state(ConnectionState.CONNECTING)
            try:
                async for event in self.client.events(self.callsign, self.channel):
                    if not self._running:
                        break
                    await self.handle_event(event)
            except asyncio.CancelledError:
                break
            except Exception as e:
                if not self._running:
                    break
                self._set_state(ConnectionState.ERROR)
                logger.warning("Push connection error: %s, reconnecting in %ds...",
                               e, self._sse_backoff)
                await asyncio.sleep(self._sse_backoff)
                self._sse_backoff = min(self._sse_backoff * 2, SSE_BACKOFF_MAX)
            else:
                self._set_state(ConnectionState.DISCONNECTED)
                if self._running:
                    await asyncio.sleep(self._sse_backoff)

    # --- State updates ---

    def _deliver(self, messages: list[Message]) -> None:
        added = self.view.merge(messages)
        if added and self.on_messages:
            added.sort(key=lambda m: m.ts)
            self.on_messages(added)

    def _set_stations(self, stations: list[Station]) -> None:
        self.stations = list(stations)
        if self.on_stations:
            self.on_stations(self.stations)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.debug("Push stream %s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_status:
            self.on_status(state)
