"""
Per-channel message history.

ChannelLog is the storage interface; InMemoryChannelLog keeps a bounded
deque per channel and evicts oldest-first once the cap is reached.
"""
from abc import ABC, abstractmethod
from collections import defaultdict, deque

from .models import Message


class ChannelLog(ABC):
    """Append-only message history, queried per channel."""

    @abstractmethod
    async def append(self, message: Message) -> None:
        """Add a message to the tail of its channel."""

    @abstractmethod
    async def recent(self, channel: str, limit: int) -> list[Message]:
        """
        Most recent messages of a channel.

        Args:
            channel: Channel to read
            limit: Maximum number of messages

        Returns:
            Up to `limit` messages in arrival order (oldest first)
        """


class InMemoryChannelLog(ChannelLog):
    """deque-per-channel log; max_per_channel of 0 or None means unbounded."""

    def __init__(self, max_per_channel: int | None = None):
        self.max_per_channel = max_per_channel or None
        self._channels: dict[str, deque[Message]] = defaultdict(
            lambda: deque(maxlen=self.max_per_channel)
        )

    def __len__(self) -> int:
        return sum(len(messages) for messages in self._channels.values())

    async def append(self, message: Message) -> None:
        self._channels[message.channel].append(message)

    async def recent(self, channel: str, limit: int) -> list[Message]:
        if limit <= 0 or channel not in self._channels:
            return []
        messages = self._channels[channel]
        return list(messages)[-limit:]
