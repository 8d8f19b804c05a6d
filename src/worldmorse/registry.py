"""
Station presence registry.

StationRegistry is the storage interface the relay talks to;
InMemoryStationRegistry keeps the table in a dict for the process lifetime.
Stations are pruned only when someone asks for a station list.
"""
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable

from .logging_setup import get_logger
from .models import Station, normalize_callsign, now_ms

logger = get_logger(__name__)

DEFAULT_PRESENCE_TIMEOUT_MS = 60_000


class StationRegistry(ABC):
    """
    Abstract presence table keyed by normalized call-sign.

    At most one Station exists per call-sign; registering an existing
    call-sign overwrites it (last writer wins).
    """

    @abstractmethod
    async def register(self, callsign: str) -> Station:
        """
        Create or refresh a station.

        Args:
            callsign: Raw call-sign, normalized here

        Returns:
            Copy of the stored Station
        """

    @abstractmethod
    async def touch(self, callsign: str, channel: str | None = None) -> None:
        """
        Refresh lastSeenAt (and channel when given).

        Unknown call-signs are ignored.
        """

    @abstractmethod
    async def list_by_channel(self, channel: str, timeout_ms: int) -> list[Station]:
        """
        Prune stale stations from the whole registry, then list one channel.

        Args:
            channel: Channel to list
            timeout_ms: Stations silent for longer than this are removed

        Returns:
            Stations on the channel
        """

    @abstractmethod
    async def get(self, callsign: str) -> Station | None:
        """Look up one station without pruning."""


class InMemoryStationRegistry(StationRegistry):
    """Dict-backed registry; the clock returns epoch milliseconds."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._stations: dict[str, Station] = {}

    def __len__(self) -> int:
        return len(self._stations)

    async def register(self, callsign: str) -> Station:
        key = normalize_callsign(callsign)
        now = self._clock()
        station = self._stations.get(key)
        if station is None:
            station = Station(callsign=key, channel=None, last_seen_at=now)
            self._stations[key] = station
        else:
            station.last_seen_at = now
        return replace(station)

    async def touch(self, callsign: str, channel: str | None = None) -> None:
        station = self._stations.get(normalize_callsign(callsign))
        if station is None:
            return
        station.last_seen_at = self._clock()
        if channel:
            station.channel = channel

    async def list_by_channel(self, channel: str, timeout_ms: int) -> list[Station]:
        self._prune(timeout_ms)
        return [replace(s) for s in self._stations.values() if s.channel == channel]

    async def get(self, callsign: str) -> Station | None:
        station = self._stations.get(normalize_callsign(callsign))
        return replace(station) if station else None

    def _prune(self, timeout_ms: int) -> None:
        now = self._clock()
        stale = [
            key for key, station in self._stations.items()
            if now - station.last_seen_at > timeout_ms
        ]
        for key in stale:
            del self._stations[key]
        if stale:
            logger.debug("Pruned %d stale station(s): %s", len(stale), ", ".join(stale))
