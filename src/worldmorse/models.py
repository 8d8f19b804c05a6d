"""
Records exchanged between the relay and its clients.

Wire format uses camelCase keys and integer epoch-millisecond timestamps.
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageType(Enum):
    """Message types produced by WorldMorse clients"""
    CW_MORSE = "CW_MORSE"   # payload: {morse, textPreview?}
    TEXT = "TEXT"           # payload: {text}


class EventKind(Enum):
    """Push event kinds"""
    HELLO = "hello"
    STATION = "station"
    MESSAGE = "message"
    PING = "ping"           # client → relay heartbeat


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return uuid.uuid4().hex


def normalize_callsign(callsign: Any) -> str:
    """Trim and upper-case; None becomes ''."""
    if callsign is None:
        return ""
    return str(callsign).strip().upper()


def normalize_channel(channel: Any) -> str:
    if channel is None:
        return ""
    return str(channel).strip()


def channel_for_frequency(frequency: float | str) -> str:
    """Channel key for a dial frequency in MHz, e.g. 7.05 -> '7.050'."""
    return f"{float(frequency):.3f}"


@dataclass
class Station:
    """One operator present on the relay"""
    callsign: str
    channel: str | None = None
    last_seen_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "callsign": self.callsign,
            "channel": self.channel,
            "lastSeenAt": self.last_seen_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Station":
        return cls(
            callsign=normalize_callsign(data.get("callsign")),
            channel=data.get("channel"),
            last_seen_at=int(data.get("lastSeenAt") or 0),
        )


@dataclass(frozen=True)
class Message:
    """A relayed message; immutable once created by the relay"""
    id: str
    ts: int
    channel: str
    from_callsign: str
    to_callsign: str | None
    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.ts,
            "channel": self.channel,
            "fromCallsign": self.from_callsign,
            "toCallsign": self.to_callsign,
            "type": self.type,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            ts=int(data.get("ts") or 0),
            channel=str(data.get("channel") or ""),
            from_callsign=normalize_callsign(data.get("fromCallsign")),
            to_callsign=normalize_callsign(data.get("toCallsign")) or None,
            type=str(data.get("type") or ""),
            payload=dict(data.get("payload") or {}),
        )

    @property
    def morse(self) -> str:
        return str(self.payload.get("morse", ""))

    @property
    def text_preview(self) -> str:
        return str(self.payload.get("textPreview", ""))


# ── Push events ───────────────────────────────────────────────────────

def hello_event() -> dict[str, Any]:
    return {"kind": EventKind.HELLO.value, "ok": True, "ts": now_ms()}


def join_event(station: Station) -> dict[str, Any]:
    return {"kind": EventKind.STATION.value, "action": "join", "station": station.to_dict()}


def message_event(message: Message) -> dict[str, Any]:
    return {"kind": EventKind.MESSAGE.value, "message": message.to_dict()}
