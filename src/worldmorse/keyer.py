"""Straight-key timing state machine.

A key press/release pair becomes a dot or a dash depending on how long the
key was held. Silence after a release finalizes first the letter
(3 dot units) and then the word (7 dot units). The key itself is a tagged
state value (Idle | Pressed) moved along by the pure functions press() and
release(); MorseKeyer wraps them with the two cancelable finalize timers.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from . import morse
from .config_loader import KeyerConfig
from .logging_setup import get_logger

logger = get_logger(__name__)


class Symbol(Enum):
    """One keyed element"""
    DOT = "."
    DASH = "-"


@dataclass(frozen=True)
class KeyerTiming:
    """Timing derived from the dot length (all values in milliseconds)"""
    dot_ms: float = 100.0

    @classmethod
    def from_config(cls, cfg: KeyerConfig) -> "KeyerTiming":
        return cls(dot_ms=cfg.dot_ms)

    @property
    def dash_ms(self) -> float:
        return self.dot_ms * 3

    @property
    def dash_threshold_ms(self) -> float:
        return self.dot_ms * 2.5

    @property
    def letter_silence_ms(self) -> float:
        return self.dot_ms * 3

    @property
    def word_silence_ms(self) -> float:
        return self.dot_ms * 7


@dataclass(frozen=True)
class Idle:
    """Key is up"""


@dataclass(frozen=True)
class Pressed:
    """Key is down since `since` (ms)"""
    since: float


KeyerState = Idle | Pressed

IDLE = Idle()


def classify(duration_ms: float, timing: KeyerTiming) -> Symbol:
    """Dot below the dash threshold, dash at or above it."""
    if duration_ms < timing.dash_threshold_ms:
        return Symbol.DOT
    return Symbol.DASH


def press(state: KeyerState, now_ms: float) -> KeyerState:
    if isinstance(state, Pressed):
        return state
    return Pressed(since=now_ms)


def release(
    state: KeyerState, now_ms: float, timing: KeyerTiming
) -> tuple[KeyerState, Symbol | None]:
    """Return the next state and the keyed symbol (None for a stray release)."""
    if not isinstance(state, Pressed):
        return state, None
    return IDLE, classify(now_ms - state.since, timing)


def keying_schedule(code: str, timing: KeyerTiming) -> list[tuple[bool, float]]:
    """
    Key-down / key-up segments for sending a serialized code.

    Each element is followed by one dot of silence; a letter separator adds
    3 dots and a word separator 7, on top of that. Returns (key_down,
    duration_ms) pairs in sending order.
    """
    schedule: list[tuple[bool, float]] = []
    for symbol in code:
        if symbol == Symbol.DOT.value:
            schedule += [(True, timing.dot_ms), (False, timing.dot_ms)]
        elif symbol == Symbol.DASH.value:
            schedule += [(True, timing.dash_ms), (False, timing.dot_ms)]
        elif symbol == morse.LETTER_SEPARATOR:
            schedule.append((False, timing.letter_silence_ms))
        elif symbol == morse.WORD_SEPARATOR:
            schedule.append((False, timing.word_silence_ms))
    return schedule


class MorseKeyer:
    """
    Turns raw key presses into characters.

    Callbacks:
        on_char(char): a finalized character, or " " at a word boundary
        on_message_complete(): fired right after the word boundary
        on_transmit(bool): key-down state for tone/indicator collaborators

    `scheduler` is anything with call_later(delay_seconds, callback) that
    returns a cancelable handle; the running asyncio loop is used when it
    is omitted. `clock` returns seconds.
    """

    def __init__(
        self,
        timing: KeyerTiming | None = None,
        on_char: Callable[[str], Any] | None = None,
        on_message_complete: Callable[[], Any] | None = None,
        on_transmit: Callable[[bool], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Any = None,
    ):
        self.timing = timing or KeyerTiming()
        self.on_char = on_char
        self.on_message_complete = on_message_complete
        self.on_transmit = on_transmit
        self._clock = clock
        self._scheduler = scheduler

        self.state: KeyerState = IDLE
        self.current_code = ""
        self.transmitting = False

        self._letter_handle = None
        self._word_handle = None

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _call_later(self, delay_ms: float, callback: Callable[[], None]):
        if self._scheduler is None:
            self._scheduler = asyncio.get_running_loop()
        return self._scheduler.call_later(delay_ms / 1000.0, callback)

    def _cancel_timers(self) -> None:
        if self._letter_handle is not None:
            self._letter_handle.cancel()
            self._letter_handle = None
        if self._word_handle is not None:
            self._word_handle.cancel()
            self._word_handle = None

    def _set_transmitting(self, value: bool) -> None:
        self.transmitting = value
        if self.on_transmit:
            self.on_transmit(value)

    @property
    def pending_timers(self) -> int:
        return (self._letter_handle is not None) + (self._word_handle is not None)

    def press(self) -> None:
        """Key down."""
        if isinstance(self.state, Pressed):
            return
        # Both timers go before the new symbol starts
        self._cancel_timers()
        self.state = press(self.state, self._now_ms())
        self._set_transmitting(True)

    def release(self) -> Symbol | None:
        """Key up. Returns the keyed symbol, None for a release without press."""
        self.state, symbol = release(self.state, self._now_ms(), self.timing)
        if symbol is None:
            return None

        self.current_code += symbol.value
        self._set_transmitting(False)

        self._cancel_timers()
        self._letter_handle = self._call_later(
            self.timing.letter_silence_ms, self._finalize_letter
        )
        self._word_handle = self._call_later(
            self.timing.word_silence_ms, self._finalize_word
        )
        return symbol

    def _finalize_letter(self) -> None:
        self._letter_handle = None
        code, self.current_code = self.current_code, ""
        if not code:
            return
        char = morse.lookup(code)
        if char is None:
            logger.debug("Dropped unknown code %s", code)
            return
        if self.on_char:
            self.on_char(char)

    def _finalize_word(self) -> None:
        self._word_handle = None
        if self.on_char:
            self.on_char(" ")
        if self.on_message_complete:
            self.on_message_complete()

    def reset(self) -> None:
        """Drop any half-keyed letter and pending timers."""
        self._cancel_timers()
        self.state = IDLE
        self.current_code = ""
        if self.transmitting:
            self._set_transmitting(False)


class MessageComposer:
    """Collects keyed characters into one utterance (text + encoded signal)."""

    def __init__(self, on_utterance: Callable[[str, str], Any] | None = None):
        self.on_utterance = on_utterance
        self._chars: list[str] = []

    def feed(self, char: str) -> None:
        self._chars.append(char)

    @property
    def text(self) -> str:
        return "".join(self._chars)

    @property
    def signal(self) -> str:
        return morse.encode(self.text.strip())

    def clear(self) -> None:
        self._chars.clear()

    def complete(self) -> tuple[str, str] | None:
        """Finish the utterance and hand it to on_utterance."""
        text = self.text.strip()
        self.clear()
        if not text:
            return None
        signal = morse.encode(text)
        if self.on_utterance:
            self.on_utterance(text, signal)
        return text, signal
