"""Live chunk buffer: accumulates released messages and decides when to flush.

A flush happens on one of three triggers, evaluated after every insertion:

* the buffer reached ``max_size`` characters -> flush right away, before
  ``add`` returns;
* it reached ``min_size`` -> flush after a short quiet period;
* otherwise -> flush after ``timeout_ms`` of inactivity.

Only one timer is ever outstanding; every insertion cancels it and arms a new
one. State is reset synchronously before ``on_flush`` is invoked, so whatever
the persistence layer does afterwards can never see (or lose) the next
generation of messages.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .timestamps import format_date, now_ms
from .typing import MemoryPayload

logger = logging.getLogger(__name__)

# ": " between speaker and text, plus the line break
LINE_OVERHEAD = 4

Scheduler = Callable[[float, Callable[[], None]], Any]


# -----------------------------
# Data model
# -----------------------------
@dataclass
class BufferedMessage:
    """A message waiting to become part of a chunk.

    Mutable until its chunk flushes: a later observation with longer text
    replaces the text, shorter or equal observations are dropped.
    """
    message_id: str
    text: str
    speaker_name: str
    is_user: bool
    observed_at: float = field(default_factory=now_ms)

    @property
    def size(self) -> int:
        return len(self.text) + len(self.speaker_name) + LINE_OVERHEAD


@dataclass(frozen=True)
class Chunk:
    """A date-labelled block of speaker-attributed lines, embedded as one unit."""
    text: str
    speakers: Tuple[str, ...]
    message_ids: Tuple[str, ...]
    message_count: int
    timestamp: float

    def payload(self, *, chat_id: Optional[str] = None, character: Optional[str] = None) -> MemoryPayload:
        payload: MemoryPayload = {
            "text": self.text,
            "speakers": ", ".join(self.speakers),
            "messageCount": self.message_count,
            "timestamp": self.timestamp,
            "messageIds": ",".join(self.message_ids),
            "isChunk": True,
        }
        if chat_id:
            payload["chatId"] = chat_id
        if character:
            payload["character"] = character
        return payload


def render_chunk(messages: Iterable[BufferedMessage], timestamp: float) -> Chunk:
    """Render messages into a :class:`Chunk` headed by ``[YYYY-MM-DD]`` of ``timestamp``."""
    msgs = list(messages)
    lines = "".join(f"{m.speaker_name}: {m.text}\n" for m in msgs).strip()
    return Chunk(
        text=f"[{format_date(timestamp)}]\n{lines}",
        speakers=tuple(dict.fromkeys(m.speaker_name for m in msgs)),
        message_ids=tuple(m.message_id for m in msgs),
        message_count=len(msgs),
        timestamp=timestamp,
    )


def _call_later(delay_s: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay_s, callback)


# -----------------------------
# ChunkBuffer
# -----------------------------
class ChunkBuffer:
    """In-progress chunk with size and inactivity flush triggers.

    Parameters
    ----------
    on_flush : Callable[[Chunk], None]
        Receives each flushed chunk. Called after the buffer has been cleared.
    schedule : Callable[[float, Callable[[], None]], handle]
        ``call_later``-style scheduler returning a handle with ``cancel()``.
        Defaults to the running asyncio loop.
    clock : Callable[[], float]
        Epoch-millisecond clock used for the chunk timestamp.
    """

    def __init__(
        self,
        on_flush: Callable[[Chunk], None],
        *,
        max_size: int = 1500,
        min_size: int = 1200,
        timeout_ms: int = 30_000,
        min_size_delay_ms: int = 5_000,
        schedule: Optional[Scheduler] = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.on_flush = on_flush
        self.max_size = max_size
        self.min_size = min_size
        self.timeout_ms = timeout_ms
        self.min_size_delay_ms = min_size_delay_ms
        self._schedule = schedule or _call_later
        self._clock = clock
        self._messages: List[BufferedMessage] = []
        self._timer: Any = None

    # --------- inspection ----------
    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> Tuple[BufferedMessage, ...]:
        return tuple(self._messages)

    @property
    def size(self) -> int:
        return sum(m.size for m in self._messages)

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    def get(self, message_id: str) -> Optional[BufferedMessage]:
        for m in self._messages:
            if m.message_id == message_id:
                return m
        return None

    def __contains__(self, message_id: object) -> bool:
        return any(m.message_id == message_id for m in self._messages)

    # --------- mutation ----------
    def add(self, message: BufferedMessage) -> Optional[Chunk]:
        """Insert ``message`` and evaluate the flush triggers.

        Returns the chunk when the max-size trigger flushed synchronously.
        """
        existing = self.get(message.message_id)
        if existing is not None:
            if len(message.text) <= len(existing.text):
                return None
            self._messages[self._messages.index(existing)] = message
        else:
            self._messages.append(message)

        size = self.size
        logger.debug("Buffer: %d messages, %d chars", len(self._messages), size)

        self._cancel_timer()
        if size >= self.max_size:
            logger.debug("Buffer reached max size (%d), processing chunk", size)
            return self.flush("max size")
        if size >= self.min_size:
            self._arm(self.min_size_delay_ms, "min size")
        else:
            self._arm(self.timeout_ms, "timeout")
        return None

    def upgrade(self, message_id: str, text: str) -> bool:
        """Replace the text of a buffered message if ``text`` is longer.

        Timers are left alone: this is a late edit, not new activity.
        """
        existing = self.get(message_id)
        if existing is None or len(text) <= len(existing.text):
            return False
        existing.text = text
        return True

    def flush(self, reason: str = "manual") -> Optional[Chunk]:
        """Turn the buffer into a chunk, reset state, then hand the chunk on."""
        if not self._messages:
            return None
        chunk = render_chunk(self._messages, self._clock())
        self._messages = []
        self._cancel_timer()
        logger.debug("Flushing chunk (%s): %d messages, %d chars", reason, chunk.message_count, len(chunk.text))
        self.on_flush(chunk)
        return chunk

    def reset(self) -> None:
        """Drop buffered messages and any pending timer without flushing."""
        self._messages = []
        self._cancel_timer()

    # --------- timers ----------
    def _arm(self, delay_ms: int, reason: str) -> None:
        def _fire() -> None:
            self._timer = None
            logger.debug("Buffer %s reached, processing chunk", reason)
            self.flush(reason)

        self._timer = self._schedule(delay_ms / 1000, _fire)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def stats(self) -> Dict[str, Any]:
        return {"messages": len(self._messages), "size": self.size, "timer_pending": self.timer_pending}
