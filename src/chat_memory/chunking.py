"""Deterministic chunk assembly over a whole stored transcript (backfill).

Uses the same size thresholds as the live :class:`~chat_memory.buffer.ChunkBuffer`
but no timers: a chunk closes before a message that would overflow
``max_size``, or right after a message that brings it to ``min_size`` with at
least ``MIN_MESSAGES_PER_CHUNK`` messages. Each chunk is dated by its oldest
message rather than by assembly time.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .buffer import BufferedMessage, Chunk, render_chunk
from .timestamps import normalize_timestamp, now_ms
from .typing import ChatMessage

MIN_MESSAGES_PER_CHUNK = 3


@dataclass
class ChunkingRules:
    min_size: int = 1200
    max_size: int = 1500
    min_message_length: int = 5
    save_user_messages: bool = True
    save_character_messages: bool = True


def chunk_from_messages(messages: Sequence[BufferedMessage]) -> Chunk:
    """Chunk dated by the oldest ``observed_at`` among ``messages``."""
    timestamp = min((m.observed_at for m in messages), default=None)
    return render_chunk(messages, timestamp if timestamp is not None else now_ms())


def chunk_chat(
    chat: Sequence[ChatMessage],
    character_name: str,
    rules: Optional[ChunkingRules] = None,
    *,
    user_name: str = "You",
) -> List[Chunk]:
    """Split a stored transcript into chunks.

    Message ids follow ``{character}_{timestamp}_{index}`` so re-running the
    backfill over the same file yields the same ids.
    """
    rules = rules or ChunkingRules()
    chunks: List[Chunk] = []
    current: List[BufferedMessage] = []
    size = 0

    for index, msg in enumerate(chat):
        if msg.get("is_system"):
            continue
        text = (msg.get("mes") or "").strip()
        if not text or len(text) < rules.min_message_length:
            continue
        is_user = bool(msg.get("is_user"))
        if is_user and not rules.save_user_messages:
            continue
        if not is_user and not rules.save_character_messages:
            continue

        timestamp = normalize_timestamp(msg.get("send_date") or now_ms())
        message = BufferedMessage(
            message_id=f"{character_name}_{timestamp}_{index}",
            text=text,
            speaker_name=user_name if is_user else character_name,
            is_user=is_user,
            observed_at=timestamp,
        )

        if current and size + message.size > rules.max_size:
            chunks.append(chunk_from_messages(current))
            current, size = [], 0

        current.append(message)
        size += message.size

        if size >= rules.min_size and len(current) >= MIN_MESSAGES_PER_CHUNK:
            chunks.append(chunk_from_messages(current))
            current, size = [], 0

    if current:
        chunks.append(chunk_from_messages(current))
    return chunks
