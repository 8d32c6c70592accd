"""Bounded-lag FIFO in front of the chunk buffer.

Messages are held back for ``message_delay`` subsequent observations before
they are released into the :class:`~chat_memory.buffer.ChunkBuffer`, so edits
and regenerations of a recent message still land in the chunk.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Optional, Tuple

from .buffer import BufferedMessage, ChunkBuffer

logger = logging.getLogger(__name__)


class DelayedReleaseQueue:
    def __init__(self, buffer: ChunkBuffer, message_delay: int = 2) -> None:
        self.buffer = buffer
        self.message_delay = max(0, int(message_delay))
        self._pending: Deque[BufferedMessage] = deque()

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> Tuple[BufferedMessage, ...]:
        return tuple(self._pending)

    def get(self, message_id: str) -> Optional[BufferedMessage]:
        for m in self._pending:
            if m.message_id == message_id:
                return m
        return None

    def observe(self, message: BufferedMessage) -> None:
        """Record an observation of ``message`` and release overdue entries.

        A message id already pending or already buffered is never duplicated;
        its text is replaced only by a strictly longer observation.
        """
        existing = self.get(message.message_id)
        if existing is not None:
            if len(message.text) <= len(existing.text):
                return
            existing.text = message.text
        elif message.message_id in self.buffer:
            if self.buffer.upgrade(message.message_id, message.text):
                logger.debug("Updated buffered message %s with longer text", message.message_id)
        else:
            self._pending.append(message)

        self.release()

    def release(self) -> None:
        while len(self._pending) > self.message_delay:
            self.buffer.add(self._pending.popleft())

    def release_all(self) -> None:
        """Hand every pending message to the buffer regardless of the delay."""
        while self._pending:
            self.buffer.add(self._pending.popleft())

    def reset(self) -> None:
        self._pending.clear()
