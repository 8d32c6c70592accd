"""Long-term memory for chat applications, backed by Qdrant.

Messages are grouped into conversation chunks, embedded and stored per
character; before each generation the most relevant older chunks are
injected back into the transcript.
"""
from __future__ import annotations

from .buffer import BufferedMessage, Chunk, ChunkBuffer
from .context import HostContext, collection_name
from .engine import MemoryEngine
from .settings import MemorySettings
from .timestamps import format_date, normalize_timestamp

__all__ = [
    "BufferedMessage",
    "Chunk",
    "ChunkBuffer",
    "HostContext",
    "MemoryEngine",
    "MemorySettings",
    "collection_name",
    "format_date",
    "normalize_timestamp",
]
