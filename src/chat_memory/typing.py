from __future__ import annotations
from typing import Any, Dict, List, TypedDict, NotRequired


class ChatMessage(TypedDict):
    """A single transcript entry as the host application stores it."""

    mes: str                          # message text (may still be growing)
    is_user: bool

    # Optional metadata fields
    is_system: NotRequired[bool]
    name: NotRequired[str]            # speaker display name
    send_date: NotRequired[Any]       # epoch ms/s, ISO string or host date string


class MemoryPayload(TypedDict, total=False):
    """Payload stored alongside each vector point."""

    text: str
    speakers: str                     # ", "-joined speaker names
    messageCount: int
    timestamp: int                    # epoch ms, used by the recency filter
    messageIds: str                   # ","-joined message ids
    isChunk: bool
    chatId: str
    character: str
    speaker: str                      # legacy single-message points


class ScoredMemory(TypedDict, total=False):
    """One search hit returned by the vector store."""

    id: Any
    score: float
    payload: MemoryPayload


SearchFilter = Dict[str, List[Dict[str, Any]]]
