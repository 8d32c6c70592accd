"""Retrieval-side helpers: recency cutoff, search filter, formatting, injection."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .timestamps import format_date, normalize_timestamp, now_ms
from .typing import ChatMessage, ScoredMemory, SearchFilter

logger = logging.getLogger(__name__)

MEMORY_HEADER = "\n[Past chat memories]\n\n"


def retention_cutoff(chat: Sequence[ChatMessage], retain_recent_messages: int) -> float:
    """Timestamp below which stored memories may be retrieved.

    The last ``retain_recent_messages`` messages are already in the live
    context, so anything stored at or after the first of them is excluded.
    Returns 0 (no exclusion) when there is nothing to exclude or the boundary
    message has no timestamp.
    """
    retain = int(retain_recent_messages or 0)
    if retain <= 0 or len(chat) <= retain:
        return 0
    boundary = chat[len(chat) - retain]
    send_date = boundary.get("send_date")
    if not send_date:
        return 0
    cutoff = normalize_timestamp(send_date)
    logger.debug("Excluding memories newer than %s (%s)", cutoff, format_date(cutoff))
    return cutoff


def build_search_filter(
    cutoff: float,
    *,
    character_name: Optional[str] = None,
    chat_id: Optional[str] = None,
) -> Optional[SearchFilter]:
    """Qdrant ``must`` filter for a search, or ``None`` when unconstrained.

    ``character_name`` is only passed for shared collections.
    """
    must: List[Dict[str, Any]] = []
    if cutoff > 0:
        must.append({"key": "timestamp", "range": {"lt": cutoff}})
    if character_name:
        must.append({"key": "character", "match": {"value": character_name}})
    if chat_id:
        must.append({"key": "chatId", "match": {"value": chat_id}})
    return {"must": must} if must else None


def format_memories(memories: Sequence[ScoredMemory]) -> str:
    if not memories:
        return ""
    out = [MEMORY_HEADER]
    for memory in memories:
        payload = memory.get("payload") or {}
        if payload.get("isChunk"):
            label = f"Conversation ({payload.get('speakers', '')})"
        else:
            label = "You said" if payload.get("speaker") == "user" else "Character said"
        text = str(payload.get("text", "")).replace("\n", " ")
        score = round(float(memory.get("score") or 0) * 100)
        out.append(f'• {label}: "{text}" (score: {score}%)\n\n')
    return "".join(out)


def last_user_message(chat: Sequence[ChatMessage]) -> Optional[str]:
    for msg in reversed(chat):
        if msg.get("is_user"):
            return msg.get("mes") or None
    return None


def inject_memories(chat: List[ChatMessage], memory_text: str, memory_position: int) -> int:
    """Insert a system entry holding ``memory_text`` ``memory_position`` messages from the end.

    Returns the index the entry was inserted at.
    """
    entry: ChatMessage = {
        "name": "System",
        "is_user": False,
        "is_system": True,
        "mes": memory_text,
        "send_date": now_ms(),
    }
    index = max(0, len(chat) - int(memory_position or 0))
    chat.insert(index, entry)
    return index
