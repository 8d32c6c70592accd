"""Runtime settings for the memory engine.

Mirrors the ``memory:`` section of the YAML configuration. Keys that are not
fields here are ignored so older config files keep loading.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "openrouter", "local", "sentence-transformers")


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


@dataclass
class MemorySettings:
    enabled: bool = True

    # vector store
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: Optional[str] = None
    collection_name: str = "mem"
    use_per_character_collections: bool = True

    # embeddings
    embedding_provider: str = "openai"
    openai_api_key: str = ""
    openrouter_api_key: str = ""
    openrouter_referer: str = ""
    openrouter_title: str = ""
    local_embedding_url: str = ""
    local_embedding_api_key: str = ""
    embedding_model: str = "text-embedding-3-large"
    custom_embedding_dimensions: Optional[int] = None

    # retrieval
    memory_limit: int = 5
    score_threshold: float = 0.3
    memory_position: int = 2
    retain_recent_messages: int = 5
    show_memory_notifications: bool = True

    # capture
    auto_save_memories: bool = True
    save_user_messages: bool = True
    save_character_messages: bool = True
    min_message_length: int = 5
    message_delay: int = 2

    # chunking
    chunk_min_size: int = 1200
    chunk_max_size: int = 1500
    chunk_timeout_ms: int = 30_000
    chunk_min_size_delay_ms: int = 5_000

    # streaming finalization
    stream_finalize_poll_ms: int = 250
    stream_finalize_stable_ms: int = 1200
    stream_finalize_max_wait_ms: int = 300_000
    flush_after_assistant: bool = True
    finalize_on_supersede: bool = False

    # backfill
    chats_dir: str = "data/chats"

    debug_mode: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MemorySettings":
        """Build settings from a config mapping, coercing values to field types."""
        out = cls()
        if not isinstance(data, dict):
            return out
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            raw = data[f.name]
            default = getattr(out, f.name)
            try:
                if isinstance(default, bool):
                    value: Any = _bool(raw, default)
                elif isinstance(default, int):
                    value = int(raw)
                elif isinstance(default, float):
                    value = float(raw)
                elif f.name == "custom_embedding_dimensions":
                    value = int(raw) if raw not in (None, "") else None
                elif raw is None:
                    value = None
                else:
                    value = str(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid value for memory.%s: %r", f.name, raw)
                continue
            setattr(out, f.name, value)
        return out

    def to_dict(self, *, redact: bool = False) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        if redact:
            for k in d:
                if k.endswith("_api_key") and d[k]:
                    d[k] = "***"
        return d
