"""Backfill: chunk stored chat files and save the chunks not yet in Qdrant."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .chunking import ChunkingRules, chunk_chat
from .context import sanitize_collection_part
from .engine import MemoryEngine
from .typing import ChatMessage
from .utils.io import list_files, read_jsonl

logger = logging.getLogger(__name__)


@dataclass
class IndexReport:
    files: int = 0
    total: int = 0
    saved: int = 0
    skipped: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_chat_file(path: Path) -> List[ChatMessage]:
    """Messages of one JSONL chat file; the metadata header and other lines without ``mes`` are dropped."""
    return [item for item in read_jsonl(path) if "mes" in item]  # type: ignore[misc]


def chat_files(chats_dir: str, character_name: str, chat_id: Optional[str] = None) -> List[Path]:
    """Chat files for ``character_name``, narrowed to ``chat_id`` when one is given."""
    files = list_files(Path(chats_dir) / character_name)
    if not chat_id:
        return files
    wanted = {chat_id, sanitize_collection_part(chat_id)}
    return [p for p in files if p.stem in wanted or sanitize_collection_part(p.stem) in wanted]


async def index_character_chats(
    engine: MemoryEngine,
    character_name: Optional[str] = None,
    cancel: Optional[asyncio.Event] = None,
) -> IndexReport:
    """Chunk every stored chat of ``character_name`` and save the new chunks.

    Chunks with any message id already present in the collection are
    skipped, so running this twice saves nothing the second time. Setting
    ``cancel`` stops the run between chunks.
    """
    report = IndexReport()
    s = engine.settings
    character = character_name or engine.context.character_name
    if not character:
        logger.warning("No character selected, nothing to index")
        return report
    if engine.embedder.provider_error():
        logger.error("Cannot index chats: %s", engine.embedder.provider_error())
        return report

    chat_id = engine.context.chat_identifier() if s.use_per_character_collections else None
    files = chat_files(s.chats_dir, character, chat_id)
    report.files = len(files)
    if not files:
        logger.info("No chat files found for %s in %s", character, s.chats_dir)
        return report

    rules = ChunkingRules(
        min_size=s.chunk_min_size,
        max_size=s.chunk_max_size,
        min_message_length=s.min_message_length,
        save_user_messages=s.save_user_messages,
        save_character_messages=s.save_character_messages,
    )
    user_name = engine.context.user_display_name()
    chunks = []
    for path in files:
        chunks.extend(chunk_chat(load_chat_file(path), character, rules, user_name=user_name))
    report.total = len(chunks)
    logger.debug("Indexing %d chunks from %d files for %s", len(chunks), len(files), character)

    collection = engine.collection_for(character)
    for chunk in chunks:
        if cancel is not None and cancel.is_set():
            report.cancelled = True
            logger.info("Indexing cancelled after %d/%d chunks", report.saved + report.skipped, report.total)
            break
        if await engine.store.any_message_stored(collection, chunk.message_ids):
            report.skipped += 1
            continue
        if await engine.save_chunk(chunk, [character]):
            report.saved += 1

    logger.info(
        "Indexed %s: %d saved, %d skipped of %d chunks", character, report.saved, report.skipped, report.total
    )
    return report
