"""The memory engine: one owned instance per host process.

Wires the capture pipeline

    host event -> [StreamFinalizer] -> DelayedReleaseQueue -> ChunkBuffer -> persistence

and the retrieval path

    interceptor -> retention cutoff -> embedding -> vector search -> injection

around a single :class:`HostContext`. All state lives here and is only
mutated from the asyncio loop that drives the host handlers.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from .buffer import BufferedMessage, Chunk, ChunkBuffer, Scheduler
from .context import HostContext, collection_name
from .embeddings import EmbeddingClient
from .finalize import FinalizationSession, StreamFinalizer
from .release import DelayedReleaseQueue
from .retrieval import (
    build_search_filter,
    format_memories,
    inject_memories,
    last_user_message,
    retention_cutoff,
)
from .settings import MemorySettings
from .store import CollectionInfo, QdrantStore
from .timestamps import normalize_timestamp, now_ms
from .typing import ChatMessage, ScoredMemory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaveRoute:
    chat_id: Optional[str]
    collections: Dict[str, str]


class MemoryEngine:
    """Long-term memory for one host application.

    Parameters
    ----------
    settings : MemorySettings
        Runtime settings; read on every call, so edits take effect live
        (chunk thresholds and delays apply from the next :meth:`reset`).
    embedder : EmbeddingClient
        Anything with ``embed(text)`` and ``provider_error()``.
    store : QdrantStore
        Anything with the vector-store methods used below.
    context : HostContext | None
        Live host state. Defaults to an empty context.
    """

    def __init__(
        self,
        settings: MemorySettings,
        embedder: EmbeddingClient,
        store: QdrantStore,
        context: Optional[HostContext] = None,
        *,
        clock: Callable[[], float] = now_ms,
        schedule: Optional[Scheduler] = None,
        autostart_polling: bool = True,
    ) -> None:
        self.settings = settings
        self.embedder = embedder
        self.store = store
        self.context = context or HostContext()
        self._clock = clock
        self._schedule = schedule
        self._autostart_polling = autostart_polling
        self._writes: Set[asyncio.Task] = set()
        self._build_pipeline()

    @classmethod
    def create(
        cls,
        settings: MemorySettings,
        context: Optional[HostContext] = None,
        *,
        transport: Any = None,
    ) -> "MemoryEngine":
        """Engine with HTTP collaborators built from ``settings``."""
        embedder = EmbeddingClient(settings, transport=transport)
        store = QdrantStore(settings.qdrant_url, settings.qdrant_api_key, transport=transport)
        return cls(settings, embedder, store, context)

    def _build_pipeline(self) -> None:
        s = self.settings
        self.buffer = ChunkBuffer(
            self._on_flush,
            max_size=s.chunk_max_size,
            min_size=s.chunk_min_size,
            timeout_ms=s.chunk_timeout_ms,
            min_size_delay_ms=s.chunk_min_size_delay_ms,
            schedule=self._schedule,
            clock=self._clock,
        )
        self.queue = DelayedReleaseQueue(self.buffer, s.message_delay)
        self.finalizer = StreamFinalizer(
            lambda: self.context.chat,
            self._on_assistant_final,
            poll_ms=s.stream_finalize_poll_ms,
            stable_ms=s.stream_finalize_stable_ms,
            max_wait_ms=s.stream_finalize_max_wait_ms,
            finalize_on_supersede=s.finalize_on_supersede,
            clock=self._clock,
            autostart=self._autostart_polling,
        )

    # ----------------- lifecycle -----------------
    def reset(self) -> None:
        """Discard pending, buffered and in-flight messages and rebuild from settings."""
        self.finalizer.cancel()
        self.buffer.reset()
        self.queue.reset()
        self._build_pipeline()

    async def drain(self) -> None:
        """Wait for every dispatched chunk write to finish."""
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    def flush_all(self, reason: str = "manual") -> Optional[Chunk]:
        """Persist everything captured so far: the streaming message, the pending queue and the buffer."""
        self.finalizer.finalize_now(reason)
        self.queue.release_all()
        return self.buffer.flush(reason)

    async def aclose(self) -> None:
        self.flush_all("shutdown")
        await self.drain()
        self.finalizer.cancel()
        self.buffer.reset()
        await self.embedder.aclose()
        await self.store.aclose()

    def update_context(
        self,
        chat: List[ChatMessage],
        character_name: str,
        characters: Optional[List[str]] = None,
        chat_id: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> HostContext:
        """Replace the host state; captured messages of a different conversation are flushed first."""
        ctx = self.context
        new_chat_id = (chat_id or "").strip() or None
        if character_name != ctx.character_name or new_chat_id != ctx.chat_identifier():
            if self.flush_all("context changed") is not None:
                logger.debug("Flushed chunk before switching to %s (%s)", character_name, new_chat_id)
        ctx.chat[:] = chat
        ctx.character_name = character_name
        ctx.characters = list(characters or [])
        ctx.chat_id = chat_id
        ctx.user_name = user_name
        return ctx

    def collection_for(self, character_name: str, chat_id: Optional[str] = None) -> str:
        return collection_name(
            self.settings.collection_name,
            character_name,
            chat_id if chat_id is not None else self.context.chat_identifier(),
            per_character=self.settings.use_per_character_collections,
        )

    def route(self, participants: List[str]) -> SaveRoute:
        """Snapshot of where a chunk for ``participants`` goes under the current context."""
        chat_id = self.context.chat_identifier()
        return SaveRoute(chat_id, {p: self.collection_for(p, chat_id or "") for p in participants})

    def stats(self) -> Dict[str, Any]:
        session = self.finalizer.session
        return {
            "pending": len(self.queue),
            "buffer": self.buffer.stats(),
            "finalizing": session.message_id if session else None,
            "writes_in_flight": len(self._writes),
        }

    # ----------------- capture -----------------
    def buffer_message(self, text: str, character_name: str, is_user: bool, message_id: str) -> bool:
        """Queue one observation of a message. Returns False when it was filtered out."""
        s = self.settings
        if not s.enabled or not s.auto_save_memories:
            return False
        if self.embedder.provider_error():
            return False
        if len(text) < s.min_message_length:
            return False
        if is_user and not s.save_user_messages:
            return False
        if not is_user and not s.save_character_messages:
            return False

        speaker = self.context.user_display_name() if is_user else character_name
        self.queue.observe(
            BufferedMessage(
                message_id=message_id,
                text=text,
                speaker_name=speaker,
                is_user=is_user,
                observed_at=self._clock(),
            )
        )
        return True

    def on_message_sent(self) -> None:
        """Host hook for "a message was added to the transcript"."""
        s = self.settings
        if not s.enabled or not s.auto_save_memories:
            return
        try:
            chat = self.context.chat
            character = self.context.character_name
            if not character or not chat:
                return
            last = chat[-1]
            text = last.get("mes") or ""
            if not text.strip():
                return
            sent = normalize_timestamp(last.get("send_date") or self._clock())
            message_id = f"{character}_{sent}_{len(chat)}"
            if last.get("is_user"):
                self.buffer_message(text, character, True, message_id)
            else:
                self.finalizer.start(message_id, character)
        except Exception:
            logger.exception("Error handling new message")

    def _on_assistant_final(self, session: FinalizationSession, reason: str) -> None:
        self.buffer_message(session.last_text, session.character_name, False, session.message_id)
        if self.settings.flush_after_assistant and len(self.buffer) >= 2:
            self.buffer.flush("after assistant")

    def flush(self, reason: str = "manual") -> Optional[Chunk]:
        return self.buffer.flush(reason)

    def _on_flush(self, chunk: Chunk) -> None:
        if not self.settings.enabled:
            logger.debug("Memory disabled, dropping chunk of %d messages", chunk.message_count)
            return
        participants = self.context.participants()
        if not participants:
            logger.error("No participants found for chunk")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("No running event loop, chunk of %d messages not saved", chunk.message_count)
            return
        task = loop.create_task(self.save_chunk(chunk, participants, self.route(participants)))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def save_chunk(
        self, chunk: Chunk, participants: List[str], route: Optional[SaveRoute] = None
    ) -> bool:
        """Embed ``chunk`` once and write it to every participant's collection.

        ``route`` pins the chat id and collections; it defaults to the current
        context, read before anything is awaited. Succeeds when at least one
        collection accepted the point.
        """
        if not self.settings.enabled or not chunk or not participants:
            return False
        route = route or self.route(participants)
        try:
            vector = await self.embedder.embed(chunk.text)
            if not vector:
                logger.error("Cannot save chunk - embedding generation failed")
                return False

            point_id = str(uuid.uuid4())
            payload = chunk.payload(chat_id=route.chat_id)

            async def _save_to(character: str) -> bool:
                collection = route.collections.get(character) or self.collection_for(character, route.chat_id or "")
                if not await self.store.ensure_collection(collection, len(vector)):
                    logger.error("Cannot save chunk - collection not ready for %s", character)
                    return False
                point_payload = payload if self.settings.use_per_character_collections else {**payload, "character": character}
                ok = await self.store.upsert_point(collection, point_id, vector, point_payload)
                if ok:
                    logger.debug(
                        "Saved chunk to %s's collection (%d messages, %d chars)",
                        character, chunk.message_count, len(chunk.text),
                    )
                return ok

            results = await asyncio.gather(*[_save_to(p) for p in participants])
            saved = sum(1 for r in results if r)
            if 0 < saved < len(participants):
                logger.warning("Chunk saved to %d/%d collections", saved, len(participants))
            else:
                logger.debug("Chunk saved to %d/%d collections", saved, len(participants))
            return saved > 0
        except Exception:
            logger.exception("Error saving chunk")
            return False

    # ----------------- retrieval -----------------
    async def search_memories(
        self, query: str, character_name: str, chat: Optional[List[ChatMessage]] = None
    ) -> List[ScoredMemory]:
        s = self.settings
        if not s.enabled:
            return []
        try:
            collection = self.collection_for(character_name)
            vector = await self.embedder.embed(query)
            if not vector:
                return []
            if not await self.store.ensure_collection(collection, len(vector)):
                logger.debug("Collection not ready: %s", collection)
                return []

            cutoff = retention_cutoff(self.context.chat if chat is None else chat, s.retain_recent_messages)
            query_filter = build_search_filter(
                cutoff,
                character_name=None if s.use_per_character_collections else character_name,
                chat_id=self.context.chat_identifier(),
            )
            memories = await self.store.search(collection, vector, s.memory_limit, s.score_threshold, query_filter)
            logger.debug("Found %d memories in %s", len(memories), collection)
            return memories
        except Exception:
            logger.exception("Error searching memories")
            return []

    async def intercept(self, chat: List[ChatMessage]) -> int:
        """Generation hook: inject relevant memories into ``chat`` in place.

        Returns the number of memories injected.
        """
        s = self.settings
        if not s.enabled:
            return 0
        try:
            character = self.context.character_name
            if not character:
                logger.debug("No character selected, skipping")
                return 0
            query = last_user_message(chat)
            if not query:
                logger.debug("No user message found, skipping")
                return 0

            memories = await self.search_memories(query, character, chat)
            if not memories:
                logger.debug("No relevant memories found")
                return 0

            index = inject_memories(chat, format_memories(memories), s.memory_position)
            logger.debug("Injected %d memories at position %d", len(memories), index)
            if s.show_memory_notifications:
                logger.info("Retrieved %d relevant memories", len(memories))
            return len(memories)
        except Exception:
            logger.exception("Error in generation interceptor")
            return 0

    # ----------------- memory viewer -----------------
    async def collection_info(self, character_name: str) -> CollectionInfo:
        return await self.store.collection_info(self.collection_for(character_name))

    async def delete_memories(self, character_name: str) -> bool:
        return await self.store.delete_collection(self.collection_for(character_name))

    async def test_connection(self) -> Optional[List[str]]:
        return await self.store.list_collections()
