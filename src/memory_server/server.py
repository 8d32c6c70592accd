"""FastAPI application exposing the memory engine to a chat host."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from chat_memory.engine import MemoryEngine
from chat_memory.indexing import index_character_chats
from chat_memory.typing import ChatMessage

from .config import load_config, settings_from_config

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatMessageModel(BaseModel):
    mes: str = ""
    is_user: bool = False
    is_system: bool = False
    name: Optional[str] = None
    send_date: Optional[Union[int, float, str]] = None

    def to_message(self) -> ChatMessage:
        return self.model_dump(exclude_none=True)  # type: ignore[return-value]


class ContextRequest(BaseModel):
    chat: List[ChatMessageModel] = Field(default_factory=list)
    character_name: str = ""
    characters: List[str] = Field(default_factory=list)
    chat_id: Optional[str] = None
    user_name: Optional[str] = None


class LastMessageUpdate(BaseModel):
    mes: str


class InterceptRequest(BaseModel):
    chat: Optional[List[ChatMessageModel]] = Field(
        default=None, description="Transcript to augment; a copy of the synced context is used when omitted."
    )


class InterceptResponse(BaseModel):
    injected: int
    chat: List[Dict[str, Any]]


class IndexRequest(BaseModel):
    character_name: Optional[str] = None


# -----------------------------
# Utilities
# -----------------------------
def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if debug:
        logging.getLogger("chat_memory").setLevel(logging.DEBUG)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    engine: Optional[MemoryEngine] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    cors_origins = (cfg.get("server") or {}).get("cors_origins", ["*"])

    engine = engine or MemoryEngine.create(settings_from_config(cfg))
    _configure_logging(engine.settings.debug_mode)
    index_cancel = asyncio.Event()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        index_cancel.set()
        await engine.aclose()

    app = FastAPI(title="Chat Memory Server", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "enabled": engine.settings.enabled,
            "provider_error": engine.embedder.provider_error(),
            **engine.stats(),
        }

    @app.get("/config")
    def get_config() -> Dict[str, Any]:
        return {
            "server": cfg.get("server") or {},
            "memory": engine.settings.to_dict(redact=True),
        }

    @app.put("/context")
    async def put_context(req: ContextRequest) -> Dict[str, Any]:
        ctx = engine.update_context(
            [m.to_message() for m in req.chat],
            req.character_name,
            req.characters,
            req.chat_id,
            req.user_name,
        )
        return {"messages": len(ctx.chat), "participants": ctx.participants()}

    @app.patch("/context/last-message")
    async def patch_last_message(req: LastMessageUpdate) -> Dict[str, Any]:
        chat = engine.context.chat
        if not chat:
            raise HTTPException(status_code=409, detail="No messages in context.")
        chat[-1]["mes"] = req.mes
        return {"index": len(chat) - 1, "length": len(req.mes)}

    @app.post("/events/message")
    async def message_event() -> Dict[str, Any]:
        engine.on_message_sent()
        return engine.stats()

    @app.post("/intercept", response_model=InterceptResponse)
    async def intercept(req: InterceptRequest) -> InterceptResponse:
        source = engine.context.chat if req.chat is None else [m.to_message() for m in req.chat]
        chat = [dict(m) for m in source]
        injected = await engine.intercept(chat)
        return InterceptResponse(injected=injected, chat=chat)

    @app.post("/flush")
    async def flush() -> Dict[str, Any]:
        chunk = engine.flush("manual")
        await engine.drain()
        return {"flushed": chunk is not None, "messages": chunk.message_count if chunk else 0}

    @app.post("/index")
    async def index(req: IndexRequest) -> Dict[str, Any]:
        index_cancel.clear()
        report = await index_character_chats(engine, req.character_name, index_cancel)
        return report.to_dict()

    @app.post("/index/cancel")
    async def cancel_index() -> Dict[str, Any]:
        index_cancel.set()
        return {"cancelled": True}

    @app.get("/collections/{character}")
    async def get_collection(character: str) -> Dict[str, Any]:
        info = await engine.collection_info(character)
        return {
            "collection": engine.collection_for(character),
            "exists": info.exists,
            "vector_size": info.vector_size,
            "points_count": info.points_count or 0,
        }

    @app.delete("/collections/{character}")
    async def delete_collection(character: str) -> Dict[str, Any]:
        name = engine.collection_for(character)
        if not await engine.delete_memories(character):
            raise HTTPException(status_code=502, detail=f"Failed to delete collection {name}.")
        logger.info("Deleted all memories for %s (%s)", character, name)
        return {"deleted": name}

    @app.get("/connection")
    async def connection() -> Dict[str, Any]:
        collections = await engine.test_connection()
        if collections is None:
            return {"ok": False, "collections": []}
        return {"ok": True, "collections": collections}

    return app
