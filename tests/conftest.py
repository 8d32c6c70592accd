"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_memory.context import HostContext  # noqa: E402
from chat_memory.engine import MemoryEngine  # noqa: E402
from chat_memory.settings import MemorySettings  # noqa: E402
from chat_memory.store import CollectionInfo  # noqa: E402

T0 = 1_700_000_000_000


# -----------------------------
# Fakes
# -----------------------------
class FakeClock:
    """Epoch-millisecond clock advanced by hand."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now


class FakeHandle:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """``call_later`` stand-in that records timers instead of running them."""

    def __init__(self) -> None:
        self.handles: List[FakeHandle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeHandle:
        handle = FakeHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def active(self) -> List[FakeHandle]:
        return [h for h in self.handles if not h.cancelled]

    def fire(self) -> None:
        """Run every live timer once."""
        for h in self.active:
            h.cancelled = True
            h.callback()


class FakeEmbedder:
    def __init__(self, vector: Optional[List[float]] = None, error: Optional[str] = None) -> None:
        self.vector = vector if vector is not None else [0.1, 0.2, 0.3]
        self.error = error
        self.calls: List[str] = []
        self.closed = False

    def provider_error(self) -> Optional[str]:
        return self.error

    async def embed(self, text: str) -> Optional[List[float]]:
        self.calls.append(text)
        return list(self.vector) if self.vector else None

    async def aclose(self) -> None:
        self.closed = True


class GatedEmbedder(FakeEmbedder):
    """Embedder whose calls block until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def embed(self, text: str) -> Optional[List[float]]:
        await self.gate.wait()
        return await super().embed(text)


class FakeStore:
    """In-memory vector store with the same async surface as QdrantStore."""

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, Any]] = {}
        self.fail_upserts: set = set()
        self.searches: List[Tuple[str, int, Optional[float], Optional[dict]]] = []
        self.search_results: List[dict] = []
        self.closed = False

    def points(self, name: str) -> Dict[str, Tuple[List[float], dict]]:
        return self.collections.get(name, {}).get("points", {})

    async def collection_info(self, name: str) -> CollectionInfo:
        col = self.collections.get(name)
        if col is None:
            return CollectionInfo(exists=False)
        return CollectionInfo(exists=True, vector_size=col["size"], points_count=len(col["points"]))

    async def ensure_collection(self, name: str, dimension: Optional[int]) -> bool:
        col = self.collections.setdefault(name, {"size": dimension, "points": {}})
        return col["size"] == dimension

    async def upsert_point(self, collection: str, point_id: str, vector: Sequence[float], payload: dict) -> bool:
        if collection in self.fail_upserts:
            return False
        self.collections[collection]["points"][point_id] = (list(vector), dict(payload))
        return True

    async def search(self, collection, vector, limit, score_threshold=None, query_filter=None) -> List[dict]:
        self.searches.append((collection, limit, score_threshold, query_filter))
        return list(self.search_results)

    async def any_message_stored(self, collection: str, message_ids: Sequence[str]) -> bool:
        wanted = set(message_ids)
        for _, payload in self.points(collection).values():
            if wanted & set(payload.get("messageIds", "").split(",")):
                return True
        return False

    async def delete_collection(self, name: str) -> bool:
        return self.collections.pop(name, None) is not None

    async def list_collections(self) -> Optional[List[str]]:
        return list(self.collections)

    async def aclose(self) -> None:
        self.closed = True


# -----------------------------
# Fixtures
# -----------------------------
@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "MEMORY_SERVER_CONFIG" or var.startswith("MEMORY_SERVER__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def settings(tmp_path: Path) -> MemorySettings:
    return MemorySettings(openai_api_key="sk-test", chats_dir=str(tmp_path / "chats"))


@pytest.fixture
def context() -> HostContext:
    return HostContext(character_name="Alice", characters=["Alice"], user_name="Bob")


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def engine(settings, embedder, store, context, clock, scheduler) -> MemoryEngine:
    return MemoryEngine(
        settings,
        embedder,
        store,
        context,
        clock=clock,
        schedule=scheduler,
        autostart_polling=False,
    )
