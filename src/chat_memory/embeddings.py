"""Embedding providers behind one ``embed(text) -> vector | None`` call.

Supported providers:

* ``openai`` / ``openrouter``: hosted ``/v1/embeddings`` endpoints;
* ``local``: any OpenAI-compatible endpoint (Ollama, LM Studio, TEI, ...);
* ``sentence-transformers``: an in-process model, loaded on first use.

Failures never raise: configuration problems are reported by
:func:`provider_error` and turn every ``embed`` call into ``None``; HTTP and
parse failures are logged and also return ``None``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .settings import PROVIDERS, MemorySettings

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/embeddings"
OPENROUTER_URL = "https://openrouter.ai/api/v1/embeddings"
TIMEOUT = httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0)
DEFAULT_DIMENSIONS = 1536
DEFAULT_LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

EMBEDDING_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-large": 3072,
    "text-embedding-3-small": 1536,
    "text-embedding-ada-002": 1536,
    "openai/text-embedding-3-large": 3072,
    "openai/text-embedding-3-small": 1536,
    "openai/text-embedding-ada-002": 1536,
    "qwen/qwen3-embedding-8b": 4096,
    "mistralai/mistral-embed-2312": 1024,
    "google/gemini-embedding-001": 3072,
}

OPENROUTER_MODEL_ALIASES = {
    "text-embedding-3-large": "openai/text-embedding-3-large",
    "text-embedding-3-small": "openai/text-embedding-3-small",
    "text-embedding-ada-002": "openai/text-embedding-ada-002",
}
OPENAI_MODEL_ALIASES = {v: k for k, v in OPENROUTER_MODEL_ALIASES.items()}

# Providers whose dimensions are only known once a vector comes back
_SELF_SIZED = ("local", "sentence-transformers")


# -----------------------------
# Configuration checks
# -----------------------------
def _custom_dimensions(settings: MemorySettings) -> Optional[int]:
    try:
        dims = int(settings.custom_embedding_dimensions)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return dims if dims > 0 else None


def provider_error(settings: MemorySettings) -> Optional[str]:
    """Describe why the embedding provider cannot be used, or ``None`` if it can."""
    provider = settings.embedding_provider or "openai"
    if provider not in PROVIDERS:
        return f"Unsupported embedding provider: {provider}"
    if provider == "openai" and not (settings.openai_api_key or "").strip():
        return "OpenAI API key not set"
    if provider == "openrouter" and not (settings.openrouter_api_key or "").strip():
        return "OpenRouter API key not set"
    if provider == "local" and not (settings.local_embedding_url or "").strip():
        return "Local embedding URL not set"
    if provider in _SELF_SIZED and settings.custom_embedding_dimensions not in (None, ""):
        if _custom_dimensions(settings) is None:
            return "Embedding dimensions must be a positive number"
    return None


def embedding_dimensions(settings: MemorySettings) -> Optional[int]:
    """Expected vector size for the configured model, if it can be known up front."""
    custom = _custom_dimensions(settings)
    if settings.embedding_provider in _SELF_SIZED:
        return custom
    if settings.embedding_model in EMBEDDING_DIMENSIONS:
        return EMBEDDING_DIMENSIONS[settings.embedding_model]
    return custom or DEFAULT_DIMENSIONS


def resolve_model(settings: MemorySettings) -> str:
    model = settings.embedding_model
    provider = settings.embedding_provider
    if provider == "openrouter":
        return OPENROUTER_MODEL_ALIASES.get(model, model)
    if provider == "openai":
        return OPENAI_MODEL_ALIASES.get(model, model)
    if provider == "sentence-transformers" and (not model or model in EMBEDDING_DIMENSIONS):
        return DEFAULT_LOCAL_MODEL
    return model


def parse_embedding(data: Any) -> Optional[List[float]]:
    """Pull the first vector out of the response shapes providers use in practice."""
    vector: Any = None
    if isinstance(data, dict):
        items = data.get("data")
        if isinstance(items, list) and items and isinstance(items[0], dict):
            first = items[0]
            if isinstance(first.get("embedding"), list):
                vector = first["embedding"]
            elif isinstance(first.get("vector"), list):
                vector = first["vector"]
        if vector is None and isinstance(data.get("embedding"), list):
            vector = data["embedding"]
        if vector is None and isinstance(data.get("embeddings"), list) and data["embeddings"]:
            vector = data["embeddings"][0]

    if not isinstance(vector, list) or not vector:
        return None
    if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in vector):
        return None
    return [float(x) for x in vector]


# -----------------------------
# Client
# -----------------------------
class EmbeddingClient:
    """Async embedding client driven by :class:`MemorySettings`.

    The ``local`` and ``sentence-transformers`` providers learn their vector
    size from the first successful response and record it in
    ``settings.custom_embedding_dimensions``.
    """

    def __init__(
        self,
        settings: MemorySettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._client = client or httpx.AsyncClient(timeout=TIMEOUT, transport=transport)
        self._model: Any = None

    async def aclose(self) -> None:
        await self._client.aclose()

    def provider_error(self) -> Optional[str]:
        return provider_error(self.settings)

    async def embed(self, text: str) -> Optional[List[float]]:
        error = self.provider_error()
        if error:
            logger.error("Cannot generate embedding: %s", error)
            return None

        provider = self.settings.embedding_provider or "openai"
        try:
            if provider == "sentence-transformers":
                vector = await asyncio.to_thread(self._encode_in_process, text)
            else:
                vector = await self._embed_http(provider, text)
        except Exception as e:
            logger.error("Error generating embedding with %s: %s", provider, e)
            return None

        if vector is not None:
            self._learn_dimensions(vector)
        return vector

    # --------- internals ----------
    def _target(self, provider: str) -> Tuple[str, Dict[str, str]]:
        s = self.settings
        headers = {"Content-Type": "application/json"}
        if provider == "openai":
            headers["Authorization"] = f"Bearer {s.openai_api_key.strip()}"
            return OPENAI_URL, headers
        if provider == "openrouter":
            headers["Authorization"] = f"Bearer {s.openrouter_api_key.strip()}"
            if s.openrouter_referer:
                headers["HTTP-Referer"] = s.openrouter_referer
            if s.openrouter_title:
                headers["X-Title"] = s.openrouter_title
            return OPENROUTER_URL, headers
        if s.local_embedding_api_key and s.local_embedding_api_key.strip():
            headers["Authorization"] = f"Bearer {s.local_embedding_api_key.strip()}"
        return s.local_embedding_url.strip(), headers

    async def _embed_http(self, provider: str, text: str) -> Optional[List[float]]:
        url, headers = self._target(provider)
        body = {"model": resolve_model(self.settings), "input": text}
        try:
            resp = await self._client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error("%s embedding request failed: %s", provider, e)
            return None

        if resp.status_code >= 400:
            logger.error("%s embedding API error: %s %s", provider, resp.status_code, resp.text[:500])
            return None

        try:
            data = resp.json()
        except ValueError as e:
            logger.error("%s embedding response is not JSON: %s", provider, e)
            return None

        vector = parse_embedding(data)
        if vector is None:
            logger.error("Unable to parse embedding response from %s", provider)
        return vector

    def _encode_in_process(self, text: str) -> Optional[List[float]]:
        if self._model is None:
            # Lazy import so the hosted providers work without the dep.
            from sentence_transformers import SentenceTransformer  # type: ignore

            self._model = SentenceTransformer(resolve_model(self.settings))
        vec = self._model.encode([text], normalize_embeddings=True)[0]
        return [float(x) for x in vec.tolist()]

    def _learn_dimensions(self, vector: List[float]) -> None:
        if self.settings.embedding_provider not in _SELF_SIZED:
            return
        size = len(vector)
        if _custom_dimensions(self.settings) == size:
            return
        self.settings.custom_embedding_dimensions = size
        logger.debug("Auto-detected local embedding dimensions: %d", size)
