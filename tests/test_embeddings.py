from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from chat_memory.embeddings import (
    OPENAI_URL,
    OPENROUTER_URL,
    EmbeddingClient,
    embedding_dimensions,
    parse_embedding,
    provider_error,
    resolve_model,
)
from chat_memory.settings import MemorySettings


def _client(settings: MemorySettings, handler, seen: List[httpx.Request]) -> EmbeddingClient:
    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return EmbeddingClient(settings, transport=httpx.MockTransport(record))


def test_provider_errors():
    assert provider_error(MemorySettings()) == "OpenAI API key not set"
    assert provider_error(MemorySettings(openai_api_key="sk")) is None
    assert provider_error(MemorySettings(embedding_provider="openrouter")) == "OpenRouter API key not set"
    assert provider_error(MemorySettings(embedding_provider="local")) == "Local embedding URL not set"
    assert "Unsupported" in provider_error(MemorySettings(embedding_provider="cohere"))
    bad_dims = MemorySettings(embedding_provider="local", local_embedding_url="http://x", custom_embedding_dimensions=-3)
    assert provider_error(bad_dims) == "Embedding dimensions must be a positive number"


def test_dimensions_and_model_aliases():
    assert embedding_dimensions(MemorySettings()) == 3072
    assert embedding_dimensions(MemorySettings(embedding_model="unknown-model")) == 1536
    assert embedding_dimensions(MemorySettings(embedding_provider="local")) is None
    assert resolve_model(MemorySettings(embedding_provider="openrouter")) == "openai/text-embedding-3-large"
    assert resolve_model(MemorySettings(embedding_model="openai/text-embedding-3-small")) == "text-embedding-3-small"


@pytest.mark.parametrize(
    "body",
    [
        {"data": [{"embedding": [1, 2, 3]}]},
        {"data": [{"vector": [1, 2, 3]}]},
        {"embedding": [1, 2, 3]},
        {"embeddings": [[1, 2, 3]]},
    ],
)
def test_parse_embedding_shapes(body):
    assert parse_embedding(body) == [1.0, 2.0, 3.0]


def test_parse_embedding_rejects_garbage():
    assert parse_embedding({"data": []}) is None
    assert parse_embedding({"embedding": ["a"]}) is None
    assert parse_embedding([1, 2]) is None


@pytest.mark.asyncio
async def test_openai_request_shape():
    seen: List[httpx.Request] = []
    settings = MemorySettings(openai_api_key=" sk-test ")
    client = _client(settings, lambda r: httpx.Response(200, json={"data": [{"embedding": [0.5, 0.25]}]}), seen)

    assert await client.embed("hello") == [0.5, 0.25]
    assert str(seen[0].url) == OPENAI_URL
    assert seen[0].headers["authorization"] == "Bearer sk-test"
    assert json.loads(seen[0].content) == {"model": "text-embedding-3-large", "input": "hello"}
    await client.aclose()


@pytest.mark.asyncio
async def test_openrouter_headers():
    seen: List[httpx.Request] = []
    settings = MemorySettings(
        embedding_provider="openrouter",
        openrouter_api_key="or-key",
        openrouter_referer="http://localhost",
        openrouter_title="Chat",
    )
    client = _client(settings, lambda r: httpx.Response(200, json={"embedding": [1.0]}), seen)
    assert await client.embed("hi") == [1.0]
    assert str(seen[0].url) == OPENROUTER_URL
    assert seen[0].headers["http-referer"] == "http://localhost"
    assert seen[0].headers["x-title"] == "Chat"
    assert json.loads(seen[0].content)["model"] == "openai/text-embedding-3-large"
    await client.aclose()


@pytest.mark.asyncio
async def test_local_provider_learns_dimensions():
    seen: List[httpx.Request] = []
    settings = MemorySettings(embedding_provider="local", local_embedding_url="http://localhost:11434/v1/embeddings")
    client = _client(settings, lambda r: httpx.Response(200, json={"data": [{"embedding": [0.0] * 384}]}), seen)
    vector = await client.embed("hi")
    assert len(vector) == 384
    assert settings.custom_embedding_dimensions == 384
    assert "authorization" not in seen[0].headers
    await client.aclose()


@pytest.mark.asyncio
async def test_failures_return_none():
    seen: List[httpx.Request] = []
    settings = MemorySettings(openai_api_key="sk")

    client = _client(settings, lambda r: httpx.Response(401, json={"error": "bad key"}), seen)
    assert await client.embed("hi") is None
    await client.aclose()

    client = _client(settings, lambda r: httpx.Response(200, text="not json"), seen)
    assert await client.embed("hi") is None
    await client.aclose()

    def boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(settings, boom, seen)
    assert await client.embed("hi") is None
    await client.aclose()


@pytest.mark.asyncio
async def test_configuration_error_skips_request():
    seen: List[httpx.Request] = []
    client = _client(MemorySettings(), lambda r: httpx.Response(200, json={"embedding": [1.0]}), seen)
    assert await client.embed("hi") is None
    assert seen == []
    await client.aclose()
