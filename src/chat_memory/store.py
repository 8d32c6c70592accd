from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .typing import MemoryPayload, ScoredMemory, SearchFilter

logger = logging.getLogger(__name__)

TIMEOUT = httpx.Timeout(connect=5.0, read=20.0, write=10.0, pool=5.0)


# -----------------------------
# Internal types & helpers
# -----------------------------
@dataclass
class CollectionInfo:
    exists: bool
    vector_size: Optional[int] = None
    points_count: Optional[int] = None


def _vector_size(result: Dict[str, Any]) -> Optional[int]:
    # single unnamed vector, named "default" vector, or older flat layout
    params = ((result.get("config") or {}).get("params") or {}).get("vectors") or {}
    for candidate in (params.get("size"), (params.get("default") or {}).get("size"), (result.get("vectors") or {}).get("size")):
        if isinstance(candidate, int):
            return candidate
    return None


# -----------------------------
# Qdrant Store
# -----------------------------
class QdrantStore:
    """
    Vector store backed by the Qdrant REST API.

    - One collection per character (or one shared collection)
    - Cosine distance, vector size fixed at creation
    - Every call degrades to a failure value on HTTP errors; nothing raises

    Public API:
        ensure_collection(name, dimension) -> bool
        upsert_point(collection, point_id, vector, payload) -> bool
        search(collection, vector, limit, score_threshold, query_filter) -> List[ScoredMemory]
        scroll(collection, query_filter, limit) -> List[dict]
        delete_collection(name) -> bool
    """

    def __init__(
        self,
        url: str = "http://localhost:6333",
        api_key: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["api-key"] = api_key
        self._client = client or httpx.AsyncClient(
            base_url=self.url, headers=headers, timeout=TIMEOUT, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Optional[httpx.Response]:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Qdrant %s %s failed: %s", method, path, e)
            return None

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ----------------- collections -----------------
    async def collection_info(self, name: str) -> CollectionInfo:
        resp = await self._request("GET", f"/collections/{name}")
        if resp is None or resp.status_code == 404:
            return CollectionInfo(exists=False)
        if resp.status_code >= 400:
            logger.error("Failed to fetch collection info: %s (%s)", name, resp.status_code)
            return CollectionInfo(exists=False)
        result = self._json(resp).get("result") or {}
        return CollectionInfo(
            exists=True,
            vector_size=_vector_size(result),
            points_count=result.get("points_count"),
        )

    async def create_collection(self, name: str, dimension: Optional[int]) -> bool:
        if not isinstance(dimension, int) or dimension <= 0:
            logger.error("Cannot create collection %s - invalid embedding dimensions %r", name, dimension)
            return False
        resp = await self._request(
            "PUT",
            f"/collections/{name}",
            json={"vectors": {"size": dimension, "distance": "Cosine"}},
        )
        if resp is None or resp.status_code >= 400:
            logger.error("Failed to create collection: %s", name)
            return False
        logger.debug("Created collection: %s", name)
        return True

    async def ensure_collection(self, name: str, dimension: Optional[int]) -> bool:
        """Create ``name`` if missing; refuse an existing collection of another size."""
        info = await self.collection_info(name)
        if info.exists:
            if info.vector_size and dimension and info.vector_size != dimension:
                logger.error(
                    "Collection %s has dimension %d, but embedding returned %d. "
                    "Recreate the collection to match the model.",
                    name, info.vector_size, dimension,
                )
                return False
            return True
        logger.debug("Collection doesn't exist, creating: %s", name)
        return await self.create_collection(name, dimension)

    async def delete_collection(self, name: str) -> bool:
        resp = await self._request("DELETE", f"/collections/{name}")
        return resp is not None and resp.status_code < 400

    async def list_collections(self) -> Optional[List[str]]:
        """Collection names, or ``None`` when Qdrant is unreachable."""
        resp = await self._request("GET", "/collections")
        if resp is None or resp.status_code >= 400:
            return None
        items = (self._json(resp).get("result") or {}).get("collections") or []
        return [c.get("name", "") for c in items if isinstance(c, dict)]

    # ----------------- points -----------------
    async def upsert_point(
        self, collection: str, point_id: str, vector: Sequence[float], payload: MemoryPayload
    ) -> bool:
        resp = await self._request(
            "PUT",
            f"/collections/{collection}/points",
            json={"points": [{"id": point_id, "vector": list(vector), "payload": dict(payload)}]},
        )
        if resp is None:
            return False
        if resp.status_code >= 400:
            logger.error("Failed to save point to %s: %s %s", collection, resp.status_code, resp.text[:300])
            return False
        return True

    async def search(
        self,
        collection: str,
        vector: Sequence[float],
        limit: int,
        score_threshold: Optional[float] = None,
        query_filter: Optional[SearchFilter] = None,
    ) -> List[ScoredMemory]:
        body: Dict[str, Any] = {"vector": list(vector), "limit": limit, "with_payload": True}
        if score_threshold is not None:
            body["score_threshold"] = score_threshold
        if query_filter:
            body["filter"] = query_filter
        resp = await self._request("POST", f"/collections/{collection}/points/search", json=body)
        if resp is None or resp.status_code >= 400:
            logger.error("Search failed in %s", collection)
            return []
        result = self._json(resp).get("result") or []
        return result if isinstance(result, list) else []

    async def scroll(
        self, collection: str, query_filter: Optional[SearchFilter] = None, limit: int = 10
    ) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {"limit": limit, "with_payload": False}
        if query_filter:
            body["filter"] = query_filter
        resp = await self._request("POST", f"/collections/{collection}/points/scroll", json=body)
        if resp is None or resp.status_code >= 400:
            return []
        points = (self._json(resp).get("result") or {}).get("points") or []
        return points if isinstance(points, list) else []

    async def any_message_stored(self, collection: str, message_ids: Sequence[str]) -> bool:
        """True if a stored chunk already mentions one of ``message_ids``."""
        if not message_ids:
            return False
        flt = {"should": [{"key": "messageIds", "match": {"text": mid}} for mid in message_ids]}
        return len(await self.scroll(collection, flt, limit=1)) > 0
