"""
Vector store - one Chroma collection per repository.
"""

import asyncio
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import backoff
import chromadb
import httpx

from codeindex.config import settings
from codeindex.models.block import Point, VectorSearchResult
from codeindex.utils.logger import get_logger

logger = get_logger(__name__)

COLLECTION_PREFIX = "code-blocks-repo-"
DISTANCE_METRIC = "cosine"

# Metadata reads are paged so counts never depend on a cached total.
COUNT_PAGE_SIZE = 1000

# Point contents are stored as the Chroma document, not as metadata.
CONTENT_FIELD = "content"

TRANSIENT_ERRORS = (httpx.TransportError, ConnectionError, TimeoutError)


class VectorStoreError(Exception):
    """Raised when a collection operation cannot be completed."""

    pass


def collection_name(repository_id: str) -> str:
    """Stable collection name per repository."""
    safe_id = re.sub(r"[^a-zA-Z0-9._-]", "-", str(repository_id)).strip("-._")
    return f"{COLLECTION_PREFIX}{safe_id or 'default'}"


def _to_metadata(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Chroma metadata only holds scalars."""
    metadata = {}
    for key, value in payload.items():
        if key == CONTENT_FIELD or value is None:
            continue
        if isinstance(value, datetime):
            value = value.isoformat()
        elif not isinstance(value, (str, int, float, bool)):
            value = str(value)
        metadata[key] = value
    return metadata


class ChromaVectorStore:
    """
    Manages per-repository collections.

    Every search is filtered by repository_id, so results can never cross
    repositories even if a collection were shared.
    """

    def __init__(
        self,
        vector_size: int,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        persist_path: Optional[str] = None,
        client: Optional[chromadb.ClientAPI] = None,
    ):
        self.vector_size = vector_size
        self._client = client or self._create_client(url, api_key, persist_path)
        self._collections: Dict[str, Any] = {}

    @staticmethod
    def _create_client(
        url: Optional[str],
        api_key: Optional[str],
        persist_path: Optional[str],
    ) -> chromadb.ClientAPI:
        if url:
            if "://" not in url:
                url = f"http://{url}"
            parsed = urlparse(url)
            ssl = parsed.scheme == "https"
            headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
            return chromadb.HttpClient(
                host=parsed.hostname or "localhost",
                port=parsed.port or (443 if ssl else 8000),
                ssl=ssl,
                headers=headers,
            )
        if persist_path:
            return chromadb.PersistentClient(path=persist_path)
        return chromadb.EphemeralClient()

    def _get_collection(self, name: str):
        if name in self._collections:
            return self._collections[name]
        try:
            collection = self._client.get_collection(name)
        except Exception:
            # Chroma raises different types for a missing collection across versions
            return None
        self._collections[name] = collection
        return collection

    async def _require_collection(self, repository_id: str):
        name = collection_name(repository_id)
        collection = await asyncio.to_thread(self._get_collection, name)
        if collection is None:
            raise VectorStoreError(f"Collection {name} does not exist; call initialize() first")
        return collection

    async def initialize(self, repository_id: str) -> bool:
        """
        Create the repository's collection if absent.

        Returns:
            True when the collection is ready (created now, or existing with
            the same vector size); False on a vector size mismatch or when
            the store cannot be reached.
        """
        name = collection_name(repository_id)
        logger.info("collection_initializing", collection=name, vector_size=self.vector_size)

        try:
            existing = await asyncio.to_thread(self._get_collection, name)
            if existing is None:
                collection = await asyncio.to_thread(
                    self._client.create_collection,
                    name=name,
                    metadata={
                        "hnsw:space": DISTANCE_METRIC,
                        "vector_size": self.vector_size,
                        "repository_id": str(repository_id),
                    },
                )
                self._collections[name] = collection
                logger.info("collection_created", collection=name)
                return True

            stored_size = (existing.metadata or {}).get("vector_size")
            if stored_size is not None and int(stored_size) != self.vector_size:
                logger.warning(
                    "collection_vector_size_mismatch",
                    collection=name,
                    expected=self.vector_size,
                    actual=stored_size,
                )
                return False

            logger.info("collection_exists", collection=name)
            return True
        except Exception as e:
            logger.error("collection_initialize_failed", collection=name, error=str(e))
            return False

    @backoff.on_exception(backoff.expo, TRANSIENT_ERRORS, max_tries=3, jitter=None)
    async def upsert_points(self, points: List[Point]) -> None:
        """Write points, grouped into their repositories' collections."""
        if not points:
            return

        by_repository: Dict[str, List[Point]] = {}
        for point in points:
            repository_id = point.payload.get("repository_id")
            if repository_id is None:
                raise VectorStoreError(f"Point {point.id} has no repository_id in its payload")
            by_repository.setdefault(str(repository_id), []).append(point)

        for repository_id, group in by_repository.items():
            collection = await self._require_collection(repository_id)
            await asyncio.to_thread(
                collection.upsert,
                ids=[p.id for p in group],
                embeddings=[p.vector for p in group],
                documents=[p.payload.get(CONTENT_FIELD, "") for p in group],
                metadatas=[_to_metadata(p.payload) for p in group],
            )
            logger.debug("points_upserted", repository_id=repository_id, count=len(group))

    @backoff.on_exception(backoff.expo, TRANSIENT_ERRORS, max_tries=3, jitter=None)
    async def search(
        self,
        query_vector: List[float],
        repository_id: str,
        min_score: float = None,
        max_results: int = None,
    ) -> List[VectorSearchResult]:
        """Nearest neighbours within one repository, best first."""
        min_score = settings.search_min_score if min_score is None else min_score
        max_results = max_results or settings.search_max_results

        collection = await self._require_collection(repository_id)
        total = await asyncio.to_thread(collection.count)
        if total == 0:
            return []

        results = await asyncio.to_thread(
            collection.query,
            query_embeddings=[query_vector],
            n_results=min(max_results, total),
            where={"repository_id": str(repository_id)},
            include=["documents", "metadatas", "distances"],
        )

        if not results["ids"] or not results["ids"][0]:
            return []

        hits = []
        for point_id, document, metadata, distance in zip(
            results["ids"][0],
            results["documents"][0],
            results["metadatas"][0],
            results["distances"][0],
        ):
            # Chroma reports cosine distance; callers work with similarity.
            score = 1.0 - float(distance)
            if score < min_score:
                continue
            payload = dict(metadata or {})
            payload[CONTENT_FIELD] = document
            hits.append(VectorSearchResult(id=point_id, score=score, payload=payload))

        return hits

    async def clear_collection(self, repository_id: str) -> None:
        """Delete every point of the repository, keeping the collection."""
        name = collection_name(repository_id)
        collection = await asyncio.to_thread(self._get_collection, name)
        if collection is None:
            return
        try:
            await asyncio.to_thread(collection.delete, where={"repository_id": str(repository_id)})
        except Exception as e:
            logger.error("collection_clear_failed", collection=name, error=str(e))
            raise VectorStoreError(f"Failed to clear collection {name}: {e}") from e
        logger.info("collection_cleared", collection=name)

    async def delete_collection(self, repository_id: Optional[str] = None) -> None:
        """Drop one repository's collection, or every collection with our prefix."""
        if repository_id is not None:
            names = [collection_name(repository_id)]
        else:
            listed = await asyncio.to_thread(self._client.list_collections)
            # Older Chroma returns Collection objects, newer returns names.
            names = [getattr(c, "name", c) for c in listed]
            names = [n for n in names if n.startswith(COLLECTION_PREFIX)]

        for name in names:
            self._collections.pop(name, None)
            try:
                await asyncio.to_thread(self._client.delete_collection, name)
            except Exception as e:
                if repository_id is not None and await asyncio.to_thread(self._get_collection, name) is None:
                    continue
                logger.error("collection_delete_failed", collection=name, error=str(e))
                raise VectorStoreError(f"Failed to delete collection {name}: {e}") from e
            logger.info("collection_deleted", collection=name)

    async def count_points_by_repository(self, repository_id: str) -> int:
        """Exhaustive count of stored points for a repository."""
        collection = await self._require_collection(repository_id)
        where = {"repository_id": str(repository_id)}
        total = 0
        offset = 0

        while True:
            page = await asyncio.to_thread(
                collection.get,
                where=where,
                include=[],
                limit=COUNT_PAGE_SIZE,
                offset=offset,
            )
            page_size = len(page["ids"])
            total += page_size
            if page_size < COUNT_PAGE_SIZE:
                break
            offset += page_size

        logger.debug("points_counted", repository_id=repository_id, count=total)
        return total
