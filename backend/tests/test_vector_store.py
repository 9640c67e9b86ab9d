import asyncio
from uuid import uuid4

import chromadb
import pytest

from codeindex.models.block import Point
from codeindex.services.vector_store import (
    COLLECTION_PREFIX,
    ChromaVectorStore,
    VectorStoreError,
    collection_name,
)


def _repo_id() -> str:
    return f"repo-{uuid4().hex[:12]}"


def _point(repository_id: str, vector, file_path: str, start: int, end: int) -> Point:
    return Point(
        id=str(uuid4()),
        vector=vector,
        payload={
            "repository_id": repository_id,
            "file_path": file_path,
            "start_line": start,
            "end_line": end,
            "block_type": "function",
            "identifier": None,
            "content": f"content of {file_path}",
        },
    )


@pytest.fixture(scope="module")
def client():
    return chromadb.EphemeralClient()


def test_collection_name_is_stable_and_prefixed():
    assert collection_name("42") == f"{COLLECTION_PREFIX}42"
    assert collection_name("owner/repo") == collection_name("owner/repo")
    assert "/" not in collection_name("owner/repo")


def test_search_round_trip_stays_in_repository(client):
    store = ChromaVectorStore(vector_size=3, client=client)
    repo_a, repo_b = _repo_id(), _repo_id()

    async def run():
        assert await store.initialize(repo_a) is True
        assert await store.initialize(repo_b) is True
        await store.upsert_points([
            _point(repo_a, [1.0, 0.0, 0.0], "src/a.py", 1, 10),
            _point(repo_a, [0.0, 1.0, 0.0], "src/b.py", 5, 9),
            _point(repo_b, [1.0, 0.0, 0.0], "other/c.py", 1, 3),
        ])
        return await store.search([1.0, 0.05, 0.0], repo_a, min_score=0.7, max_results=10)

    hits = asyncio.run(run())

    assert len(hits) == 1
    hit = hits[0]
    assert hit.score > 0.9
    assert hit.payload["file_path"] == "src/a.py"
    assert hit.payload["start_line"] == 1
    assert hit.payload["end_line"] == 10
    assert hit.payload["repository_id"] == repo_a
    assert hit.payload["content"] == "content of src/a.py"
    assert "identifier" not in hit.payload


def test_count_and_clear(client):
    store = ChromaVectorStore(vector_size=3, client=client)
    repo = _repo_id()

    async def run():
        await store.initialize(repo)
        await store.upsert_points([_point(repo, [1.0, 0.0, float(i)], f"f{i}.py", 1, 2) for i in range(5)])
        before = await store.count_points_by_repository(repo)
        await store.clear_collection(repo)
        after = await store.count_points_by_repository(repo)
        return before, after

    assert asyncio.run(run()) == (5, 0)


def test_existing_collection_with_other_vector_size_fails_closed(client):
    repo = _repo_id()

    async def run():
        first = await ChromaVectorStore(vector_size=3, client=client).initialize(repo)
        same = await ChromaVectorStore(vector_size=3, client=client).initialize(repo)
        mismatched = await ChromaVectorStore(vector_size=4, client=client).initialize(repo)
        return first, same, mismatched

    assert asyncio.run(run()) == (True, True, False)


def test_upsert_requires_initialized_collection(client):
    store = ChromaVectorStore(vector_size=3, client=client)
    repo = _repo_id()

    with pytest.raises(VectorStoreError):
        asyncio.run(store.upsert_points([_point(repo, [1.0, 0.0, 0.0], "a.py", 1, 1)]))


def test_delete_collection_only_touches_one_repository(client):
    store = ChromaVectorStore(vector_size=3, client=client)
    repo_a, repo_b = _repo_id(), _repo_id()

    async def run():
        await store.initialize(repo_a)
        await store.initialize(repo_b)
        await store.delete_collection(repo_a)
        with pytest.raises(VectorStoreError):
            await store.count_points_by_repository(repo_a)
        return await store.count_points_by_repository(repo_b)

    assert asyncio.run(run()) == 0


def test_search_on_empty_collection_returns_nothing(client):
    store = ChromaVectorStore(vector_size=3, client=client)
    repo = _repo_id()

    async def run():
        await store.initialize(repo)
        return await store.search([1.0, 0.0, 0.0], repo)

    assert asyncio.run(run()) == []
