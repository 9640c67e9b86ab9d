import asyncio
from uuid import uuid4

import chromadb

from codeindex.models.block import ScanResult, ScanStats
from codeindex.models.indexing import IndexState, RepositoryInfo
from codeindex.services.chunker import CodeParser
from codeindex.services.orchestrator import IndexOrchestrator
from codeindex.services.scanner import DirectoryScanner
from codeindex.services.state_manager import IndexStateManager
from codeindex.services.vector_store import ChromaVectorStore
from codeindex.utils.embeddings import MockEmbedder

BLOCKS_PER_BATCH = 10


class _FakeScanner:
    """Reports one parsed file and one batch per entry; failing batches go to on_error."""

    def __init__(self, batches=20, failing=(), gate=None):
        self.batches = batches
        self.failing = set(failing)
        self.gate = gate
        self.calls = 0

    async def scan_directory(self, directory, on_error=None, on_blocks_indexed=None, on_file_parsed=None):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        for index in range(self.batches):
            on_file_parsed(BLOCKS_PER_BATCH)
            if index in self.failing:
                on_error(RuntimeError(f"batch {index} failed"))
            else:
                on_blocks_indexed(BLOCKS_PER_BATCH)
        return ScanResult(
            stats=ScanStats(processed=self.batches),
            total_block_count=self.batches * BLOCKS_PER_BATCH,
        )


class _FakeVectorStore:
    def __init__(self, ready=True, clear_error=None, delete_error=None, count_error=None):
        self.ready = ready
        self.count_error = count_error
        self.clear_error = clear_error
        self.delete_error = delete_error
        self.cleared = 0
        self.deleted = 0

    async def initialize(self, repository_id):
        return self.ready

    async def clear_collection(self, repository_id):
        self.cleared += 1
        if self.clear_error:
            raise self.clear_error

    async def delete_collection(self, repository_id=None):
        self.deleted += 1
        if self.delete_error:
            raise self.delete_error

    async def count_points_by_repository(self, repository_id):
        if self.count_error:
            raise self.count_error
        return 0


class _FakeWatcher:
    def __init__(self):
        self.started = 0
        self.disposed = 0

    async def initialize(self):
        self.started += 1

    def dispose(self):
        self.disposed += 1


def _orchestrator(scanner=None, store=None, watcher=None):
    return IndexOrchestrator(
        state_manager=IndexStateManager("r1"),
        workspace_path="/tmp/checkout",
        repository_id="r1",
        vector_store=store or _FakeVectorStore(),
        scanner=scanner or _FakeScanner(),
        file_watcher=watcher,
    )


def test_two_failed_batches_of_twenty_still_index():
    orchestrator = _orchestrator(scanner=_FakeScanner(batches=20, failing={3, 11}))

    assert asyncio.run(orchestrator.start_indexing()) is True

    status = orchestrator.state_manager.get_status()
    assert status.state == IndexState.INDEXED
    assert (status.blocks_indexed, status.blocks_found) == (180, 200)
    assert status.progress == 90


def test_loss_above_ten_percent_fails_with_first_error():
    store = _FakeVectorStore()
    orchestrator = _orchestrator(scanner=_FakeScanner(batches=20, failing={0, 1, 2}), store=store)

    assert asyncio.run(orchestrator.start_indexing()) is False

    status = orchestrator.state_manager.get_status()
    assert status.state == IndexState.ERROR
    assert "170 of 200" in status.message
    assert "batch 0 failed" in status.message
    # once before the scan, once for cleanup
    assert store.cleared == 2


def test_nothing_indexed_fails():
    orchestrator = _orchestrator(scanner=_FakeScanner(batches=4, failing={0, 1, 2, 3}))

    asyncio.run(orchestrator.start_indexing())

    status = orchestrator.state_manager.get_status()
    assert status.state == IndexState.ERROR
    assert "no blocks were indexed" in status.message
    assert "batch 0 failed" in status.message


def test_empty_workspace_indexes_successfully():
    orchestrator = _orchestrator(scanner=_FakeScanner(batches=0))

    assert asyncio.run(orchestrator.start_indexing()) is True
    assert orchestrator.state == IndexState.INDEXED


def test_cleanup_failure_never_masks_primary_error():
    cleanup_error = RuntimeError("cleanup exploded")
    store = _FakeVectorStore(ready=False, clear_error=cleanup_error)
    orchestrator = _orchestrator(store=store)

    assert asyncio.run(orchestrator.start_indexing()) is False

    assert orchestrator.state == IndexState.ERROR
    assert "could not be initialized" in orchestrator.state_manager.message
    assert "cleanup exploded" not in orchestrator.state_manager.message
    assert orchestrator.last_cleanup_error is cleanup_error


def test_concurrent_start_is_rejected():
    async def run():
        gate = asyncio.Event()
        scanner = _FakeScanner(batches=2, gate=gate)
        orchestrator = _orchestrator(scanner=scanner)

        first = asyncio.create_task(orchestrator.start_indexing())
        while orchestrator.state != IndexState.INDEXING or scanner.calls == 0:
            await asyncio.sleep(0)

        second = await orchestrator.start_indexing()
        gate.set()
        return await first, second, scanner.calls, orchestrator.state

    first, second, calls, state = asyncio.run(run())

    assert (first, second, calls) == (True, False, 1)
    assert state == IndexState.INDEXED


def test_rerun_after_success_resets_through_standby():
    orchestrator = _orchestrator()
    asyncio.run(orchestrator.start_indexing())

    states = []
    orchestrator.state_manager.add_listener(lambda status: states.append(status.state))
    asyncio.run(orchestrator.start_indexing())

    assert states[0] == IndexState.STANDBY
    assert IndexState.INDEXING in states
    assert states[-1] == IndexState.INDEXED


def test_new_run_recovers_from_error():
    scanner = _FakeScanner(batches=2, failing={0, 1})
    orchestrator = _orchestrator(scanner=scanner)
    asyncio.run(orchestrator.start_indexing())
    assert orchestrator.state == IndexState.ERROR

    scanner.failing = set()
    assert asyncio.run(orchestrator.start_indexing()) is True
    assert orchestrator.state == IndexState.INDEXED


def test_watcher_starts_after_success_and_stops_on_request():
    watcher = _FakeWatcher()
    orchestrator = _orchestrator(watcher=watcher)

    asyncio.run(orchestrator.start_indexing())
    assert watcher.started == 1

    orchestrator.stop_watcher()
    assert watcher.disposed == 1
    assert orchestrator.state == IndexState.STANDBY


def test_clear_index_data_deletes_collection():
    store = _FakeVectorStore()
    orchestrator = _orchestrator(store=store)
    asyncio.run(orchestrator.start_indexing())

    asyncio.run(orchestrator.clear_index_data())

    assert store.deleted == 1
    assert orchestrator.state == IndexState.STANDBY


def test_clear_index_data_failure_leaves_error():
    store = _FakeVectorStore(delete_error=RuntimeError("store offline"))
    orchestrator = _orchestrator(store=store)

    asyncio.run(orchestrator.clear_index_data())

    assert orchestrator.state == IndexState.ERROR
    assert "store offline" in orchestrator.state_manager.message


def test_failed_point_count_keeps_successful_run():
    store = _FakeVectorStore(count_error=ConnectionError("count timed out"))
    orchestrator = _orchestrator(scanner=_FakeScanner(batches=1), store=store)

    assert asyncio.run(orchestrator.start_indexing()) is True

    status = orchestrator.state_manager.get_status()
    assert status.state == IndexState.INDEXED
    assert status.blocks_indexed == BLOCKS_PER_BATCH
    # only the clear that starts the run
    assert store.cleared == 1


def test_rerun_on_unchanged_checkout_is_idempotent(tmp_path):
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "service.py").write_text(
        "\n".join(f"value_{i} = compute({i})  # step {i}" for i in range(100)) + "\n"
    )
    (tmp_path / "app.js").write_text(
        "\n".join(f"const item{i} = load('resource-{i}');" for i in range(300)) + "\n"
    )

    repository_id = f"repo-{uuid4().hex[:12]}"
    store = ChromaVectorStore(vector_size=32, client=chromadb.EphemeralClient())
    scanner = DirectoryScanner(
        embedder=MockEmbedder(dimension=32),
        vector_store=store,
        parser=CodeParser(max_block_chars=1000, min_block_chars=50),
        repository=RepositoryInfo(id=repository_id, full_name="acme/widgets"),
        batch_threshold=5,
    )
    orchestrator = IndexOrchestrator(
        state_manager=IndexStateManager(repository_id),
        workspace_path=str(tmp_path),
        repository_id=repository_id,
        vector_store=store,
        scanner=scanner,
    )

    async def run_twice():
        runs = []
        for _ in range(2):
            assert await orchestrator.start_indexing() is True
            status = orchestrator.state_manager.get_status()
            stored = await store.count_points_by_repository(repository_id)
            runs.append((status.blocks_found, status.blocks_indexed, stored, status.state))
        return runs

    first, second = asyncio.run(run_twice())

    assert first[0] > 0
    assert first == second
    found, indexed, stored, state = second
    assert found == indexed == stored
    assert state == IndexState.INDEXED
