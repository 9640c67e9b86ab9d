"""
Index orchestrator - drives one indexing run for a repository.

Flow:
1. Reset to Standby if a previous run left Indexed or Error
2. Mark Indexing, prepare a clean collection
3. Scan, forwarding progress into the state manager
4. Judge the run by its block loss and batch errors
5. Indexed on success; on failure clean up, mark Error, stop the watcher
"""

from typing import List, Optional, Protocol

from codeindex.config import settings
from codeindex.models.indexing import IndexState
from codeindex.services.state_manager import IndexStateManager
from codeindex.utils.logger import bind_repository, get_logger

logger = get_logger(__name__)


class FileWatcher(Protocol):
    """Optional post-indexing watcher for incremental updates."""

    async def initialize(self) -> None: ...

    def dispose(self) -> None: ...


class IndexingRunError(Exception):
    """Run-level failure. The message is shown to users as-is."""

    pass


class IndexOrchestrator:
    """Owns a repository's collection for the duration of a run."""

    def __init__(
        self,
        state_manager: IndexStateManager,
        workspace_path: str,
        repository_id: str,
        vector_store,
        scanner,
        file_watcher: Optional[FileWatcher] = None,
        max_loss_ratio: float = None,
    ):
        self.state_manager = state_manager
        self.workspace_path = workspace_path
        self.repository_id = repository_id
        self.vector_store = vector_store
        self.scanner = scanner
        self.file_watcher = file_watcher
        self.max_loss_ratio = settings.max_block_loss_ratio if max_loss_ratio is None else max_loss_ratio

        self._is_processing = False
        self._watcher_running = False
        # Cleanup failures are kept apart from the run's own failure reason.
        self.last_cleanup_error: Optional[Exception] = None

    @property
    def state(self) -> IndexState:
        return self.state_manager.state

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    async def start_indexing(self) -> bool:
        """
        Run a full index of the workspace.

        Returns:
            True when the run finished Indexed, False when it failed or was
            rejected because a run is already in progress.
        """
        if self._is_processing:
            logger.warning("indexing_already_running", repository_id=self.repository_id)
            return False

        self._is_processing = True
        bind_repository(self.repository_id)
        try:
            if self.state_manager.state != IndexState.STANDBY:
                self.state_manager.set_state(IndexState.STANDBY, "Preparing new indexing run")

            self.state_manager.set_state(IndexState.INDEXING, "Initializing vector store...")
            await self._prepare_collection()

            self.state_manager.set_state(IndexState.INDEXING, "Scanning files...")
            await self._run_scan()
            return True
        except Exception as e:
            await self._handle_failure(e)
            return False
        finally:
            self._is_processing = False

    async def _prepare_collection(self) -> None:
        ready = await self.vector_store.initialize(self.repository_id)
        if not ready:
            raise IndexingRunError(
                "Vector store collection could not be initialized "
                "(vector size mismatch or store unreachable)"
            )
        # Every run starts from an empty collection.
        await self.vector_store.clear_collection(self.repository_id)

    async def _run_scan(self) -> None:
        blocks_found = 0
        blocks_indexed = 0
        batch_errors: List[Exception] = []

        def on_file_parsed(count: int) -> None:
            nonlocal blocks_found
            blocks_found += count
            self.state_manager.report_progress(blocks_indexed, blocks_found)

        def on_blocks_indexed(count: int) -> None:
            nonlocal blocks_indexed
            blocks_indexed += count
            self.state_manager.report_progress(blocks_indexed, blocks_found)

        result = await self.scanner.scan_directory(
            self.workspace_path,
            on_error=batch_errors.append,
            on_blocks_indexed=on_blocks_indexed,
            on_file_parsed=on_file_parsed,
        )

        blocks_found = result.total_block_count
        self.state_manager.report_progress(blocks_indexed, blocks_found)
        self._check_outcome(blocks_indexed, blocks_found, batch_errors)

        stored = await self._count_stored_points()
        logger.info(
            "indexing_run_complete",
            files_processed=result.stats.processed,
            files_skipped=result.stats.skipped,
            blocks_found=blocks_found,
            blocks_indexed=blocks_indexed,
            points_stored=stored,
            batch_errors=len(batch_errors),
        )

        if self.file_watcher is not None:
            await self.file_watcher.initialize()
            self._watcher_running = True

        self.state_manager.set_state(
            IndexState.INDEXED,
            f"Indexed {blocks_indexed} blocks from {result.stats.processed} files",
        )

    async def _count_stored_points(self) -> Optional[int]:
        # Informational only; the run is already judged at this point.
        try:
            return await self.vector_store.count_points_by_repository(self.repository_id)
        except Exception as e:
            logger.warning("stored_point_count_failed", repository_id=self.repository_id, error=str(e))
            return None

    def _check_outcome(self, indexed: int, found: int, errors: List[Exception]) -> None:
        first_error = errors[0] if errors else None

        if found > 0 and indexed == 0:
            if first_error is not None:
                raise IndexingRunError(f"Indexing failed: no blocks were indexed. First error: {first_error}")
            raise IndexingRunError(f"Indexing failed: no blocks were indexed out of {found} found")

        if errors and found > 0 and (found - indexed) / found > self.max_loss_ratio:
            raise IndexingRunError(
                f"Indexing partially failed: only {indexed} of {found} blocks were indexed. "
                f"First error: {first_error}"
            )

        if errors and indexed == 0:
            raise IndexingRunError(f"Indexing failed completely: {first_error}")

        if errors:
            logger.warning(
                "indexing_completed_with_errors",
                blocks_indexed=indexed,
                blocks_found=found,
                batch_errors=len(errors),
            )

    async def _handle_failure(self, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error("indexing_run_failed", repository_id=self.repository_id, error=message)

        try:
            await self.vector_store.clear_collection(self.repository_id)
        except Exception as cleanup_error:
            self.last_cleanup_error = cleanup_error
            logger.warning(
                "cleanup_after_failure_failed",
                repository_id=self.repository_id,
                error=str(cleanup_error),
            )

        if self.state_manager.can_transition(IndexState.ERROR):
            self.state_manager.set_state(IndexState.ERROR, message)
        else:
            logger.error(
                "error_state_unreachable",
                current=self.state_manager.state.value,
                message=message,
            )
        self._dispose_watcher()

    def _dispose_watcher(self) -> None:
        if self.file_watcher is not None and self._watcher_running:
            self.file_watcher.dispose()
            self._watcher_running = False

    def stop_watcher(self) -> None:
        """Stop the post-indexing watcher. An in-flight scan is unaffected."""
        self._dispose_watcher()
        if self.state_manager.state == IndexState.INDEXED:
            self.state_manager.set_state(IndexState.STANDBY, "File watcher stopped")

    async def clear_index_data(self) -> None:
        """Stop watching, drop the collection and return to Standby."""
        if self._is_processing:
            raise IndexingRunError("Cannot clear index data while indexing is in progress")

        self.stop_watcher()
        try:
            await self.vector_store.delete_collection(self.repository_id)
        except Exception as e:
            logger.error("clear_index_data_failed", repository_id=self.repository_id, error=str(e))
            self.state_manager.set_state(IndexState.ERROR, f"Failed to clear index data: {e}")
            return

        self.state_manager.set_state(IndexState.STANDBY, "Index data cleared")
        logger.info("index_data_cleared", repository_id=self.repository_id)
