"""
Index manager - per-repository entry point to the indexing services.

The manager is the only place where the embedder, vector store, scanner and
orchestrator are created or discarded. Managers are looked up through an
IndexManagerRegistry that callers receive by reference.
"""

from typing import Callable, Dict, List, Optional

from codeindex.config import settings
from codeindex.models.indexing import (
    IndexingConfig,
    IndexingStatus,
    IndexState,
    RepositoryInfo,
    SearchResult,
)
from codeindex.services.orchestrator import IndexOrchestrator
from codeindex.services.service_factory import (
    ConfigurationError,
    IndexManagerError,
    ServiceFactory,
)
from codeindex.services.state_manager import IndexStateManager, ProgressListener
from codeindex.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = [
    "ConfigurationError",
    "IndexManager",
    "IndexManagerError",
    "IndexManagerRegistry",
    "InvalidQueryError",
    "NotInitializedError",
    "index_registry",
]


class NotInitializedError(IndexManagerError):
    """Raised when an operation runs before initialize() built the services."""

    pass


class InvalidQueryError(IndexManagerError):
    """Raised when a search query cannot be embedded."""

    pass


class IndexManager:
    """
    Owns the service set of one repository.

    Services are built once per configuration generation. A different
    config or repository description triggers a full rebuild, including a
    fresh credential check of the embedding provider.
    """

    def __init__(self, repository_id: str, factory_class: type = ServiceFactory):
        self.repository_id = str(repository_id)
        self.state_manager = IndexStateManager(self.repository_id)
        self._factory_class = factory_class

        self._config: Optional[IndexingConfig] = None
        self._repository: Optional[RepositoryInfo] = None
        self._embedder = None
        self._vector_store = None
        self._scanner = None
        self._orchestrator: Optional[IndexOrchestrator] = None

    @property
    def is_initialized(self) -> bool:
        return self._orchestrator is not None

    @property
    def is_feature_enabled(self) -> bool:
        return bool(self._config and self._config.enabled)

    @property
    def repository(self) -> Optional[RepositoryInfo]:
        return self._repository

    async def initialize(self, config: IndexingConfig, repository: RepositoryInfo) -> bool:
        """
        Build (or rebuild) services for this configuration.

        Returns:
            True when a new service set was built, False when the existing
            one was kept or indexing is disabled.

        Raises:
            ConfigurationError: credentials missing or rejected by the provider
            IndexManagerError: the config changed while a run is in progress
        """
        if repository.id != self.repository_id:
            raise ConfigurationError(
                f"Repository {repository.id} does not belong to manager {self.repository_id}"
            )
        if self.is_initialized and config == self._config and repository == self._repository:
            return False

        if self._orchestrator is not None and self._orchestrator.is_processing:
            raise IndexManagerError("Cannot reconfigure while indexing is in progress")

        if not config.enabled:
            logger.info("indexing_disabled", repository_id=self.repository_id)
            self._discard_services()
            self._config = config
            self._repository = repository
            return False

        await self._recreate_services(config, repository)
        return True

    async def _recreate_services(self, config: IndexingConfig, repository: RepositoryInfo) -> None:
        self._discard_services()
        factory = self._factory_class(config, repository)

        try:
            embedder = factory.create_embedder()
            vector_store = factory.create_vector_store(embedder)
            parser = factory.create_parser()
            scanner = factory.create_scanner(embedder, vector_store, parser)
            await factory.validate_embedder(embedder)
        except Exception as e:
            self._config = None
            message = f"Configuration error: {e}"
            logger.error("service_creation_failed", repository_id=self.repository_id, error=str(e))
            if self.state_manager.can_transition(IndexState.ERROR):
                self.state_manager.set_state(IndexState.ERROR, message)
            if isinstance(e, ConfigurationError):
                raise
            raise ConfigurationError(message) from e

        self._embedder = embedder
        self._vector_store = vector_store
        self._scanner = scanner
        self._orchestrator = IndexOrchestrator(
            state_manager=self.state_manager,
            workspace_path=repository.workspace_path(),
            repository_id=self.repository_id,
            vector_store=vector_store,
            scanner=scanner,
        )
        self._config = config
        self._repository = repository

        logger.info(
            "index_services_ready",
            repository_id=self.repository_id,
            provider=embedder.name,
            model=embedder.model,
            dimension=embedder.dimension,
        )

    def _discard_services(self) -> None:
        if self._orchestrator is not None:
            self._orchestrator.stop_watcher()
        self._embedder = None
        self._vector_store = None
        self._scanner = None
        self._orchestrator = None

    def _require_orchestrator(self) -> IndexOrchestrator:
        if self._orchestrator is None:
            raise NotInitializedError(
                f"Index manager for repository {self.repository_id} is not initialized"
            )
        return self._orchestrator

    async def start_indexing(self) -> IndexingStatus:
        """Run indexing to completion. A second call during a run reports the running status."""
        orchestrator = self._require_orchestrator()
        if orchestrator.is_processing:
            logger.warning("indexing_already_running", repository_id=self.repository_id)
            return self.get_current_status()

        await orchestrator.start_indexing()
        return self.get_current_status()

    def stop_watcher(self) -> None:
        self._require_orchestrator().stop_watcher()

    async def clear_index_data(self) -> None:
        await self._require_orchestrator().clear_index_data()

    async def clear_index(self) -> None:
        """Remove indexed points but keep the collection."""
        self._require_orchestrator()
        await self._vector_store.clear_collection(self.repository_id)
        logger.info("index_cleared", repository_id=self.repository_id)

    async def search_index(self, query: str) -> List[SearchResult]:
        """Semantic search over this repository's blocks."""
        self._require_orchestrator()

        response = await self._embedder.create_embeddings([query])
        if not response.embeddings:
            raise InvalidQueryError("Query could not be embedded (longer than the provider item limit)")

        hits = await self._vector_store.search(
            response.embeddings[0],
            self.repository_id,
            min_score=settings.search_min_score,
            max_results=settings.search_max_results,
        )

        results = []
        for hit in hits:
            payload = hit.payload
            results.append(
                SearchResult(
                    id=hit.id,
                    score=hit.score,
                    file_path=payload.get("file_path", ""),
                    content=payload.get("content", ""),
                    start_line=int(payload.get("start_line", 1)),
                    end_line=int(payload.get("end_line", 1)),
                    block_type=payload.get("block_type", "other"),
                    identifier=payload.get("identifier"),
                    repository_id=str(payload.get("repository_id", self.repository_id)),
                    repository_name=payload.get("repository_name"),
                    repository_owner=payload.get("repository_owner"),
                    repository_url=payload.get("repository_url"),
                    repository_language=payload.get("repository_language"),
                    default_branch=payload.get("default_branch"),
                    github_file_url=payload.get("github_file_url"),
                    github_file_url_with_lines=payload.get("github_file_url_with_lines"),
                    github_blame_url=payload.get("github_blame_url"),
                    github_history_url=payload.get("github_history_url"),
                    github_raw_url=payload.get("github_raw_url"),
                    file_extension=payload.get("file_extension"),
                    file_directory=payload.get("file_directory"),
                    file_name=payload.get("file_name"),
                    file_hash=payload.get("file_hash"),
                    segment_hash=payload.get("segment_hash"),
                    indexed_at=payload.get("indexed_at"),
                    content_length=payload.get("content_length"),
                    line_count=payload.get("line_count"),
                )
            )

        logger.info("search_complete", repository_id=self.repository_id, results=len(results))
        return results

    def get_current_status(self) -> IndexingStatus:
        return self.state_manager.get_status()

    def on_progress_update(self, listener: ProgressListener) -> Callable[[], None]:
        """Subscribe to status snapshots. Returns an unsubscribe callable."""
        return self.state_manager.add_listener(listener)

    def dispose(self) -> None:
        self._discard_services()
        self.state_manager.dispose()


class IndexManagerRegistry:
    """One IndexManager per repository id."""

    def __init__(self, factory_class: type = ServiceFactory):
        self._managers: Dict[str, IndexManager] = {}
        self._factory_class = factory_class

    def get(self, repository_id: str) -> IndexManager:
        """Return the repository's manager, creating it on first use."""
        key = str(repository_id)
        manager = self._managers.get(key)
        if manager is None:
            manager = IndexManager(key, factory_class=self._factory_class)
            self._managers[key] = manager
        return manager

    def find(self, repository_id: str) -> Optional[IndexManager]:
        return self._managers.get(str(repository_id))

    def remove(self, repository_id: str) -> None:
        manager = self._managers.pop(str(repository_id), None)
        if manager is not None:
            manager.dispose()

    def dispose_all(self) -> None:
        for manager in self._managers.values():
            manager.dispose()
        self._managers.clear()

    def __len__(self) -> int:
        return len(self._managers)


# Global instance
index_registry = IndexManagerRegistry()
