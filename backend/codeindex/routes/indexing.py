"""
Indexing API endpoints.
"""

from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from codeindex.models.indexing import (
    IndexingConfig,
    IndexingStatus,
    IndexRequest,
    IndexResponse,
    IndexState,
    SearchRequest,
    SearchResponse,
)
from codeindex.routes.dependencies import get_registry
from codeindex.services.index_manager import (
    ConfigurationError,
    IndexManager,
    IndexManagerError,
    IndexManagerRegistry,
    InvalidQueryError,
    NotInitializedError,
)
from codeindex.services.orchestrator import IndexingRunError
from codeindex.utils.logger import get_logger

router = APIRouter(prefix="/index", tags=["indexing"])
logger = get_logger(__name__)


def get_indexing_config() -> IndexingConfig:
    return IndexingConfig.from_settings()


def _find_manager(registry: IndexManagerRegistry, repo_id: str) -> IndexManager:
    manager = registry.find(repo_id)
    if manager is None:
        raise HTTPException(status_code=404, detail=f"Repository not found: {repo_id}")
    return manager


@router.post("", response_model=IndexResponse)
async def index_repository(
    request: IndexRequest,
    background_tasks: BackgroundTasks,
    registry: IndexManagerRegistry = Depends(get_registry),
    config: IndexingConfig = Depends(get_indexing_config),
) -> IndexResponse:
    """
    Initialize services for a repository and schedule an indexing run.

    The run continues after the response; poll the status endpoint for
    progress.
    """
    repository = request.repository
    workspace = Path(repository.workspace_path())
    if not workspace.is_dir():
        raise HTTPException(status_code=404, detail=f"Repository checkout not found: {workspace}")

    manager = registry.get(repository.id)
    try:
        await manager.initialize(config, repository)
    except ConfigurationError as e:
        logger.warning("index_configuration_rejected", repository_id=repository.id, error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except IndexManagerError as e:
        raise HTTPException(status_code=409, detail=str(e))

    status = manager.get_current_status()
    if not manager.is_feature_enabled:
        return IndexResponse(started=False, status=status)
    if status.state == IndexState.INDEXING:
        return IndexResponse(started=False, status=status)

    background_tasks.add_task(manager.start_indexing)
    logger.info("indexing_scheduled", repository_id=repository.id, workspace=str(workspace))
    return IndexResponse(started=True, status=status)


@router.get("/{repo_id}/status", response_model=IndexingStatus)
async def get_index_status(
    repo_id: str,
    registry: IndexManagerRegistry = Depends(get_registry),
) -> IndexingStatus:
    return _find_manager(registry, repo_id).get_current_status()


@router.post("/{repo_id}/search", response_model=SearchResponse)
async def search_repository(
    repo_id: str,
    request: SearchRequest,
    registry: IndexManagerRegistry = Depends(get_registry),
) -> SearchResponse:
    """Semantic search over an indexed repository."""
    manager = _find_manager(registry, repo_id)
    try:
        results = await manager.search_index(request.query)
    except NotInitializedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("search_failed", repository_id=repo_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Search failed: {e}")

    return SearchResponse(repository_id=repo_id, results=results)


@router.delete("/{repo_id}", response_model=IndexingStatus)
async def clear_repository_index(
    repo_id: str,
    registry: IndexManagerRegistry = Depends(get_registry),
) -> IndexingStatus:
    """Stop watching and drop the repository's indexed data."""
    manager = _find_manager(registry, repo_id)
    try:
        await manager.clear_index_data()
    except (NotInitializedError, IndexingRunError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    return manager.get_current_status()
