"""
Health check endpoint.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from codeindex.config import settings
from codeindex.routes.dependencies import get_registry
from codeindex.services.index_manager import IndexManagerRegistry

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response schema."""
    status: str
    version: str
    embedding_provider: str
    repositories: int


@router.get("/health", response_model=HealthResponse)
async def health_check(registry: IndexManagerRegistry = Depends(get_registry)) -> HealthResponse:
    """
    Health check endpoint.

    Returns:
        HealthResponse with status, version, provider and the number of
        repositories with a live index manager.
    """
    return HealthResponse(
        status="ok",
        version=settings.app_version,
        embedding_provider=settings.embedding_provider,
        repositories=len(registry),
    )
