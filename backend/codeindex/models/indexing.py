"""
Indexing state, configuration and search models.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum

from codeindex.config import Settings, settings


class IndexState(str, Enum):
    STANDBY = "Standby"
    INDEXING = "Indexing"
    INDEXED = "Indexed"
    ERROR = "Error"


class IndexingStatus(BaseModel):
    """Snapshot of a repository's indexing lifecycle."""
    state: IndexState = IndexState.STANDBY
    message: str = ""
    progress: int = Field(default=0, ge=0, le=100)
    blocks_indexed: int = 0
    blocks_found: int = 0
    repository_id: Optional[str] = None


class RepositoryInfo(BaseModel):
    """Repository metadata copied into every point payload."""
    id: str = Field(..., description="Repository identifier")
    full_name: str = Field(..., description="owner/name")
    owner: Optional[str] = None
    html_url: Optional[str] = None
    default_branch: str = "main"
    language: Optional[str] = None
    is_private: bool = False
    is_fork: bool = False
    stars_count: int = 0
    forks_count: int = 0
    size: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None
    local_path: Optional[str] = Field(default=None, description="Checkout to scan")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value) -> str:
        return str(value).strip()

    @property
    def owner_login(self) -> str:
        return self.owner or self.full_name.split("/")[0]

    def workspace_path(self) -> str:
        if self.local_path:
            return self.local_path
        return str(settings.get_workspace_path(self.full_name))


class IndexingConfig(BaseModel):
    """Per-repository indexing configuration.

    Two configs that compare equal belong to the same configuration
    generation; the index manager rebuilds its services when they differ.
    """
    embedding_provider: str = "openai"
    api_key: Optional[str] = None
    embedding_model: Optional[str] = None
    embedding_dimension: Optional[int] = None
    base_url: Optional[str] = None
    vector_store_url: Optional[str] = None
    vector_store_api_key: Optional[str] = None
    max_file_size: int = 1024 * 1024
    batch_size: int = 60
    max_concurrent_jobs: int = 10
    enabled: bool = True

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "IndexingConfig":
        provider = source.embedding_provider
        if provider == "gemini":
            api_key, model, base_url = source.gemini_api_key, source.gemini_embedding_model, None
        elif provider == "ollama":
            api_key, model, base_url = None, source.ollama_embed_model, source.ollama_base_url
        else:
            api_key, model, base_url = source.openai_api_key, source.openai_embedding_model, source.openai_base_url
        return cls(
            embedding_provider=provider,
            api_key=api_key,
            embedding_model=source.embedding_model or model,
            embedding_dimension=source.embedding_dimension,
            base_url=base_url,
            vector_store_url=source.vector_store_url,
            vector_store_api_key=source.vector_store_api_key,
            max_file_size=source.max_file_size_bytes,
            batch_size=source.batch_segment_threshold,
            max_concurrent_jobs=source.batch_processing_concurrency,
            enabled=source.indexing_enabled,
        )


class SearchResult(BaseModel):
    """Search hit enriched with file, line and provenance metadata."""
    id: str
    file_path: str
    content: str
    start_line: int
    end_line: int
    block_type: str
    identifier: Optional[str] = None
    score: float

    repository_id: str
    repository_name: Optional[str] = None
    repository_owner: Optional[str] = None
    repository_url: Optional[str] = None
    repository_language: Optional[str] = None
    default_branch: Optional[str] = None

    github_file_url: Optional[str] = None
    github_file_url_with_lines: Optional[str] = None
    github_blame_url: Optional[str] = None
    github_history_url: Optional[str] = None
    github_raw_url: Optional[str] = None

    file_extension: Optional[str] = None
    file_directory: Optional[str] = None
    file_name: Optional[str] = None
    file_hash: Optional[str] = None
    segment_hash: Optional[str] = None

    indexed_at: Optional[str] = None
    content_length: Optional[int] = None
    line_count: Optional[int] = None


class IndexRequest(BaseModel):
    """Request to index a repository."""
    repository: RepositoryInfo


class IndexResponse(BaseModel):
    """Response after scheduling an indexing run."""
    started: bool
    status: IndexingStatus


class SearchRequest(BaseModel):
    """Semantic search over a repository index."""
    query: str = Field(..., min_length=1)


class SearchResponse(BaseModel):
    repository_id: str
    results: list[SearchResult]
