"""
Configuration settings for the code index service.
Loads from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv


def _resolve_project_root() -> Path:
    """Resolve repo root for local and container deployments."""
    current = Path(__file__).resolve()
    backend_root = current.parents[1]
    if backend_root.name == "backend":
        return backend_root.parent
    return backend_root


PROJECT_ROOT = _resolve_project_root()

# Explicitly load .env from project root
env_path = PROJECT_ROOT / ".env"
load_dotenv(env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=env_path,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # App info
    app_name: str = "CodeIndex"
    app_version: str = "0.1.0"
    debug: bool = False

    # Embedding provider: openai, gemini, ollama or mock
    embedding_provider: str = Field(default="openai", validation_alias="EMBEDDING_PROVIDER")
    embedding_model: Optional[str] = Field(default=None, validation_alias="EMBEDDING_MODEL")
    embedding_dimension: Optional[int] = Field(default=None, validation_alias="EMBEDDING_DIMENSION")

    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_base_url: Optional[str] = Field(default=None, validation_alias="OPENAI_BASE_URL")
    openai_embedding_model: str = "text-embedding-3-small"

    # Gemini
    gemini_api_key: Optional[str] = Field(default=None, validation_alias="GEMINI_API_KEY")
    gemini_embedding_model: str = "models/gemini-embedding-001"

    # Ollama (local embeddings)
    ollama_base_url: str = Field(default="http://localhost:11434", validation_alias="OLLAMA_BASE_URL")
    ollama_embed_model: str = Field(default="nomic-embed-text", validation_alias="OLLAMA_EMBED_MODEL")

    # Vector store
    vector_store_url: Optional[str] = Field(default=None, validation_alias="VECTOR_STORE_URL")
    vector_store_api_key: Optional[str] = Field(default=None, validation_alias="VECTOR_STORE_API_KEY")
    use_persistent_index: bool = Field(default=False, validation_alias="USE_PERSISTENT_INDEX")

    # Paths - use absolute path
    data_dir: Path = Field(default=PROJECT_ROOT / "data", validation_alias="DATA_DIR")

    # Chunking
    max_block_chars: int = 1000
    min_block_chars: int = 50
    max_chars_tolerance_factor: float = 1.15

    # Scanning and batching
    max_file_size_bytes: int = Field(default=1024 * 1024, validation_alias="INDEX_MAX_FILE_SIZE")
    batch_segment_threshold: int = Field(default=60, validation_alias="INDEX_BATCH_SIZE")
    parsing_concurrency: int = Field(default=10, validation_alias="PARSING_CONCURRENCY")
    batch_processing_concurrency: int = Field(default=10, validation_alias="INDEX_MAX_CONCURRENT_JOBS")
    indexing_enabled: bool = Field(default=True, validation_alias="INDEXING_ENABLED")

    # Embedding requests
    max_batch_retries: int = 3
    initial_retry_delay: float = 0.5
    max_retry_delay: float = 30.0
    max_batch_tokens: int = 100_000
    max_item_tokens: int = 8191
    # OpenAI accepts up to 2048 inputs per request
    max_batch_items: int = 2048

    # Run policy
    max_block_loss_ratio: float = 0.1

    # Retrieval
    search_min_score: float = 0.7
    search_max_results: int = 50

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, validation_alias="PORT")

    @field_validator("openai_api_key", "gemini_api_key", "vector_store_api_key", mode="before")
    @classmethod
    def _normalize_api_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("embedding_provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Optional[str]) -> str:
        return (str(value or "openai")).strip().lower()

    def get_workspace_path(self, full_name: str) -> Path:
        """Get the local checkout path for a repository."""
        return self.data_dir / "repos" / full_name.replace("/", "-")

    def get_index_path(self) -> Path:
        """Get the on-disk location of the persistent vector index."""
        return self.data_dir / "_indexes"


# Global settings instance
settings = Settings()
