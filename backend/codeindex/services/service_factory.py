"""
Service factory - builds the embedder, vector store, parser and scanner for
one repository from its IndexingConfig.
"""

from typing import Optional

from codeindex.config import settings
from codeindex.models.indexing import IndexingConfig, RepositoryInfo
from codeindex.services.chunker import CodeParser, code_parser
from codeindex.services.scanner import DirectoryScanner
from codeindex.services.vector_store import ChromaVectorStore
from codeindex.utils.embeddings import (
    BaseEmbedder,
    GeminiEmbedder,
    MockEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
)
from codeindex.utils.logger import get_logger

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("openai", "gemini", "ollama", "mock")


class IndexManagerError(Exception):
    """Base error for index service lifecycle failures."""

    pass


class ConfigurationError(IndexManagerError):
    """Raised when a configuration cannot produce a working service set."""

    pass


class ServiceFactory:
    def __init__(self, config: IndexingConfig, repository: RepositoryInfo):
        self.config = config
        self.repository = repository

    def create_embedder(self) -> BaseEmbedder:
        """Create the configured embedder. Missing credentials are an error, never a fallback."""
        provider = (self.config.embedding_provider or "").strip().lower()
        model = self.config.embedding_model
        dimension = self.config.embedding_dimension

        if provider == "openai":
            if not self.config.api_key:
                raise ConfigurationError("OpenAI API key missing for embedder creation")
            return OpenAIEmbedder(
                api_key=self.config.api_key,
                model=model,
                base_url=self.config.base_url,
                dimension=dimension,
            )
        if provider == "gemini":
            if not self.config.api_key:
                raise ConfigurationError("Gemini API key missing for embedder creation")
            return GeminiEmbedder(api_key=self.config.api_key, model=model, dimension=dimension)
        if provider == "ollama":
            return OllamaEmbedder(base_url=self.config.base_url, model=model, dimension=dimension)
        if provider == "mock":
            return MockEmbedder(dimension=dimension or 1536)

        raise ConfigurationError(
            f"Unknown embedding provider '{self.config.embedding_provider}'. "
            f"Expected one of: {', '.join(SUPPORTED_PROVIDERS)}"
        )

    def create_vector_store(self, embedder: BaseEmbedder) -> ChromaVectorStore:
        if embedder.dimension is None or embedder.dimension <= 0:
            raise ConfigurationError(
                f"Could not determine vector dimension for model '{embedder.model}'"
            )

        persist_path: Optional[str] = None
        if not self.config.vector_store_url and settings.use_persistent_index:
            index_path = settings.get_index_path()
            index_path.mkdir(parents=True, exist_ok=True)
            persist_path = str(index_path)

        return ChromaVectorStore(
            vector_size=embedder.dimension,
            url=self.config.vector_store_url,
            api_key=self.config.vector_store_api_key,
            persist_path=persist_path,
        )

    def create_parser(self) -> CodeParser:
        return code_parser

    def create_scanner(self, embedder: BaseEmbedder, vector_store: ChromaVectorStore, parser: CodeParser) -> DirectoryScanner:
        return DirectoryScanner(
            embedder=embedder,
            vector_store=vector_store,
            parser=parser,
            repository=self.repository,
            max_file_size=self.config.max_file_size,
            batch_threshold=self.config.batch_size,
            batch_concurrency=self.config.max_concurrent_jobs,
        )

    async def validate_embedder(self, embedder: BaseEmbedder) -> None:
        """Raise ConfigurationError unless the embedder answers a test request."""
        valid, error = await embedder.validate_configuration()
        if not valid:
            raise ConfigurationError(error or "Embedder configuration validation failed")
        logger.info("embedder_validated", provider=embedder.name, model=embedder.model)
