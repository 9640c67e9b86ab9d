"""
Embedding clients - turn code blocks into vectors for semantic search.

Every provider shares the same request discipline:
1. Texts are packed greedily into sub-batches under a token budget and an
   item cap per request
2. Texts over the per-item token limit are skipped, never truncated
3. Rate-limited requests back off exponentially; other failures are retried
   under the same attempt counter and then raised
4. Sub-batch results are concatenated in submission order
"""

import asyncio
import hashlib
import math
import zlib
from typing import List, Optional, Tuple

import httpx
import numpy as np
from openai import AsyncOpenAI, RateLimitError
from google import genai
from google.genai import types

from codeindex.config import settings
from codeindex.models.block import EmbeddingResponse, EmbeddingUsage
from codeindex.utils.logger import get_logger

logger = get_logger(__name__)

# Gemini rejects inputs above this many tokens
GEMINI_MAX_ITEM_TOKENS = 2048
# Gemini free-tier: 100 embedding requests/minute, 100 contents per request.
GEMINI_SUB_BATCH_SIZE = 20

# Ollama - small batches to avoid timeouts on consumer hardware
OLLAMA_BATCH_SIZE = 50

OPENAI_MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingError(Exception):
    """Raised when a sub-batch still fails after all retries."""

    pass


def estimate_tokens(text: str) -> int:
    """Rough token estimation (1 token ≈ 4 chars for code)."""
    return math.ceil(len(text) / 4)


class BaseEmbedder:
    """Batching and retry logic shared by all embedding providers."""

    name = "base"

    def __init__(
        self,
        model: str,
        dimension: int,
        max_batch_tokens: int = None,
        max_item_tokens: int = None,
        max_batch_items: int = None,
        max_retries: int = None,
        initial_delay: float = None,
        max_delay: float = None,
    ):
        self.model = model
        self.dimension = dimension
        self.max_batch_tokens = max_batch_tokens or settings.max_batch_tokens
        self.max_item_tokens = max_item_tokens or settings.max_item_tokens
        self.max_batch_items = max(1, max_batch_items or settings.max_batch_items)
        self.max_retries = max(1, max_retries or settings.max_batch_retries)
        self.initial_delay = settings.initial_retry_delay if initial_delay is None else initial_delay
        self.max_delay = settings.max_retry_delay if max_delay is None else max_delay

    async def create_embeddings(self, texts: List[str]) -> EmbeddingResponse:
        """
        Embed texts, returning one vector per text that was sent.

        Args:
            texts: Texts to embed

        Returns:
            EmbeddingResponse whose embeddings follow input order, minus the
            positions listed in skipped_indices.
        """
        response = EmbeddingResponse()
        if not texts:
            return response

        sub_batches: List[List[str]] = []
        current: List[str] = []
        current_tokens = 0

        for index, text in enumerate(texts):
            item_tokens = estimate_tokens(text)
            if item_tokens > self.max_item_tokens:
                logger.warning(
                    "embedding_item_too_large",
                    index=index,
                    tokens=item_tokens,
                    limit=self.max_item_tokens,
                )
                response.skipped_indices.append(index)
                continue

            if current and (
                current_tokens + item_tokens > self.max_batch_tokens
                or len(current) >= self.max_batch_items
            ):
                sub_batches.append(current)
                current, current_tokens = [], 0

            current.append(text)
            current_tokens += item_tokens

        if current:
            sub_batches.append(current)

        for batch_num, batch in enumerate(sub_batches, start=1):
            vectors, usage = await self._embed_batch_with_retries(batch)
            if len(vectors) != len(batch):
                raise EmbeddingError(
                    f"Provider returned {len(vectors)} embeddings for {len(batch)} texts"
                )
            response.embeddings.extend(vectors)
            response.usage.add(usage)
            logger.debug(
                "embedding_sub_batch_ok",
                provider=self.name,
                batch=f"{batch_num}/{len(sub_batches)}",
                texts=len(batch),
            )

        return response

    async def _embed_batch_with_retries(self, batch: List[str]) -> Tuple[List[List[float]], EmbeddingUsage]:
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                return await self._request(batch)
            except Exception as e:
                last_error = e
                has_more_attempts = attempt < self.max_retries - 1

                if self._is_rate_limit(e) and has_more_attempts:
                    delay = min(self.initial_delay * (2 ** attempt), self.max_delay)
                    logger.warning(
                        "embedding_rate_limited",
                        provider=self.name,
                        attempt=attempt + 1,
                        max_attempts=self.max_retries,
                        wait_seconds=delay,
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.error(
                    "embedding_request_failed",
                    provider=self.name,
                    attempt=attempt + 1,
                    max_attempts=self.max_retries,
                    error=f"{type(e).__name__}: {e}",
                )

        raise EmbeddingError(
            f"Failed to create embeddings after {self.max_retries} attempts: {last_error}"
        ) from last_error

    async def validate_configuration(self) -> Tuple[bool, Optional[str]]:
        """Check credentials with a minimal one-item request."""
        try:
            vectors, _ = await self._request(["test"])
        except Exception as e:
            logger.warning("embedder_validation_failed", provider=self.name, error=str(e))
            return False, str(e) or f"Failed to validate {self.name} configuration"

        if not vectors:
            return False, f"Invalid response format from {self.name} embeddings API"
        if len(vectors[0]) != self.dimension:
            return False, (
                f"Embedding dimension mismatch: model {self.model} returned "
                f"{len(vectors[0])}, expected {self.dimension}"
            )
        return True, None

    async def _request(self, texts: List[str]) -> Tuple[List[List[float]], EmbeddingUsage]:
        raise NotImplementedError

    def _is_rate_limit(self, error: Exception) -> bool:
        return getattr(error, "status_code", None) == 429


class OpenAIEmbedder(BaseEmbedder):
    """OpenAI-compatible embeddings endpoint."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = None,
        base_url: Optional[str] = None,
        dimension: Optional[int] = None,
        **kwargs,
    ):
        model = model or settings.openai_embedding_model
        super().__init__(
            model=model,
            dimension=dimension or OPENAI_MODEL_DIMENSIONS.get(model, 1536),
            **kwargs,
        )
        # Retries are ours; the SDK's own retry loop would multiply attempts.
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def _request(self, texts: List[str]) -> Tuple[List[List[float]], EmbeddingUsage]:
        response = await self.client.embeddings.create(input=texts, model=self.model)
        usage = EmbeddingUsage()
        if response.usage is not None:
            usage = EmbeddingUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )
        return [item.embedding for item in response.data], usage

    def _is_rate_limit(self, error: Exception) -> bool:
        return isinstance(error, RateLimitError) or super()._is_rate_limit(error)


class GeminiEmbedder(BaseEmbedder):
    """Gemini embeddings through the google-genai SDK."""

    name = "gemini"

    def __init__(self, api_key: str, model: str = None, dimension: Optional[int] = None, **kwargs):
        model = model or settings.gemini_embedding_model
        if model.startswith("models/"):
            model = model[len("models/"):]
        kwargs.setdefault("max_item_tokens", GEMINI_MAX_ITEM_TOKENS)
        kwargs.setdefault("max_batch_items", GEMINI_SUB_BATCH_SIZE)
        super().__init__(model=model, dimension=dimension or 768, **kwargs)
        self.client = genai.Client(api_key=api_key)

    async def _request(self, texts: List[str]) -> Tuple[List[List[float]], EmbeddingUsage]:
        result = await self.client.aio.models.embed_content(
            model=self.model,
            contents=texts,
            config=types.EmbedContentConfig(
                task_type="RETRIEVAL_DOCUMENT",
                output_dimensionality=self.dimension,
            ),
        )
        # Gemini does not report usage for embeddings.
        tokens = sum(estimate_tokens(t) for t in texts)
        return [list(emb.values) for emb in result.embeddings], EmbeddingUsage(
            prompt_tokens=tokens, total_tokens=tokens
        )

    def _is_rate_limit(self, error: Exception) -> bool:
        error_str = str(error)
        return "429" in error_str or "RESOURCE_EXHAUSTED" in error_str or super()._is_rate_limit(error)


class OllamaEmbedder(BaseEmbedder):
    """Local Ollama embeddings. No API key required."""

    name = "ollama"

    OLLAMA_DIM = 384  # all-minilm
    OLLAMA_DIM_NOMIC = 768

    def __init__(self, base_url: str = None, model: str = None, dimension: Optional[int] = None, **kwargs):
        model = model or settings.ollama_embed_model
        if dimension is None:
            dimension = self.OLLAMA_DIM_NOMIC if "nomic" in model.lower() else self.OLLAMA_DIM
        kwargs.setdefault("max_batch_items", OLLAMA_BATCH_SIZE)
        super().__init__(model=model, dimension=dimension, **kwargs)
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")

    async def _request(self, texts: List[str]) -> Tuple[List[List[float]], EmbeddingUsage]:
        async with httpx.AsyncClient(timeout=httpx.Timeout(300.0, connect=10.0)) as client:
            response = await client.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model, "input": texts},
            )
            response.raise_for_status()
            data = response.json()

        tokens = int(data.get("prompt_eval_count") or 0)
        return data["embeddings"], EmbeddingUsage(prompt_tokens=tokens, total_tokens=tokens)

    def _is_rate_limit(self, error: Exception) -> bool:
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code == 429
        return False


class MockEmbedder(BaseEmbedder):
    """Deterministic hashing embeddings for offline development and tests."""

    name = "mock"

    def __init__(self, dimension: int = 1536, **kwargs):
        super().__init__(model="mock-hashing", dimension=dimension, **kwargs)

    async def _request(self, texts: List[str]) -> Tuple[List[List[float]], EmbeddingUsage]:
        vectors = await asyncio.to_thread(self._hash_embeddings, texts)
        tokens = sum(estimate_tokens(t) for t in texts)
        return vectors, EmbeddingUsage(prompt_tokens=tokens, total_tokens=tokens)

    def _hash_embeddings(self, texts: List[str]) -> List[List[float]]:
        embeddings = []
        dim = self.dimension
        token_cap = 256

        for text in texts:
            vector = np.zeros(dim, dtype=np.float32)
            tokens = text.split()

            if not tokens:
                tokens = [hashlib.sha256(text.encode("utf-8", errors="ignore")).hexdigest()]

            for token in tokens[:token_cap]:
                h = zlib.crc32(token.encode("utf-8", errors="ignore"))
                idx = h % dim
                sign = 1.0 if (h & 1) else -1.0
                vector[idx] += sign

            norm = np.linalg.norm(vector)
            if norm > 0:
                vector = vector / norm

            embeddings.append(vector.tolist())
        return embeddings
