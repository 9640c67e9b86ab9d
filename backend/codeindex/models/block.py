"""
Code block, embedding and vector point models.
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Any, Optional
from enum import Enum


class BlockType(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    INTERFACE = "interface"
    TYPE = "type"
    IMPORT = "import"
    COMMENT = "comment"
    VARIABLE = "variable"
    MARKDOWN = "markdown"
    OTHER = "other"


class CodeBlock(BaseModel):
    """A contiguous, content-addressed span of a file."""
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    file_path: str = Field(..., description="Path of the source file")
    identifier: Optional[str] = Field(default=None, description="Symbol name, if any")
    block_type: BlockType = Field(default=BlockType.OTHER, description="Structural kind of the block")
    start_line: int = Field(..., ge=1, description="Starting line number (1-indexed)")
    end_line: int = Field(..., ge=1, description="Ending line number (1-indexed, inclusive)")
    content: str = Field(..., description="Raw block text")
    file_hash: str = Field(..., description="sha256 of the whole file")
    segment_hash: str = Field(..., description="sha256 of path and line range")

    @model_validator(mode="after")
    def _check_line_range(self) -> "CodeBlock":
        if self.start_line > self.end_line:
            raise ValueError(f"start_line {self.start_line} is after end_line {self.end_line}")
        return self

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    @property
    def line_range(self) -> str:
        """Human-readable line range."""
        if self.start_line == self.end_line:
            return f"L{self.start_line}"
        return f"L{self.start_line}-L{self.end_line}"


class EmbeddingUsage(BaseModel):
    """Token accounting summed across provider calls."""
    prompt_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "EmbeddingUsage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.total_tokens += other.total_tokens


class EmbeddingResponse(BaseModel):
    """Vectors paired 1:1 with the texts that were sent."""
    embeddings: list[list[float]] = Field(default_factory=list)
    usage: EmbeddingUsage = Field(default_factory=EmbeddingUsage)
    skipped_indices: list[int] = Field(
        default_factory=list,
        description="Input positions dropped for exceeding the per-item token limit",
    )


class Point(BaseModel):
    """A vector database record."""
    id: str
    vector: list[float]
    payload: dict[str, Any]


class VectorSearchResult(BaseModel):
    """Raw search hit from the vector store."""
    id: str
    score: float
    payload: dict[str, Any]


class ScanStats(BaseModel):
    processed: int = 0
    skipped: int = 0


class ScanResult(BaseModel):
    """Outcome of one directory scan."""
    stats: ScanStats = Field(default_factory=ScanStats)
    total_block_count: int = 0
