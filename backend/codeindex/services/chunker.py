"""
Chunker - Splits files into content-addressed code blocks with line range tracking.
"""

import hashlib
import re
from pathlib import Path
from typing import Optional

from codeindex.config import settings
from codeindex.utils.logger import get_logger
from codeindex.models.block import BlockType, CodeBlock

logger = get_logger(__name__)


SUPPORTED_EXTENSIONS = {
    # Source code
    ".js", ".ts", ".jsx", ".tsx", ".py", ".java", ".cpp", ".c", ".h", ".hpp",
    ".cs", ".php", ".rb", ".go", ".rs", ".swift", ".kt", ".scala", ".r", ".m",
    ".mm", ".pl", ".sh", ".bash", ".zsh", ".fish", ".ps1", ".bat", ".sql",
    ".dart", ".lua", ".vim",
    # Web
    ".html", ".css", ".scss", ".sass", ".less", ".vue", ".svelte",
    # Config
    ".yaml", ".yml", ".json", ".xml", ".toml", ".ini", ".cfg", ".conf",
    # Docs
    ".md", ".markdown", ".txt", ".rst", ".tex", ".org",
}

MARKDOWN_EXTENSIONS = {".md", ".markdown"}

FENCE_MARKERS = ("```", "~~~")

# Generated identifiers are cut to this length
IDENTIFIER_MAX_CHARS = 50

_MODIFIERS = r"(?:(?:public|private|protected|internal|static|final|abstract|virtual|override|async|inline|export|default|sealed|synchronized)\s+)*"

# "<return type> <name>(<params>) {" style declarations; statements such as
# "return foo(x)" or "else if (x) {" must not match.
_DECLARATION = (
    _MODIFIERS
    + r"(?!(?:return|else|new|throw|await|yield|delete|case|goto)\b)[\w<>\[\],.*&:]+\s+[*&]?"
    + r"(?!(?:if|for|while|switch|catch)\b)(\w+)\s*\([^;]*\)\s*(?:const\s*)?(?:throws\s+[\w.,\s]+)?\{?\s*$"
)

_FUNCTION_PATTERNS = [
    re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?function\*?\s+(\w+)"),
    re.compile(r"^(?:async\s+)?def\s+(\w+)"),
    re.compile(r"^func\s+(?:\([^)]*\)\s*)?(\w+)"),
    re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:unsafe\s+)?fn\s+(\w+)"),
    re.compile(r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s*)?(?:\([^)]*\)|\w+)\s*=>"),
    re.compile(r"^" + _DECLARATION),
]

_METHOD_PATTERNS = [
    re.compile(r"^\s+(?:async\s+)?def\s+(\w+)"),
    re.compile(r"^\s+" + _DECLARATION),
    re.compile(r"^\s+(?:static\s+)?(?:async\s+)?(?:get\s+|set\s+)?(?!(?:if|for|while|switch|catch|return)\b)(\w+)\s*\([^)]*\)\s*(?::\s*[\w<>\[\]|, ]+)?\s*\{\s*$"),
]

_CLASS_PATTERNS = [
    re.compile(r"^(?:export\s+)?(?:default\s+)?" + _MODIFIERS + r"(?:data\s+|case\s+)?class\s+(\w+)"),
    re.compile(r"^(?:pub\s+)?struct\s+(\w+)"),
]

_INTERFACE_PATTERNS = [
    re.compile(r"^(?:export\s+)?" + _MODIFIERS + r"interface\s+(\w+)"),
    re.compile(r"^(?:pub\s+)?trait\s+(\w+)"),
    re.compile(r"^(?:export\s+)?protocol\s+(\w+)"),
]

_TYPE_PATTERNS = [
    re.compile(r"^(?:export\s+)?(?:declare\s+)?type\s+(\w+)"),
    re.compile(r"^(?:export\s+)?" + _MODIFIERS + r"(?:const\s+)?enum\s+(\w+)"),
]

_IMPORT_PATTERN = re.compile(
    r"^(?:import\s|from\s+[\w.]+\s+import\s|#include\s|using\s+[\w.]+\s*;|use\s+[\w:]+|require\s*\(|package\s+[\w.]+)"
)

_COMMENT_PATTERN = re.compile(r"^(?://|/\*|\*|#(?!!)|--|<!--|\"\"\"|''')")

_VARIABLE_PATTERNS = [
    re.compile(r"^(?:export\s+)?(?:const|let|var)\s+(\w+)"),
    re.compile(r"^(\w+)\s*(?::\s*[\w\[\], .|]+)?\s*=(?!=)"),
    re.compile(r"^" + _MODIFIERS + r"[\w<>\[\],.]+\s+(\w+)\s*=(?!=)"),
]

_GENERIC_STOPWORDS = {"const", "let", "var", "if", "for", "while", "return", "import", "export"}


def create_file_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8", errors="replace")).hexdigest()


def create_segment_hash(file_path: str, start_line: int, end_line: int, offset: Optional[int] = None) -> str:
    """Hash identifying a block by its location; offset separates pieces of one long line."""
    key = f"{file_path}-{start_line}-{end_line}"
    if offset is not None:
        key = f"{key}-{offset}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def _first_match(patterns: list[re.Pattern], line: str) -> Optional[re.Match]:
    for pattern in patterns:
        match = pattern.match(line)
        if match:
            return match
    return None


def analyze_block(content: str) -> tuple[BlockType, Optional[str]]:
    """
    Classify a block by the shape of its first meaningful line.

    Decorator/annotation lines are skipped so that a decorated function is
    still reported as a function.
    """
    lines = [l.rstrip() for l in content.split("\n") if l.strip()]
    if not lines:
        return BlockType.OTHER, "empty-block"

    head = next((l for l in lines if not l.lstrip().startswith("@")), lines[0])
    stripped = head.strip()

    if head[:1].isspace():
        match = _first_match(_METHOD_PATTERNS, head)
        if match:
            return BlockType.METHOD, match.group(1)

    checks = (
        (BlockType.CLASS, _CLASS_PATTERNS),
        (BlockType.INTERFACE, _INTERFACE_PATTERNS),
        (BlockType.TYPE, _TYPE_PATTERNS),
        (BlockType.FUNCTION, _FUNCTION_PATTERNS),
    )
    for block_type, patterns in checks:
        match = _first_match(patterns, stripped)
        if match:
            return block_type, match.group(1)

    if _IMPORT_PATTERN.match(stripped):
        return BlockType.IMPORT, None

    if _COMMENT_PATTERN.match(stripped):
        return BlockType.COMMENT, None

    match = _first_match(_VARIABLE_PATTERNS, stripped)
    if match:
        return BlockType.VARIABLE, match.group(1)

    return BlockType.OTHER, generate_generic_identifier(content)


def generate_generic_identifier(content: str) -> str:
    """Build a readable identifier from the first meaningful token run."""
    lines = [l.strip() for l in content.strip().split("\n") if l.strip()]
    if not lines:
        return "empty-block"
    first_line = lines[0]

    if first_line.startswith(("//", "/*", "#", "*")):
        text = re.sub(r"^(?://|/\*+|\*+|#+)\s*", "", first_line)
        return (text or "comment")[:IDENTIFIER_MAX_CHARS]

    if "=" in first_line:
        before_equals = first_line.split("=")[0].strip()
        if before_equals:
            return before_equals[:IDENTIFIER_MAX_CHARS]

    if "{" in first_line:
        before_brace = first_line.split("{")[0].strip()
        if before_brace:
            return before_brace[:IDENTIFIER_MAX_CHARS]

    words = [w for w in first_line.split() if w not in _GENERIC_STOPWORDS]
    if words:
        return "-".join(words[:3])[:IDENTIFIER_MAX_CHARS]

    return ("block-" + re.sub(r"\s+", "-", first_line[:30]))[:IDENTIFIER_MAX_CHARS]


class CodeParser:
    """
    Splits a file into CodeBlocks.

    Strategies:
    - Markdown: fenced code blocks and contiguous prose paragraphs
    - Everything else: line accumulation up to max_block_chars
    """

    def __init__(
        self,
        max_block_chars: int = None,
        min_block_chars: int = None,
        tolerance_factor: float = None,
    ):
        self.max_block_chars = max_block_chars or settings.max_block_chars
        self.min_block_chars = min_block_chars or settings.min_block_chars
        self.tolerance_factor = tolerance_factor or settings.max_chars_tolerance_factor

    @property
    def hard_limit(self) -> int:
        """Largest block size ever emitted."""
        return int(self.max_block_chars * self.tolerance_factor)

    def is_supported(self, file_path: str) -> bool:
        return Path(file_path).suffix.lower() in SUPPORTED_EXTENSIONS

    def parse_file(
        self,
        file_path: str,
        content: Optional[str] = None,
        file_hash: Optional[str] = None,
    ) -> list[CodeBlock]:
        """
        Parse a file into code blocks.

        Args:
            file_path: Path recorded on each block; read from disk when
                content is not given
            content: File content
            file_hash: Precomputed hash of content

        Returns:
            Blocks in source order. Unsupported or unreadable files give [].
        """
        if not self.is_supported(file_path):
            return []

        if content is None:
            try:
                content = Path(file_path).read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning("file_read_failed", file_path=file_path, error=str(e))
                return []

        try:
            return self.parse_content(file_path, content, file_hash or create_file_hash(content))
        except Exception as e:
            logger.warning("parse_failed", file_path=file_path, error=f"{type(e).__name__}: {e}")
            return []

    def parse_content(self, file_path: str, content: str, file_hash: str) -> list[CodeBlock]:
        seen: set[str] = set()
        lines = [line.rstrip("\r") for line in content.split("\n")]
        if lines and not lines[-1]:
            # Trailing newline, not an extra line
            lines.pop()

        if Path(file_path).suffix.lower() in MARKDOWN_EXTENSIONS:
            return self._parse_markdown(lines, file_path, file_hash, seen)

        return self._chunk_lines(lines, 1, file_path, file_hash, seen)

    def _chunk_lines(
        self,
        lines: list[str],
        first_line_number: int,
        file_path: str,
        file_hash: str,
        seen: set[str],
        block_type: Optional[BlockType] = None,
    ) -> list[CodeBlock]:
        """Accumulate lines into blocks no longer than max_block_chars."""
        blocks: list[CodeBlock] = []
        buffer: list[str] = []
        buffer_chars = 0
        start_line = first_line_number

        def flush(end_line: int) -> None:
            block = self._finalize(buffer, file_path, file_hash, start_line, end_line, seen, block_type)
            if block:
                blocks.append(block)

        for index, line in enumerate(lines):
            line_number = first_line_number + index

            if len(line) > self.hard_limit:
                if buffer:
                    flush(line_number - 1)
                buffer, buffer_chars = [], 0
                blocks.extend(self._split_long_line(line, line_number, file_path, file_hash, seen, block_type))
                start_line = line_number + 1
                continue

            if buffer and buffer_chars + 1 + len(line) > self.max_block_chars:
                flush(line_number - 1)
                buffer, buffer_chars = [line], len(line)
                start_line = line_number
            else:
                buffer_chars += len(line) + (1 if buffer else 0)
                buffer.append(line)

        if buffer:
            flush(first_line_number + len(lines) - 1)

        return blocks

    def _split_long_line(
        self,
        line: str,
        line_number: int,
        file_path: str,
        file_hash: str,
        seen: set[str],
        block_type: Optional[BlockType],
    ) -> list[CodeBlock]:
        blocks = []
        for offset in range(0, len(line), self.max_block_chars):
            block = self._finalize(
                [line[offset:offset + self.max_block_chars]],
                file_path,
                file_hash,
                line_number,
                line_number,
                seen,
                block_type,
                offset=offset,
            )
            if block:
                blocks.append(block)
        return blocks

    def _parse_markdown(
        self,
        lines: list[str],
        file_path: str,
        file_hash: str,
        seen: set[str],
    ) -> list[CodeBlock]:
        """Fenced code blocks become one block each; prose is grouped by paragraph."""
        blocks: list[CodeBlock] = []
        section: list[str] = []
        section_start = 1
        in_fence = False

        def flush_section(is_code: bool) -> None:
            if section:
                block_type = None if is_code else BlockType.MARKDOWN
                blocks.extend(self._chunk_lines(section, section_start, file_path, file_hash, seen, block_type))

        for index, line in enumerate(lines):
            line_number = index + 1

            if line.lstrip().startswith(FENCE_MARKERS):
                flush_section(is_code=in_fence)
                section = []
                section_start = line_number + 1
                in_fence = not in_fence
                continue

            if in_fence:
                section.append(line)
            elif line.strip():
                if not section:
                    section_start = line_number
                section.append(line)
            else:
                flush_section(is_code=False)
                section = []

        flush_section(is_code=in_fence)
        return blocks

    def _finalize(
        self,
        lines: list[str],
        file_path: str,
        file_hash: str,
        start_line: int,
        end_line: int,
        seen: set[str],
        block_type: Optional[BlockType] = None,
        offset: Optional[int] = None,
    ) -> Optional[CodeBlock]:
        content = "\n".join(lines)

        if len(content) < self.min_block_chars or not content.strip():
            return None

        segment_hash = create_segment_hash(file_path, start_line, end_line, offset)
        if segment_hash in seen:
            return None
        seen.add(segment_hash)

        detected_type, identifier = analyze_block(content)
        if block_type == BlockType.MARKDOWN:
            heading = next((l.strip() for l in lines if l.strip()), "")
            identifier = heading.lstrip("#").strip()[:IDENTIFIER_MAX_CHARS] or identifier
            detected_type = BlockType.MARKDOWN

        return CodeBlock(
            file_path=file_path,
            identifier=identifier,
            block_type=detected_type,
            start_line=start_line,
            end_line=end_line,
            content=content,
            file_hash=file_hash,
            segment_hash=segment_hash,
        )


# Global instance
code_parser = CodeParser()
