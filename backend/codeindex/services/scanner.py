"""
Directory scanner - walks a checkout, parses files and feeds batches through
embedding and vector store upsert.
"""

import asyncio
import fnmatch
import os
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator, List, Optional
from uuid import uuid4

from codeindex.config import settings
from codeindex.models.block import CodeBlock, Point, ScanResult, ScanStats
from codeindex.models.indexing import RepositoryInfo
from codeindex.services.chunker import CodeParser
from codeindex.utils.logger import get_logger

logger = get_logger(__name__)

ErrorCallback = Callable[[Exception], None]
CountCallback = Callable[[int], None]

# Directories never descended into
IGNORED_DIRECTORIES = {
    ".git", ".svn", ".hg", ".bzr",
    "node_modules", "bower_components", "jspm_packages", "vendor",
    "__pycache__", ".venv", "venv", "env", ".tox", ".pytest_cache", ".mypy_cache",
    "dist", "build", "out", "target", "bin", "obj",
    ".next", ".nuxt", "coverage", ".nyc_output",
    ".idea", ".vscode", ".vs",
    "logs", "tmp", "temp", ".cache", ".sass-cache", ".parcel-cache",
    "*.egg-info",
}

IGNORED_FILE_PATTERNS = [
    "*.log", "*.tmp", "*.temp", "*.cache",
    "*.min.js", "*.min.css", "*.bundle.js", "*.chunk.js", "*.map",
    "*.lock", "*.pid",
    "package-lock.json", "pnpm-lock.yaml", ".DS_Store", "Thumbs.db",
]

# Upper bound on files considered in one scan
MAX_LIST_FILES = 50_000


class DirectoryScanner:
    """
    Scans a directory into the vector store.

    Parsing runs under one concurrency limit and embedding+upsert under
    another. Parsed blocks are handed to a single aggregator task over a
    bounded queue; the aggregator owns the pending batch exclusively and is
    the only place batches are cut. A batch task is started only once a
    batch slot is free, so at most batch_concurrency batches are in
    flight at a time.
    """

    def __init__(
        self,
        embedder,
        vector_store,
        parser: CodeParser,
        repository: RepositoryInfo,
        max_file_size: int = None,
        batch_threshold: int = None,
        parsing_concurrency: int = None,
        batch_concurrency: int = None,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.parser = parser
        self.repository = repository
        self.max_file_size = max_file_size or settings.max_file_size_bytes
        self.batch_threshold = max(1, batch_threshold or settings.batch_segment_threshold)
        self.parsing_concurrency = max(1, parsing_concurrency or settings.parsing_concurrency)
        self.batch_concurrency = max(1, batch_concurrency or settings.batch_processing_concurrency)

    def _is_ignored_dir(self, dir_name: str) -> bool:
        lowered = dir_name.lower()
        for pattern in IGNORED_DIRECTORIES:
            if "*" in pattern:
                if fnmatch.fnmatch(lowered, pattern):
                    return True
            elif lowered == pattern:
                return True
        return False

    def _is_candidate_file(self, file_name: str) -> bool:
        lowered = file_name.lower()
        if any(fnmatch.fnmatch(lowered, pattern.lower()) for pattern in IGNORED_FILE_PATTERNS):
            return False
        return self.parser.is_supported(file_name)

    def iter_candidate_files(self, root: Path) -> Iterator[Path]:
        """Yield supported files, pruning ignored directories without entering them."""
        for current, dirs, files in os.walk(root, topdown=True):
            dirs[:] = sorted(d for d in dirs if not self._is_ignored_dir(d))
            current_path = Path(current)
            for file_name in sorted(files):
                if self._is_candidate_file(file_name):
                    yield current_path / file_name

    async def scan_directory(
        self,
        directory: str,
        on_error: Optional[ErrorCallback] = None,
        on_blocks_indexed: Optional[CountCallback] = None,
        on_file_parsed: Optional[CountCallback] = None,
    ) -> ScanResult:
        """
        Index every supported file under directory.

        Args:
            directory: Root of the checkout
            on_error: Receives each failed batch's exception
            on_blocks_indexed: Receives the block count of each stored batch
            on_file_parsed: Receives the block count of each parsed file

        Returns:
            ScanResult with processed/skipped file counts and total blocks found
        """
        root = Path(directory)

        def _list() -> List[Path]:
            found = []
            for path in self.iter_candidate_files(root):
                if len(found) >= MAX_LIST_FILES:
                    logger.warning("file_list_truncated", limit=MAX_LIST_FILES)
                    break
                found.append(path)
            return found

        files = await asyncio.to_thread(_list)
        logger.info("scan_started", directory=str(root), candidate_files=len(files))

        stats = ScanStats()
        total_blocks = 0
        # Bounded so parsing waits while every batch slot is busy.
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.parsing_concurrency)
        parse_limit = asyncio.Semaphore(self.parsing_concurrency)
        batch_limit = asyncio.Semaphore(self.batch_concurrency)
        batch_tasks: set = set()

        async def run_batch(batch: List[CodeBlock]) -> None:
            # Caller holds a batch_limit slot.
            try:
                indexed = await self.process_batch(batch)
            except Exception as e:
                logger.error(
                    "batch_processing_failed",
                    blocks=len(batch),
                    error=f"{type(e).__name__}: {e}",
                )
                if on_error:
                    on_error(e)
                return
            finally:
                batch_limit.release()
            if on_blocks_indexed and indexed:
                on_blocks_indexed(indexed)

        async def aggregate() -> None:
            pending: List[CodeBlock] = []
            while True:
                blocks = await queue.get()
                if blocks is None:
                    break
                pending.extend(blocks)
                if len(pending) >= self.batch_threshold:
                    batch, pending = pending, []
                    await batch_limit.acquire()
                    task = asyncio.create_task(run_batch(batch))
                    batch_tasks.add(task)
            if pending:
                await batch_limit.acquire()
                await run_batch(pending)

        async def parse_one(path: Path) -> None:
            nonlocal total_blocks
            relative_path = path.relative_to(root).as_posix()
            async with parse_limit:
                try:
                    size = (await asyncio.to_thread(path.stat)).st_size
                    if size > self.max_file_size:
                        logger.debug("file_too_large", file_path=relative_path, size=size)
                        stats.skipped += 1
                        return
                    blocks = await asyncio.to_thread(self._parse_path, path, relative_path)
                except Exception as e:
                    logger.warning("file_parse_failed", file_path=relative_path, error=str(e))
                    stats.skipped += 1
                    return

            if not blocks:
                stats.skipped += 1
                return

            stats.processed += 1
            total_blocks += len(blocks)
            if on_file_parsed:
                on_file_parsed(len(blocks))
            await queue.put(blocks)

        aggregator = asyncio.create_task(aggregate())
        try:
            await asyncio.gather(*(parse_one(path) for path in files))
        finally:
            await queue.put(None)
            await aggregator
            if batch_tasks:
                await asyncio.gather(*batch_tasks)

        logger.info(
            "scan_complete",
            directory=str(root),
            processed=stats.processed,
            skipped=stats.skipped,
            blocks=total_blocks,
        )
        return ScanResult(stats=stats, total_block_count=total_blocks)

    def _parse_path(self, path: Path, relative_path: str) -> List[CodeBlock]:
        content = path.read_text(encoding="utf-8", errors="replace")
        return self.parser.parse_file(relative_path, content=content)

    async def process_batch(self, batch: List[CodeBlock]) -> int:
        """Embed and upsert one batch. Returns the number of points stored."""
        response = await self.embedder.create_embeddings([block.content for block in batch])

        skipped = set(response.skipped_indices)
        kept = [block for index, block in enumerate(batch) if index not in skipped]
        if len(response.embeddings) != len(kept):
            raise ValueError(
                f"Got {len(response.embeddings)} embeddings for {len(kept)} blocks"
            )
        if not kept:
            return 0

        points = [self.build_point(block, vector) for block, vector in zip(kept, response.embeddings)]
        await self.vector_store.upsert_points(points)
        return len(points)

    def build_point(self, block: CodeBlock, vector: List[float]) -> Point:
        payload = {
            "file_path": block.file_path,
            "content": block.content,
            "start_line": block.start_line,
            "end_line": block.end_line,
            "block_type": block.block_type,
            "identifier": block.identifier,
            "file_hash": block.file_hash,
            "segment_hash": block.segment_hash,
            "repository_id": self.repository.id,
            **self.file_metadata(block),
            "indexed_at": datetime.now(timezone.utc).isoformat(),
            "content_length": len(block.content),
            "line_count": block.line_count,
        }
        return Point(id=str(uuid4()), vector=vector, payload=payload)

    def file_metadata(self, block: CodeBlock) -> dict:
        """Repository, GitHub URL and file-name metadata for a block."""
        repo = self.repository
        path = PurePosixPath(block.file_path)
        metadata = {
            "repository_url": repo.html_url,
            "repository_name": repo.full_name,
            "repository_owner": repo.owner_login,
            "repository_language": repo.language or "unknown",
            "repository_is_private": repo.is_private,
            "repository_is_fork": repo.is_fork,
            "repository_stars": repo.stars_count,
            "repository_forks": repo.forks_count,
            "repository_size": repo.size,
            "repository_created_at": repo.created_at,
            "repository_updated_at": repo.updated_at,
            "repository_pushed_at": repo.pushed_at,
            "default_branch": repo.default_branch,
            "file_extension": path.suffix,
            "file_directory": str(path.parent),
            "file_name": path.name,
            "file_name_without_ext": path.stem,
        }

        if repo.html_url:
            base = repo.html_url.rstrip("/")
            branch = repo.default_branch
            file_url = f"{base}/blob/{branch}/{block.file_path}"
            metadata.update(
                github_file_url=file_url,
                github_file_url_with_lines=f"{file_url}#{block.line_range}",
                github_blame_url=f"{base}/blame/{branch}/{block.file_path}",
                github_history_url=f"{base}/commits/{branch}/{block.file_path}",
                github_raw_url=f"{base}/raw/{branch}/{block.file_path}",
            )
        return metadata
