import asyncio

from codeindex.models.block import EmbeddingResponse
from codeindex.models.indexing import RepositoryInfo
from codeindex.services.chunker import CodeParser
from codeindex.services.scanner import DirectoryScanner


class _FakeEmbedder:
    def __init__(self, skip_indices=None):
        self.calls = 0
        self.skip_indices = skip_indices or []

    async def create_embeddings(self, texts):
        self.calls += 1
        kept = [t for i, t in enumerate(texts) if i not in self.skip_indices]
        return EmbeddingResponse(
            embeddings=[[0.1, 0.2, 0.3] for _ in kept],
            skipped_indices=[i for i in self.skip_indices if i < len(texts)],
        )


class _FakeVectorStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.points = []
        self.batches = []

    async def upsert_points(self, points):
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("upsert rejected")
        self.batches.append(len(points))
        self.points.extend(points)


def _repository(**overrides) -> RepositoryInfo:
    data = {
        "id": "101",
        "full_name": "acme/widgets",
        "html_url": "https://github.com/acme/widgets",
        "default_branch": "main",
        "language": "Python",
    }
    data.update(overrides)
    return RepositoryInfo(**data)


def _scanner(embedder=None, store=None, **kwargs) -> DirectoryScanner:
    return DirectoryScanner(
        embedder=embedder or _FakeEmbedder(),
        vector_store=store or _FakeVectorStore(),
        parser=CodeParser(max_block_chars=1000, min_block_chars=50),
        repository=_repository(),
        **kwargs,
    )


def _write_fixture(root):
    (root / "pkg").mkdir()
    (root / "pkg" / "service.py").write_text(
        "\n".join(f"value_{i} = compute({i})  # step {i}" for i in range(100)) + "\n"
    )
    (root / "pkg" / "tiny.py").write_text("a = 1\nb = 2\nc = 3\nd = 4\ne = 5\n")
    (root / "app.js").write_text(
        "\n".join(f"const item{i} = load('resource-{i}');" for i in range(2000)) + "\n"
    )
    (root / "node_modules" / "lib").mkdir(parents=True)
    (root / "node_modules" / "lib" / "index.js").write_text("const vendored = true;\n" * 50)
    (root / "app.min.js").write_text("var minified = 1;" * 100)
    (root / "logo.png").write_bytes(b"\x89PNG" * 100)


def test_scan_indexes_supported_files_and_counts_skips(tmp_path):
    _write_fixture(tmp_path)
    store = _FakeVectorStore()
    scanner = _scanner(store=store, batch_threshold=10)

    found, indexed, errors = [], [], []
    result = asyncio.run(
        scanner.scan_directory(
            str(tmp_path),
            on_error=errors.append,
            on_blocks_indexed=indexed.append,
            on_file_parsed=found.append,
        )
    )

    assert result.stats.processed == 2
    assert result.stats.skipped >= 1
    assert result.total_block_count >= 3
    assert sum(found) == result.total_block_count
    assert sum(indexed) == result.total_block_count == len(store.points)
    assert errors == []

    paths = {p.payload["file_path"] for p in store.points}
    assert paths == {"pkg/service.py", "app.js"}


def test_file_below_threshold_is_flushed_as_final_batch(tmp_path):
    (tmp_path / "big.js").write_text(
        "\n".join(f"const item{i} = load('resource-{i}');" for i in range(2000)) + "\n"
    )
    store = _FakeVectorStore()
    scanner = _scanner(store=store, batch_threshold=1000)

    result = asyncio.run(scanner.scan_directory(str(tmp_path)))

    assert store.batches == [result.total_block_count]


def test_batch_errors_are_reported_not_raised(tmp_path):
    _write_fixture(tmp_path)
    store = _FakeVectorStore(fail=True)
    scanner = _scanner(store=store, batch_threshold=10)

    indexed, errors = [], []
    result = asyncio.run(
        scanner.scan_directory(str(tmp_path), on_error=errors.append, on_blocks_indexed=indexed.append)
    )

    assert result.total_block_count > 0
    assert indexed == []
    assert len(errors) >= 1
    assert all(str(e) == "upsert rejected" for e in errors)


def test_oversized_files_are_skipped_before_parsing(tmp_path):
    (tmp_path / "large.py").write_text("x = 'a long line of python code here'\n" * 100)
    (tmp_path / "small.py").write_text("def handler(request):\n    return request.get('value') or 'default'\n")
    store = _FakeVectorStore()
    scanner = _scanner(store=store, max_file_size=500)

    result = asyncio.run(scanner.scan_directory(str(tmp_path)))

    assert result.stats.processed == 1
    assert result.stats.skipped == 1
    assert {p.payload["file_path"] for p in store.points} == {"small.py"}


def test_empty_directory_is_not_an_error(tmp_path):
    result = asyncio.run(_scanner().scan_directory(str(tmp_path)))

    assert result.total_block_count == 0
    assert result.stats.processed == 0


def test_skipped_embeddings_drop_their_blocks(tmp_path):
    (tmp_path / "one.py").write_text("def handler(request):\n    return request.get('value') or 'default'\n")
    store = _FakeVectorStore()
    scanner = _scanner(embedder=_FakeEmbedder(skip_indices=[0]), store=store)

    indexed = []
    result = asyncio.run(scanner.scan_directory(str(tmp_path), on_blocks_indexed=indexed.append))

    assert result.total_block_count == 1
    assert store.points == []
    assert indexed == []


def test_point_payload_carries_file_and_repository_metadata(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "api.py").write_text(
        "def handler(request):\n    return request.get('value') or 'default'\n"
    )
    store = _FakeVectorStore()

    asyncio.run(_scanner(store=store).scan_directory(str(tmp_path)))

    assert len(store.points) == 1
    payload = store.points[0].payload
    assert payload["file_path"] == "src/api.py"
    assert payload["start_line"] == 1
    assert payload["end_line"] == 2
    assert payload["block_type"] == "function"
    assert payload["identifier"] == "handler"
    assert payload["repository_id"] == "101"
    assert payload["repository_owner"] == "acme"
    assert payload["github_file_url"] == "https://github.com/acme/widgets/blob/main/src/api.py"
    assert payload["github_file_url_with_lines"].endswith("#L1-L2")
    assert payload["file_name"] == "api.py"
    assert payload["file_name_without_ext"] == "api"
    assert payload["file_extension"] == ".py"
    assert payload["file_directory"] == "src"
    assert payload["line_count"] == 2
    assert payload["content_length"] == len(payload["content"])


class _GatedVectorStore(_FakeVectorStore):
    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def upsert_points(self, points):
        await self.gate.wait()
        await super().upsert_points(points)


def test_parsing_waits_while_batch_slots_are_busy(tmp_path):
    for i in range(40):
        (tmp_path / f"handler_{i}.py").write_text(
            f"def handler_{i}(request):\n    return request.get('value_{i}') or 'default'\n"
        )
    store = _GatedVectorStore()
    scanner = _scanner(store=store, batch_threshold=1, parsing_concurrency=1, batch_concurrency=1)

    async def run():
        parsed = []
        scan = asyncio.create_task(scanner.scan_directory(str(tmp_path), on_file_parsed=parsed.append))
        for _ in range(50):
            await asyncio.sleep(0.01)
        parsed_while_blocked = len(parsed)
        store.gate.set()
        result = await scan
        return parsed_while_blocked, result

    parsed_while_blocked, result = asyncio.run(run())

    assert parsed_while_blocked < 10
    assert result.total_block_count == 40
    assert len(store.points) == 40
