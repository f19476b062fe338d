"""Shared fakes and fixtures for index worker tests."""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from index_worker.cancellation import CancellationService, IndexerCancelledError
from index_worker.models import IndexProgress, IndexStats, WorkerProgress

REPO_URI = "github.com/acme/widgets"


class FakeIndexer:
    def __init__(
        self,
        uri: str,
        revision: str,
        stats: IndexStats | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
        progress: tuple[float, ...] = (50.0, 100.0),
        wait_for_cancel: bool = False,
    ) -> None:
        self.uri = uri
        self.revision = revision
        self.stats = stats or {}
        self.error = error
        self.delay = delay
        self.progress = progress
        self.wait_for_cancel = wait_for_cancel
        self.cancel_calls = 0
        self.finished = False
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        self.cancel_calls += 1
        self._cancelled.set()

    async def start(self, progress_reporter=None) -> IndexStats:
        for percentage in self.progress:
            if progress_reporter is not None:
                await progress_reporter(IndexProgress(percentage=percentage))
        if self.wait_for_cancel:
            await self._cancelled.wait()
            raise IndexerCancelledError(f"{self.uri} cancelled")
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.finished = True
        return self.stats


class FakeIndexerFactory:
    def __init__(self, make: Callable[[str, str], FakeIndexer] | None = None) -> None:
        self.make = make or (lambda uri, revision: FakeIndexer(uri, revision))
        self.calls: list[tuple[str, str]] = []
        self.created: list[FakeIndexer] = []

    def create(self, uri: str, revision: str) -> FakeIndexer:
        self.calls.append((uri, revision))
        indexer = self.make(uri, revision)
        self.created.append(indexer)
        return indexer


class MemoryProgressStore:
    """Records every write; ``fail`` names the operations that should raise."""

    def __init__(self, fail: set[str] | None = None) -> None:
        self.fail = fail or set()
        self.writes: list[tuple[str, WorkerProgress]] = []
        self.records: dict[str, WorkerProgress] = {}

    async def set_progress(self, uri: str, progress: WorkerProgress) -> None:
        if "set" in self.fail:
            raise ConnectionError("progress store unavailable")
        self.writes.append(("set", progress))
        self.records[uri] = progress

    async def update_progress(self, uri: str, progress: WorkerProgress) -> None:
        if "update" in self.fail:
            raise ConnectionError("progress store unavailable")
        self.writes.append(("update", progress))
        previous = self.records.get(uri)
        if previous is not None:
            changes = progress.model_dump(exclude_none=True)
            progress = previous.model_copy(update=changes)
        self.records[uri] = progress

    async def get_progress(self, uri: str) -> WorkerProgress | None:
        return self.records.get(uri)


@pytest.fixture
def store() -> MemoryProgressStore:
    return MemoryProgressStore()


@pytest.fixture
def cancellation_service() -> CancellationService:
    return CancellationService()


def _git(*args: str, cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def repos_root(tmp_path: Path) -> Path:
    """A REPOS_ROOT holding one bare clone at ``REPO_URI``.

    The commit has six files, three of which are indexable.
    """
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    work = tmp_path / "work"
    (work / "src").mkdir(parents=True)
    (work / "docs").mkdir()
    (work / ".hidden").mkdir()
    (work / "node_modules").mkdir()
    (work / "README.md").write_text("# Widgets\n\nWidgets are small and useful.\n")
    (work / "src" / "app.py").write_text("def main():\n    return 'widgets'\n")
    (work / "docs" / "guide.txt").write_text("Install the widgets first. Then run them.\n")
    (work / ".hidden" / "secret.txt").write_text("hidden\n")
    (work / "node_modules" / "dep.js").write_text("module.exports = 1;\n")
    (work / "big.txt").write_text("x" * (600 * 1024))

    _git("init", "-q", cwd=work)
    _git("add", "-A", cwd=work)
    _git(
        "-c", "user.name=Test",
        "-c", "user.email=test@example.com",
        "-c", "commit.gpgsign=false",
        "commit", "-q", "-m", "initial",
        cwd=work,
    )

    root = tmp_path / "repos"
    bare = root / REPO_URI
    bare.parent.mkdir(parents=True)
    _git("clone", "-q", "--bare", str(work), str(bare), cwd=tmp_path)
    return root


@pytest.fixture
def bare_repo(repos_root: Path) -> str:
    return str(repos_root / REPO_URI)
