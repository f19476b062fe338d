from collections.abc import Awaitable, Callable
from typing import Protocol

from .models import IndexProgress, IndexStats, RepositoryUri, Revision

ProgressReporter = Callable[[IndexProgress], Awaitable[None]]


class Indexer(Protocol):
    async def start(self, progress_reporter: ProgressReporter | None = None) -> IndexStats: ...

    def cancel(self) -> None: ...


class IndexerFactory(Protocol):
    def create(self, uri: RepositoryUri, revision: Revision) -> Indexer: ...
