import asyncio
import json
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from .cancellation import CancellationService, CancellationToken
from .git import repo_path
from .indexer import IndexerFactory, ProgressReporter
from .models import (
    IndexProgress,
    IndexStats,
    IndexWorkerResult,
    Job,
    RepositoryUri,
    Revision,
    WorkerProgress,
    WorkerReservedProgress,
)
from .progress import ProgressStore
from .stats import aggregate_index_stats
from .timeout import DEFAULT_TIMEOUT, compute_timeout

logger = logging.getLogger(__name__)


class JobTimeoutError(Exception):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


class IndexWorker:
    """Runs index jobs: every configured indexer over one repository revision."""

    id = "index"

    def __init__(
        self,
        store: ProgressStore,
        indexer_factories: Sequence[IndexerFactory],
        cancellation_service: CancellationService,
        repos_root: str,
    ):
        self.store = store
        self.indexer_factories = list(indexer_factories)
        self.cancellation_service = cancellation_service
        self.repos_root = repos_root

    async def execute_job(self, job: Job) -> IndexWorkerResult:
        uri, revision = job.payload.uri, job.payload.revision
        cancellation_token = job.cancellation_token
        indexer_number = len(self.indexer_factories)

        # Supersede whatever job is still indexing this repository.
        self.cancellation_service.cancel_index_job(uri)
        if cancellation_token is not None:
            self.cancellation_service.register_index_job_token(uri, cancellation_token)

        indexers = []
        tasks: list[asyncio.Task[IndexStats]] = []
        try:
            for index, factory in enumerate(self.indexer_factories):
                indexer = factory.create(uri, revision)
                indexers.append(indexer)
                if cancellation_token is not None:
                    cancellation_token.on(indexer.cancel)
                progress_reporter = self._progress_reporter(uri, revision, index, indexer_number)
                tasks.append(asyncio.create_task(indexer.start(progress_reporter)))

            stats: list[IndexStats] = await asyncio.gather(*tasks)
        except Exception:
            # Fail fast, but don't leave the other indexers running.
            for indexer in indexers:
                indexer.cancel()
            for task in tasks:
                task.add_done_callback(_consume_result)
            raise

        res = IndexWorkerResult(uri=uri, revision=revision, stats=aggregate_index_stats(stats))
        summary = json.dumps({key.value: count for key, count in res.stats.items()})
        logger.info(f"Index worker finished with stats: {summary}")
        return res

    async def on_job_enqueued(self, job: Job) -> None:
        uri, revision = job.payload.uri, job.payload.revision
        progress = WorkerProgress(
            uri=uri,
            progress=WorkerReservedProgress.INIT,
            timestamp=_now(),
            revision=revision,
        )
        await self.store.set_progress(uri, progress)

    async def update_progress(self, uri: RepositoryUri, progress: float) -> None:
        p = WorkerProgress(uri=uri, progress=progress, timestamp=_now())
        try:
            await self.store.update_progress(uri, p)
        except Exception:
            logger.exception("Update index progress error.")

    async def get_timeout(self, job: Job) -> timedelta:
        path = repo_path(self.repos_root, job.payload.uri)
        timeout = await compute_timeout(path, job.payload.revision)
        logger.info(f"Set index job timeout to be {timeout.total_seconds() * 1000:.0f} ms.")
        return timeout

    async def on_job_completed(self, job: Job, res: IndexWorkerResult) -> None:
        p = WorkerProgress(
            uri=res.uri,
            progress=WorkerReservedProgress.COMPLETED,
            timestamp=_now(),
            revision=res.revision,
        )
        await self._persist_quietly(p, overwrite=True)

    async def on_job_execution_error(self, job: Job, error: BaseException) -> None:
        p = WorkerProgress(
            uri=job.payload.uri,
            progress=WorkerReservedProgress.ERROR,
            timestamp=_now(),
            error_message=str(error) or type(error).__name__,
        )
        await self._persist_quietly(p)

    async def on_job_timeout(self, job: Job) -> None:
        p = WorkerProgress(
            uri=job.payload.uri,
            progress=WorkerReservedProgress.TIMEOUT,
            timestamp=_now(),
            error_message="index job timed out",
        )
        await self._persist_quietly(p)

    async def run(self, job: Job) -> IndexWorkerResult:
        """Enqueue, time box and execute ``job``, the way the job queue drives a worker.

        The deadline is enforced by cancelling the job's token, so indexers stop at
        their next cancellation check. Failures are reported through the lifecycle
        hooks and then re-raised.
        """
        if job.cancellation_token is None:
            job = job.model_copy(update={"cancellation_token": CancellationToken()})
        token: CancellationToken = job.cancellation_token

        await self.on_job_enqueued(job)
        timeout = await self.get_timeout(job)
        if timeout <= timedelta(0):
            logger.warning(f"Zero index job timeout for {job.payload.uri}, enforcing {DEFAULT_TIMEOUT} instead.")
            timeout = DEFAULT_TIMEOUT

        timed_out = False

        def expire() -> None:
            nonlocal timed_out
            timed_out = True
            logger.warning(f"Index job for {job.payload.uri} exceeded {timeout}, cancelling.")
            token.cancel()

        handle = asyncio.get_running_loop().call_later(timeout.total_seconds(), expire)
        try:
            res = await self.execute_job(job)
        except Exception as error:
            if timed_out:
                await self.on_job_timeout(job)
                raise JobTimeoutError(f"index job for {job.payload.uri} timed out after {timeout}") from error
            if token.is_cancelled:
                # Superseded: the newer job owns the progress record now.
                logger.info(f"Index job for {job.payload.uri}@{job.payload.revision} was cancelled.")
                raise
            await self.on_job_execution_error(job, error)
            raise
        finally:
            handle.cancel()

        if not token.is_cancelled:
            await self.on_job_completed(job, res)
        return res

    async def _persist_quietly(self, progress: WorkerProgress, overwrite: bool = False) -> None:
        write = self.store.set_progress if overwrite else self.store.update_progress
        try:
            await write(progress.uri, progress)
        except Exception:
            logger.exception(f"Persist index status for {progress.uri} error.")

    def _progress_reporter(
        self,
        uri: RepositoryUri,
        revision: Revision,
        index: int,
        total: int,
    ) -> ProgressReporter:
        async def report(progress: IndexProgress) -> None:
            logger.debug(f"Indexer {index + 1}/{total} for {uri}: {progress.percentage:.1f}%")
            p = WorkerProgress(
                uri=uri,
                progress=progress.percentage,
                timestamp=_now(),
                revision=revision,
            )
            try:
                await self.store.set_progress(uri, p)
            except Exception:
                logger.exception(f"Persist index progress for {uri} error.")

        return report


def _consume_result(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Indexer abandoned after job failure: {task.exception()!r}")
