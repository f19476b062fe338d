import asyncio
import logging
from functools import lru_cache

import restate
from hypercorn.asyncio import serve
from hypercorn.config import Config

from .cancellation import CancellationService, IndexerCancelledError
from .config import WorkerSettings, configure_logging
from .content_indexer import ContentIndexerFactory
from .models import IndexRequest, IndexWorkerResult, Job, JobPayload, ProgressRequest, ProgressResponse
from .progress import SqliteProgressStore
from .worker import IndexWorker, JobTimeoutError

logger = logging.getLogger(__name__)

index_worker_service = restate.Service("IndexWorker")


def build_worker(settings: WorkerSettings) -> IndexWorker:
    return IndexWorker(
        store=SqliteProgressStore(settings.progress_db),
        indexer_factories=[ContentIndexerFactory.from_settings(settings)],
        cancellation_service=CancellationService(),
        repos_root=settings.repos_root,
    )


@lru_cache(maxsize=1)
def get_worker() -> IndexWorker:
    return build_worker(WorkerSettings.from_env())


@index_worker_service.handler("IndexRepo")
async def index_repo_handler(ctx: restate.Context, req: IndexRequest) -> IndexWorkerResult:
    job = Job(payload=JobPayload(uri=req.uri, revision=req.revision))
    try:
        return await get_worker().run(job)
    except (IndexerCancelledError, JobTimeoutError) as e:
        # A superseded or timed out job is not worth retrying.
        raise restate.TerminalError(str(e)) from e


@index_worker_service.handler("GetProgress")
async def get_progress_handler(ctx: restate.Context, req: ProgressRequest) -> ProgressResponse:
    return ProgressResponse(progress=await get_worker().store.get_progress(req.uri))


app = restate.app([index_worker_service])


def main() -> None:
    settings = WorkerSettings.from_env()
    configure_logging(settings.log_level)

    config = Config()
    config.bind = [f"{settings.host}:{settings.port}"]

    logger.info(f"Index worker listening on {settings.host}:{settings.port}.")
    try:
        asyncio.run(serve(app, config))
    finally:
        if get_worker.cache_info().currsize:
            get_worker().cancellation_service.cancel_all()


if __name__ == "__main__":
    main()
