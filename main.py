import asyncio
import json

import click

from index_worker.config import ConfigError, WorkerSettings, configure_logging
from index_worker.git import GitError
from index_worker.models import Job, JobPayload
from index_worker.progress import SqliteProgressStore
from index_worker.service import build_worker
from index_worker.service import main as serve_main
from index_worker.worker import JobTimeoutError


@click.group()
@click.option("--log-level", default=None, help="Overrides LOG_LEVEL.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Repository index worker."""
    settings = WorkerSettings.from_env()
    if log_level:
        settings = settings.model_copy(update={"log_level": log_level})
    configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.argument("uri")
@click.option("--revision", default="HEAD", show_default=True)
@click.pass_obj
def index(settings: WorkerSettings, uri: str, revision: str) -> None:
    """Index the bare clone of URI under REPOS_ROOT at REVISION."""
    try:
        worker = build_worker(settings)
    except ConfigError as e:
        raise click.ClickException(str(e))

    job = Job(payload=JobPayload(uri=uri, revision=revision))
    try:
        result = asyncio.run(worker.run(job))
    except GitError as e:
        raise click.ClickException(f"Cannot read repository {uri}: {e}")
    except JobTimeoutError as e:
        raise click.ClickException(str(e))

    click.echo(f"Indexed {uri}@{revision}:")
    for key, count in result.stats.items():
        if count:
            click.echo(f"  {key.value}: {count}")


@cli.command()
@click.argument("uri")
@click.pass_obj
def status(settings: WorkerSettings, uri: str) -> None:
    """Print the persisted index progress of URI."""
    progress = asyncio.run(SqliteProgressStore(settings.progress_db).get_progress(uri))
    if progress is None:
        raise click.ClickException(f"No index progress recorded for {uri}")
    click.echo(json.dumps(progress.model_dump(mode="json"), indent=2))


@cli.command()
def serve() -> None:
    """Serve the IndexWorker Restate service."""
    serve_main()


if __name__ == "__main__":
    cli()
