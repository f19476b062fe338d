import asyncio
import logging
import math
from datetime import timedelta

from .git import RevisionNotFoundError, count_files

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = timedelta(hours=1)
HEAD = "HEAD"


def timeout_for_file_count(file_count: int) -> timedelta:
    """ln(file_count) hours, or one hour for an empty repository.

    e.g. 10 files -> 2.3 hours, 100 -> 4.6 hours, 1000 -> 6.9 hours, 10000 -> 9.2 hours.
    A single-file repository gets ln(1) = 0.
    """
    if file_count <= 0:
        return DEFAULT_TIMEOUT
    return timedelta(hours=math.log(file_count))


async def _count(repo_path: str, revision: str) -> int:
    try:
        return await asyncio.to_thread(count_files, repo_path, revision)
    except RevisionNotFoundError:
        if revision == HEAD:
            raise
        logger.warning(f"Revision {revision} not found in {repo_path}, counting files at {HEAD}.")
        return await asyncio.to_thread(count_files, repo_path, HEAD)


async def compute_timeout(repo_path: str, revision: str) -> timedelta:
    try:
        total_count = await _count(repo_path, revision)
    except RevisionNotFoundError:
        # nothing committed yet
        total_count = 0
    except Exception:
        logger.exception("Get repo file total count error.")
        raise
    return timeout_for_file_count(total_count)
