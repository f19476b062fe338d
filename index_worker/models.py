from datetime import datetime
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field

from .cancellation import CancellationToken

RepositoryUri = str
Revision = str


class WorkerReservedProgress(IntEnum):
    INIT = 0
    COMPLETED = 100
    ERROR = -100
    TIMEOUT = -200


class IndexStatsKey(str, Enum):
    FILE = "file"
    FILE_UPSERTED = "file_upserted"
    FILE_DELETED = "file_deleted"
    SYMBOL = "symbol"
    SYMBOL_UPSERTED = "symbol_upserted"
    SYMBOL_DELETED = "symbol_deleted"
    REFERENCE = "reference"
    REFERENCE_UPSERTED = "reference_upserted"
    REFERENCE_DELETED = "reference_deleted"
    CHUNK_UPSERTED = "chunk_upserted"


IndexStats = dict[IndexStatsKey, int]


class IndexRequest(BaseModel):
    uri: RepositoryUri                # e.g. github.com/elastic/kibana
    revision: Revision                # commit sha or ref


class JobPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    uri: RepositoryUri
    revision: Revision


class Job(BaseModel):
    """A unit of queued work, owned by the worker while it executes."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    payload: JobPayload
    cancellation_token: CancellationToken | None = Field(default=None, exclude=True)


class IndexProgress(BaseModel):
    percentage: float = Field(ge=0, le=100)
    num_files: int | None = None
    num_success: int | None = None
    num_failure: int | None = None


class WorkerProgress(BaseModel):
    uri: RepositoryUri
    progress: float
    timestamp: datetime
    revision: Revision | None = None
    error_message: str | None = None


class IndexWorkerResult(BaseModel):
    uri: RepositoryUri
    revision: Revision
    stats: IndexStats


class ProgressRequest(BaseModel):
    uri: RepositoryUri


class ProgressResponse(BaseModel):
    progress: WorkerProgress | None
