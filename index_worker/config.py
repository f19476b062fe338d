import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel

MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "openai/text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "openai/text-embedding-3-large": 3072,
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(ValueError):
    pass


class WorkerSettings(BaseModel):
    repos_root: str = "/data/repos"
    progress_db: str = "/data/index_progress.db"
    qdrant_url: str = "http://localhost:6333"
    embedding_model: str = "text-embedding-3-small"
    api_key: str = ""
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 9091

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        load_dotenv()
        defaults = cls()
        return cls(
            repos_root=os.environ.get("REPOS_ROOT", defaults.repos_root),
            progress_db=os.environ.get("PROGRESS_DB", defaults.progress_db),
            qdrant_url=os.environ.get("QDRANT_URL", defaults.qdrant_url),
            embedding_model=os.environ.get("EMBEDDING_MODEL", defaults.embedding_model),
            api_key=os.environ.get("OPENROUTER_API_KEY", ""),
            log_level=os.environ.get("LOG_LEVEL", defaults.log_level),
            host=os.environ.get("INDEXER_HOST", defaults.host),
            port=os.environ.get("INDEXER_PORT", defaults.port),
        )

    def validate_indexing(self) -> None:
        if not self.api_key:
            raise ConfigError("OPENROUTER_API_KEY environment variable is not set")
        if self.embedding_model not in MODEL_DIMENSIONS:
            raise ConfigError(
                f"Unknown model '{self.embedding_model}'. Supported: {', '.join(MODEL_DIMENSIONS)}"
            )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level.upper())
