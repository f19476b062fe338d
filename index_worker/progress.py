"""Persisted index progress, one record per repository."""

import asyncio
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .models import RepositoryUri, WorkerProgress


class ProgressStore(Protocol):
    async def set_progress(self, uri: RepositoryUri, progress: WorkerProgress) -> None: ...

    async def update_progress(self, uri: RepositoryUri, progress: WorkerProgress) -> None: ...

    async def get_progress(self, uri: RepositoryUri) -> WorkerProgress | None: ...


class SqliteProgressStore:
    """Index progress kept in a SQLite table keyed by repository uri.

    ``set_progress`` overwrites the whole record; ``update_progress`` only
    replaces fields that are set on the new record, so an update without a
    revision keeps the revision of the job that wrote last.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._init_db()

    def _init_db(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS index_progress (
                    uri TEXT PRIMARY KEY,
                    progress REAL NOT NULL,
                    timestamp TEXT NOT NULL,
                    revision TEXT,
                    error_message TEXT
                )
                """
            )

    async def set_progress(self, uri: RepositoryUri, progress: WorkerProgress) -> None:
        await asyncio.to_thread(self._write, uri, progress, False)

    async def update_progress(self, uri: RepositoryUri, progress: WorkerProgress) -> None:
        await asyncio.to_thread(self._write, uri, progress, True)

    async def get_progress(self, uri: RepositoryUri) -> WorkerProgress | None:
        return await asyncio.to_thread(self._read, uri)

    def _write(self, uri: RepositoryUri, progress: WorkerProgress, merge: bool):
        if merge:
            conflict = """
                progress=excluded.progress,
                timestamp=excluded.timestamp,
                revision=COALESCE(excluded.revision, index_progress.revision),
                error_message=COALESCE(excluded.error_message, index_progress.error_message)
            """
        else:
            conflict = """
                progress=excluded.progress,
                timestamp=excluded.timestamp,
                revision=excluded.revision,
                error_message=excluded.error_message
            """
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                f"""
                INSERT INTO index_progress (uri, progress, timestamp, revision, error_message)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(uri) DO UPDATE SET {conflict}
                """,
                (
                    uri,
                    progress.progress,
                    progress.timestamp.isoformat(),
                    progress.revision,
                    progress.error_message,
                ),
            )

    def _read(self, uri: RepositoryUri) -> WorkerProgress | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT uri, progress, timestamp, revision, error_message FROM index_progress WHERE uri = ?",
                (uri,),
            ).fetchone()
        if row is None:
            return None
        return WorkerProgress(
            uri=row[0],
            progress=row[1],
            timestamp=datetime.fromisoformat(row[2]),
            revision=row[3],
            error_message=row[4],
        )
