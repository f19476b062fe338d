"""Cooperative cancellation for index jobs.

A ``CancellationToken`` is created per job by whoever submits it. The worker
and its indexers only subscribe to it. ``CancellationService`` keeps the token
of the job currently indexing each repository so a newer job for the same
repository can cancel the older one before it starts.
"""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class IndexerCancelledError(Exception):
    """Raised by an indexer that stopped because its job was cancelled."""


class CancellationToken:
    """One-shot cancellation signal with callback subscription."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def on(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once when the token fires.

        A callback subscribed after cancellation runs immediately.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        self._invoke(callback)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise IndexerCancelledError("operation cancelled")

    @staticmethod
    def _invoke(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Cancellation callback failed.")


class CancellationService:
    """Tracks the live cancellation token of each repository's index job."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._index_job_tokens: dict[str, CancellationToken] = {}

    def cancel_index_job(self, uri: str) -> None:
        with self._lock:
            token = self._index_job_tokens.pop(uri, None)
        if token is None:
            return
        # Subscribers run outside the lock and may call back into the service.
        logger.info(f"Cancel previous index job for {uri}.")
        try:
            token.cancel()
        except Exception:
            logger.exception(f"Cancel index job for {uri} failed.")

    def register_index_job_token(self, uri: str, token: CancellationToken) -> None:
        with self._lock:
            self._index_job_tokens[uri] = token

    def cancel_all(self) -> None:
        with self._lock:
            tokens, self._index_job_tokens = self._index_job_tokens, {}
        for uri, token in tokens.items():
            logger.info(f"Cancel index job for {uri}.")
            token.cancel()
