# =============================================================================
# Dispatcher — Fire-and-Forget Hand-off of Pipeline Work
# =============================================================================
#
# The controller never waits for extraction or embedding; it hands the work
# item to a dispatcher and returns to the polling client.
#
# ARCHITECTURE:
#   Dispatcher (Protocol)
#   ├── CeleryDispatcher — send_task() to the Redis broker (default)
#   └── ThreadDispatcher — in-process ThreadPoolExecutor (memory mode)
#
# A dispatch call only raises if the hand-off itself failed (broker down,
# pool shut down). What happens inside the work item is the worker's
# business and is reported through the store, never to the dispatcher.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol

logger = logging.getLogger(__name__)

EXTRACT_TASK = "app.workers.tasks.extract_document"
PROCESS_CHUNK_TASK = "app.workers.tasks.process_chunk"


class Dispatcher(Protocol):
    def dispatch_extraction(self, document_id: str) -> None:
        ...

    def dispatch_chunk(self, chunk_id: int, document_id: str) -> None:
        ...


class CeleryDispatcher:
    """
    Sends work to Celery workers by task name.

    DESIGN DECISION: send_task() by name instead of importing the task
    functions, so app.services never imports app.workers (which imports
    app.services.pipeline).
    """

    def __init__(self, celery_app) -> None:
        self._celery = celery_app

    def dispatch_extraction(self, document_id: str) -> None:
        result = self._celery.send_task(EXTRACT_TASK, args=[document_id])
        logger.info("Queued extraction for document_id=%s (task_id=%s)", document_id, result.id)

    def dispatch_chunk(self, chunk_id: int, document_id: str) -> None:
        result = self._celery.send_task(PROCESS_CHUNK_TASK, args=[chunk_id, document_id])
        logger.debug(
            "Queued chunk_id=%d of document_id=%s (task_id=%s)",
            chunk_id, document_id, result.id,
        )


class ThreadDispatcher:
    """
    Runs work items on a local thread pool.

    The callables are resolved lazily so the dispatcher can be built before
    the controller / worker that it will eventually call into.
    """

    def __init__(
        self,
        extract: Callable[[str], object],
        process_chunk: Callable[[int, str], object],
        max_workers: int = 8,
    ) -> None:
        self._extract = extract
        self._process_chunk = process_chunk
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="pipeline",
        )

    def dispatch_extraction(self, document_id: str) -> None:
        future = self._executor.submit(self._extract, document_id)
        future.add_done_callback(_log_failure(f"extraction of {document_id}"))

    def dispatch_chunk(self, chunk_id: int, document_id: str) -> None:
        future = self._executor.submit(self._process_chunk, chunk_id, document_id)
        future.add_done_callback(
            _log_failure(f"chunk {chunk_id} of {document_id}")
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _log_failure(label: str) -> Callable[[Future], None]:
    def _callback(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Background %s failed: %s", label, exc, exc_info=exc)

    return _callback
