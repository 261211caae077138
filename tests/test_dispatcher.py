# =============================================================================
# Unit Tests — Celery and Thread Dispatchers
# =============================================================================

import logging
import threading
from types import SimpleNamespace

import pytest

from app.services.dispatcher import (
    EXTRACT_TASK,
    PROCESS_CHUNK_TASK,
    CeleryDispatcher,
    ThreadDispatcher,
)


class _FakeCelery:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, list]] = []
        self.fail = fail

    def send_task(self, name, args):
        if self.fail:
            raise ConnectionError("Error 111 connecting to redis:6379")
        self.sent.append((name, args))
        return SimpleNamespace(id=f"task-{len(self.sent)}")


class TestCeleryDispatcher:
    def test_extraction_sent_by_name(self):
        celery = _FakeCelery()
        CeleryDispatcher(celery).dispatch_extraction("doc-1")
        assert celery.sent == [(EXTRACT_TASK, ["doc-1"])]

    def test_chunk_sent_by_name(self):
        celery = _FakeCelery()
        CeleryDispatcher(celery).dispatch_chunk(7, "doc-1")
        assert celery.sent == [(PROCESS_CHUNK_TASK, [7, "doc-1"])]

    def test_broker_failure_propagates(self):
        with pytest.raises(ConnectionError):
            CeleryDispatcher(_FakeCelery(fail=True)).dispatch_chunk(7, "doc-1")

    def test_task_names_match_registered_tasks(self):
        from app.workers import tasks

        assert tasks.extract_document.name == EXTRACT_TASK
        assert tasks.process_chunk.name == PROCESS_CHUNK_TASK


class TestThreadDispatcher:
    def test_runs_work_in_background(self):
        seen = []
        done = threading.Event()

        def process_chunk(chunk_id, document_id):
            seen.append((chunk_id, document_id))
            done.set()

        dispatcher = ThreadDispatcher(extract=seen.append, process_chunk=process_chunk)
        dispatcher.dispatch_chunk(3, "doc-1")
        assert done.wait(timeout=5)
        dispatcher.dispatch_extraction("doc-2")
        dispatcher.shutdown()

        assert seen == [(3, "doc-1"), "doc-2"]

    def test_work_failure_is_logged_not_raised(self, caplog):
        def extract(document_id):
            raise RuntimeError("parser crashed")

        dispatcher = ThreadDispatcher(extract=extract, process_chunk=lambda *a: None)
        with caplog.at_level(logging.ERROR, logger="app.services.dispatcher"):
            dispatcher.dispatch_extraction("doc-1")
            dispatcher.shutdown()

        assert "Background extraction of doc-1 failed" in caplog.text

    def test_dispatch_after_shutdown_raises(self):
        dispatcher = ThreadDispatcher(extract=lambda d: None, process_chunk=lambda *a: None)
        dispatcher.shutdown()
        with pytest.raises(RuntimeError):
            dispatcher.dispatch_chunk(1, "doc-1")
