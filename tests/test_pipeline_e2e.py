# =============================================================================
# End-to-End Tests — Upload → Poll-Driven Processing → Retrieval
# =============================================================================
#
# The whole pipeline is built from Settings with the in-memory stores.
# Most tests use a recording dispatcher and run the dispatched work by hand
# between polls, which plays the part of the Celery workers
# deterministically. One test uses the real thread dispatcher.
# =============================================================================

import asyncio
import time

import pytest
from fakes import FakeEmbedder, RecordingDispatcher

from app.config import Settings
from app.db.models import JobStage
from app.services.chunk_worker import ChunkProcessingError
from app.services.pipeline import ChunkNotFoundError, Pipeline, build_pipeline

DIMS = 8


def _settings(tmp_path, **overrides) -> Settings:
    values = dict(
        store_backend="memory",
        dispatcher="thread",
        upload_dir=str(tmp_path),
        embedding_dimensions=DIMS,
        embedding_backoff_base_seconds=0.0,
        max_concurrent_workers=2,
    )
    values.update(overrides)
    return Settings(**values)


def _drive(pipeline: Pipeline, dispatcher: RecordingDispatcher, document_id: str) -> list:
    """Poll until finished, running whatever each poll dispatched."""
    reports = []
    for _ in range(50):
        report = pipeline.controller.poll(document_id)
        reports.append(report)
        if report.is_finished:
            return reports

        for extraction_id in dispatcher.drain_extractions():
            pipeline.run_extraction(extraction_id)
        for chunk_id, chunk_document_id in dispatcher.drain_chunks():
            try:
                pipeline.process_chunk(chunk_id, chunk_document_id)
            except ChunkProcessingError:
                pass  # Recorded as FAILED in the store
    raise AssertionError("document never finished processing")


class TestRecordedPipeline:
    def test_document_processed_to_completion(self, tmp_path):
        dispatcher = RecordingDispatcher()
        embedder = FakeEmbedder(DIMS)
        pipeline = build_pipeline(_settings(tmp_path), embedder=embedder, dispatcher=dispatcher)

        ref = pipeline.blobs.save(("a" * 2500).encode(), "notes.txt")
        document_id = pipeline.controller.start(ref, "text/plain")

        reports = _drive(pipeline, dispatcher, document_id)
        final = reports[-1]

        assert final.is_ready and not final.has_failed
        assert final.progress == 100
        assert pipeline.jobs.get(document_id).stage is JobStage.COMPLETED
        # ceil(2500 / 800) windows
        assert len(embedder.calls) == 4
        progress = [r.progress for r in reports]
        assert progress == sorted(progress)

        chunks = asyncio.run(pipeline.chunks.list_completed([document_id]))
        assert len(chunks) == 4
        # Source blob consumed by extraction
        assert list(tmp_path.iterdir()) == []

    def test_one_failing_chunk_fails_document_but_keeps_the_rest(self, tmp_path):
        dispatcher = RecordingDispatcher()
        text = "x" * 1600 + "FAIL" + "y" * 896
        embedder = FakeEmbedder(DIMS, fail_when=lambda chunk: chunk.startswith("FAIL"))
        pipeline = build_pipeline(_settings(tmp_path), embedder=embedder, dispatcher=dispatcher)

        ref = pipeline.blobs.save(text.encode(), "notes.txt")
        document_id = pipeline.controller.start(ref, "text/plain")

        final = _drive(pipeline, dispatcher, document_id)[-1]

        assert final.is_finished and final.has_failed and not final.is_ready
        assert final.progress == 100
        assert pipeline.jobs.get(document_id).stage is JobStage.FAILED

        counts = pipeline.chunks.count_by_status(document_id)
        assert (counts.completed, counts.failed) == (3, 1)

        results = asyncio.run(
            pipeline.retrieval.query_relevant_chunks([document_id], "x", match_count=10)
        )
        assert len(results) == 3
        assert not any(r.content.startswith("FAIL") for r in results)

    def test_never_more_than_max_workers_dispatched_per_poll(self, tmp_path):
        dispatcher = RecordingDispatcher()
        pipeline = build_pipeline(
            _settings(tmp_path, max_concurrent_workers=2),
            embedder=FakeEmbedder(DIMS),
            dispatcher=dispatcher,
        )
        ref = pipeline.blobs.save(("b" * 5000).encode(), "notes.txt")
        document_id = pipeline.controller.start(ref, "text/plain")

        pipeline.controller.poll(document_id)
        [extraction_id] = dispatcher.drain_extractions()
        pipeline.run_extraction(extraction_id)

        first_wave = dispatcher.drain_chunks()
        assert len(first_wave) == 2
        # Claim them the way a worker would; the next poll has no capacity
        for chunk_id, _ in first_wave:
            pipeline.chunks.claim(chunk_id)
        pipeline.controller.poll(document_id)
        assert dispatcher.drain_chunks() == []

    def test_empty_document_completes(self, tmp_path):
        dispatcher = RecordingDispatcher()
        pipeline = build_pipeline(
            _settings(tmp_path), embedder=FakeEmbedder(DIMS), dispatcher=dispatcher,
        )
        ref = pipeline.blobs.save(b"", "empty.txt")
        document_id = pipeline.controller.start(ref, "text/plain")

        final = _drive(pipeline, dispatcher, document_id)[-1]
        assert final.is_ready and final.progress == 100


class TestThreadedPipeline:
    def test_thread_dispatcher_runs_to_completion(self, tmp_path):
        pipeline = build_pipeline(_settings(tmp_path), embedder=FakeEmbedder(DIMS))
        ref = pipeline.blobs.save(("c" * 3000).encode(), "notes.txt")
        document_id = pipeline.controller.start(ref, "text/plain")

        deadline = time.monotonic() + 10
        report = pipeline.controller.poll(document_id)
        while not report.is_finished:
            assert time.monotonic() < deadline, "timed out waiting for the pipeline"
            time.sleep(0.01)
            report = pipeline.controller.poll(document_id)

        assert report.is_ready
        assert pipeline.chunks.count_by_status(document_id).completed == 4


def test_chunk_must_belong_to_named_document(tmp_path):
    pipeline = build_pipeline(
        _settings(tmp_path), embedder=FakeEmbedder(DIMS), dispatcher=RecordingDispatcher(),
    )
    [chunk_id] = pipeline.chunks.insert_pending("doc-a", ["Cells divide."])

    with pytest.raises(ChunkNotFoundError):
        pipeline.process_chunk(chunk_id, "doc-b")
    assert pipeline.chunks.count_by_status("doc-a").pending == 1


def test_unknown_backend_rejected(tmp_path):
    with pytest.raises(ValueError, match="store_backend"):
        build_pipeline(_settings(tmp_path, store_backend="sqlite"), embedder=FakeEmbedder(DIMS))
