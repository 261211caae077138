# =============================================================================
# Unit Tests — Pipeline Controller (poll-driven state machine)
# =============================================================================
#
# Uses in-memory stores and a recording dispatcher: dispatched work is
# inspected, not executed, so each test controls exactly what "the workers"
# have done between polls.
# =============================================================================

from datetime import UTC, datetime

import pytest
from fakes import ManualClock, RecordingDispatcher

from app.db.models import ChunkStatus, JobStage
from app.services.chunk_store import InMemoryChunkStore
from app.services.controller import DocumentNotFoundError, PipelineController
from app.services.job_store import InMemoryJobStore


class _Harness:
    def __init__(self, max_workers: int = 3):
        self.clock = ManualClock(datetime(2026, 3, 1, tzinfo=UTC))
        self.jobs = InMemoryJobStore(clock=self.clock)
        self.chunks = InMemoryChunkStore(clock=self.clock)
        self.dispatcher = RecordingDispatcher()
        self.controller = PipelineController(
            self.jobs,
            self.chunks,
            self.dispatcher,
            max_concurrent_workers=max_workers,
            chunk_claim_ttl_seconds=300,
            max_chunk_reclaims=1,
            clock=self.clock,
        )

    def embedding_job(self, n_chunks: int) -> tuple[str, list[int]]:
        """A job already through extraction, with n PENDING chunks."""
        document_id = self.jobs.create("u/notes.txt", "text/plain")
        self.jobs.transition(document_id, JobStage.PENDING_EXTRACTION, JobStage.EXTRACTING)
        ids = self.chunks.insert_pending(document_id, [f"chunk {i}" for i in range(n_chunks)])
        self.jobs.transition(document_id, JobStage.EXTRACTING, JobStage.PENDING_EMBEDDING)
        return document_id, ids

    def finish(self, chunk_id: int, ok: bool = True) -> None:
        token = self.chunks.claim(chunk_id) or self._token_of(chunk_id)
        if ok:
            self.chunks.complete(chunk_id, token, [1.0, 0.0])
        else:
            self.chunks.fail(chunk_id, token, "boom")

    def _token_of(self, chunk_id: int) -> str:
        return self.chunks._rows[chunk_id].claim_token


class TestExtractionStages:
    def test_unknown_document(self):
        with pytest.raises(DocumentNotFoundError):
            _Harness().controller.poll("nope")

    def test_first_poll_claims_and_dispatches_extraction(self):
        h = _Harness()
        document_id = h.controller.start("u/notes.txt", "text/plain")

        report = h.controller.poll(document_id)

        assert report.stage is JobStage.EXTRACTING
        assert (report.is_finished, report.has_failed, report.progress) == (False, False, 0)
        assert h.jobs.get(document_id).stage is JobStage.EXTRACTING
        assert h.dispatcher.extractions == [document_id]

    def test_repeated_polls_dispatch_extraction_once(self):
        h = _Harness()
        document_id = h.controller.start("u/notes.txt", "text/plain")

        for _ in range(3):
            report = h.controller.poll(document_id)
            assert report.stage is JobStage.EXTRACTING
            assert report.progress == 0

        assert h.dispatcher.extractions == [document_id]

    def test_failed_extraction_dispatch_releases_claim(self):
        h = _Harness()
        document_id = h.controller.start("u/notes.txt", "text/plain")
        h.dispatcher.fail_extraction = True

        report = h.controller.poll(document_id)
        assert report.progress == 0
        assert h.jobs.get(document_id).stage is JobStage.PENDING_EXTRACTION

        h.dispatcher.fail_extraction = False
        h.controller.poll(document_id)
        assert h.dispatcher.extractions == [document_id]


class TestEmbeddingStage:
    def test_dispatches_up_to_capacity_in_order(self):
        h = _Harness(max_workers=3)
        document_id, ids = h.embedding_job(5)

        report = h.controller.poll(document_id)

        assert [c for c, _ in h.dispatcher.chunks] == ids[:3]
        assert report.progress == 0
        assert not report.is_finished

    def test_processing_chunks_count_against_capacity(self):
        h = _Harness(max_workers=3)
        document_id, ids = h.embedding_job(5)
        h.chunks.claim(ids[0])
        h.chunks.claim(ids[1])

        h.controller.poll(document_id)

        assert [c for c, _ in h.dispatcher.chunks] == [ids[2]]

    def test_no_dispatch_when_saturated(self):
        h = _Harness(max_workers=2)
        document_id, ids = h.embedding_job(4)
        h.chunks.claim(ids[0])
        h.chunks.claim(ids[1])

        h.controller.poll(document_id)
        assert h.dispatcher.chunks == []

    def test_progress_counts_failed_and_completed(self):
        h = _Harness()
        document_id, ids = h.embedding_job(4)
        h.finish(ids[0])
        h.finish(ids[1], ok=False)

        report = h.controller.poll(document_id)
        assert report.progress == 50
        assert not report.is_finished

    def test_all_completed_finalises_job(self):
        h = _Harness()
        document_id, ids = h.embedding_job(2)
        for chunk_id in ids:
            h.finish(chunk_id)

        report = h.controller.poll(document_id)
        assert (report.is_finished, report.has_failed, report.is_ready) == (True, False, True)
        assert report.progress == 100
        assert h.jobs.get(document_id).stage is JobStage.COMPLETED

        # Terminal polls have no side effects
        again = h.controller.poll(document_id)
        assert again.is_ready and again.progress == 100
        assert h.dispatcher.chunks == []

    def test_any_failure_finalises_job_as_failed(self):
        h = _Harness()
        document_id, ids = h.embedding_job(3)
        h.finish(ids[0])
        h.finish(ids[1])
        h.finish(ids[2], ok=False)

        report = h.controller.poll(document_id)
        assert (report.is_finished, report.has_failed, report.is_ready) == (True, True, False)
        assert report.progress == 100
        assert h.jobs.get(document_id).stage is JobStage.FAILED

    def test_zero_chunks_completes_immediately(self):
        h = _Harness()
        document_id, _ = h.embedding_job(0)

        report = h.controller.poll(document_id)
        assert report.is_ready
        assert report.progress == 100

    def test_failed_chunk_dispatch_leaves_chunk_pending(self):
        h = _Harness()
        document_id, ids = h.embedding_job(2)
        h.dispatcher.fail_chunks = True

        h.controller.poll(document_id)
        assert all(h.chunks.get_status(i) is ChunkStatus.PENDING for i in ids)

        h.dispatcher.fail_chunks = False
        h.controller.poll(document_id)
        assert [c for c, _ in h.dispatcher.chunks] == ids

    def test_poll_reaps_stale_claims(self):
        h = _Harness(max_workers=1)
        document_id, [chunk_id] = h.embedding_job(1)
        h.chunks.claim(chunk_id)  # Worker picks it up, then dies

        h.controller.poll(document_id)
        assert h.dispatcher.chunks == []

        h.clock.advance(minutes=6)
        h.controller.poll(document_id)
        assert h.dispatcher.chunks == [(chunk_id, document_id)]
        assert h.chunks.get_status(chunk_id) is ChunkStatus.PENDING

    def test_repeatedly_lost_chunk_eventually_fails(self):
        h = _Harness(max_workers=1)  # max_chunk_reclaims=1
        document_id, [chunk_id] = h.embedding_job(1)

        for _ in range(2):
            h.chunks.claim(chunk_id)
            h.clock.advance(minutes=6)
            report = h.controller.poll(document_id)

        assert h.chunks.get_status(chunk_id) is ChunkStatus.FAILED
        assert report.is_finished and report.has_failed

    def test_progress_is_monotonic_across_requeues(self):
        h = _Harness(max_workers=2)
        document_id, ids = h.embedding_job(4)
        seen = [h.controller.poll(document_id).progress]

        h.finish(ids[0])
        seen.append(h.controller.poll(document_id).progress)

        # A rate-limited worker puts its chunk back
        token = h.chunks.claim(ids[1])
        h.chunks.requeue(ids[1], token)
        seen.append(h.controller.poll(document_id).progress)

        for chunk_id in ids[1:]:
            h.finish(chunk_id)
        seen.append(h.controller.poll(document_id).progress)

        assert seen == sorted(seen)
        assert seen[-1] == 100
