# =============================================================================
# Unit Tests — Document Extraction
# =============================================================================
#
# Plain-text sources only; Docling is not exercised here (PDF parsing needs
# its layout models).
# =============================================================================

import pytest

from app.db.models import ChunkStatus, JobStage
from app.services.blob_store import LocalBlobStore
from app.services.chunk_store import InMemoryChunkStore
from app.services.extraction import DocumentExtractor
from app.services.job_store import InMemoryJobStore


class _Setup:
    def __init__(self, tmp_path, **extractor_kwargs):
        self.jobs = InMemoryJobStore()
        self.chunks = InMemoryChunkStore()
        self.blobs = LocalBlobStore(tmp_path)
        self.root = tmp_path
        self.extractor = DocumentExtractor(
            self.jobs, self.chunks, self.blobs,
            chunk_size=100, chunk_overlap=20,
            **extractor_kwargs,
        )

    def claimed_job(self, source_reference: str, mime_type: str = "text/plain") -> str:
        document_id = self.jobs.create(source_reference, mime_type)
        self.jobs.transition(document_id, JobStage.PENDING_EXTRACTION, JobStage.EXTRACTING)
        return document_id


class TestDocumentExtractor:
    def test_text_document_becomes_pending_chunks(self, tmp_path):
        setup = _Setup(tmp_path)
        ref = setup.blobs.save(("Photosynthesis converts light. " * 10).encode(), "bio.txt")
        document_id = setup.claimed_job(ref)

        count = setup.extractor.run(document_id)

        # 310 characters, windows of 100 advancing by 80
        assert count == 4
        assert setup.jobs.get(document_id).stage is JobStage.PENDING_EMBEDDING
        ids = setup.chunks.list_pending_ids(document_id, 10)
        assert len(ids) == 4
        assert all(setup.chunks.get_status(i) is ChunkStatus.PENDING for i in ids)
        assert setup.chunks.get_content(ids[0]).startswith("Photosynthesis")

    def test_source_blob_removed_after_success(self, tmp_path):
        setup = _Setup(tmp_path)
        ref = setup.blobs.save(b"short text", "notes.txt")
        document_id = setup.claimed_job(ref)

        setup.extractor.run(document_id)

        assert not (tmp_path / ref).exists()
        assert list(tmp_path.iterdir()) == []

    def test_missing_source_fails_job(self, tmp_path):
        setup = _Setup(tmp_path)
        document_id = setup.claimed_job("nowhere/notes.txt")

        with pytest.raises(FileNotFoundError):
            setup.extractor.run(document_id)

        job = setup.jobs.get(document_id)
        assert job.stage is JobStage.FAILED
        assert job.error_message

    def test_parser_error_fails_job_and_keeps_blob(self, tmp_path):
        def broken(data, mime_type, filename):
            raise RuntimeError("Docling failed to parse 'scan.pdf'")

        setup = _Setup(tmp_path, text_extractor=broken)
        ref = setup.blobs.save(b"%PDF-1.7", "scan.pdf")
        document_id = setup.claimed_job(ref, "application/pdf")

        with pytest.raises(RuntimeError):
            setup.extractor.run(document_id)

        job = setup.jobs.get(document_id)
        assert job.stage is JobStage.FAILED
        assert "Docling" in job.error_message
        assert (tmp_path / ref).exists()

    def test_empty_text_yields_no_chunks(self, tmp_path):
        setup = _Setup(tmp_path)
        ref = setup.blobs.save(b"", "blank.txt")
        document_id = setup.claimed_job(ref)

        assert setup.extractor.run(document_id) == 0
        assert setup.jobs.get(document_id).stage is JobStage.PENDING_EMBEDDING
        assert setup.chunks.count_by_status(document_id).total == 0

    def test_unknown_job(self, tmp_path):
        with pytest.raises(LookupError):
            _Setup(tmp_path).extractor.run("missing")

    def test_reaped_extraction_does_not_publish(self, tmp_path):
        setup = _Setup(tmp_path)

        def reaped_mid_run(data, mime_type, filename):
            # The reaper gives up on this job while text is being extracted
            setup.jobs.transition(
                document_id, JobStage.EXTRACTING, JobStage.FAILED, error="stale",
            )
            return data.decode()

        setup.extractor = DocumentExtractor(
            setup.jobs, setup.chunks, setup.blobs, text_extractor=reaped_mid_run,
        )
        ref = setup.blobs.save(b"some text", "notes.txt")
        document_id = setup.claimed_job(ref)

        with pytest.raises(RuntimeError, match="left EXTRACTING"):
            setup.extractor.run(document_id)
        assert setup.jobs.get(document_id).stage is JobStage.FAILED


class TestExtractionRedelivery:
    """A redelivered extraction task never duplicates a document's chunks."""

    def test_redelivery_after_worker_lost_mid_extraction(self, tmp_path):
        setup = _Setup(tmp_path)
        ref = setup.blobs.save(("z" * 250).encode(), "notes.txt")
        document_id = setup.claimed_job(ref)

        real_transition = setup.jobs.transition

        def killed_before_publishing(document_id, from_stage, to_stage, error=None):
            if to_stage is JobStage.PENDING_EMBEDDING:
                setup.jobs.transition = real_transition
                # Not an Exception: the worker process dies, nothing is cleaned up
                raise KeyboardInterrupt
            return real_transition(document_id, from_stage, to_stage, error=error)

        setup.jobs.transition = killed_before_publishing
        with pytest.raises(KeyboardInterrupt):
            setup.extractor.run(document_id)
        assert setup.jobs.get(document_id).stage is JobStage.EXTRACTING
        assert setup.chunks.count_by_status(document_id).total == 4

        # Celery hands the same task to another worker
        assert setup.extractor.run(document_id) == 4

        assert setup.jobs.get(document_id).stage is JobStage.PENDING_EMBEDDING
        assert setup.chunks.count_by_status(document_id).total == 4

    def test_duplicate_delivery_after_publishing_is_noop(self, tmp_path):
        setup = _Setup(tmp_path)
        ref = setup.blobs.save(("z" * 250).encode(), "notes.txt")
        document_id = setup.claimed_job(ref)
        setup.extractor.run(document_id)

        assert setup.extractor.run(document_id) == 0

        assert setup.jobs.get(document_id).stage is JobStage.PENDING_EMBEDDING
        assert setup.chunks.count_by_status(document_id).total == 4

    def test_job_not_yet_claimed_is_left_alone(self, tmp_path):
        setup = _Setup(tmp_path)
        ref = setup.blobs.save(b"some text", "notes.txt")
        document_id = setup.jobs.create(ref, "text/plain")

        assert setup.extractor.run(document_id) == 0
        assert setup.jobs.get(document_id).stage is JobStage.PENDING_EXTRACTION
        assert (tmp_path / ref).exists()


class TestLocalBlobStore:
    def test_save_and_download(self, tmp_path):
        blobs = LocalBlobStore(tmp_path)
        ref = blobs.save(b"hello", "../../etc/notes.txt")

        assert ref.endswith("/notes.txt")
        assert blobs.download(ref) == b"hello"

    def test_rejects_escaping_reference(self, tmp_path):
        with pytest.raises(ValueError):
            LocalBlobStore(tmp_path).download("../outside.txt")

    def test_remove_missing_is_noop(self, tmp_path):
        LocalBlobStore(tmp_path).remove("gone/notes.txt")
