# =============================================================================
# Document Extraction — Blob → Text → PENDING Chunks
# =============================================================================
#
# Runs once per document, after the controller has claimed the job
# (PENDING_EXTRACTION → EXTRACTING).
#
# Safe to run more than once: Celery redelivers the task after a worker is
# lost (acks_late). A job no longer EXTRACTING is left alone, and chunk
# positions inserted by an earlier attempt are not inserted again.
#
# PIPELINE:
#   1. Download the source bytes from the blob store
#   2. Extract text (Docling for PDFs, UTF-8 otherwise)
#   3. Chunk into overlapping character windows
#   4. Insert the chunks as PENDING, in batches
#   5. CAS the job EXTRACTING → PENDING_EMBEDDING
#   6. Remove the source blob (best effort)
#
# Any exception in steps 1-5 moves the job EXTRACTING → FAILED with the
# error message and is re-raised to the caller (Celery task or thread).
#
# IMPORTANT: This is synchronous code. It runs inside Celery tasks or
# dispatcher threads, never on the FastAPI event loop.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable

from app.db.models import JobStage
from app.services.blob_store import BlobStore
from app.services.chunk_store import ChunkStore
from app.services.chunker import chunk_text
from app.services.job_store import JobStore
from app.services.parser import extract_text

logger = logging.getLogger(__name__)


class DocumentExtractor:
    """Turns a claimed job's source into PENDING chunks."""

    def __init__(
        self,
        jobs: JobStore,
        chunks: ChunkStore,
        blobs: BlobStore,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        text_extractor: Callable[[bytes, str, str], str] = extract_text,
    ) -> None:
        self._jobs = jobs
        self._chunks = chunks
        self._blobs = blobs
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._extract_text = text_extractor

    def run(self, document_id: str) -> int:
        """
        Extract and chunk one document.

        Args:
            document_id: A job currently in EXTRACTING. Any other stage
                makes this a no-op.

        Returns:
            Number of chunks in the document (0 when skipped).

        Raises:
            LookupError: If the job does not exist.
            Exception: Whatever extraction raised, after the job is FAILED.
        """
        job = self._jobs.get(document_id)
        if job is None:
            raise LookupError(f"No job for document_id={document_id}")
        if job.stage is not JobStage.EXTRACTING:
            # Duplicate or late delivery; the job has moved on without us
            logger.info(
                "[%s] Job is %s, not EXTRACTING; skipping extraction",
                document_id, job.stage.value,
            )
            return 0

        try:
            logger.info("[%s] Step 1/4: Downloading %s", document_id, job.source_reference)
            data = self._blobs.download(job.source_reference)

            logger.info(
                "[%s] Step 2/4: Extracting text (%s, %d bytes)",
                document_id, job.mime_type, len(data),
            )
            filename = job.source_reference.rsplit("/", 1)[-1]
            text = self._extract_text(data, job.mime_type, filename)

            logger.info("[%s] Step 3/4: Chunking %d characters", document_id, len(text))
            contents = chunk_text(text, self._chunk_size, self._chunk_overlap)

            logger.info("[%s] Step 4/4: Storing %d pending chunks", document_id, len(contents))
            if contents:
                self._chunks.insert_pending(document_id, contents)

            if not self._jobs.transition(
                document_id, JobStage.EXTRACTING, JobStage.PENDING_EMBEDDING,
            ):
                # The reaper already gave up on this extraction
                raise RuntimeError(
                    f"Job {document_id} left EXTRACTING before extraction finished"
                )
        except Exception as exc:
            logger.exception("[%s] Extraction failed: %s", document_id, exc)
            self._jobs.transition(
                document_id,
                JobStage.EXTRACTING,
                JobStage.FAILED,
                error=str(exc) or type(exc).__name__,
            )
            raise

        try:
            self._blobs.remove(job.source_reference)
        except Exception as exc:
            logger.warning(
                "[%s] Could not remove source %s: %s",
                document_id, job.source_reference, exc,
            )

        logger.info("[%s] Extraction complete: %d chunks", document_id, len(contents))
        return len(contents)
