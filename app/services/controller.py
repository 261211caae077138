# =============================================================================
# Pipeline Controller — Every Status Poll Is a Scheduler Tick
# =============================================================================
#
# There is no long-running scheduler. The client polls
# GET /documents/status/{id} while a document is processing, and each poll
# both reports progress and nudges the pipeline forward:
#
#   PENDING_EXTRACTION  claim the job (CAS → EXTRACTING), dispatch extraction
#   EXTRACTING          report, nothing to do
#   PENDING_EMBEDDING   reap stale claims, count chunks, dispatch up to
#                       max_concurrent_workers - processing PENDING chunks,
#                       finalise the job once every chunk is terminal
#   COMPLETED / FAILED  report the stored stage
#
# Concurrent or duplicate polls are safe: every state change is a CAS in the
# store, so only one poller wins each claim and the PROCESSING count caps
# how many chunks can be in flight at once.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from app.db.models import JobStage
from app.services.chunk_store import ChunkStore
from app.services.dispatcher import Dispatcher
from app.services.job_store import JobStore

logger = logging.getLogger(__name__)


class DocumentNotFoundError(LookupError):
    """No job exists for the requested document id."""


@dataclass(frozen=True)
class StatusReport:
    """What one poll reports back to the client."""

    document_id: str
    stage: JobStage
    is_finished: bool
    has_failed: bool
    progress: int
    message: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.is_finished and not self.has_failed


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PipelineController:
    """
    Drives one document's job a step forward per poll.

    Args:
        jobs / chunks: Stores holding the persisted pipeline state.
        dispatcher: Fire-and-forget hand-off for extraction and chunk work.
        max_concurrent_workers: In-flight (PROCESSING) chunk cap per document.
        chunk_claim_ttl_seconds / max_chunk_reclaims: Reaper policy applied
            to this document's chunks on every PENDING_EMBEDDING poll.
        clock: Source of "now" for the reaper cutoff.
    """

    def __init__(
        self,
        jobs: JobStore,
        chunks: ChunkStore,
        dispatcher: Dispatcher,
        max_concurrent_workers: int = 5,
        chunk_claim_ttl_seconds: int = 300,
        max_chunk_reclaims: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._jobs = jobs
        self._chunks = chunks
        self._dispatcher = dispatcher
        self._max_workers = max_concurrent_workers
        self._claim_ttl = timedelta(seconds=chunk_claim_ttl_seconds)
        self._max_reclaims = max_chunk_reclaims
        self._clock = clock

    def start(self, source_reference: str, mime_type: str) -> str:
        """Create a job for an uploaded source and return its document id."""
        return self._jobs.create(source_reference, mime_type)

    def poll(self, document_id: str) -> StatusReport:
        """
        Report a document's status and advance its pipeline.

        Raises:
            DocumentNotFoundError: No job exists for `document_id`.
        """
        job = self._jobs.get(document_id)
        if job is None:
            raise DocumentNotFoundError(document_id)

        stage = job.stage
        if stage is JobStage.PENDING_EXTRACTION:
            self._claim_extraction(document_id)
            return self._extracting(document_id)
        elif stage is JobStage.EXTRACTING:
            return self._extracting(document_id)
        elif stage is JobStage.PENDING_EMBEDDING:
            return self._advance_embedding(document_id)
        elif stage is JobStage.COMPLETED:
            return StatusReport(
                document_id, stage,
                is_finished=True, has_failed=False, progress=100,
                message="Processing complete.",
            )
        elif stage is JobStage.FAILED:
            return StatusReport(
                document_id, stage,
                is_finished=True, has_failed=True, progress=100,
                message=job.error_message or "Processing finished with errors.",
            )
        raise ValueError(f"Unhandled job stage: {stage!r}")

    # -------------------------------------------------------------------------
    # Stage handlers
    # -------------------------------------------------------------------------

    def _extracting(self, document_id: str) -> StatusReport:
        return StatusReport(
            document_id, JobStage.EXTRACTING,
            is_finished=False, has_failed=False, progress=0,
            message="Extracting text from document...",
        )

    def _claim_extraction(self, document_id: str) -> None:
        if not self._jobs.transition(
            document_id, JobStage.PENDING_EXTRACTION, JobStage.EXTRACTING,
        ):
            return  # Another poller won the claim

        try:
            self._dispatcher.dispatch_extraction(document_id)
        except Exception as exc:
            # The claim never took effect; let the next poll try again
            logger.error(
                "Dispatching extraction for %s failed, releasing claim: %s",
                document_id, exc,
            )
            self._jobs.transition(
                document_id, JobStage.EXTRACTING, JobStage.PENDING_EXTRACTION,
            )

    def _advance_embedding(self, document_id: str) -> StatusReport:
        self._chunks.reap_stale(
            older_than=self._clock() - self._claim_ttl,
            max_reclaims=self._max_reclaims,
            document_id=document_id,
        )
        counts = self._chunks.count_by_status(document_id)

        available = self._max_workers - counts.processing
        if available > 0 and counts.pending > 0:
            for chunk_id in self._chunks.list_pending_ids(document_id, available):
                try:
                    self._dispatcher.dispatch_chunk(chunk_id, document_id)
                except Exception as exc:
                    # Still PENDING in the store; a later poll re-dispatches it
                    logger.error(
                        "Dispatching chunk %d of %s failed: %s",
                        chunk_id, document_id, exc,
                    )

        done = counts.completed + counts.failed
        if counts.total == 0 or done == counts.total:
            has_failed = counts.failed > 0
            target = JobStage.FAILED if has_failed else JobStage.COMPLETED
            self._jobs.transition(document_id, JobStage.PENDING_EMBEDDING, target)
            message = (
                f"{counts.failed} of {counts.total} chunks failed to embed."
                if has_failed else "Processing complete."
            )
            return StatusReport(
                document_id, target,
                is_finished=True, has_failed=has_failed, progress=100,
                message=message,
            )

        progress = round(100 * done / counts.total)
        return StatusReport(
            document_id, JobStage.PENDING_EMBEDDING,
            is_finished=False, has_failed=False, progress=progress,
            message=f"Embedded {done} of {counts.total} chunks...",
        )
