# =============================================================================
# Celery Task Definitions — Pipeline Units of Work
# =============================================================================
#
# Thin wrappers: each task resolves the process-wide Pipeline and calls one
# service method. All state lives in the stores, so tasks return small
# summaries for logs / Flower only.
#
# IMPORTANT: Celery workers are SYNCHRONOUS.
# - No async/await in tasks
# - The pipeline services use the sync engine (get_sync_session)
#
# RETRY STRATEGY:
# No Celery-level retries. The chunk worker owns its retry / re-queue
# policy, and a failed extraction has already moved the job to FAILED.
# Errors are re-raised so Celery records the task as FAILURE.
# =============================================================================

import logging
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.services.pipeline import get_pipeline
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="app.workers.tasks.extract_document")
def extract_document(self, document_id: str) -> dict:
    """
    Extract and chunk one document, then start its embedding.

    The job must already be EXTRACTING (claimed by the controller).
    """
    task_id = self.request.id
    logger.info("[%s] Extracting document_id=%s", task_id, document_id)

    report = get_pipeline().run_extraction(document_id)

    summary = {
        "document_id": document_id,
        "stage": report.stage.value,
        "progress": report.progress,
    }
    logger.info("[%s] Extraction finished: %s", task_id, summary)
    return summary


@celery_app.task(bind=True, name="app.workers.tasks.process_chunk")
def process_chunk(self, chunk_id: int, document_id: str) -> dict:
    """Run one processing pass over a chunk."""
    outcome = get_pipeline().process_chunk(chunk_id, document_id)
    return {"chunk_id": chunk_id, "document_id": document_id, "outcome": outcome.value}


@celery_app.task(name="app.workers.tasks.reap_stale_work")
def reap_stale_work() -> dict:
    """
    Global liveness sweep, scheduled by celery beat.

    - PROCESSING chunks older than chunk_claim_ttl_seconds → PENDING
      (or FAILED after max_chunk_reclaims)
    - EXTRACTING jobs older than extraction_ttl_seconds → FAILED
    """
    pipeline = get_pipeline()
    now = datetime.now(UTC)

    reaped = pipeline.chunks.reap_stale(
        older_than=now - timedelta(seconds=settings.chunk_claim_ttl_seconds),
        max_reclaims=settings.max_chunk_reclaims,
    )
    failed_jobs = pipeline.jobs.fail_stale_extractions(
        older_than=now - timedelta(seconds=settings.extraction_ttl_seconds),
    )

    summary = {
        "chunks_requeued": reaped.requeued,
        "chunks_failed": reaped.failed,
        "extractions_failed": failed_jobs,
    }
    if any(summary.values()):
        logger.info("Reaper pass: %s", summary)
    return summary
