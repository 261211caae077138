# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the pipeline's units of work outside the API process:
#   extract_document  one per document (download → text → PENDING chunks)
#   process_chunk     one per chunk    (claim → embed → COMPLETED/FAILED)
#   reap_stale_work   periodic, via celery beat (liveness for dead workers)
#
# ARCHITECTURE:
# ┌───────────┐ send_task ┌────────┐      ┌───────────────┐     ┌──────────┐
# │ FastAPI   │──────────▶│ Redis  │─────▶│ Celery worker │────▶│ Postgres │
# │ (polls)   │           │(broker)│      │ (tasks.py)    │     │ (chunks) │
# └───────────┘           └────────┘      └───────────────┘     └──────────┘
#
# Task state lives in Postgres (job stage, chunk status), not in the result
# backend; the backend only keeps task return values for debugging.
# =============================================================================

from celery import Celery

from app.config import settings

celery_app = Celery(
    "app.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only: task args are ids (str / int), never pickled objects.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge after the task finishes, so a crashed worker's task is
    # redelivered. Redelivered chunk tasks are harmless: the claim CAS turns
    # them into SKIPPED. A redelivered extraction is a no-op once the job has
    # left EXTRACTING, and never inserts a chunk position twice.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # One task at a time per worker process; concurrency is bounded by the
    # controller, not by prefetching.
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # Extraction of a large scanned PDF is the slowest task. The hard limit
    # stays below extraction_ttl_seconds so the reaper never races a live
    # extraction.
    task_soft_time_limit=300,
    task_time_limit=540,

    # --- Results ---
    result_expires=3600,

    # --- Task Discovery ---
    include=["app.workers.tasks"],

    # --- Periodic tasks (celery beat) ---
    beat_schedule={
        "reap-stale-work": {
            "task": "app.workers.tasks.reap_stale_work",
            "schedule": float(settings.reaper_interval_seconds),
        },
    },
)
