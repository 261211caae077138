# =============================================================================
# Job Store — One Pipeline Record per Document
# =============================================================================
#
# A job carries a document's stage through the pipeline:
#
#   PENDING_EXTRACTION → EXTRACTING → PENDING_EMBEDDING → COMPLETED
#                                   ↘ FAILED             ↘ FAILED
#
# DESIGN DECISION: transition() is the only way to change a stage, and it
# is a compare-and-set: "move from X to Y if still X". Concurrent pollers
# racing on the same job see exactly one True.
#
# ARCHITECTURE:
#   JobStore (Protocol)
#   ├── PgJobStore       — `jobs` table via the sync engine
#   └── InMemoryJobStore — dict + lock
# =============================================================================

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import func, select, update

from app.db.engine import get_sync_session
from app.db.models import Job, JobStage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobRecord:
    """Snapshot of a job row."""

    document_id: str
    stage: JobStage
    source_reference: str
    mime_type: str
    error_message: str | None = None
    updated_at: datetime | None = None


class JobStore(Protocol):
    """Interface shared by the PostgreSQL and in-memory job stores."""

    def create(self, source_reference: str, mime_type: str) -> str:
        """Create a PENDING_EXTRACTION job and return its new document id."""
        ...

    def get(self, document_id: str) -> JobRecord | None:
        ...

    def transition(
        self,
        document_id: str,
        from_stage: JobStage,
        to_stage: JobStage,
        error: str | None = None,
    ) -> bool:
        """CAS the stage. Returns True only if this call made the change."""
        ...

    def fail_stale_extractions(self, older_than: datetime) -> int:
        """FAIL every EXTRACTING job whose stage last changed before `older_than`."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: PostgreSQL
# ---------------------------------------------------------------------------


class PgJobStore:
    """Job store backed by the `jobs` table."""

    def create(self, source_reference: str, mime_type: str) -> str:
        document_id = str(uuid.uuid4())
        with get_sync_session() as session:
            session.add(
                Job(
                    document_id=document_id,
                    stage=JobStage.PENDING_EXTRACTION,
                    source_reference=source_reference,
                    mime_type=mime_type,
                )
            )
        logger.info(
            "Created job document_id=%s (source=%s, mime=%s)",
            document_id, source_reference, mime_type,
        )
        return document_id

    def get(self, document_id: str) -> JobRecord | None:
        with get_sync_session() as session:
            job = session.get(Job, document_id)
            if job is None:
                return None
            return JobRecord(
                document_id=job.document_id,
                stage=job.stage,
                source_reference=job.source_reference,
                mime_type=job.mime_type,
                error_message=job.error_message,
                updated_at=job.updated_at,
            )

    def transition(
        self,
        document_id: str,
        from_stage: JobStage,
        to_stage: JobStage,
        error: str | None = None,
    ) -> bool:
        values: dict = {"stage": to_stage, "updated_at": func.now()}
        if error is not None:
            values["error_message"] = error[:1000]

        with get_sync_session() as session:
            result = session.execute(
                update(Job)
                .where(Job.document_id == document_id, Job.stage == from_stage)
                .values(**values)
            )

        won = result.rowcount == 1
        if won:
            logger.info(
                "Job %s: %s → %s", document_id, from_stage.value, to_stage.value,
            )
        return won

    def fail_stale_extractions(self, older_than: datetime) -> int:
        with get_sync_session() as session:
            stale_ids = list(
                session.scalars(
                    select(Job.document_id).where(
                        Job.stage == JobStage.EXTRACTING,
                        Job.updated_at < older_than,
                    )
                )
            )

        failed = 0
        for document_id in stale_ids:
            # Still a CAS: the extraction may finish between select and update
            if self.transition(
                document_id,
                JobStage.EXTRACTING,
                JobStage.FAILED,
                error="Extraction timed out",
            ):
                failed += 1

        if failed:
            logger.warning("Failed %d stale extraction job(s)", failed)
        return failed


# ---------------------------------------------------------------------------
# Implementation 2: In-Memory
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryJobStore:
    """Process-local job store with an injectable clock."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def create(self, source_reference: str, mime_type: str) -> str:
        document_id = str(uuid.uuid4())
        with self._lock:
            self._jobs[document_id] = JobRecord(
                document_id=document_id,
                stage=JobStage.PENDING_EXTRACTION,
                source_reference=source_reference,
                mime_type=mime_type,
                updated_at=self._clock(),
            )
        return document_id

    def get(self, document_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(document_id)

    def transition(
        self,
        document_id: str,
        from_stage: JobStage,
        to_stage: JobStage,
        error: str | None = None,
    ) -> bool:
        with self._lock:
            job = self._jobs.get(document_id)
            if job is None or job.stage is not from_stage:
                return False
            changes: dict = {"stage": to_stage, "updated_at": self._clock()}
            if error is not None:
                changes["error_message"] = error[:1000]
            self._jobs[document_id] = replace(job, **changes)
        logger.info("Job %s: %s → %s", document_id, from_stage.value, to_stage.value)
        return True

    def fail_stale_extractions(self, older_than: datetime) -> int:
        with self._lock:
            stale_ids = [
                job.document_id for job in self._jobs.values()
                if job.stage is JobStage.EXTRACTING
                and job.updated_at is not None
                and job.updated_at < older_than
            ]
        failed = sum(
            1 for document_id in stale_ids
            if self.transition(
                document_id,
                JobStage.EXTRACTING,
                JobStage.FAILED,
                error="Extraction timed out",
            )
        )
        if failed:
            logger.warning("Failed %d stale extraction job(s)", failed)
        return failed
