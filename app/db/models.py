# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌─────────────────────┐       ┌───────────────────────────────────────┐
# │  jobs               │       │  chunks                               │
# ├─────────────────────┤       ├───────────────────────────────────────┤
# │ document_id (PK)    │──1:N─▶│ id (PK)                               │
# │ stage               │       │ document_id (FK → jobs.document_id)   │
# │ source_reference    │       │ chunk_index (int)                     │
# │ mime_type           │       │ content (text)                        │
# │ error_message       │       │ embedding (vector(N), nullable)       │
# │ created_at          │       │ processing_status                     │
# │ updated_at          │       │ claim_token / claimed_at              │
# └─────────────────────┘       │ reclaim_count / error_message         │
#                               │ created_at / updated_at               │
#                               └───────────────────────────────────────┘
#
# A "document" is never materialised on its own: it is its job row plus the
# chunks that share its document_id.
#
# STATE MACHINES:
#
#   Job.stage:
#     PENDING_EXTRACTION → EXTRACTING → PENDING_EMBEDDING → COMPLETED
#                                     ↘ FAILED             ↘ FAILED
#
#   Chunk.processing_status:
#     PENDING → PROCESSING → COMPLETED
#                          → FAILED
#                          → PENDING   (re-queue: rate limited / reaped)
#
# Every transition is a conditional UPDATE (compare-and-set). The persisted
# status column is the only coordination point between pollers and workers.
# =============================================================================

import enum
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class JobStage(str, enum.Enum):
    """
    Pipeline stage of a document job.

    Stages only move forward. COMPLETED and FAILED are terminal.
    """

    PENDING_EXTRACTION = "PENDING_EXTRACTION"  # Created, nobody has claimed extraction
    EXTRACTING = "EXTRACTING"                  # Extraction task in flight
    PENDING_EMBEDDING = "PENDING_EMBEDDING"    # Chunks exist, embedding under way
    COMPLETED = "COMPLETED"                    # Every chunk embedded
    FAILED = "FAILED"                          # Extraction failed or >=1 chunk failed

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.COMPLETED, JobStage.FAILED)


class ChunkStatus(str, enum.Enum):
    """Processing status of a single chunk."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Job(Base):
    """
    One record per document describing pipeline progress.

    Created by the start-processing handler, mutated only by the pipeline
    controller and the extraction worker.
    """

    __tablename__ = "jobs"

    # Opaque UUID string handed to the client as documentId
    document_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    stage: Mapped[JobStage] = mapped_column(
        Enum(JobStage, name="job_stage"),
        nullable=False,
        default=JobStage.PENDING_EXTRACTION,
    )

    # Locator for the raw input in the blob store (e.g. "3f2a.../notes.pdf")
    source_reference: Mapped[str] = mapped_column(String(1000), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)

    # Reason for FAILED when extraction blew up (null otherwise)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    # Bumped on every stage change; the reaper uses it to find stale
    # EXTRACTING jobs.
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # lazy="raise": chunk sets can be large, nobody should load them by
    # accident through the relationship.
    chunks: Mapped[list["Chunk"]] = relationship(
        "Chunk",
        back_populates="job",
        cascade="all, delete-orphan",
        lazy="raise",
    )

    def __repr__(self) -> str:
        return f"<Job(document_id='{self.document_id}', stage={self.stage})>"


class Chunk(Base):
    """
    A fragment of a document's text plus its embedding.

    `embedding` is non-null exactly when `processing_status` is COMPLETED;
    the CHECK constraint below enforces it in the database.
    """

    __tablename__ = "chunks"
    __table_args__ = (
        CheckConstraint(
            "(processing_status = 'COMPLETED') = (embedding IS NOT NULL)",
            name="ck_chunk_embedding_iff_completed",
        ),
        # Re-running an extraction cannot duplicate a document's chunks
        UniqueConstraint("document_id", "chunk_index", name="uq_chunk_document_index"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    document_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("jobs.document_id", ondelete="CASCADE"),
        nullable=False,
    )

    # 0-indexed position within the document; pending chunks are dispatched
    # in this order
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)

    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    processing_status: Mapped[ChunkStatus] = mapped_column(
        Enum(ChunkStatus, name="chunk_status", native_enum=False, length=16),
        nullable=False,
        default=ChunkStatus.PENDING,
    )

    # Identifies the current claim. Finalising updates match on it, so a
    # worker whose claim was reaped cannot overwrite a newer claim.
    claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Times the reaper took this chunk back from a worker that went silent
    reclaim_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    job: Mapped["Job"] = relationship("Job", back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<Chunk(id={self.id}, doc_id='{self.document_id}', "
            f"index={self.chunk_index}, status={self.processing_status})>"
        )


# =============================================================================
# Database Indexes
# =============================================================================
#
# HNSW on embeddings with cosine ops for nearest-neighbour search.
# (document_id, processing_status) serves the two hot pipeline queries:
# count-by-status on every poll, and "next PENDING chunks" on dispatch.
# =============================================================================

chunk_embedding_idx = Index(
    "idx_chunk_embedding_hnsw",
    Chunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

chunk_document_status_idx = Index(
    "idx_chunk_document_status",
    Chunk.document_id,
    Chunk.processing_status,
    Chunk.chunk_index,
)

# Reaper scan: PROCESSING chunks ordered by claim age
chunk_claimed_at_idx = Index(
    "idx_chunk_status_claimed_at",
    Chunk.processing_status,
    Chunk.claimed_at,
)

job_stage_idx = Index(
    "idx_job_stage_updated",
    Job.stage,
    Job.updated_at,
)
