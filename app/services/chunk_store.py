# =============================================================================
# Chunk Store — Persistence of Chunks and Their Processing Status
# =============================================================================
#
# The chunk table is the coordination point of the whole pipeline: the
# controller counts statuses on it, workers claim rows from it, the reaper
# takes rows back from it and retrieval reads finished rows out of it.
#
# DESIGN DECISION: Compare-and-set for every transition.
# Each status change is a single conditional UPDATE whose WHERE clause
# names the status it expects (and, once claimed, the claim token). The
# affected row count says whether this caller won:
#
#   claim     PENDING    → PROCESSING  (issues a fresh claim_token)
#   complete  PROCESSING → COMPLETED   (token must match; stores embedding)
#   fail      PROCESSING → FAILED      (token must match)
#   requeue   PROCESSING → PENDING     (token must match)
#   reap      PROCESSING → PENDING | FAILED  (claimed_at older than TTL)
#
# DESIGN DECISION: Mixed sync/async interface, like the retrieval split in
# the rest of the app.
# - Pipeline methods are sync → called by Celery tasks and worker threads.
# - search() / list_completed() are async → called by FastAPI handlers.
#
# ARCHITECTURE:
#   ChunkStore (Protocol)
#   ├── PgChunkStore       — PostgreSQL + pgvector (sync + async engines)
#   └── InMemoryChunkStore — dict + lock, for memory mode and tests
# =============================================================================

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

import numpy as np
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert

from app.db.engine import async_session_factory, get_sync_session
from app.db.models import Chunk, ChunkStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class StatusCounts:
    """Per-status chunk counts for one document."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed


@dataclass
class ReapResult:
    """What a reaper pass did: chunks put back to PENDING / given up on."""

    requeued: int = 0
    failed: int = 0


@dataclass
class RetrievedChunk:
    """
    A COMPLETED chunk as seen by retrieval.

    `similarity` is filled by search() (cosine similarity, higher = closer)
    and left None by list_completed().
    """

    id: int
    document_id: str
    content: str
    embedding: list[float] = field(default_factory=list, repr=False)
    similarity: float | None = None


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class ChunkStore(Protocol):
    """Interface shared by the PostgreSQL and in-memory chunk stores."""

    def insert_pending(self, document_id: str, contents: Sequence[str]) -> list[int]:
        """
        Insert PENDING chunks in document order.

        Idempotent per (document_id, chunk_index): positions that already
        exist are left untouched. Returns the ids of the rows inserted.
        """
        ...

    def claim(self, chunk_id: int) -> str | None:
        """CAS PENDING → PROCESSING. Returns the claim token, None if lost."""
        ...

    def get_content(self, chunk_id: int) -> str | None:
        ...

    def get_document_id(self, chunk_id: int) -> str | None:
        """The owning document, or None for an unknown chunk."""
        ...

    def complete(self, chunk_id: int, token: str, embedding: list[float]) -> bool:
        ...

    def fail(self, chunk_id: int, token: str, error: str) -> bool:
        ...

    def requeue(self, chunk_id: int, token: str) -> bool:
        ...

    def count_by_status(self, document_id: str) -> StatusCounts:
        ...

    def list_pending_ids(self, document_id: str, limit: int) -> list[int]:
        """Up to `limit` PENDING chunk ids in chunk_index order."""
        ...

    def reap_stale(
        self,
        older_than: datetime,
        max_reclaims: int,
        document_id: str | None = None,
    ) -> ReapResult:
        """
        Take back PROCESSING chunks claimed before `older_than`.

        Chunks already reclaimed `max_reclaims` times become FAILED; the
        rest return to PENDING with reclaim_count incremented.
        """
        ...

    async def search(
        self,
        document_id: str,
        query_embedding: list[float],
        top_k: int,
    ) -> list[RetrievedChunk]:
        """Nearest COMPLETED chunks of one document by cosine distance."""
        ...

    async def list_completed(self, document_ids: Sequence[str]) -> list[RetrievedChunk]:
        """All COMPLETED chunks (with embeddings) of the given documents."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: PostgreSQL + pgvector
# ---------------------------------------------------------------------------


class PgChunkStore:
    """
    Chunk store backed by the `chunks` table.

    Every pipeline method opens its own short sync session, so no row lock
    outlives a single statement.
    """

    def __init__(self, insert_batch_size: int = 100) -> None:
        self._insert_batch_size = insert_batch_size

    def insert_pending(self, document_id: str, contents: Sequence[str]) -> list[int]:
        ids: list[int] = []
        with get_sync_session() as session:
            for start in range(0, len(contents), self._insert_batch_size):
                batch = contents[start:start + self._insert_batch_size]
                rows = [
                    {
                        "document_id": document_id,
                        "chunk_index": start + offset,
                        "content": content,
                        "processing_status": ChunkStatus.PENDING,
                        "reclaim_count": 0,
                    }
                    for offset, content in enumerate(batch)
                ]
                # A redelivered extraction hits existing positions; skip them
                statement = (
                    insert(Chunk)
                    .on_conflict_do_nothing(
                        index_elements=[Chunk.document_id, Chunk.chunk_index],
                    )
                    .returning(Chunk.id)
                )
                result = session.execute(statement, rows)
                ids.extend(sorted(result.scalars().all()))

        logger.info(
            "Inserted %d pending chunks for document_id=%s", len(ids), document_id,
        )
        return ids

    def claim(self, chunk_id: int) -> str | None:
        token = str(uuid.uuid4())
        with get_sync_session() as session:
            result = session.execute(
                update(Chunk)
                .where(
                    Chunk.id == chunk_id,
                    Chunk.processing_status == ChunkStatus.PENDING,
                )
                .values(
                    processing_status=ChunkStatus.PROCESSING,
                    claim_token=token,
                    claimed_at=func.now(),
                )
            )
        return token if result.rowcount == 1 else None

    def get_content(self, chunk_id: int) -> str | None:
        with get_sync_session() as session:
            return session.scalar(select(Chunk.content).where(Chunk.id == chunk_id))

    def get_document_id(self, chunk_id: int) -> str | None:
        with get_sync_session() as session:
            return session.scalar(select(Chunk.document_id).where(Chunk.id == chunk_id))

    def _finalise(self, chunk_id: int, token: str, **values) -> bool:
        with get_sync_session() as session:
            result = session.execute(
                update(Chunk)
                .where(
                    Chunk.id == chunk_id,
                    Chunk.processing_status == ChunkStatus.PROCESSING,
                    Chunk.claim_token == token,
                )
                .values(**values)
            )
        return result.rowcount == 1

    def complete(self, chunk_id: int, token: str, embedding: list[float]) -> bool:
        return self._finalise(
            chunk_id, token,
            processing_status=ChunkStatus.COMPLETED,
            embedding=embedding,
            claim_token=None,
            error_message=None,
        )

    def fail(self, chunk_id: int, token: str, error: str) -> bool:
        return self._finalise(
            chunk_id, token,
            processing_status=ChunkStatus.FAILED,
            claim_token=None,
            error_message=error[:1000],
        )

    def requeue(self, chunk_id: int, token: str) -> bool:
        return self._finalise(
            chunk_id, token,
            processing_status=ChunkStatus.PENDING,
            claim_token=None,
            claimed_at=None,
        )

    def count_by_status(self, document_id: str) -> StatusCounts:
        with get_sync_session() as session:
            rows = session.execute(
                select(Chunk.processing_status, func.count())
                .where(Chunk.document_id == document_id)
                .group_by(Chunk.processing_status)
            ).all()

        counts = StatusCounts()
        for status, count in rows:
            setattr(counts, ChunkStatus(status).value.lower(), count)
        return counts

    def list_pending_ids(self, document_id: str, limit: int) -> list[int]:
        if limit <= 0:
            return []
        with get_sync_session() as session:
            return list(
                session.scalars(
                    select(Chunk.id)
                    .where(
                        Chunk.document_id == document_id,
                        Chunk.processing_status == ChunkStatus.PENDING,
                    )
                    .order_by(Chunk.chunk_index)
                    .limit(limit)
                )
            )

    def reap_stale(
        self,
        older_than: datetime,
        max_reclaims: int,
        document_id: str | None = None,
    ) -> ReapResult:
        stale = [
            Chunk.processing_status == ChunkStatus.PROCESSING,
            Chunk.claimed_at < older_than,
        ]
        if document_id is not None:
            stale.append(Chunk.document_id == document_id)

        with get_sync_session() as session:
            # Give up first, so a chunk is never both re-queued and failed
            failed = session.execute(
                update(Chunk)
                .where(*stale, Chunk.reclaim_count >= max_reclaims)
                .values(
                    processing_status=ChunkStatus.FAILED,
                    claim_token=None,
                    error_message=(
                        f"Worker lost: claim expired after {max_reclaims} reclaims"
                    ),
                )
            ).rowcount
            requeued = session.execute(
                update(Chunk)
                .where(*stale, Chunk.reclaim_count < max_reclaims)
                .values(
                    processing_status=ChunkStatus.PENDING,
                    claim_token=None,
                    claimed_at=None,
                    reclaim_count=Chunk.reclaim_count + 1,
                )
            ).rowcount

        result = ReapResult(requeued=requeued, failed=failed)
        if requeued or failed:
            logger.warning(
                "Reaped stale chunks (document_id=%s): %d requeued, %d failed",
                document_id or "*", requeued, failed,
            )
        return result

    async def search(
        self,
        document_id: str,
        query_embedding: list[float],
        top_k: int,
    ) -> list[RetrievedChunk]:
        """
        Cosine similarity search using pgvector.

        cosine_distance() returns values in [0, 2]; similarity is reported
        as 1 - distance.
        """
        distance = Chunk.embedding.cosine_distance(query_embedding)
        async with async_session_factory() as session:
            result = await session.execute(
                select(Chunk.id, Chunk.document_id, Chunk.content, distance.label("distance"))
                .where(
                    Chunk.document_id == document_id,
                    Chunk.processing_status == ChunkStatus.COMPLETED,
                )
                .order_by(distance)
                .limit(top_k)
            )
            rows = result.all()

        logger.debug(
            "Vector search returned %d rows (top_k=%d, document_id=%s)",
            len(rows), top_k, document_id,
        )
        return [
            RetrievedChunk(
                id=row.id,
                document_id=row.document_id,
                content=row.content,
                similarity=round(1.0 - row.distance, 4),
            )
            for row in rows
        ]

    async def list_completed(self, document_ids: Sequence[str]) -> list[RetrievedChunk]:
        if not document_ids:
            return []
        async with async_session_factory() as session:
            result = await session.execute(
                select(Chunk.id, Chunk.document_id, Chunk.content, Chunk.embedding)
                .where(
                    Chunk.document_id.in_(list(document_ids)),
                    Chunk.processing_status == ChunkStatus.COMPLETED,
                )
                .order_by(Chunk.document_id, Chunk.chunk_index)
            )
            rows = result.all()

        return [
            RetrievedChunk(
                id=row.id,
                document_id=row.document_id,
                content=row.content,
                # pgvector hands back numpy arrays
                embedding=[float(v) for v in row.embedding],
            )
            for row in rows
        ]


# ---------------------------------------------------------------------------
# Implementation 2: In-Memory
# ---------------------------------------------------------------------------


@dataclass
class _ChunkRow:
    id: int
    document_id: str
    chunk_index: int
    content: str
    status: ChunkStatus = ChunkStatus.PENDING
    embedding: list[float] | None = None
    claim_token: str | None = None
    claimed_at: datetime | None = None
    reclaim_count: int = 0
    error_message: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryChunkStore:
    """
    Process-local chunk store.

    A single lock serialises every read-modify-write, which gives the same
    compare-and-set guarantees as the conditional UPDATEs of PgChunkStore.
    `clock` is injectable so tests can age claims without sleeping.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._rows: dict[int, _ChunkRow] = {}
        self._next_id = 1
        self._lock = threading.Lock()
        self._clock = clock

    def insert_pending(self, document_id: str, contents: Sequence[str]) -> list[int]:
        ids: list[int] = []
        with self._lock:
            existing = {
                row.chunk_index
                for row in self._rows.values()
                if row.document_id == document_id
            }
            for index, content in enumerate(contents):
                if index in existing:
                    continue
                row = _ChunkRow(
                    id=self._next_id,
                    document_id=document_id,
                    chunk_index=index,
                    content=content,
                )
                self._rows[row.id] = row
                ids.append(row.id)
                self._next_id += 1
        return ids

    def claim(self, chunk_id: int) -> str | None:
        with self._lock:
            row = self._rows.get(chunk_id)
            if row is None or row.status is not ChunkStatus.PENDING:
                return None
            row.status = ChunkStatus.PROCESSING
            row.claim_token = str(uuid.uuid4())
            row.claimed_at = self._clock()
            return row.claim_token

    def get_content(self, chunk_id: int) -> str | None:
        with self._lock:
            row = self._rows.get(chunk_id)
            return row.content if row is not None else None

    def get_document_id(self, chunk_id: int) -> str | None:
        with self._lock:
            row = self._rows.get(chunk_id)
            return row.document_id if row is not None else None

    def _owned(self, chunk_id: int, token: str) -> _ChunkRow | None:
        # Caller holds the lock
        row = self._rows.get(chunk_id)
        if (
            row is None
            or row.status is not ChunkStatus.PROCESSING
            or row.claim_token != token
        ):
            return None
        return row

    def complete(self, chunk_id: int, token: str, embedding: list[float]) -> bool:
        with self._lock:
            row = self._owned(chunk_id, token)
            if row is None:
                return False
            row.status = ChunkStatus.COMPLETED
            row.embedding = list(embedding)
            row.claim_token = None
            row.error_message = None
            return True

    def fail(self, chunk_id: int, token: str, error: str) -> bool:
        with self._lock:
            row = self._owned(chunk_id, token)
            if row is None:
                return False
            row.status = ChunkStatus.FAILED
            row.claim_token = None
            row.error_message = error[:1000]
            return True

    def requeue(self, chunk_id: int, token: str) -> bool:
        with self._lock:
            row = self._owned(chunk_id, token)
            if row is None:
                return False
            row.status = ChunkStatus.PENDING
            row.claim_token = None
            row.claimed_at = None
            return True

    def count_by_status(self, document_id: str) -> StatusCounts:
        counts = StatusCounts()
        with self._lock:
            for row in self._rows.values():
                if row.document_id == document_id:
                    name = row.status.value.lower()
                    setattr(counts, name, getattr(counts, name) + 1)
        return counts

    def list_pending_ids(self, document_id: str, limit: int) -> list[int]:
        if limit <= 0:
            return []
        with self._lock:
            pending = sorted(
                (
                    row for row in self._rows.values()
                    if row.document_id == document_id
                    and row.status is ChunkStatus.PENDING
                ),
                key=lambda row: row.chunk_index,
            )
        return [row.id for row in pending[:limit]]

    def reap_stale(
        self,
        older_than: datetime,
        max_reclaims: int,
        document_id: str | None = None,
    ) -> ReapResult:
        result = ReapResult()
        with self._lock:
            for row in self._rows.values():
                if row.status is not ChunkStatus.PROCESSING:
                    continue
                if document_id is not None and row.document_id != document_id:
                    continue
                if row.claimed_at is None or row.claimed_at >= older_than:
                    continue

                row.claim_token = None
                if row.reclaim_count >= max_reclaims:
                    row.status = ChunkStatus.FAILED
                    row.error_message = (
                        f"Worker lost: claim expired after {max_reclaims} reclaims"
                    )
                    result.failed += 1
                else:
                    row.status = ChunkStatus.PENDING
                    row.claimed_at = None
                    row.reclaim_count += 1
                    result.requeued += 1

        if result.requeued or result.failed:
            logger.warning(
                "Reaped stale chunks (document_id=%s): %d requeued, %d failed",
                document_id or "*", result.requeued, result.failed,
            )
        return result

    async def search(
        self,
        document_id: str,
        query_embedding: list[float],
        top_k: int,
    ) -> list[RetrievedChunk]:
        with self._lock:
            rows = [
                row for row in self._rows.values()
                if row.document_id == document_id
                and row.status is ChunkStatus.COMPLETED
            ]
        if not rows or top_k <= 0:
            return []

        matrix = np.asarray([row.embedding for row in rows], dtype=float)
        query = np.asarray(query_embedding, dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        # Zero vectors have no direction; rank them last
        safe_norms = np.where(norms > 0, norms, 1.0)
        similarities = np.where(norms > 0, (matrix @ query) / safe_norms, -1.0)
        order = np.argsort(-similarities, kind="stable")[:top_k]

        return [
            RetrievedChunk(
                id=rows[i].id,
                document_id=rows[i].document_id,
                content=rows[i].content,
                similarity=round(float(similarities[i]), 4),
            )
            for i in order
        ]

    async def list_completed(self, document_ids: Sequence[str]) -> list[RetrievedChunk]:
        wanted = list(document_ids)
        with self._lock:
            rows = sorted(
                (
                    row for row in self._rows.values()
                    if row.document_id in wanted
                    and row.status is ChunkStatus.COMPLETED
                ),
                key=lambda row: (wanted.index(row.document_id), row.chunk_index),
            )
            return [
                RetrievedChunk(
                    id=row.id,
                    document_id=row.document_id,
                    content=row.content,
                    embedding=list(row.embedding or []),
                )
                for row in rows
            ]

    def get_status(self, chunk_id: int) -> ChunkStatus | None:
        """Current status of one chunk; used by tests and memory-mode tooling."""
        with self._lock:
            row = self._rows.get(chunk_id)
            return row.status if row is not None else None
