# =============================================================================
# Chunk Worker — One Processing Pass over One Chunk
# =============================================================================
#
#   claim (CAS PENDING → PROCESSING)     lost → SKIPPED, not an error
#   fetch content
#   embed, with retry / backoff / re-queue
#   validate + L2-normalise
#   complete (COMPLETED + embedding)     or fail (FAILED) and raise
#
# RETRY POLICY:
# ┌──────────────────────────────────────┬──────────────────────────────────┐
# │ Outcome of an attempt                │ Action                           │
# ├──────────────────────────────────────┼──────────────────────────────────┤
# │ RateLimitedError, wait > threshold   │ re-queue now (PENDING)           │
# │ RateLimitedError, short / no wait    │ sleep wait (or backoff), retry   │
# │ any other exception                  │ sleep backoff, retry             │
# │ budget spent, only rate limits seen  │ re-queue (PENDING)               │
# │ budget spent, any real error         │ FAILED + ChunkProcessingError    │
# └──────────────────────────────────────┴──────────────────────────────────┘
#
# Backoff before attempt n+1 is base * 2**(n-1): 1s, 2s, 4s... A saturated
# provider never costs a chunk its place; only errors in the chunk's own
# processing can make it FAILED.
# =============================================================================

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable

from app.services.chunk_store import ChunkStore
from app.services.embedder import (
    EmbeddingProvider,
    RateLimitedError,
    normalise_embedding,
)

logger = logging.getLogger(__name__)


class ChunkOutcome(str, enum.Enum):
    SKIPPED = "skipped"      # Someone else held the claim
    COMPLETED = "completed"  # Embedding stored
    REQUEUED = "requeued"    # Back to PENDING for a later dispatch


class ChunkProcessingError(RuntimeError):
    """A chunk was marked FAILED after its retry budget was spent."""

    def __init__(self, chunk_id: int, message: str) -> None:
        super().__init__(f"Chunk {chunk_id} failed: {message}")
        self.chunk_id = chunk_id


class _Requeue(Exception):
    pass


class ChunkWorker:
    """
    Embeds single chunks on behalf of the pipeline.

    Args:
        chunks: Chunk store holding status, content and embeddings.
        embedder: Provider producing raw vectors.
        dimensions: Required vector length.
        max_attempts: Embedding attempts per processing pass.
        backoff_base_seconds: First backoff delay; doubles per attempt.
        requeue_threshold_seconds: Rate-limit waits above this re-queue.
        sleep: Injectable for tests.
    """

    def __init__(
        self,
        chunks: ChunkStore,
        embedder: EmbeddingProvider,
        dimensions: int,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        requeue_threshold_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._chunks = chunks
        self._embedder = embedder
        self._dimensions = dimensions
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._requeue_threshold = requeue_threshold_seconds
        self._sleep = sleep

    def process(self, chunk_id: int) -> ChunkOutcome:
        """
        Attempt one processing pass over a chunk.

        Returns:
            SKIPPED, COMPLETED or REQUEUED.

        Raises:
            ChunkProcessingError: The chunk is now FAILED.
        """
        token = self._chunks.claim(chunk_id)
        if token is None:
            logger.debug("Chunk %d already claimed or not pending; skipping", chunk_id)
            return ChunkOutcome.SKIPPED

        content = self._chunks.get_content(chunk_id)
        if not content:
            error = "Chunk has no content"
            self._chunks.fail(chunk_id, token, error)
            raise ChunkProcessingError(chunk_id, error)

        try:
            embedding = self._embed_with_retry(chunk_id, content)
        except _Requeue as exc:
            self._chunks.requeue(chunk_id, token)
            logger.info("Chunk %d re-queued: %s", chunk_id, exc)
            return ChunkOutcome.REQUEUED
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            self._chunks.fail(chunk_id, token, error)
            logger.error("Chunk %d failed permanently: %s", chunk_id, error)
            raise ChunkProcessingError(chunk_id, error) from exc

        if not self._chunks.complete(chunk_id, token, embedding):
            # Claim was reaped while we worked; the newer claim owns the row
            logger.warning("Chunk %d lost its claim before completion", chunk_id)
            return ChunkOutcome.SKIPPED

        logger.debug("Chunk %d embedded", chunk_id)
        return ChunkOutcome.COMPLETED

    def _backoff(self, attempt: int) -> float:
        return self._backoff_base * 2 ** (attempt - 1)

    def _embed_with_retry(self, chunk_id: int, content: str) -> list[float]:
        last_error: Exception | None = None
        only_rate_limited = True

        for attempt in range(1, self._max_attempts + 1):
            try:
                raw = self._embedder.embed(content)
                return normalise_embedding(raw, self._dimensions)
            except RateLimitedError as exc:
                wait = exc.retry_after
                if wait is not None and wait > self._requeue_threshold:
                    raise _Requeue(f"rate limited, retry after {wait:.1f}s") from exc
                last_error = exc
                delay = wait if wait is not None else self._backoff(attempt)
            except Exception as exc:
                only_rate_limited = False
                last_error = exc
                delay = self._backoff(attempt)

            if attempt < self._max_attempts:
                logger.warning(
                    "Chunk %d attempt %d/%d failed (%s); retrying in %.1fs",
                    chunk_id, attempt, self._max_attempts, last_error, delay,
                )
                self._sleep(delay)

        if only_rate_limited:
            raise _Requeue("rate limited on every attempt") from last_error
        raise last_error
