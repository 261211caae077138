# =============================================================================
# Retrieval Service — Relevant and Representative Chunks
# =============================================================================
#
# Two ways of choosing context for the generation layer:
#
# 1. query_relevant_chunks()    (chat)
#    Embed the question once, search each document for
#    ceil(match_count / n_documents) nearest chunks concurrently, concatenate
#    in request order, truncate to match_count. A document whose search
#    fails contributes nothing; the others still answer.
#
# 2. get_representative_chunks()  (quiz, flashcards)
#    Load every COMPLETED chunk of the documents. If there are no more than
#    `target`, return them all; otherwise k-means the embeddings with
#    k = clamp(ceil(total / 10), 3, 5) and take a stratified sample.
#
# Only COMPLETED chunks are ever read; a partially failed document simply
# offers fewer chunks.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence

import numpy as np

from app.services.chunk_store import ChunkStore, RetrievedChunk
from app.services.clustering import kmeans, stratified_sample
from app.services.embedder import EmbeddingProvider, normalise_embedding

logger = logging.getLogger(__name__)

MIN_CLUSTERS = 3
MAX_CLUSTERS = 5
CHUNKS_PER_CLUSTER = 10


def choose_cluster_count(total: int) -> int:
    """k = clamp(ceil(total / 10), 3, 5)."""
    return min(MAX_CLUSTERS, max(MIN_CLUSTERS, math.ceil(total / CHUNKS_PER_CLUSTER)))


class RetrievalService:
    """Reads COMPLETED chunks for the generation endpoints."""

    def __init__(
        self,
        chunks: ChunkStore,
        embedder: EmbeddingProvider,
        dimensions: int,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._chunks = chunks
        self._embedder = embedder
        self._dimensions = dimensions
        self._rng = rng

    async def query_relevant_chunks(
        self,
        document_ids: Sequence[str],
        query: str,
        match_count: int = 5,
    ) -> list[RetrievedChunk]:
        """
        Nearest chunks to `query`, spread evenly across `document_ids`.

        Raises:
            Exception: Only if embedding the query itself fails.
        """
        if not document_ids or match_count <= 0:
            return []

        # The provider client is sync; keep it off the event loop
        raw = await asyncio.to_thread(self._embedder.embed, query)
        query_embedding = normalise_embedding(raw, self._dimensions)

        per_document = math.ceil(match_count / len(document_ids))
        results = await asyncio.gather(
            *(
                self._chunks.search(document_id, query_embedding, per_document)
                for document_id in document_ids
            ),
            return_exceptions=True,
        )

        merged: list[RetrievedChunk] = []
        for document_id, result in zip(document_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "Search in document %s failed, skipping it: %s",
                    document_id, result,
                )
                continue
            merged.extend(result)

        logger.debug(
            "Retrieved %d chunks from %d documents (match_count=%d)",
            len(merged), len(document_ids), match_count,
        )
        return merged[:match_count]

    async def get_representative_chunks(
        self,
        document_ids: Sequence[str],
        target: int,
    ) -> list[RetrievedChunk]:
        """A semantically diverse sample of up to `target` chunks."""
        if not document_ids or target <= 0:
            return []

        chunks = await self._chunks.list_completed(document_ids)
        if len(chunks) <= target:
            return chunks

        k = choose_cluster_count(len(chunks))
        assignments = kmeans([c.embedding for c in chunks], k, rng=self._rng)
        sample = stratified_sample(chunks, assignments, target, k)

        logger.info(
            "Sampled %d of %d chunks across %d clusters",
            len(sample), len(chunks), k,
        )
        return sample
