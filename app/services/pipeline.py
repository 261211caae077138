# =============================================================================
# Pipeline Wiring — Construct Every Service Once
# =============================================================================
#
# Stores, providers, dispatcher, controller, worker, extractor and retrieval
# are plain objects with injected collaborators. This module is the single
# place that decides which implementations to plug together:
#
#   settings.store_backend   "postgres" → PgJobStore / PgChunkStore
#                            "memory"   → InMemoryJobStore / InMemoryChunkStore
#   settings.dispatcher      "celery"   → CeleryDispatcher (send_task)
#                            "thread"   → ThreadDispatcher (local pool)
#   settings.embedding_provider  "openai" | "generative"
#   settings.llm_provider        "anthropic" | "openai_compatible"
#
# DESIGN DECISION: lru_cache'd getters, usable directly as FastAPI
# dependencies. Tests swap them with app.dependency_overrides, and Celery
# tasks call them once per worker process.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from app.config import Settings, settings
from app.services.blob_store import LocalBlobStore
from app.services.chunk_store import ChunkStore, InMemoryChunkStore, PgChunkStore
from app.services.chunk_worker import ChunkOutcome, ChunkWorker
from app.services.controller import PipelineController, StatusReport
from app.services.dispatcher import CeleryDispatcher, Dispatcher, ThreadDispatcher
from app.services.embedder import (
    EmbeddingProvider,
    GenerativeEmbeddingProvider,
    OpenAIEmbeddingProvider,
)
from app.services.extraction import DocumentExtractor
from app.services.job_store import InMemoryJobStore, JobStore, PgJobStore
from app.services.llm import build_llm_provider
from app.services.retrieval import RetrievalService
from app.services.study import StudyService

logger = logging.getLogger(__name__)


class ChunkNotFoundError(LookupError):
    """A chunk id that does not belong to the named document."""


@dataclass
class Pipeline:
    """Everything the HTTP handlers and background tasks need."""

    jobs: JobStore
    chunks: ChunkStore
    blobs: LocalBlobStore
    controller: PipelineController
    worker: ChunkWorker
    extractor: DocumentExtractor
    retrieval: RetrievalService

    def run_extraction(self, document_id: str) -> StatusReport:
        """
        Extract a claimed document, then poll once.

        The poll starts dispatching chunk work straight away instead of
        waiting for the client's next status request.
        """
        self.extractor.run(document_id)
        return self.controller.poll(document_id)

    def process_chunk(self, chunk_id: int, document_id: str) -> ChunkOutcome:
        """
        Raises:
            ChunkNotFoundError: The chunk does not exist in `document_id`.
            ChunkProcessingError: The chunk is now FAILED.
        """
        if self.chunks.get_document_id(chunk_id) != document_id:
            raise ChunkNotFoundError(
                f"Chunk {chunk_id} not found in document {document_id}"
            )
        outcome = self.worker.process(chunk_id)
        logger.debug(
            "Chunk %d of %s processed: %s", chunk_id, document_id, outcome.value,
        )
        return outcome


def build_embedding_provider(config: Settings) -> EmbeddingProvider:
    """Construct the configured embedding provider."""
    if config.embedding_provider == "openai":
        return OpenAIEmbeddingProvider(
            api_key=config.openai_api_key or config.llm_api_key or "",
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            base_url=config.embedding_base_url,
        )
    if config.embedding_provider == "generative":
        return GenerativeEmbeddingProvider(
            api_key=config.llm_api_key or config.openai_api_key or "",
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
            base_url=config.embedding_base_url or config.llm_base_url,
        )
    raise ValueError(
        f"Unknown embedding_provider '{config.embedding_provider}'. "
        "Expected 'openai' or 'generative'."
    )


def build_pipeline(
    config: Settings,
    embedder: EmbeddingProvider | None = None,
    dispatcher: Dispatcher | None = None,
) -> Pipeline:
    """
    Assemble a Pipeline from settings.

    `embedder` and `dispatcher` may be passed in to replace the configured
    ones (tests use fakes for both).
    """
    if config.store_backend == "postgres":
        jobs: JobStore = PgJobStore()
        chunks: ChunkStore = PgChunkStore(config.chunk_insert_batch_size)
    elif config.store_backend == "memory":
        jobs = InMemoryJobStore()
        chunks = InMemoryChunkStore()
    else:
        raise ValueError(
            f"Unknown store_backend '{config.store_backend}'. "
            "Expected 'postgres' or 'memory'."
        )

    embedder = embedder or build_embedding_provider(config)
    blobs = LocalBlobStore(config.upload_dir)

    # The thread dispatcher calls back into the pipeline it belongs to,
    # which does not exist yet; resolve through a holder.
    holder: dict[str, Pipeline] = {}
    if dispatcher is None:
        if config.dispatcher == "celery":
            from app.workers.celery_app import celery_app

            dispatcher = CeleryDispatcher(celery_app)
        elif config.dispatcher == "thread":
            dispatcher = ThreadDispatcher(
                extract=lambda document_id: holder["pipeline"].run_extraction(document_id),
                process_chunk=lambda chunk_id, document_id: holder["pipeline"].process_chunk(
                    chunk_id, document_id,
                ),
                max_workers=config.thread_dispatcher_workers,
            )
        else:
            raise ValueError(
                f"Unknown dispatcher '{config.dispatcher}'. "
                "Expected 'celery' or 'thread'."
            )

    pipeline = Pipeline(
        jobs=jobs,
        chunks=chunks,
        blobs=blobs,
        controller=PipelineController(
            jobs,
            chunks,
            dispatcher,
            max_concurrent_workers=config.max_concurrent_workers,
            chunk_claim_ttl_seconds=config.chunk_claim_ttl_seconds,
            max_chunk_reclaims=config.max_chunk_reclaims,
        ),
        worker=ChunkWorker(
            chunks,
            embedder,
            dimensions=config.embedding_dimensions,
            max_attempts=config.embedding_max_attempts,
            backoff_base_seconds=config.embedding_backoff_base_seconds,
            requeue_threshold_seconds=config.rate_limit_requeue_threshold_seconds,
        ),
        extractor=DocumentExtractor(
            jobs,
            chunks,
            blobs,
            chunk_size=config.chunk_size,
            chunk_overlap=config.chunk_overlap,
        ),
        retrieval=RetrievalService(
            chunks, embedder, dimensions=config.embedding_dimensions,
        ),
    )
    holder["pipeline"] = pipeline

    logger.info(
        "Pipeline ready (store=%s, dispatcher=%s, embeddings=%s/%s)",
        config.store_backend, type(dispatcher).__name__,
        config.embedding_provider, config.embedding_model,
    )
    return pipeline


@lru_cache
def get_pipeline() -> Pipeline:
    """Process-wide Pipeline built from `settings`."""
    return build_pipeline(settings)


@lru_cache
def get_study_service() -> StudyService:
    """
    Process-wide StudyService.

    Built separately from the pipeline so a missing LLM key only affects
    the generation endpoints.
    """
    return StudyService(
        retrieval=get_pipeline().retrieval,
        llm=build_llm_provider(settings),
        chat_top_k=settings.retrieval_top_k,
        quiz_sample_size=settings.quiz_sample_size,
        flashcard_sample_size=settings.flashcard_sample_size,
    )
