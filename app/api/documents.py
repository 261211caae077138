# =============================================================================
# Documents API — Upload, Start Processing, Poll, Process One Chunk
# =============================================================================
#
# ENDPOINTS:
#   POST /documents/upload              — store a file, return its sourceReference
#   POST /documents/start-processing    — create a job, return its documentId (202)
#   GET  /documents/status/{documentId} — report progress AND advance the pipeline
#   POST /documents/process-one-chunk   — run one chunk worker pass (internal)
#
# DESIGN DECISION: 202 Accepted for start-processing. Nothing has been
# extracted yet; the first status poll claims the extraction.
#
# DESIGN DECISION: The pipeline services are synchronous (they also run in
# Celery workers). Handlers call them through asyncio.to_thread() so a
# database round-trip never blocks the event loop.
# =============================================================================

import asyncio
import logging
import mimetypes

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from app.models.requests import ProcessChunkRequest, StartProcessingRequest
from app.models.responses import (
    DocumentStatusResponse,
    ProcessChunkResponse,
    StartProcessingResponse,
    UploadResponse,
)
from app.services.chunk_worker import ChunkProcessingError
from app.services.controller import DocumentNotFoundError
from app.services.pipeline import ChunkNotFoundError, Pipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["Documents"])

MAX_UPLOAD_BYTES = 50 * 1024 * 1024


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=201,
    summary="Upload a study document",
)
async def upload_document(
    file: UploadFile = File(..., description="PDF or plain-text study material"),
    pipeline: Pipeline = Depends(get_pipeline),
) -> UploadResponse:
    """Store the raw file; pass the returned reference to start-processing."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="Uploaded file has no filename.")

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {MAX_UPLOAD_BYTES // (1024 * 1024)} MB limit.",
        )

    mime_type = (
        file.content_type
        if file.content_type and file.content_type != "application/octet-stream"
        else mimetypes.guess_type(file.filename)[0] or "text/plain"
    )
    source_reference = await asyncio.to_thread(
        pipeline.blobs.save, content, file.filename,
    )
    return UploadResponse(source_reference=source_reference, mime_type=mime_type)


# ---------------------------------------------------------------------------
# POST /documents/start-processing
# ---------------------------------------------------------------------------


@router.post(
    "/start-processing",
    response_model=StartProcessingResponse,
    status_code=202,
    summary="Create a processing job for an uploaded document",
)
async def start_processing(
    request: StartProcessingRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> StartProcessingResponse:
    document_id = await asyncio.to_thread(
        pipeline.controller.start, request.source_reference, request.mime_type,
    )
    return StartProcessingResponse(document_id=document_id)


# ---------------------------------------------------------------------------
# GET /documents/status/{document_id}
# ---------------------------------------------------------------------------


@router.get(
    "/status/{document_id}",
    response_model=DocumentStatusResponse,
    summary="Poll processing status (and advance the pipeline)",
)
async def get_status(
    document_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> DocumentStatusResponse:
    try:
        report = await asyncio.to_thread(pipeline.controller.poll, document_id)
    except DocumentNotFoundError:
        raise HTTPException(
            status_code=404, detail=f"Document {document_id} not found",
        ) from None

    return DocumentStatusResponse(
        is_ready=report.is_ready,
        is_finished=report.is_finished,
        has_failed=report.has_failed,
        progress=report.progress,
        message=report.message,
    )


# ---------------------------------------------------------------------------
# POST /documents/process-one-chunk
# ---------------------------------------------------------------------------


@router.post(
    "/process-one-chunk",
    response_model=ProcessChunkResponse,
    summary="Run one embedding pass over a chunk (internal trigger)",
)
async def process_one_chunk(
    request: ProcessChunkRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> ProcessChunkResponse:
    """
    Idempotent: a chunk someone else already claimed returns 'skipped'.

    The chunk must belong to `documentId` (404 otherwise).
    """
    try:
        outcome = await asyncio.to_thread(
            pipeline.process_chunk, request.chunk_id, request.document_id,
        )
    except ChunkNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    except ChunkProcessingError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return ProcessChunkResponse(success=True, outcome=outcome.value)
