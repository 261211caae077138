# =============================================================================
# Study API — Chat, Quiz, Flashcards
# =============================================================================
#
# ENDPOINTS:
#   POST /chat        — answer a question from the documents' relevant chunks
#   POST /quiz        — multiple-choice quiz from representative chunks
#   POST /flashcards  — flashcards from representative chunks
#
# ERROR MAPPING:
#   LLMOutputError (unusable model output) → 502
#   ValueError at construction (no API key) → 503
#   other provider exceptions               → 502
# =============================================================================

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.models.requests import ChatRequest, DocumentSetRequest
from app.models.responses import ChatResponse, Flashcard, QuizResponse
from app.services.llm import LLMOutputError
from app.services.pipeline import get_study_service
from app.services.study import StudyService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Study"])


def study_service() -> StudyService:
    """FastAPI dependency: the StudyService, or 503 if it cannot be built."""
    try:
        return get_study_service()
    except ValueError as exc:
        logger.error("Study service unavailable: %s", exc)
        raise HTTPException(
            status_code=503, detail=f"Generation is not configured: {exc}",
        ) from exc


def _upstream_error(action: str, exc: Exception) -> HTTPException:
    logger.exception("Failed to %s: %s", action, exc)
    if isinstance(exc, LLMOutputError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(
        status_code=502, detail=f"Failed to {action}: {type(exc).__name__}",
    )


@router.post("/chat", response_model=ChatResponse, summary="Chat with documents")
async def chat(
    request: ChatRequest,
    service: StudyService = Depends(study_service),
) -> ChatResponse:
    try:
        return await service.chat(request.document_ids, request.history, request.message)
    except Exception as exc:
        raise _upstream_error("generate a chat response", exc) from exc


@router.post("/quiz", response_model=QuizResponse, summary="Generate a quiz")
async def quiz(
    request: DocumentSetRequest,
    service: StudyService = Depends(study_service),
) -> QuizResponse:
    try:
        return await service.quiz(request.document_ids)
    except Exception as exc:
        raise _upstream_error("generate a quiz", exc) from exc


@router.post(
    "/flashcards",
    response_model=list[Flashcard],
    summary="Generate flashcards",
)
async def flashcards(
    request: DocumentSetRequest,
    service: StudyService = Depends(study_service),
) -> list[Flashcard]:
    try:
        return await service.flashcards(request.document_ids)
    except Exception as exc:
        raise _upstream_error("generate flashcards", exc) from exc
