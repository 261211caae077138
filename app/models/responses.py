# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Data going OUT of the API, serialised with camelCase aliases.
#
# DESIGN DECISION: Separate response models from DB models. Chunks carry
# embedding vectors of 1536 floats; sources only ever expose `content`.
#
# QuizResponse and Flashcard double as the validators for the model's JSON
# output in app.services.study.
# =============================================================================

from pydantic import Field

from app.models.requests import CamelModel


class HealthResponse(CamelModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class UploadResponse(CamelModel):
    """Response for POST /documents/upload."""

    source_reference: str
    mime_type: str


class StartProcessingResponse(CamelModel):
    """
    Response for POST /documents/start-processing.

    Processing has not started yet; poll GET /documents/status/{documentId}
    to drive and observe it.
    """

    document_id: str


class DocumentStatusResponse(CamelModel):
    """
    Response for GET /documents/status/{documentId}.

    is_ready is true only when is_finished and not has_failed. A finished
    document with has_failed is still usable, with fewer chunks.
    """

    is_ready: bool
    is_finished: bool
    has_failed: bool
    progress: int = Field(ge=0, le=100)
    message: str | None = None


class ProcessChunkResponse(CamelModel):
    """Response for POST /documents/process-one-chunk."""

    success: bool = True
    outcome: str = Field(description="skipped, completed or requeued")


class Source(CamelModel):
    content: str


class ChatResponse(CamelModel):
    text: str
    sources: list[Source] = Field(default_factory=list)


class QuizQuestion(CamelModel):
    question_text: str
    options: list[str] = Field(min_length=4, max_length=4)
    correct_answer: str


class QuizResponse(CamelModel):
    title: str
    questions: list[QuizQuestion] = Field(min_length=1)


class Flashcard(CamelModel):
    front: str
    back: str
