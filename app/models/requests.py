# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Bodies coming INTO the API. FastAPI validates them (422 on missing or
# malformed fields, before any handler code runs) and documents them at
# /docs.
#
# DESIGN DECISION: camelCase on the wire, snake_case in Python.
# The web client speaks camelCase (documentId, sourceReference...).
# alias_generator=to_camel maps the two; populate_by_name=True lets tests
# and Python callers use the field names directly.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for every API schema: camelCase JSON, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartProcessingRequest(CamelModel):
    """
    Body for POST /documents/start-processing.

    Example:
        {"sourceReference": "3f2a.../lecture-3.pdf", "mimeType": "application/pdf"}
    """

    source_reference: str = Field(
        ...,
        min_length=1,
        max_length=1000,
        description="Blob-store locator returned by POST /documents/upload",
    )
    mime_type: str = Field(
        ...,
        min_length=1,
        max_length=255,
        examples=["application/pdf", "text/plain"],
    )


class ProcessChunkRequest(CamelModel):
    """Body for POST /documents/process-one-chunk (internal worker trigger)."""

    chunk_id: int = Field(..., ge=1)
    document_id: str = Field(..., min_length=1)


class ChatMessage(CamelModel):
    role: Literal["user", "model", "assistant"]
    text: str


class ChatRequest(CamelModel):
    """
    Body for POST /chat.

    Example:
        {
            "documentIds": ["3f2a..."],
            "history": [{"role": "user", "text": "What is entropy?"}],
            "message": "And how does it relate to heat?"
        }
    """

    document_ids: list[str] = Field(..., min_length=1)
    history: list[ChatMessage] = Field(default_factory=list)
    message: str = Field(..., min_length=1, max_length=4000)


class DocumentSetRequest(CamelModel):
    """Body for POST /quiz and POST /flashcards."""

    document_ids: list[str] = Field(..., min_length=1)
