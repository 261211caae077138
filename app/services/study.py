# =============================================================================
# Study Aids — Chat, Quiz and Flashcards over Processed Documents
# =============================================================================
#
#   chat        top-k relevant chunks → answer restricted to that context
#   quiz        representative chunks → {title, questions[]} JSON
#   flashcards  representative chunks → [{front, back}] JSON
#
# Context chunks are joined with "---" separators so the model can tell
# excerpts from different sources apart.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import TypeAdapter, ValidationError

from app.models.requests import ChatMessage
from app.models.responses import ChatResponse, Flashcard, QuizResponse, Source
from app.services.chunk_store import RetrievedChunk
from app.services.llm import LLMOutputError, LLMProvider, complete_json
from app.services.retrieval import RetrievalService

logger = logging.getLogger(__name__)

NO_ANSWER_TEXT = (
    "I'm sorry, I couldn't generate a response based on the provided context."
)

CHAT_SYSTEM_PROMPT = """\
You are an expert study assistant. Your task is to answer questions based \
*only* on the provided context below. Do not use any external knowledge. If \
the answer is not in the context, say that you cannot find the answer in the \
document.

Here is the relevant context from the study material:
---
{context}
---

Here is the current conversation history:
---
{history}
---
"""

QUIZ_PROMPT = """\
Based on the following document context, which is composed of text from \
multiple sources, generate a multiple-choice quiz with a title and around \
5-10 questions. Ensure the quiz covers topics from the various sources. Each \
question should have 4 options and one correct answer.

Respond with ONLY a JSON object of the form:
{{"title": "...", "questions": [{{"questionText": "...", \
"options": ["...", "...", "...", "..."], "correctAnswer": "..."}}]}}
The correctAnswer must be exactly one of the options.

CONTEXT:
---
{context}
---
"""

FLASHCARDS_PROMPT = """\
Based on the following document context, which contains excerpts from \
multiple documents, generate a set of 10-15 flashcards. Ensure the \
flashcards cover key terms and concepts from all the different topics \
present in the context. Create a mix of question/answer and fill-in-the-blank \
styles.

Respond with ONLY a JSON array of the form:
[{{"front": "...", "back": "..."}}]

CONTEXT:
---
{context}
---
"""

_flashcards_adapter = TypeAdapter(list[Flashcard])


def _join_context(chunks: Sequence[RetrievedChunk]) -> str:
    return "\n\n---\n\n".join(chunk.content for chunk in chunks)


class StudyService:
    """Generates study aids from retrieved chunks."""

    def __init__(
        self,
        retrieval: RetrievalService,
        llm: LLMProvider,
        chat_top_k: int = 5,
        quiz_sample_size: int = 10,
        flashcard_sample_size: int = 15,
    ) -> None:
        self._retrieval = retrieval
        self._llm = llm
        self._chat_top_k = chat_top_k
        self._quiz_sample_size = quiz_sample_size
        self._flashcard_sample_size = flashcard_sample_size

    async def chat(
        self,
        document_ids: Sequence[str],
        history: Sequence[ChatMessage],
        message: str,
    ) -> ChatResponse:
        chunks = await self._retrieval.query_relevant_chunks(
            document_ids, message, self._chat_top_k,
        )
        sources = [Source(content=chunk.content) for chunk in chunks]

        system = CHAT_SYSTEM_PROMPT.format(
            context=_join_context(chunks),
            history="\n".join(f"{m.role}: {m.text}" for m in history),
        )
        response = await self._llm.complete(
            messages=[{"role": "user", "content": message}],
            system=system,
        )

        text = response.content.strip()
        if not text:
            logger.warning("Empty chat completion from %s", response.model)
            text = NO_ANSWER_TEXT
        return ChatResponse(text=text, sources=sources)

    async def quiz(self, document_ids: Sequence[str]) -> QuizResponse:
        """
        Raises:
            LLMOutputError: The model's answer was not a valid quiz.
        """
        chunks = await self._retrieval.get_representative_chunks(
            document_ids, self._quiz_sample_size,
        )
        data = await complete_json(
            self._llm, QUIZ_PROMPT.format(context=_join_context(chunks)),
        )
        try:
            return QuizResponse.model_validate(data)
        except ValidationError as exc:
            raise LLMOutputError(f"Model returned an invalid quiz: {exc}") from exc

    async def flashcards(self, document_ids: Sequence[str]) -> list[Flashcard]:
        """
        Raises:
            LLMOutputError: The model's answer was not a list of flashcards.
        """
        chunks = await self._retrieval.get_representative_chunks(
            document_ids, self._flashcard_sample_size,
        )
        data = await complete_json(
            self._llm, FLASHCARDS_PROMPT.format(context=_join_context(chunks)),
        )
        try:
            return _flashcards_adapter.validate_python(data)
        except ValidationError as exc:
            raise LLMOutputError(
                f"Model returned invalid flashcards: {exc}"
            ) from exc
