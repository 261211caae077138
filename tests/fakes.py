# =============================================================================
# Test Doubles — Embedders, Dispatchers and LLMs without the Network
# =============================================================================

from __future__ import annotations

import hashlib
from collections.abc import Callable

from app.services.embedder import RateLimitedError
from app.services.llm import LLMResponse


def text_vector(text: str, dimensions: int = 8) -> list[float]:
    """Deterministic pseudo-embedding derived from the text's hash."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i % len(digest)] - 127.5) / 127.5 for i in range(dimensions)]


class FakeEmbedder:
    """
    Embeds with text_vector(), optionally failing.

    Args:
        dimensions: Length of the vectors produced.
        fail_when: Texts for which this returns True always raise RuntimeError.
        script: Queue of exceptions / vectors returned before falling back
            to text_vector(). Exceptions are raised, lists returned.
    """

    def __init__(
        self,
        dimensions: int = 8,
        fail_when: Callable[[str], bool] | None = None,
        script: list | None = None,
    ) -> None:
        self.dimensions = dimensions
        self.fail_when = fail_when
        self.script = list(script or [])
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        if self.fail_when is not None and self.fail_when(text):
            raise RuntimeError("embedding backend rejected the input")
        return text_vector(text, self.dimensions)


def rate_limited(retry_after: float | None) -> RateLimitedError:
    return RateLimitedError("429 Too Many Requests", retry_after=retry_after)


class RecordingDispatcher:
    """Records dispatches instead of running them; can be told to fail."""

    def __init__(self) -> None:
        self.extractions: list[str] = []
        self.chunks: list[tuple[int, str]] = []
        self.fail_extraction = False
        self.fail_chunks = False

    def dispatch_extraction(self, document_id: str) -> None:
        if self.fail_extraction:
            raise ConnectionError("broker unavailable")
        self.extractions.append(document_id)

    def dispatch_chunk(self, chunk_id: int, document_id: str) -> None:
        if self.fail_chunks:
            raise ConnectionError("broker unavailable")
        self.chunks.append((chunk_id, document_id))

    def drain_chunks(self) -> list[tuple[int, str]]:
        pending, self.chunks = self.chunks, []
        return pending

    def drain_extractions(self) -> list[str]:
        pending, self.extractions = self.extractions, []
        return pending


class FakeLLM:
    """Returns canned completions and records the prompts it was given."""

    def __init__(self, *contents: str) -> None:
        self.contents = list(contents)
        self.calls: list[dict] = []

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "system": system})
        content = self.contents.pop(0) if self.contents else ""
        return LLMResponse(content=content, model="fake-model", input_tokens=10, output_tokens=5)


class ManualClock:
    """A clock tests can move forward."""

    def __init__(self, start) -> None:
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        from datetime import timedelta

        self.now = self.now + timedelta(**kwargs)
