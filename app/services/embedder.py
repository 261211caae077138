# =============================================================================
# Embedding Service — Single-Text Vector Generation (Provider-Agnostic)
# =============================================================================
#
# The chunk worker treats the embedding model as an unreliable black box:
# `embed(text) -> list[float]`. This module provides that contract plus the
# pieces the worker needs to reason about failures:
#
# - RateLimitedError carries the provider-suggested wait (if any) so the
#   worker can choose between sleeping and re-queueing the chunk.
# - normalise_embedding() validates length / finiteness and L2-normalises
#   every vector before it is stored, whatever produced it.
#
# PROVIDERS:
#   EmbeddingProvider (Protocol)
#   ├── OpenAIEmbeddingProvider     — any OpenAI-compatible /embeddings API
#   └── GenerativeEmbeddingProvider — a chat model asked for a JSON vector
#
# DESIGN DECISION: No retry logic in the providers. The OpenAI SDK's own
# retries are switched off (max_retries=0); retry, backoff and re-queue are
# decided in one place, the chunk worker.
#
# DESIGN DECISION: Providers are plain objects constructed once by
# app.services.pipeline and injected into the worker and the retrieval
# service, never module globals.
# =============================================================================

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Mapping
from email.utils import parsedate_to_datetime
from datetime import UTC, datetime
from typing import Protocol

import openai
from openai import OpenAI

from app.services.llm import strip_code_fence

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RateLimitedError(Exception):
    """
    The provider refused the call for capacity reasons.

    `retry_after` is the provider-suggested wait in seconds, or None when
    the provider gave no hint.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class EmbeddingValidationError(ValueError):
    """The provider returned something that is not a usable vector."""


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    """Anything that turns one text into one vector."""

    def embed(self, text: str) -> list[float]:
        """
        Embed a single text.

        Raises:
            RateLimitedError: Provider is saturated (may carry retry_after).
            Exception: Anything else is treated as a failed attempt.
        """
        ...


# ---------------------------------------------------------------------------
# Output Validation
# ---------------------------------------------------------------------------


def normalise_embedding(vector: object, dimensions: int) -> list[float]:
    """
    Validate a raw vector and scale it to unit L2 length.

    Args:
        vector: Provider output (expected: a sequence of numbers).
        dimensions: Required vector length for this deployment.

    Returns:
        The L2-normalised vector as a list of floats. An all-zero vector is
        returned unchanged (all zeros) rather than dividing by zero.

    Raises:
        EmbeddingValidationError: Wrong type, wrong length, or any entry
            that is not a finite number.
    """
    if isinstance(vector, (str, bytes)) or not hasattr(vector, "__len__"):
        raise EmbeddingValidationError(
            f"Embedding must be a sequence of numbers, got {type(vector).__name__}"
        )
    if len(vector) != dimensions:
        raise EmbeddingValidationError(
            f"Embedding has {len(vector)} dimensions, expected {dimensions}"
        )

    values: list[float] = []
    for i, value in enumerate(vector):
        # bool is an int subclass; a vector of True/False is malformed output
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise EmbeddingValidationError(
                    f"Embedding entry {i} is not a number: {value!r}"
                ) from None
        if not math.isfinite(value):
            raise EmbeddingValidationError(
                f"Embedding entry {i} is not finite: {value!r}"
            )
        values.append(float(value))

    magnitude = math.sqrt(sum(v * v for v in values))
    if magnitude == 0.0:
        return [0.0] * dimensions
    return [v / magnitude for v in values]


# ---------------------------------------------------------------------------
# Rate-Limit Hint Parsing
# ---------------------------------------------------------------------------
# Providers express "come back later" differently:
#   retry-after-ms: 1500               (OpenAI)
#   retry-after: 20                    (RFC 9110 delay-seconds)
#   retry-after: Wed, 21 Oct 2026 ...  (RFC 9110 HTTP-date)
#   "... Please retry in 31.2s."       (message text, Gemini-style)
#   "retryDelay": "31s"                (JSON error details)
# ---------------------------------------------------------------------------

_RETRY_IN_PATTERN = re.compile(
    r"(?:retry|try again)\s+(?:in|after)\s+([0-9]+(?:\.[0-9]+)?)\s*(ms|s|sec|seconds?)?\b",
    re.IGNORECASE,
)
_RETRY_DELAY_PATTERN = re.compile(
    r"\"?retryDelay\"?\s*:\s*\"([0-9]+(?:\.[0-9]+)?)s\"",
)


def parse_retry_after(
    headers: Mapping[str, str] | None = None,
    message: str | None = None,
) -> float | None:
    """
    Extract a provider-suggested wait in seconds.

    Headers win over message text. Returns None when no hint is found.
    """
    if headers:
        lowered = {k.lower(): v for k, v in headers.items()}

        raw_ms = lowered.get("retry-after-ms")
        if raw_ms is not None:
            try:
                return max(float(raw_ms) / 1000.0, 0.0)
            except ValueError:
                pass

        raw = lowered.get("retry-after")
        if raw is not None:
            try:
                return max(float(raw), 0.0)
            except ValueError:
                try:
                    when = parsedate_to_datetime(raw)
                except (TypeError, ValueError):
                    when = None
                if when is not None:
                    if when.tzinfo is None:
                        when = when.replace(tzinfo=UTC)
                    return max((when - datetime.now(UTC)).total_seconds(), 0.0)

    if message:
        match = _RETRY_DELAY_PATTERN.search(message)
        if match:
            return float(match.group(1))
        match = _RETRY_IN_PATTERN.search(message)
        if match:
            value = float(match.group(1))
            unit = (match.group(2) or "s").lower()
            return value / 1000.0 if unit == "ms" else value

    return None


def _rate_limited_from_openai(exc: openai.RateLimitError) -> RateLimitedError:
    """Translate the SDK's 429 into our RateLimitedError with its wait hint."""
    headers = None
    response = getattr(exc, "response", None)
    if response is not None:
        headers = dict(response.headers)
    retry_after = parse_retry_after(headers, str(exc))
    return RateLimitedError(str(exc), retry_after=retry_after)


# ---------------------------------------------------------------------------
# Implementation 1: OpenAI-compatible embeddings endpoint
# ---------------------------------------------------------------------------


class OpenAIEmbeddingProvider:
    """
    Embeds text through any OpenAI-compatible /embeddings endpoint.

    DESIGN DECISION: OpenAI SDK with configurable base_url, so OpenAI,
    Azure-style gateways and self-hosted servers (vLLM, Ollama's OpenAI
    shim) all work without code changes.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        dimensions: int | None = None,
        base_url: str | None = None,
        client: OpenAI | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ValueError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )
            client_kwargs: dict = {"api_key": api_key, "max_retries": 0}
            if base_url:
                client_kwargs["base_url"] = base_url
            client = OpenAI(**client_kwargs)

        self._client = client
        self._model = model
        self._dimensions = dimensions

        logger.info(
            "Initialized OpenAIEmbeddingProvider (model=%s, base_url=%s)",
            model, base_url or "https://api.openai.com/v1",
        )

    def embed(self, text: str) -> list[float]:
        create_kwargs: dict = {"model": self._model, "input": [text]}
        if self._dimensions:
            create_kwargs["dimensions"] = self._dimensions

        try:
            response = self._client.embeddings.create(**create_kwargs)
        except openai.RateLimitError as exc:
            raise _rate_limited_from_openai(exc) from exc

        if not response.data:
            raise EmbeddingValidationError("Embedding response contained no data")
        return list(response.data[0].embedding)


# ---------------------------------------------------------------------------
# Implementation 2: Generative model emitting the vector as JSON
# ---------------------------------------------------------------------------


class GenerativeEmbeddingProvider:
    """
    Repurposes a chat model as an embedder.

    The model is asked for a JSON array of exactly `dimensions` numbers.
    The output is only parsed here; length, finiteness and normalisation
    are checked by normalise_embedding() in the worker like any other
    provider's output.
    """

    _SYSTEM_PROMPT = (
        "You are an embedding function. Given a passage, return ONLY a JSON "
        "array of exactly {dimensions} floating point numbers between -1 and 1 "
        "that represent the passage's meaning. No prose, no keys, no code fences."
    )

    def __init__(
        self,
        api_key: str,
        model: str,
        dimensions: int,
        base_url: str | None = None,
        client: OpenAI | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ValueError(
                    "No API key configured for generative embeddings. "
                    "Set LLM_API_KEY in .env"
                )
            client_kwargs: dict = {"api_key": api_key, "max_retries": 0}
            if base_url:
                client_kwargs["base_url"] = base_url
            client = OpenAI(**client_kwargs)

        self._client = client
        self._model = model
        self._dimensions = dimensions

        logger.info(
            "Initialized GenerativeEmbeddingProvider (model=%s, dimensions=%d)",
            model, dimensions,
        )

    def embed(self, text: str) -> list[float]:
        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {
                        "role": "system",
                        "content": self._SYSTEM_PROMPT.format(
                            dimensions=self._dimensions,
                        ),
                    },
                    {"role": "user", "content": text},
                ],
                temperature=0,
            )
        except openai.RateLimitError as exc:
            raise _rate_limited_from_openai(exc) from exc

        raw = (response.choices[0].message.content or "").strip()
        raw = strip_code_fence(raw)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise EmbeddingValidationError(
                f"Model output is not valid JSON: {raw[:80]!r}"
            ) from exc

        if not isinstance(parsed, list):
            raise EmbeddingValidationError(
                f"Model output is a {type(parsed).__name__}, expected a JSON array"
            )
        return parsed
