# =============================================================================
# LLM Abstraction — Chat / Quiz / Flashcard Generation Backend
# =============================================================================
#
# A common interface for text completions, with implementations for
# Anthropic (Claude) and any OpenAI-compatible API (OpenAI, DeepSeek, Qwen,
# vLLM, Ollama...).
#
# DESIGN DECISION: Protocol (structural typing) over ABC, the same shape as
# the store and embedding interfaces. Tests pass any object with a matching
# `complete()`.
#
# DESIGN DECISION: Native SDKs, async clients. Generation is only called
# from FastAPI handlers.
#
# Quiz and flashcards need structured output. complete_json() asks for JSON,
# strips a ```json fence if the model added one, and parses; callers
# validate the shape with pydantic.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider — system prompt as first message
#   ├── complete_json()          — completion → parsed JSON
#   └── build_llm_provider()     — factory from Settings
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from app.config import Settings

logger = logging.getLogger(__name__)


class LLMOutputError(ValueError):
    """The model's output could not be used (not JSON, wrong shape)."""


@dataclass
class LLMResponse:
    """Provider-neutral completion result."""

    content: str           # The generated text
    model: str             # Model identifier
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


class LLMProvider(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: Dicts with "role" ("user" / "assistant") and "content".
            system: System prompt, passed the way each provider expects.
            temperature: Override sampling temperature.
            max_tokens: Override max output tokens.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Claude via the native SDK.

    KEY API DIFFERENCE: Anthropic takes the system prompt as a top-level
    `system=` kwarg, not as a message with role "system".
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> None:
        from anthropic import AsyncAnthropic

        if not api_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=api_key)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Any API that follows the OpenAI chat completions format.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> None:
        from openai import AsyncOpenAI

        if not api_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model, base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )

        content = response.choices[0].message.content or ""
        usage = response.usage
        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Structured Output
# ---------------------------------------------------------------------------


def strip_code_fence(raw: str) -> str:
    """Remove a surrounding ```json ... ``` fence if the model added one."""
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rstrip()
        if text.endswith("```"):
            text = text[:-3]
    return text.strip()


def parse_json_output(raw: str) -> Any:
    """
    Parse a model's JSON answer, tolerating a surrounding code fence.

    Raises:
        LLMOutputError: If the text is not valid JSON.
    """
    text = strip_code_fence(raw)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise LLMOutputError(f"Model did not return valid JSON: {exc}") from exc


async def complete_json(
    provider: LLMProvider,
    prompt: str,
    system: str | None = None,
) -> Any:
    """Run a single-turn completion and parse its output as JSON."""
    response = await provider.complete(
        messages=[{"role": "user", "content": prompt}],
        system=system,
    )
    logger.info(
        "JSON completion from %s (%d in / %d out tokens)",
        response.model, response.input_tokens, response.output_tokens,
    )
    return parse_json_output(response.content)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_llm_provider(settings: Settings) -> LLMProvider:
    """
    Build the configured provider.

    - "anthropic" → AnthropicProvider
    - "openai_compatible" → OpenAICompatibleProvider
    """
    if settings.llm_provider == "anthropic":
        return AnthropicProvider(
            api_key=settings.llm_api_key or settings.anthropic_api_key,
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )
    if settings.llm_provider == "openai_compatible":
        return OpenAICompatibleProvider(
            api_key=settings.llm_api_key or settings.openai_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )
    raise ValueError(
        f"Unknown llm_provider '{settings.llm_provider}'. "
        "Expected 'anthropic' or 'openai_compatible'."
    )
