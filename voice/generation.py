"""
Generation Client — streams response tokens from a chat-completion provider.

Two providers share one interface:
- OpenAI-compatible chat completions (OpenRouter by default), via ``openai``
- Anthropic messages streaming, via ``anthropic``

Callers get an async iterator of text tokens. Any provider failure, before or
during streaming, surfaces as GenerationError.
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import AsyncIterator, Iterable, Optional

from config.settings import LLMConfig
from models.schemas import Capabilities, HistoryEntry, Persona
from voice.errors import GenerationError
from voice.prompts import VoicePromptBuilder

logger = structlog.get_logger()


class GenerationClient(abc.ABC):
    """Base class for streaming generation providers."""

    provider: str = "base"

    def __init__(self, config: LLMConfig):
        self.config = config
        self._client = None

    @abc.abstractmethod
    def _get_client(self):
        ...

    @abc.abstractmethod
    def _stream_tokens(
        self, client, system: str, messages: list[dict[str, str]], model: str, max_tokens: int,
    ) -> AsyncIterator[str]:
        ...

    async def stream(
        self,
        history: Iterable[HistoryEntry],
        *,
        model: Optional[str] = None,
        capabilities: Optional[Capabilities] = None,
        persona: Optional[Persona] = None,
    ) -> AsyncIterator[str]:
        """Yield response tokens for the conversation so far."""
        capabilities = capabilities or Capabilities()
        persona = persona or Persona()
        model = model or self.config.model
        max_tokens = self.config.max_tokens_for(capabilities.is_mobile, persona.word_limit)
        system = VoicePromptBuilder.build(persona, self.config.default_personality)
        messages = [entry.to_message() for entry in history]

        started = time.perf_counter()
        token_count = 0
        try:
            client = self._get_client()
            async for token in self._stream_tokens(client, system, messages, model, max_tokens):
                if token:
                    token_count += 1
                    yield token
        except GenerationError:
            raise
        except Exception as e:
            logger.error("generation_failed", provider=self.provider, model=model, error=str(e))
            raise GenerationError(f"{self.provider} generation failed: {e}") from e

        logger.info(
            "generation_complete", provider=self.provider, model=model, tokens=token_count,
            max_tokens=max_tokens, mobile=capabilities.is_mobile,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )


class OpenAIGenerationClient(GenerationClient):
    """OpenAI-compatible streaming chat completions (OpenRouter, OpenAI, ...)."""

    provider = "openai"

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(
                api_key=self.config.api_key or None,
                base_url=self.config.base_url or None,
            )
            logger.info("llm_client_initialized", provider="openai",
                        model=self.config.model, base_url=self.config.base_url)
        return self._client

    async def _stream_tokens(self, client, system, messages, model, max_tokens):
        # OpenAI: system prompt is a message in the messages list
        stream = await client.chat.completions.create(
            model=model,
            messages=[{"role": "system", "content": system}] + messages,
            temperature=self.config.temperature,
            max_tokens=max_tokens,
            presence_penalty=self.config.presence_penalty,
            frequency_penalty=self.config.frequency_penalty,
            stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content


class AnthropicGenerationClient(GenerationClient):
    """Anthropic messages streaming."""

    provider = "anthropic"

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key or None)
            logger.info("llm_client_initialized", provider="anthropic", model=self.config.model)
        return self._client

    async def _stream_tokens(self, client, system, messages, model, max_tokens):
        # Anthropic: system prompt is a separate parameter
        async with client.messages.stream(
            model=model,
            max_tokens=max_tokens,
            temperature=self.config.temperature,
            system=system,
            messages=messages,
        ) as stream:
            async for text in stream.text_stream:
                yield text


def create_generation_client(config: LLMConfig) -> GenerationClient:
    """Factory: build the generation client for the configured provider."""
    if config.provider == "openai":
        return OpenAIGenerationClient(config)
    if config.provider == "anthropic":
        return AnthropicGenerationClient(config)
    raise ValueError(f"Unknown LLM provider: {config.provider}")
