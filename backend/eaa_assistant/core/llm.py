"""LLM client module for chat completion and embedding calls.

Routes every request through LiteLLM so the chat and embedding models can
be swapped by configuration. Transport exceptions never leave this module:
they are translated into :class:`ModelServiceError`.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import AsyncIterator
from typing import Any, Protocol

import litellm
from litellm import acompletion, aembedding

from eaa_assistant.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from eaa_assistant.core.exceptions import ModelServiceError

litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)

DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_MAX_TOKENS = 1000

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


class LanguageModel(Protocol):
    """Capability the conversation engine needs from a language model."""

    async def embed(self, text: str) -> list[float]: ...

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> str: ...

    async def complete_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        *,
        system_prompt: str | None = None,
        temperature: float = 0.0,
        max_tokens: int = 800,
    ) -> dict[str, Any]: ...

    def stream(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> AsyncIterator[str]: ...


def _build_messages(system_prompt: str | None, prompt: str) -> list[dict[str, str]]:
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object out of a model reply.

    Models occasionally wrap JSON in prose or code fences, so the outermost
    ``{...}`` block is tried when the whole text does not parse.

    Raises:
        ValueError: If no JSON object can be recovered.
    """
    text = text.strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_BLOCK.search(text)
        if not match:
            raise ValueError("No JSON object found in model output") from None
        parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("Model output is not a JSON object")
    return parsed


class LLMClient:
    """Async client for the hosted chat and embedding models."""

    def __init__(
        self,
        model: str = DEFAULT_CHAT_MODEL,
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        api_key: str | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        """Initialize LLM client.

        Args:
            model: Chat model identifier understood by LiteLLM.
            embedding_model: Embedding model identifier understood by LiteLLM.
            api_key: Provider key; ``None`` lets LiteLLM read the environment.
            circuit_breaker: Breaker shared by every call of this client.
        """
        self._model = model
        self._embedding_model = embedding_model
        self._api_key = api_key or None
        self._breaker = circuit_breaker or CircuitBreaker("llm")

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> list[float]:
        """Compute an embedding vector for ``text``.

        Raises:
            ModelServiceError: If the embedding call fails.
        """
        try:
            response = await self._breaker.call_async(
                aembedding,
                model=self._embedding_model,
                input=[text],
                api_key=self._api_key,
            )
            item = response.data[0]
            vector = item["embedding"] if isinstance(item, dict) else item.embedding
        except CircuitBreakerOpen as e:
            raise ModelServiceError(str(e), operation="embed") from e
        except Exception as e:
            logger.warning("Embedding request failed", extra={"error": str(e)})
            raise ModelServiceError(str(e), operation="embed") from e
        return [float(v) for v in vector]

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> str:
        """Generate a free-text completion.

        Raises:
            ModelServiceError: If the completion call fails.
        """
        return await self._complete(
            _build_messages(system_prompt, prompt),
            temperature=temperature,
            max_tokens=max_tokens,
            operation="complete",
        )

    async def complete_structured(
        self,
        prompt: str,
        schema: dict[str, Any],
        *,
        system_prompt: str | None = None,
        temperature: float = 0.0,
        max_tokens: int = 800,
    ) -> dict[str, Any]:
        """Generate a JSON object shaped like ``schema``.

        ``schema`` is an example object; it is rendered into the prompt and
        JSON mode is requested from the provider.

        Raises:
            ModelServiceError: If the call fails or the reply is not JSON.
        """
        instructions = (
            "Respond only with a JSON object with this structure:\n"
            f"{json.dumps(schema, ensure_ascii=False)}"
        )
        system = f"{system_prompt}\n\n{instructions}" if system_prompt else instructions
        text = await self._complete(
            _build_messages(system, prompt),
            temperature=temperature,
            max_tokens=max_tokens,
            operation="complete_structured",
            response_format={"type": "json_object"},
        )
        try:
            return parse_json_object(text)
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning(
                "Structured completion returned invalid JSON",
                extra={"preview": text[:200]},
            )
            raise ModelServiceError(str(e), operation="complete_structured") from e

    async def stream(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> AsyncIterator[str]:
        """Stream a completion chunk by chunk.

        Raises:
            ModelServiceError: If the stream cannot be opened or breaks mid-way.
        """
        try:
            self._breaker.check()
        except CircuitBreakerOpen as e:
            raise ModelServiceError(str(e), operation="stream") from e

        start = time.time()
        try:
            response = await acompletion(
                model=self._model,
                messages=_build_messages(system_prompt, prompt),
                max_tokens=max_tokens,
                temperature=temperature,
                stream=True,
                api_key=self._api_key,
            )
            async for chunk in response:
                if chunk.choices and chunk.choices[0].delta:
                    delta_content = chunk.choices[0].delta.content
                    if delta_content:
                        yield delta_content
        except Exception as e:
            self._breaker.record_failure()
            logger.warning("Streaming completion failed", extra={"error": str(e)})
            raise ModelServiceError(str(e), operation="stream") from e

        self._breaker.record_success()
        logger.debug(
            "Streaming completion finished",
            extra={"model": self._model, "latency_ms": int((time.time() - start) * 1000)},
        )

    async def _complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        operation: str,
        **kwargs: Any,
    ) -> str:
        logger.debug(
            "Calling LiteLLM",
            extra={"model": self._model, "operation": operation, "message_count": len(messages)},
        )
        start = time.time()
        try:
            response = await self._breaker.call_async(
                acompletion,
                model=self._model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                api_key=self._api_key,
                **kwargs,
            )
        except CircuitBreakerOpen as e:
            raise ModelServiceError(str(e), operation=operation) from e
        except Exception as e:
            logger.warning(
                "Completion request failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise ModelServiceError(str(e), operation=operation) from e

        try:
            content = response.choices[0].message.content or ""
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            logger.warning(
                "Malformed completion response",
                extra={"operation": operation, "error": str(e)},
            )
            raise ModelServiceError(
                f"Malformed completion response: {e}", operation=operation
            ) from e
        logger.debug(
            "LiteLLM call finished",
            extra={
                "operation": operation,
                "latency_ms": int((time.time() - start) * 1000),
                "chars": len(content),
            },
        )
        return content
