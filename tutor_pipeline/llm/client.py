"""OpenAI-compatible transport client for LLM requests.

Architectural role:
    Executes chat-completion requests against a configured provider and returns
    the answer text together with token usage for cost accounting.

Model invocation flow:
    `GenerationService.small/large` -> `OpenAICompatibleProvider.complete(context,
    query)` -> `prompt_builder.build_messages` -> HTTP POST -> `Completion`.

Retry behavior:
    Retries status codes `429,500,502,503,504` and transport errors up to
    `retry_attempts` with exponential backoff. Each attempt is bounded by the
    provider timeout.

Failure handling model:
    Exhausted retries, non-retryable HTTP errors, missing credentials and
    malformed payloads raise `GenerationUnavailable`. Raw provider bodies are never
    propagated to callers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from tutor_pipeline.core.errors import GenerationUnavailable
from tutor_pipeline.llm.provider_config import (
    LLM_BACKOFF_SECONDS,
    LLM_RETRY_ATTEMPTS,
    LLM_TIMEOUT_SECONDS,
    PROVIDERS,
    load_key,
)
from tutor_pipeline.prompting.prompt_builder import build_messages


logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


@dataclass
class Completion:
    """Generated text plus provider-reported usage."""

    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""


class GenerationProvider(Protocol):
    """Anything that can turn (context, query) into a `Completion`."""

    model: str

    async def complete(self, context: str, query: str, *, max_tokens: int = 512) -> Completion: ...


def _estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4


class OpenAICompatibleProvider:
    """Async chat-completions client for OpenAI-compatible endpoints."""

    def __init__(
        self,
        model: str,
        url: str,
        api_key: str | None = None,
        *,
        timeout_seconds: float = LLM_TIMEOUT_SECONDS,
        retry_attempts: int = LLM_RETRY_ATTEMPTS,
        backoff_seconds: float = LLM_BACKOFF_SECONDS,
        temperature: float = 0.45,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = retry_attempts
        self.backoff_seconds = backoff_seconds
        self.temperature = temperature
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def for_provider(cls, provider: str, model: str, **kwargs) -> "OpenAICompatibleProvider":
        """Build a provider from the `PROVIDERS` endpoint map.

        Raises:
            ValueError: Unknown provider name.
        """
        if provider not in PROVIDERS:
            raise ValueError(f"unknown provider: {provider}")
        config = PROVIDERS[provider]
        return cls(model, config["url"], load_key(config["key_file"]), **kwargs)

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(self, context: str, query: str, *, max_tokens: int = 512) -> Completion:
        """Request one completion.

        Args:
            context: Instructions and grounding text placed in the system message.
            query: User message.
            max_tokens: Completion token cap.

        Returns:
            `Completion`; token counts come from `usage`, or a 4-chars-per-token
            estimate when the provider omits it.

        Raises:
            GenerationUnavailable: On retry exhaustion or unrecoverable errors.
        """
        messages = build_messages(context, query)
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": max_tokens,
            "stream": False,
        }
        data = await self._post_with_retry(payload)

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationUnavailable(f"malformed completion payload from {self.model}") from exc

        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens") or _estimate_tokens(context + query))
        completion_tokens = int(usage.get("completion_tokens") or _estimate_tokens(text))

        return Completion(
            text=text.strip(),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            model=self.model,
        )

    async def _post_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        if self._client is None:
            await self.start()

        attempts = max(1, self.retry_attempts)
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                response = await self._client.post(self.url, json=payload, headers=headers)

                if response.status_code in _RETRYABLE_STATUS:
                    last_error = RuntimeError(f"status={response.status_code}")
                    if attempt < attempts - 1:
                        await asyncio.sleep(self._backoff(attempt))
                        continue
                    break

                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as exc:
                logger.warning("Generation request rejected model=%s status=%s", self.model, exc.response.status_code)
                raise GenerationUnavailable(
                    f"provider rejected request: status={exc.response.status_code}"
                ) from exc

            except httpx.RequestError as exc:
                last_error = exc
                if attempt < attempts - 1:
                    await asyncio.sleep(self._backoff(attempt))
                    continue

            except ValueError as exc:
                raise GenerationUnavailable(f"invalid JSON from provider: {exc}") from exc

        logger.warning("Generation retry exhausted model=%s error=%s", self.model, last_error)
        raise GenerationUnavailable(f"generation retry exhausted: {last_error}")

    def _backoff(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** attempt)
