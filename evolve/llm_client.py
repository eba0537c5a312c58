"""Ollama client over its OpenAI-compatible API: chat, completion and embeddings."""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, AsyncIterator, Iterator

import httpx
import openai

from evolve.config import settings
from evolve.errors import UpstreamTimeout, UpstreamUnavailable
from evolve.services import logger as log_service

SERVICE = "ollama"


def _usage_tokens(response: Any) -> tuple[int, int]:
    usage = getattr(response, "usage", None)
    if not usage:
        return 0, 0
    return (
        getattr(usage, "prompt_tokens", 0) or 0,
        getattr(usage, "completion_tokens", 0) or 0,
    )


@contextmanager
def _translate_errors(model: str, caller: str, timeout: float) -> Iterator[None]:
    """Map SDK failures onto the pipeline's upstream error types and log them."""
    t0 = time.monotonic()
    try:
        yield
    except (openai.APITimeoutError, httpx.TimeoutException) as exc:
        log_service.log_llm_call(
            model=model,
            caller=caller,
            duration_ms=int((time.monotonic() - t0) * 1000),
            status="timeout",
            error=str(exc),
        )
        raise UpstreamTimeout(SERVICE, timeout) from exc
    except (openai.APIError, httpx.HTTPError) as exc:
        log_service.log_llm_call(
            model=model,
            caller=caller,
            duration_ms=int((time.monotonic() - t0) * 1000),
            status="error",
            error=str(exc),
        )
        raise UpstreamUnavailable(SERVICE, str(exc)) from exc


class OllamaClient:
    """Request/response access to the generation backend.

    Every call takes its own timeout; the SDK's automatic retries are disabled
    so a failed call falls through to the caller's degraded path.
    """

    def __init__(self, base_url: str | None = None, *, openai_client: Any | None = None):
        if openai_client is None:
            openai_client = openai.AsyncOpenAI(
                api_key="ollama",
                base_url=base_url or settings.ollama_openai_base_url,
                max_retries=0,
            )
        self._client = openai_client

    async def chat(
        self,
        model: str,
        messages: list[dict[str, str]],
        *,
        timeout: float = settings.chat_timeout_seconds,
        caller: str = "chat",
    ) -> str:
        t0 = time.monotonic()
        with _translate_errors(model, caller, timeout):
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                stream=False,
                timeout=timeout,
            )
        input_tokens, output_tokens = _usage_tokens(response)
        log_service.log_llm_call(
            model=model,
            caller=caller,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return getattr(choices[0].message, "content", None) or ""

    async def chat_stream(
        self,
        model: str,
        messages: list[dict[str, str]],
        *,
        timeout: float = settings.chat_timeout_seconds,
        caller: str = "chat_stream",
    ) -> AsyncIterator[str]:
        """Yield answer text increments as the backend produces them."""
        t0 = time.monotonic()
        with _translate_errors(model, caller, timeout):
            stream = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                stream=True,
                timeout=timeout,
            )
        input_tokens = output_tokens = 0
        try:
            with _translate_errors(model, caller, timeout):
                async for chunk in stream:
                    usage_in, usage_out = _usage_tokens(chunk)
                    if usage_in or usage_out:
                        input_tokens, output_tokens = usage_in, usage_out
                    choices = getattr(chunk, "choices", None) or []
                    if not choices:
                        continue
                    delta = getattr(choices[0], "delta", None)
                    text = getattr(delta, "content", None) if delta else None
                    if text:
                        yield text
        finally:
            await stream.close()
        log_service.log_llm_call(
            model=model,
            caller=caller,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )

    async def complete(
        self,
        model: str,
        prompt: str,
        *,
        timeout: float = settings.completion_timeout_seconds,
        caller: str = "complete",
    ) -> str:
        t0 = time.monotonic()
        with _translate_errors(model, caller, timeout):
            response = await self._client.completions.create(
                model=model,
                prompt=prompt,
                timeout=timeout,
            )
        input_tokens, output_tokens = _usage_tokens(response)
        log_service.log_llm_call(
            model=model,
            caller=caller,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return getattr(choices[0], "text", None) or ""

    async def embed(
        self,
        model: str,
        inputs: list[str],
        *,
        timeout: float = settings.embed_timeout_seconds,
        caller: str = "embed",
    ) -> list[list[float]]:
        if not inputs:
            return []
        t0 = time.monotonic()
        with _translate_errors(model, caller, timeout):
            response = await self._client.embeddings.create(
                model=model,
                input=inputs,
                encoding_format="float",
                timeout=timeout,
            )
        input_tokens, _ = _usage_tokens(response)
        log_service.log_llm_call(
            model=model,
            caller=caller,
            input_tokens=input_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        rows = sorted(response.data, key=lambda item: getattr(item, "index", 0))
        return [list(map(float, row.embedding)) for row in rows]

    async def list_models(self, *, timeout: float = 10.0) -> list[dict[str, Any]]:
        with _translate_errors("-", "list_models", timeout):
            page = await self._client.models.list(timeout=timeout)
        return [
            {"name": model.id, "owned_by": getattr(model, "owned_by", None)}
            for model in page.data
        ]

    async def close(self) -> None:
        await self._client.close()


def get_model() -> str:
    """Get the configured chat model id."""
    return settings.chat_model


_client: OllamaClient | None = None


def client() -> OllamaClient:
    """Get or create the shared backend client."""
    global _client
    if _client is None:
        _client = OllamaClient()
    return _client


async def close_client() -> None:
    """Close the shared backend client, if one was created."""
    global _client
    if _client is not None:
        await _client.close()
        _client = None
