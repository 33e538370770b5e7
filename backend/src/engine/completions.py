"""Streaming client for an OpenAI-compatible chat completions endpoint."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .. import config
from ..services.errors import UpstreamError
from ..utils.redact import redact_secrets

logger = logging.getLogger(__name__)


_CLIENT: httpx.AsyncClient | None = None


def set_client(client: httpx.AsyncClient | None) -> None:
    global _CLIENT
    _CLIENT = client


def _get_client(timeout_seconds: float) -> httpx.AsyncClient:
    global _CLIENT
    if _CLIENT is not None:
        return _CLIENT
    logger.warning("LLM httpx client not set via lifespan; creating a fallback client.")
    _CLIENT = httpx.AsyncClient(timeout=timeout_seconds)
    return _CLIENT


class CompletionStream:
    """An open upstream response; iterate `deltas()` once, then `aclose()`.

    `finished` turns true only when the provider signalled completion, so a
    connection that drops mid-answer is distinguishable from a short answer.
    """

    def __init__(self, response: httpx.Response, model: str):
        self._response = response
        self.model = model
        self.finished = False
        self.finish_reason: Optional[str] = None
        self._started = time.monotonic()

    async def deltas(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                if not line or line.startswith(":"):
                    continue
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                if payload == "[DONE]":
                    self.finished = True
                    break
                try:
                    data = json.loads(payload)
                except ValueError as e:
                    raise UpstreamError(f"Malformed model stream chunk from {self.model}") from e
                if not isinstance(data, dict):
                    raise UpstreamError(f"Malformed model stream chunk from {self.model}")
                if data.get("error"):
                    raise UpstreamError(redact_secrets(f"Model error: {data['error']}"))

                choice = (data.get("choices") or [{}])[0] or {}
                delta = choice.get("delta") or {}
                text = delta.get("content")
                if isinstance(text, str) and text:
                    yield text
                if choice.get("finish_reason"):
                    self.finish_reason = str(choice["finish_reason"])
        except httpx.HTTPError as e:
            raise UpstreamError(f"Error reading model stream from {self.model}: {e}") from e

        if not self.finished and self.finish_reason is None:
            raise UpstreamError(f"Model stream from {self.model} ended before completion")
        self.finished = True
        logger.info(
            "llm_stream_done model=%s finish_reason=%s latency_ms=%s",
            self.model,
            self.finish_reason,
            int((time.monotonic() - self._started) * 1000),
        )

    async def aclose(self) -> None:
        await self._response.aclose()


async def open_chat_stream(
    model: str,
    messages: List[Dict[str, Any]],
    *,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    timeout_seconds: Optional[float] = None,
) -> CompletionStream:
    """Send the request and wait for response headers; raises UpstreamError on failure."""
    headers = {
        "Authorization": f"Bearer {config.LLM_API_KEY}",
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
    }

    payload: dict[str, Any] = {"model": model, "messages": messages, "stream": True}
    if temperature is not None:
        payload["temperature"] = temperature
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens

    timeout = timeout_seconds if timeout_seconds is not None else config.LLM_TIMEOUT_SECONDS
    client = _get_client(timeout)

    start = time.monotonic()
    request = client.build_request("POST", config.LLM_API_URL, headers=headers, json=payload, timeout=timeout)
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        logger.warning("llm_request_failed model=%s error=%s", model, e)
        raise UpstreamError(f"Error querying model {model}: {e}") from e

    latency_ms = int((time.monotonic() - start) * 1000)
    if response.status_code >= 400:
        body = await response.aread()
        await response.aclose()
        error_text = redact_secrets(f"LLM HTTP {response.status_code}: {body[:500].decode('utf-8', 'replace')}")
        logger.warning("llm_http_error model=%s status=%s latency_ms=%s", model, response.status_code, latency_ms)
        raise UpstreamError(error_text)

    logger.info("llm_stream_open model=%s latency_ms=%s", model, latency_ms)
    return CompletionStream(response, model)
