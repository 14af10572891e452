"""HTTP transport for chat-completion providers (one-shot and streaming)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

import httpx

from .errors import (
    AuthError,
    ChatError,
    InsufficientBalance,
    InvalidRequest,
    NetworkError,
    RateLimited,
    ServerError,
    Timeout,
)
from .models import ChatRequest, ChatResponse, StreamEvent
from .providers import ProviderDescriptor

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_TOKEN = "[DONE]"


def _server_message(body: bytes) -> str | None:
    """Pull ``error.message`` (or a bare ``error`` string) out of an error body."""
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message")
    if isinstance(error, str):
        return error
    return data.get("message")


def classify_status(status_code: int, body: bytes = b"") -> ChatError | None:
    """Map an HTTP status to the error taxonomy; None for success."""
    if 200 <= status_code < 300:
        return None
    if status_code == 401:
        return AuthError(status_code=status_code)
    if status_code == 402:
        return InsufficientBalance(status_code=status_code)
    if status_code == 429:
        return RateLimited(status_code=status_code)
    if status_code == 400:
        return InvalidRequest(_server_message(body) or "Invalid request", status_code=status_code)
    return ServerError(status_code=status_code)


def parse_frame(line: str) -> StreamEvent | None:
    """Parse one ``data: ...`` line; None for anything that carries no delta."""
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX):].strip()
    if payload == DONE_TOKEN:
        return StreamEvent(is_final=True)

    try:
        data = json.loads(payload)
        choice = data["choices"][0]
        delta = choice.get("delta") or {}
        content = delta.get("content") or ""
        finish_reason = choice.get("finish_reason")
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        logger.debug("Skipping malformed stream frame: %.200s", payload)
        return None

    if not isinstance(content, str):
        return None
    if not content and finish_reason is None:
        return None
    return StreamEvent(delta_text=content, finish_reason=finish_reason)


class ChatClient:
    """Async client for the chat-completions endpoint of any registered provider."""

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None

    async def aclose(self):
        if self._owns_http:
            await self._http.aclose()

    async def complete(
        self,
        provider: ProviderDescriptor,
        credential: str,
        request: ChatRequest,
        timeout: float,
    ) -> ChatResponse:
        """Send a non-streaming request and return the full reply."""
        body = await request.model_copy(update={"stream": False}).to_payload()

        try:
            response = await asyncio.wait_for(
                self._http.post(
                    provider.chat_url,
                    json=body,
                    headers=provider.headers(credential),
                    timeout=timeout,
                ),
                timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise Timeout(f"No response within {timeout:g}s") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error: {e}") from e

        error = classify_status(response.status_code, response.content)
        if error is not None:
            raise error

        try:
            return ChatResponse.from_payload(response.json())
        except ValueError as e:
            raise ServerError(f"Malformed response: {e}", status_code=response.status_code) from e

    async def stream(
        self,
        provider: ProviderDescriptor,
        credential: str,
        request: ChatRequest,
        timeout: float,
    ) -> AsyncIterator[StreamEvent]:
        """Send a streaming request and yield deltas as frames arrive.

        ``timeout`` bounds the wait for the response headers and any stall
        between body chunks. Closing the iterator closes the connection.
        """
        body = await request.model_copy(update={"stream": True}).to_payload()

        try:
            async with self._http.stream(
                "POST",
                provider.chat_url,
                json=body,
                headers=provider.headers(credential),
                timeout=httpx.Timeout(timeout),
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise classify_status(response.status_code, response.content)

                async for line in response.aiter_lines():
                    event = parse_frame(line)
                    if event is None:
                        continue
                    yield event
                    if event.is_final:
                        return
        except httpx.TimeoutException as e:
            raise Timeout(f"Stream stalled for more than {timeout:g}s") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error: {e}") from e
