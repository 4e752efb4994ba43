"""Async client for the Ollama chat API, including newline-delimited JSON streaming."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx
from pydantic import ValidationError

from privateagent.schemas import ChatFragment

logger = logging.getLogger(__name__)

# Ollama API endpoint
OLLAMA_BASE_URL = "http://localhost:11434"

# Timeouts
OLLAMA_TIMEOUT = 120.0  # seconds
HEALTH_TIMEOUT = 5.0  # seconds


class InferenceError(Exception):
    """Raised when the inference server rejects or fails a request."""

    pass


class InferenceConnectionError(InferenceError):
    """Raised when the inference server cannot be reached."""

    pass


class StreamError(InferenceError):
    """Raised when a streamed response breaks off before completion."""

    pass


class ProtocolParseError(ValueError):
    """Raised for a stream line that is not a valid chat fragment."""

    pass


def parse_fragment(line: str) -> ChatFragment:
    """Parse one line of a streamed chat response.

    Raises:
        ProtocolParseError: The line is not a JSON object
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolParseError(f"Invalid JSON fragment: {line[:100]}") from e
    if not isinstance(data, dict):
        raise ProtocolParseError(f"Unexpected fragment: {line[:100]}")

    message = data.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    try:
        return ChatFragment(
            content=content if isinstance(content, str) else "",
            done=bool(data.get("done", False)),
            prompt_eval_count=data.get("prompt_eval_count") or 0,
            eval_count=data.get("eval_count") or 0,
        )
    except ValidationError as e:
        raise ProtocolParseError(f"Malformed fragment: {line[:100]}") from e


class OllamaClient:
    """Thin wrapper over ``/api/tags`` and ``/api/chat``.

    Pass ``http_client`` to share a connection pool or to inject a transport
    in tests; otherwise a client is created and owned by this instance.
    """

    def __init__(
        self,
        base_url: str = OLLAMA_BASE_URL,
        timeout: float = OLLAMA_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
        )
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def list_models(self) -> list[dict[str, Any]]:
        """Return the models installed on the server."""
        try:
            response = await self._client.get(self._url("/api/tags"))
            response.raise_for_status()
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise InferenceConnectionError(f"Failed to fetch models: {e}") from e
        except httpx.HTTPError as e:
            raise InferenceError(f"Failed to fetch models: {e}") from e
        return response.json().get("models", [])

    async def check_connection(self) -> bool:
        """Check if the inference server is reachable."""
        try:
            response = await self._client.get(self._url("/api/tags"), timeout=HEALTH_TIMEOUT)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def chat(
        self,
        model: str,
        messages: list[dict[str, str]],
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Non-streamed chat request; returns the response object."""
        body = {"model": model, "messages": messages, "stream": False, "options": options or {}}
        try:
            response = await self._client.post(self._url("/api/chat"), json=body)
            response.raise_for_status()
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.error(f"Failed to connect to Ollama: {e}")
            raise InferenceConnectionError(f"Chat error: {e}") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama HTTP error: {e}")
            raise InferenceError(f"Chat error: Ollama returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise InferenceError(f"Chat error: {e}") from e
        return response.json()

    async def stream_chat(
        self,
        model: str,
        messages: list[dict[str, str]],
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[ChatFragment]:
        """Stream a chat request, yielding one fragment per parsed line.

        Lines that do not parse are skipped. Partial lines are buffered across
        network reads. Iteration stops after the ``done`` fragment.

        Raises:
            InferenceConnectionError: The server could not be reached
            InferenceError: The server answered with an error status
            StreamError: The stream broke off before a ``done`` fragment
        """
        body = {"model": model, "messages": messages, "stream": True, "options": options or {}}
        logger.info(f"Streaming chat: model={model}, messages={len(messages)}")

        try:
            async with self._client.stream("POST", self._url("/api/chat"), json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise InferenceError(
                        f"Stream chat error: Ollama returned {response.status_code}: {response.text[:200]}"
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        fragment = parse_fragment(line)
                    except ProtocolParseError as e:
                        logger.debug(f"Skipping stream line: {e}")
                        continue
                    yield fragment
                    if fragment.done:
                        return
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.error(f"Failed to connect to Ollama: {e}")
            raise InferenceConnectionError(f"Stream chat error: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"Stream error: {e}")
            raise StreamError(f"Stream error: {e}") from e

        raise StreamError("Stream error: response ended before completion")
