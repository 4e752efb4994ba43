"""Pytest configuration and fixtures for PrivateAgent tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable

import httpx
import pytest

from privateagent.agent import Agent
from privateagent.ollama import OllamaClient


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in fixed chunks, optionally failing afterwards."""

    def __init__(self, chunks: Iterable[bytes], error: Exception | None = None):
        self._chunks = list(chunks)
        self._error = error

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


def ndjson(*contents: str, prompt_eval_count: int = 10, eval_count: int = 5, done: bool = True) -> list[bytes]:
    """Build a streamed chat body: one line per content delta, then a done line."""
    lines = [
        json.dumps({"model": "llama2", "message": {"role": "assistant", "content": c}, "done": False}) + "\n"
        for c in contents
    ]
    if done:
        lines.append(
            json.dumps({
                "model": "llama2",
                "message": {"role": "assistant", "content": ""},
                "done": True,
                "prompt_eval_count": prompt_eval_count,
                "eval_count": eval_count,
            }) + "\n"
        )
    return [line.encode() for line in lines]


class FakeOllama:
    """Scripted stand-in for the Ollama HTTP API.

    Chat responses are consumed in order; each is an ``httpx.Response`` or an
    exception to raise from the transport.
    """

    def __init__(self):
        self.chat_responses: list[httpx.Response | Exception] = []
        self.chat_requests: list[dict] = []
        self.models = [{"name": "llama2:latest", "size": 3_825_819_519}]
        self.available = True

    def add_stream(self, *contents: str, prompt_eval_count: int = 10, eval_count: int = 5) -> None:
        body = ndjson(*contents, prompt_eval_count=prompt_eval_count, eval_count=eval_count)
        self.chat_responses.append(httpx.Response(200, stream=ChunkedStream(body)))

    def add_chunks(self, chunks: Iterable[bytes], error: Exception | None = None) -> None:
        self.chat_responses.append(httpx.Response(200, stream=ChunkedStream(chunks, error)))

    def add_response(self, response: httpx.Response | Exception) -> None:
        self.chat_responses.append(response)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.available:
            raise httpx.ConnectError("Connection refused", request=request)

        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": self.models})

        if request.url.path == "/api/chat":
            self.chat_requests.append(json.loads(request.content))
            if not self.chat_responses:
                return httpx.Response(500, text="no scripted response")
            response = self.chat_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response

        return httpx.Response(404)


@pytest.fixture
def tmp_workspace(tmp_path: Path) -> Path:
    """Create a temporary workspace directory for tests."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    (workspace / "notes.txt").write_text("remember the milk\n")
    (workspace / "src").mkdir()
    return workspace


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
def ollama_client(fake_ollama: FakeOllama) -> OllamaClient:
    """OllamaClient wired to the fake server."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_ollama.handler))
    return OllamaClient(base_url="http://ollama.test", http_client=http_client)


@pytest.fixture
def agent(ollama_client: OllamaClient) -> Agent:
    return Agent(client=ollama_client, model="llama2")
