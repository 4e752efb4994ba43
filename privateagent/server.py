"""HTTP server for PrivateAgent chat sessions."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response, StreamingResponse

from privateagent.agent import Agent, TurnInProgressError
from privateagent.config import Settings, get_settings
from privateagent.conversation import HistoryImportError
from privateagent.ollama import InferenceConnectionError, InferenceError, OllamaClient
from privateagent.schemas import (
    ChatRequest,
    ErrorResponse,
    HealthResponse,
    InitRequest,
    InitResponse,
    ModelRequest,
    SettingsRequest,
    ToolExecuteRequest,
)
from privateagent.sessions import SessionNotFoundError, SessionStore
from privateagent.tools import ToolExecutionError
from privateagent.tools.executor import default_shell
from privateagent.tools.system import get_system_info

logger = logging.getLogger(__name__)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _error(status_code: int, detail: str, error_code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, error_code=error_code).model_dump(),
    )


async def _stream_turn(agent: Agent, message: str) -> AsyncIterator[str]:
    """Run a turn in a task and relay its chunks as SSE events."""
    queue: asyncio.Queue[str | None] = asyncio.Queue()
    task = asyncio.create_task(agent.stream_chat(message, on_chunk=queue.put_nowait))
    task.add_done_callback(lambda _: queue.put_nowait(None))

    try:
        while True:
            chunk = await queue.get()
            if chunk is None:
                break
            yield _sse({"chunk": chunk})

        result = task.result()
        yield _sse({"done": True, "fullMessage": result.message, "total_tokens": result.total_tokens})
    except Exception as e:
        logger.error(f"Chat stream failed: {e}")
        yield _sse({"error": str(e)})
    finally:
        # Client went away mid-turn
        if not task.done():
            task.cancel()


def create_app(
    settings: Settings | None = None,
    store: SessionStore | None = None,
    client: OllamaClient | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Settings to use (defaults to the process-wide settings)
        store: Session store (defaults to one building agents from settings)
        client: Inference client shared by the app and its agents

    Returns:
        Configured FastAPI app
    """
    settings = settings or get_settings()
    client = client or OllamaClient(base_url=settings.ollama_url, timeout=settings.request_timeout)

    if store is None:
        store = SessionStore(
            agent_factory=lambda **options: Agent.from_settings(settings, client=client, **options),
            ttl_seconds=settings.session_ttl_seconds,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await client.aclose()

    app = FastAPI(
        title="PrivateAgent",
        description="Chat sessions with a local Ollama model and system tools",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.client = client
    app.state.last_ollama_check = None

    # --- Exception handlers ---

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:
        return _error(404, "Session not found", "SESSION_NOT_FOUND")

    @app.exception_handler(TurnInProgressError)
    async def turn_in_progress_handler(request: Request, exc: TurnInProgressError) -> JSONResponse:
        return _error(409, str(exc), "TURN_IN_PROGRESS")

    @app.exception_handler(HistoryImportError)
    async def history_import_handler(request: Request, exc: HistoryImportError) -> JSONResponse:
        return _error(400, str(exc), "INVALID_HISTORY")

    @app.exception_handler(ToolExecutionError)
    async def tool_error_handler(request: Request, exc: ToolExecutionError) -> JSONResponse:
        return _error(400, str(exc), "TOOL_ERROR")

    @app.exception_handler(InferenceConnectionError)
    async def inference_unreachable_handler(request: Request, exc: InferenceConnectionError) -> JSONResponse:
        return _error(503, str(exc), "OLLAMA_UNAVAILABLE")

    @app.exception_handler(InferenceError)
    async def inference_error_handler(request: Request, exc: InferenceError) -> JSONResponse:
        return _error(502, str(exc), "OLLAMA_ERROR")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return _error(500, str(exc), "INTERNAL_ERROR")

    # --- Endpoints ---

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Check server and inference server health."""
        ollama_healthy = await client.check_connection()
        app.state.last_ollama_check = datetime.now()
        return HealthResponse(
            server="healthy",
            ollama="healthy" if ollama_healthy else "unhealthy",
            sessions=len(store),
            last_ollama_check=app.state.last_ollama_check.isoformat(),
        )

    @app.post("/api/init")
    async def init_session(request: InitRequest) -> JSONResponse:
        """Start a session, replacing any session with the same id."""
        store.expire_idle()

        if not await client.check_connection():
            raise HTTPException(status_code=503, detail="Cannot connect to Ollama. Is it running?")

        session = store.create(
            request.session_id,
            model=request.model,
            max_context_tokens=request.max_context_tokens,
        )
        response = InitResponse(session_id=session.session_id, connected=True)
        return JSONResponse(content=response.model_dump(by_alias=True))

    @app.get("/api/models")
    async def list_models() -> dict[str, Any]:
        return {"models": await client.list_models()}

    @app.post("/api/model")
    async def set_model(request: ModelRequest) -> dict[str, Any]:
        session = store.require(request.session_id)
        session.agent.set_model(request.model)
        return {"success": True, "model": request.model}

    @app.post("/api/chat")
    async def chat(request: ChatRequest):
        """Run a chat turn; streamed as server-sent events by default."""
        session = store.require(request.session_id)
        agent = session.agent
        if agent.busy:
            raise TurnInProgressError("A turn is already in progress for this session")

        logger.info(f"Chat request: session={session.session_id}, stream={request.stream}")
        if request.stream:
            return StreamingResponse(
                _stream_turn(agent, request.message),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        result = await agent.chat(request.message)
        return {"message": result.message, "model": result.model, "contextReset": result.context_reset}

    @app.get("/api/history/{session_id}")
    async def get_history(session_id: str) -> dict[str, Any]:
        session = store.require(session_id)
        return {"history": [m.model_dump() for m in session.agent.history()]}

    @app.delete("/api/history/{session_id}")
    async def clear_history(session_id: str) -> dict[str, Any]:
        session = store.require(session_id)
        session.agent.clear_history()
        return {"success": True}

    @app.get("/api/export/{session_id}")
    async def export_history(session_id: str) -> Response:
        session = store.require(session_id)
        filename = f"privateagent-history-{int(time.time() * 1000)}.json"
        return Response(
            content=session.agent.export_history(),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/import/{session_id}")
    async def import_history(session_id: str, request: Request) -> dict[str, Any]:
        """Replace a session's history with an exported document."""
        session = store.require(session_id)
        if session.agent.busy:
            raise TurnInProgressError("A turn is already in progress for this session")
        document = session.agent.import_history(await request.body())
        return {"success": True, "messages": len(document.history), "model": session.agent.model}

    @app.post("/api/settings/{session_id}")
    async def update_settings(session_id: str, request: SettingsRequest) -> dict[str, Any]:
        session = store.require(session_id)
        agent = session.agent
        if request.system_prompt:
            agent.set_system_prompt(request.system_prompt)
        if request.max_context_tokens is not None:
            agent.max_context_tokens = request.max_context_tokens
        if request.enable_tools is not None:
            agent.set_tools_enabled(request.enable_tools)
        return {"success": True}

    @app.get("/api/tools/history/{session_id}")
    async def tool_history(session_id: str, limit: int = 10) -> dict[str, Any]:
        session = store.require(session_id)
        records = session.agent.tool_call_history(limit)
        return {"history": [r.model_dump(mode="json") for r in records]}

    @app.post("/api/tools/execute/{session_id}")
    async def execute_tool(session_id: str, request: ToolExecuteRequest) -> dict[str, Any]:
        """Run a tool directly, outside of a chat turn."""
        session = store.require(session_id)
        result = await session.agent.execute_tool(request.function_name, request.args)
        return {"result": jsonable_encoder(result), "success": True}

    @app.get("/api/system/info")
    async def system_info() -> dict[str, Any]:
        return get_system_info(shell=default_shell())

    @app.delete("/api/session/{session_id}")
    async def close_session(session_id: str) -> dict[str, Any]:
        if not store.close(session_id):
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return {"success": True}

    return app


app = create_app()
