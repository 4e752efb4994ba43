"""Chat agent: conversation state, streamed turns and the tool-call round trip.

A turn is driven by :class:`ChatTurn`, an explicit state machine::

    SENDING_INITIAL -> STREAMING_INITIAL -> DETECTING_TOOLS
        -> [EXECUTING_TOOLS -> CONTINUING -> STREAMING_FOLLOW_UP] -> DONE

with ``FAILED`` and ``CANCELLED`` as the other terminal states. Text that was
streamed to the caller before a failure is committed to the conversation as
an assistant message, so history always matches what the user saw.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import Any, Callable

from privateagent.config import DEFAULT_SYSTEM_PROMPT, Settings
from privateagent.conversation import ConversationState
from privateagent.ollama import OllamaClient
from privateagent.protocol import (
    TOOLS_BANNER,
    build_tool_result_prompt,
    build_tool_system_prompt,
    extract_tool_calls,
    format_call_header,
    format_outcome,
)
from privateagent.schemas import (
    ChatFragment,
    ChatResult,
    HistoryExport,
    Message,
    Role,
    ToolCall,
    ToolCallRecord,
    ToolOutcome,
)
from privateagent.tools import CommandExecutor, ToolRegistry

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


class TurnInProgressError(Exception):
    """Raised when a session is asked to start a turn while one is running."""

    pass


class TurnState(str, Enum):
    """States of a chat turn."""

    SENDING_INITIAL = "sending_initial"
    STREAMING_INITIAL = "streaming_initial"
    DETECTING_TOOLS = "detecting_tools"
    EXECUTING_TOOLS = "executing_tools"
    CONTINUING = "continuing"
    STREAMING_FOLLOW_UP = "streaming_follow_up"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {TurnState.DONE, TurnState.FAILED, TurnState.CANCELLED}


class ChatTurn:
    """One user message through to a fully resolved assistant reply."""

    def __init__(
        self,
        agent: Agent,
        user_message: str,
        on_chunk: ChunkCallback | None = None,
        execute_tools: bool = True,
        options: dict[str, Any] | None = None,
    ):
        self.agent = agent
        self.user_message = user_message
        self.on_chunk = on_chunk
        self.execute_tools = execute_tools
        self.options = options or {}

        self.state = TurnState.SENDING_INITIAL
        self.accumulated = ""
        self.final_message = ""
        self.tool_calls: list[ToolCall] = []
        self.outcomes: list[ToolOutcome] = []
        self.total_tokens = 0
        self.context_reset = False
        self.error: BaseException | None = None

        self._request_messages: list[dict[str, str]] = []
        self._uncommitted = False
        self._handlers = {
            TurnState.SENDING_INITIAL: self._send_initial,
            TurnState.STREAMING_INITIAL: self._stream_response,
            TurnState.DETECTING_TOOLS: self._detect_tools,
            TurnState.EXECUTING_TOOLS: self._execute_tools,
            TurnState.CONTINUING: self._continue_conversation,
            TurnState.STREAMING_FOLLOW_UP: self._stream_follow_up,
        }

    async def run(self) -> ChatResult:
        """Drive the turn to a terminal state."""
        try:
            while self.state not in TERMINAL_STATES:
                logger.debug(f"Turn state: {self.state.value}")
                self.state = await self._handlers[self.state]()
        except asyncio.CancelledError:
            self._abandon(TurnState.CANCELLED, None)
            raise
        except Exception as e:
            self._abandon(TurnState.FAILED, e)
            raise

        return ChatResult(
            message=self.final_message,
            model=self.agent.model,
            context_reset=self.context_reset,
            tool_calls=self.tool_calls,
            total_tokens=self.total_tokens,
        )

    def _emit(self, text: str) -> None:
        if self.on_chunk is not None:
            self.on_chunk(text)

    def _add(self, role: Role, content: str) -> None:
        if self.agent.conversation.add_message(role, content):
            self.context_reset = True

    def _commit_response(self) -> None:
        self._add(Role.ASSISTANT, self.accumulated)
        self._uncommitted = False

    def _abandon(self, state: TurnState, error: Exception | None) -> None:
        if self._uncommitted and self.accumulated:
            logger.warning(f"Turn {state.value}; committing {len(self.accumulated)} chars of partial response")
            self._commit_response()
        self._uncommitted = False
        self.error = error
        self.state = state

    async def _consume(self) -> ChatFragment:
        """Stream the prepared request, forwarding and accumulating deltas."""
        self.accumulated = ""
        self._uncommitted = True
        last: ChatFragment | None = None
        stream = self.agent.client.stream_chat(self.agent.model, self._request_messages, self.options)
        async with aclosing(stream) as fragments:
            async for fragment in fragments:
                if fragment.content:
                    self.accumulated += fragment.content
                    self._emit(fragment.content)
                last = fragment
        return last

    async def _send_initial(self) -> TurnState:
        self._add(Role.USER, self.user_message)
        self._request_messages = self.agent.request_messages(with_tools=self.agent.enable_tools)
        logger.info(
            f"Sending request: model={self.agent.model}, messages={len(self._request_messages)}, "
            f"tools={self.agent.enable_tools}"
        )
        return TurnState.STREAMING_INITIAL

    async def _stream_response(self) -> TurnState:
        last = await self._consume()
        self.total_tokens = last.total_tokens
        return TurnState.DETECTING_TOOLS

    async def _detect_tools(self) -> TurnState:
        self._commit_response()
        calls = extract_tool_calls(self.accumulated)
        if calls and self.agent.enable_tools and self.execute_tools:
            self.tool_calls = calls
            return TurnState.EXECUTING_TOOLS
        self.final_message = self.accumulated
        return TurnState.DONE

    async def _execute_tools(self) -> TurnState:
        self._emit(TOOLS_BANNER)
        # Sequential: later calls may depend on earlier side effects.
        for call in self.tool_calls:
            self._emit(format_call_header(call))
            outcome = await self.agent.tools.invoke(call.name, call.arguments)
            self._emit(format_outcome(outcome))
            self.outcomes.append(outcome)
        return TurnState.CONTINUING

    async def _continue_conversation(self) -> TurnState:
        self._add(Role.USER, build_tool_result_prompt(self.outcomes))
        # Plain system prompt, so the model answers instead of calling tools again.
        self._request_messages = self.agent.request_messages(with_tools=False)
        return TurnState.STREAMING_FOLLOW_UP

    async def _stream_follow_up(self) -> TurnState:
        last = await self._consume()
        # Only the follow-up request is counted when tools ran.
        self.total_tokens = last.total_tokens
        self._commit_response()
        self.final_message = self.accumulated
        return TurnState.DONE


class Agent:
    """A chat session's agent: model, conversation, tools and settings."""

    def __init__(
        self,
        client: OllamaClient | None = None,
        model: str = "llama2",
        max_context_tokens: int = 4096,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        enable_tools: bool = True,
        tools: ToolRegistry | None = None,
        temperature: float = 0.7,
        top_p: float = 0.9,
    ):
        self.client = client or OllamaClient()
        self.model = model
        self.conversation = ConversationState(system_prompt=system_prompt, max_context_tokens=max_context_tokens)
        self.enable_tools = enable_tools
        self.tools = tools or ToolRegistry()
        self.temperature = temperature
        self.top_p = top_p
        self.current_turn: ChatTurn | None = None
        self._turn_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, client: OllamaClient | None = None, **overrides: Any) -> Agent:
        """Build an agent from settings; keyword overrides win over settings."""
        options: dict[str, Any] = {
            "model": settings.model,
            "max_context_tokens": settings.max_context_tokens,
            "system_prompt": settings.system_prompt,
            "enable_tools": settings.enable_tools,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
        }
        options.update({k: v for k, v in overrides.items() if v is not None})
        if "tools" not in options:
            options["tools"] = ToolRegistry(
                CommandExecutor(
                    default_timeout=settings.command_timeout,
                    stream_timeout=settings.stream_command_timeout,
                )
            )
        client = client or OllamaClient(base_url=settings.ollama_url, timeout=settings.request_timeout)
        return cls(client=client, **options)

    # --- Settings ---

    @property
    def system_prompt(self) -> str:
        return self.conversation.system_prompt

    def set_system_prompt(self, prompt: str) -> None:
        self.conversation.system_prompt = prompt

    @property
    def max_context_tokens(self) -> int:
        return self.conversation.max_context_tokens

    @max_context_tokens.setter
    def max_context_tokens(self, value: int) -> None:
        if value <= 0:
            raise ValueError("max_context_tokens must be positive")
        self.conversation.max_context_tokens = value

    def set_model(self, model: str) -> None:
        self.model = model

    def set_tools_enabled(self, enabled: bool) -> None:
        self.enable_tools = enabled

    @property
    def busy(self) -> bool:
        """True while a turn is running."""
        return self._turn_lock.locked()

    # --- Inference server ---

    async def list_models(self) -> list[dict[str, Any]]:
        return await self.client.list_models()

    async def check_connection(self) -> bool:
        return await self.client.check_connection()

    def _options(self, temperature: float | None, top_p: float | None) -> dict[str, Any]:
        return {
            "temperature": self.temperature if temperature is None else temperature,
            "top_p": self.top_p if top_p is None else top_p,
        }

    def request_messages(self, with_tools: bool) -> list[dict[str, str]]:
        """System prompt (tool-augmented when asked) followed by the history."""
        prompt = self.system_prompt
        if with_tools:
            prompt = build_tool_system_prompt(
                prompt, self.tools.definitions(), self.tools.platform, self.tools.shell
            )
        messages = [{"role": Role.SYSTEM.value, "content": prompt}]
        messages.extend(m.model_dump() for m in self.conversation.history())
        return messages

    # --- Chat ---

    async def stream_chat(
        self,
        message: str,
        on_chunk: ChunkCallback | None = None,
        execute_tools: bool = True,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> ChatResult:
        """Run a streamed turn, forwarding text to ``on_chunk`` as it arrives.

        Raises:
            TurnInProgressError: Another turn is running on this agent
            InferenceConnectionError: The inference server is unreachable
            StreamError: The stream broke off mid-response
        """
        if self._turn_lock.locked():
            raise TurnInProgressError("A turn is already in progress for this session")

        async with self._turn_lock:
            turn = ChatTurn(
                self,
                message,
                on_chunk=on_chunk,
                execute_tools=execute_tools,
                options=self._options(temperature, top_p),
            )
            self.current_turn = turn
            return await turn.run()

    async def chat(
        self,
        message: str,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> ChatResult:
        """Non-streamed turn with the plain system prompt. Tool calls are not executed."""
        if self._turn_lock.locked():
            raise TurnInProgressError("A turn is already in progress for this session")

        async with self._turn_lock:
            context_reset = self.conversation.add_message(Role.USER, message)
            response = await self.client.chat(
                self.model,
                self.request_messages(with_tools=False),
                self._options(temperature, top_p),
            )
            content = (response.get("message") or {}).get("content", "")
            context_reset = self.conversation.add_message(Role.ASSISTANT, content) or context_reset
            return ChatResult(
                message=content,
                model=self.model,
                context_reset=context_reset,
                total_tokens=(response.get("prompt_eval_count") or 0) + (response.get("eval_count") or 0),
            )

    # --- Tools ---

    async def execute_tool(self, name: str, args: Any = None) -> Any:
        """Dispatch a tool directly (outside of a chat turn)."""
        return await self.tools.dispatch(name, args)

    def tool_call_history(self, limit: int | None = 10) -> list[ToolCallRecord]:
        return self.tools.history(limit)

    def clear_tool_call_history(self) -> None:
        self.tools.clear_history()

    # --- History ---

    def history(self) -> tuple[Message, ...]:
        return self.conversation.history()

    def clear_history(self) -> None:
        self.conversation.clear()

    def export_history(self) -> str:
        return self.conversation.export(self.model)

    def import_history(self, blob: str | bytes) -> HistoryExport:
        """Load an exported document; the model is switched when it names one."""
        document = self.conversation.load(blob)
        if document.model:
            self.model = document.model
        return document

    async def aclose(self) -> None:
        await self.client.aclose()
