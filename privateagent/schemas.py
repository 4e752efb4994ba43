"""Pydantic schemas for conversation, tool and API contracts."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> str:
    """ISO-8601 timestamp in UTC."""
    return datetime.now(timezone.utc).isoformat()


class Role(str, Enum):
    """Conversation roles understood by the inference server."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ToolName(str, Enum):
    """Available system tools."""

    EXECUTE_COMMAND = "execute_command"
    LIST_DIRECTORY = "list_directory"
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    GET_SYSTEM_INFO = "get_system_info"
    GET_CURRENT_DIRECTORY = "get_current_directory"


# --- Conversation ---


class Message(BaseModel):
    """A single chat message."""

    model_config = ConfigDict(use_enum_values=True)

    role: Role
    content: str


class HistoryExport(BaseModel):
    """Exported conversation document.

    Field aliases keep the camelCase keys of previously exported files.
    """

    model_config = ConfigDict(populate_by_name=True)

    model: str | None = None
    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    history: list[Message] = Field(default_factory=list)
    timestamp: str | None = None


# --- Tools ---


class ToolParameter(BaseModel):
    """Declared parameter of a tool."""

    type: Literal["string", "boolean", "integer", "number", "object", "array"]
    description: str
    required: bool = False


class ToolDefinition(BaseModel):
    """Static description of a tool, shown to the model when tools are enabled."""

    name: ToolName
    description: str
    parameters: dict[str, ToolParameter] = Field(default_factory=dict)

    def to_function_schema(self) -> dict[str, Any]:
        """Render as an Ollama/OpenAI style function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {
                        name: {"type": param.type, "description": param.description}
                        for name, param in self.parameters.items()
                    },
                    "required": [name for name, param in self.parameters.items() if param.required],
                },
            },
        }


class ToolCall(BaseModel):
    """Tool call extracted from assistant text."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolCallRecord(BaseModel):
    """Audit entry for one tool dispatch. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    function: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    execution_time_ms: float
    timestamp: str = Field(default_factory=utc_now)
    success: bool


class ToolOutcome(BaseModel):
    """Result of one tool call as folded into the follow-up prompt."""

    tool: str
    success: bool
    result_text: str | None = None
    error: str | None = None


# --- Command execution ---


class CommandResult(BaseModel):
    """Result of a shell command. A non-zero exit code is data, not failure."""

    command: str
    cwd: str
    stdout: str
    stderr: str
    exit_code: int
    elapsed_ms: float
    timestamp: str = Field(default_factory=utc_now)


class ExecutionRecord(BaseModel):
    """Executor-level audit entry, written for every invocation."""

    model_config = ConfigDict(frozen=True)

    command: str
    cwd: str
    exit_code: int | None = None
    elapsed_ms: float = 0.0
    timestamp: str = Field(default_factory=utc_now)
    success: bool
    error: str | None = None


class OutputChunk(BaseModel):
    """A piece of output from a streamed command."""

    stream: Literal["stdout", "stderr"]
    text: str


# --- Inference ---


class ChatFragment(BaseModel):
    """One newline-delimited JSON fragment of a streamed chat response."""

    content: str = ""
    done: bool = False
    prompt_eval_count: int = 0
    eval_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_eval_count + self.eval_count


class ChatResult(BaseModel):
    """Resolution value of a chat turn."""

    message: str
    model: str
    context_reset: bool = False
    tool_calls: list[ToolCall] = Field(default_factory=list)
    total_tokens: int = 0


# --- HTTP API ---


class InitRequest(BaseModel):
    """Request to start (or restart) a chat session."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    model: str | None = None
    max_context_tokens: int | None = Field(default=None, gt=0, alias="maxContextTokens")


class InitResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., serialization_alias="sessionId")
    connected: bool


class ModelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    model: str = Field(..., min_length=1)


class ChatRequest(BaseModel):
    """Chat message for a session."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    message: str = Field(..., min_length=1)
    stream: bool = True


class SettingsRequest(BaseModel):
    """Per-session settings update. Absent fields are left unchanged."""

    model_config = ConfigDict(populate_by_name=True)

    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    max_context_tokens: int | None = Field(default=None, gt=0, alias="maxContextTokens")
    enable_tools: bool | None = Field(default=None, alias="enableTools")


class ToolExecuteRequest(BaseModel):
    """Direct tool execution request."""

    model_config = ConfigDict(populate_by_name=True)

    function_name: str = Field(..., alias="functionName")
    args: Any = None


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    error_code: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    server: Literal["healthy", "unhealthy"] = "healthy"
    ollama: Literal["healthy", "unhealthy"] = "healthy"
    sessions: int = 0
    last_ollama_check: str | None = None
