"""System tools the model can call."""

from privateagent.tools.errors import ToolExecutionError, UnknownToolError
from privateagent.tools.executor import CommandExecutor, CommandTimeoutError, SecurityDeniedError
from privateagent.tools.registry import ToolRegistry
from privateagent.tools.system import FileOperationError

__all__ = [
    "CommandExecutor",
    "CommandTimeoutError",
    "FileOperationError",
    "SecurityDeniedError",
    "ToolExecutionError",
    "ToolRegistry",
    "UnknownToolError",
]
