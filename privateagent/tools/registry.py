"""Tool registry: maps tool names to system operations and records every call."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from pydantic import BaseModel

from privateagent.protocol import decode_arguments
from privateagent.schemas import (
    CommandResult,
    ToolCallRecord,
    ToolDefinition,
    ToolName,
    ToolOutcome,
    ToolParameter,
)
from privateagent.tools import system
from privateagent.tools.errors import ToolExecutionError, UnknownToolError
from privateagent.tools.executor import CommandExecutor

logger = logging.getLogger(__name__)

TOOL_DEFINITIONS: list[ToolDefinition] = [
    ToolDefinition(
        name=ToolName.EXECUTE_COMMAND,
        description=(
            "Execute a shell command on the system (bash for Linux/Mac, PowerShell for Windows). "
            "Use this to run system commands, check files, etc."
        ),
        parameters={
            "command": ToolParameter(type="string", description="The command to execute", required=True),
            "cwd": ToolParameter(type="string", description="Working directory for the command (optional)"),
        },
    ),
    ToolDefinition(
        name=ToolName.LIST_DIRECTORY,
        description="List files and directories in a given path",
        parameters={
            "path": ToolParameter(
                type="string",
                description="Directory path to list (. for current directory)",
                required=True,
            ),
            "detailed": ToolParameter(
                type="boolean",
                description="Include detailed file information (size, permissions, etc.)",
            ),
        },
    ),
    ToolDefinition(
        name=ToolName.READ_FILE,
        description="Read the contents of a text file",
        parameters={
            "filepath": ToolParameter(type="string", description="Path to the file to read", required=True),
        },
    ),
    ToolDefinition(
        name=ToolName.WRITE_FILE,
        description="Write content to a file",
        parameters={
            "filepath": ToolParameter(type="string", description="Path to the file to write", required=True),
            "content": ToolParameter(type="string", description="Content to write to the file", required=True),
            "append": ToolParameter(type="boolean", description="Append to file instead of overwriting"),
        },
    ),
    ToolDefinition(
        name=ToolName.GET_SYSTEM_INFO,
        description="Get information about the system (OS, CPU, memory, etc.)",
    ),
    ToolDefinition(
        name=ToolName.GET_CURRENT_DIRECTORY,
        description="Get the current working directory",
    ),
]

_DEFINITIONS_BY_NAME = {d.name.value: d for d in TOOL_DEFINITIONS}


def format_result(result: Any) -> str:
    """Render a tool result as text for the model."""
    if isinstance(result, str):
        return result
    if isinstance(result, CommandResult):
        text = result.stdout
        if result.stderr:
            text += "\nStderr: " + result.stderr
        return text
    if isinstance(result, BaseModel):
        return result.model_dump_json(indent=2)
    return json.dumps(result, indent=2, default=str)


def _jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump()
    return result


class ToolRegistry:
    """Dispatches named tools and keeps an append-only call history."""

    def __init__(self, executor: CommandExecutor | None = None):
        self.executor = executor or CommandExecutor()
        self._history: list[ToolCallRecord] = []

    @property
    def platform(self) -> str:
        return self.executor.platform

    @property
    def shell(self) -> str:
        return self.executor.shell

    def definitions(self) -> list[ToolDefinition]:
        return list(TOOL_DEFINITIONS)

    def function_schemas(self) -> list[dict[str, Any]]:
        return [d.to_function_schema() for d in TOOL_DEFINITIONS]

    async def _run(self, name: str, args: dict[str, Any]) -> Any:
        definition = _DEFINITIONS_BY_NAME.get(name)
        if definition is None:
            raise UnknownToolError(f"Unknown tool: {name}")

        for param_name, param in definition.parameters.items():
            if param.required and args.get(param_name) is None:
                raise ToolExecutionError(f"Missing required argument '{param_name}' for {name}")

        if name == ToolName.EXECUTE_COMMAND:
            return await self.executor.run(str(args["command"]), cwd=args.get("cwd"))
        if name == ToolName.LIST_DIRECTORY:
            return await asyncio.to_thread(
                system.list_directory, str(args["path"]), bool(args.get("detailed", False))
            )
        if name == ToolName.READ_FILE:
            return await asyncio.to_thread(system.read_file, str(args["filepath"]))
        if name == ToolName.WRITE_FILE:
            return await asyncio.to_thread(
                system.write_file, str(args["filepath"]), str(args["content"]), bool(args.get("append", False))
            )
        if name == ToolName.GET_SYSTEM_INFO:
            return system.get_system_info(shell=self.shell)
        return system.get_current_directory()

    async def dispatch(self, name: str, args: Any = None) -> Any:
        """Run a tool and record the call.

        Args:
            name: Tool name
            args: Arguments as a dict, JSON text or None

        Returns:
            The primitive's raw result

        Raises:
            UnknownToolError: No tool with that name
            ToolExecutionError: The primitive failed (recorded, then re-raised)
        """
        arguments = decode_arguments(args)
        start = time.monotonic()
        try:
            result = await self._run(name, arguments)
        except Exception as e:
            elapsed = (time.monotonic() - start) * 1000
            logger.warning(f"Tool {name} failed: {e}")
            self._history.append(
                ToolCallRecord(
                    function=name,
                    arguments=arguments,
                    error=str(e),
                    execution_time_ms=elapsed,
                    success=False,
                )
            )
            raise

        elapsed = (time.monotonic() - start) * 1000
        self._history.append(
            ToolCallRecord(
                function=name,
                arguments=arguments,
                result=_jsonable(result),
                execution_time_ms=elapsed,
                success=True,
            )
        )
        logger.info(f"Tool {name} completed in {elapsed:.0f}ms")
        return result

    async def invoke(self, name: str, args: Any = None) -> ToolOutcome:
        """Run a tool, folding success or failure into a ToolOutcome."""
        try:
            result = await self.dispatch(name, args)
        except Exception as e:
            return ToolOutcome(tool=name, success=False, error=str(e))
        return ToolOutcome(tool=name, success=True, result_text=format_result(result))

    def history(self, limit: int | None = 10) -> list[ToolCallRecord]:
        """Most recent tool calls, oldest first."""
        if limit is None:
            return list(self._history)
        return self._history[-limit:] if limit > 0 else []

    def clear_history(self) -> None:
        self._history = []
