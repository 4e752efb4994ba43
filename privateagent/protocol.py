"""Prompt-embedded tool-call protocol: marker extraction, argument decoding and prompts."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable

from privateagent.schemas import ToolCall, ToolDefinition, ToolOutcome

logger = logging.getLogger(__name__)

TOOL_CALL_PATTERN = re.compile(
    r"<tool_call>\s*<function>(.*?)</function>\s*<arguments>(.*?)</arguments>\s*</tool_call>",
    re.DOTALL,
)

RESULT_PREVIEW_CHARS = 500

TOOLS_BANNER = "\n\n🔧 Executing tools...\n\n"

FOLLOW_UP_INSTRUCTION = "Please provide a natural language response to the user based on these results."


def decode_arguments(raw: Any) -> dict[str, Any]:
    """Normalize a tool-call argument payload to a dict.

    Absent -> {}; text -> parsed JSON object, {} when it is not one;
    mapping -> passed through; anything else -> {}.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        text = text.strip()
        if not text:
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse tool arguments: {text[:200]}")
            return {}
        if isinstance(parsed, dict):
            return parsed
        logger.warning(f"Tool arguments are not a JSON object: {text[:200]}")
        return {}
    logger.warning(f"Unexpected tool argument type: {type(raw).__name__}")
    return {}


def extract_tool_calls(text: str) -> list[ToolCall]:
    """Extract tool calls from assistant text, in order of appearance."""
    calls = [
        ToolCall(name=match.group(1).strip(), arguments=decode_arguments(match.group(2)))
        for match in TOOL_CALL_PATTERN.finditer(text)
    ]
    if calls:
        logger.info(f"Found {len(calls)} tool call(s): {[c.name for c in calls]}")
    return calls


def build_tool_system_prompt(
    base_prompt: str,
    definitions: Iterable[ToolDefinition],
    platform: str,
    shell: str,
) -> str:
    """Augment the system prompt with tool usage instructions."""
    lines = []
    for i, definition in enumerate(definitions, 1):
        params = ", ".join(
            name if param.required else f"{name}?"
            for name, param in definition.parameters.items()
        )
        lines.append(f"{i}. {definition.name.value}({params}) - {definition.description}")
    tool_list = "\n".join(lines)

    return f"""{base_prompt}

You have access to system tools that allow you to interact with the {platform} system using {shell}.

Available tools:
{tool_list}

To use a tool, respond with a special format:
<tool_call>
<function>tool_name</function>
<arguments>{{"arg1": "value1", "arg2": "value2"}}</arguments>
</tool_call>

After I execute the tool and show you the results, you can provide a natural language response to the user.

Example:
User: "What files are in my current directory?"
You: <tool_call>
<function>list_directory</function>
<arguments>{{"path": ".", "detailed": true}}</arguments>
</tool_call>

[I will execute the tool and show results]

You: "Here are the files in your current directory: [explain results]"

IMPORTANT: Only use tools when the user explicitly asks for system interaction. Always explain what you're doing."""


def build_tool_result_prompt(outcomes: Iterable[ToolOutcome]) -> str:
    """Fold tool outcomes into the follow-up user message."""
    parts = ["Tool execution results:\n\n"]
    for outcome in outcomes:
        parts.append(f"Tool: {outcome.tool}\n")
        if outcome.success:
            parts.append(f"Result:\n{outcome.result_text}\n\n")
        else:
            parts.append(f"Error: {outcome.error}\n\n")
    parts.append(FOLLOW_UP_INSTRUCTION)
    return "".join(parts)


def format_call_header(call: ToolCall) -> str:
    return f"\n**Tool:** {call.name}\n**Arguments:** `{json.dumps(call.arguments)}`\n\n"


def format_outcome(outcome: ToolOutcome) -> str:
    """Progress marker for a finished tool call, with a truncated result preview."""
    if not outcome.success:
        return f"**Error:** {outcome.error}\n\n"
    text = outcome.result_text or ""
    preview = text[:RESULT_PREVIEW_CHARS]
    if len(text) > RESULT_PREVIEW_CHARS:
        preview += "..."
    return f"**Result:**\n```\n{preview}\n```\n\n"
