"""CLI for PrivateAgent - chat with a local model that can use system tools."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import click

from privateagent.agent import Agent
from privateagent.config import Settings, get_settings
from privateagent.conversation import HistoryImportError
from privateagent.ollama import InferenceError, OllamaClient
from privateagent.tools import ToolExecutionError, ToolRegistry
from privateagent.tools.registry import format_result
from privateagent.tools.executor import default_shell
from privateagent.tools.system import get_system_info

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /history            Show conversation history
  /clear              Clear conversation history
  /export [FILE]      Export history to a JSON file
  /import FILE        Import history from a JSON file
  /tools on|off       Enable or disable tool use
  /toolhistory        Show recent tool calls
  /system PROMPT      Set the system prompt
  /tokens N           Set the context token budget
  /model NAME         Switch model
  /help               Show this help
  /exit               Quit"""


def _make_client(settings: Settings) -> OllamaClient:
    return OllamaClient(base_url=settings.ollama_url, timeout=settings.request_timeout)


@click.group()
@click.version_option(version="0.1.0", prog_name="privateagent")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def main(verbose: bool) -> None:
    """PrivateAgent - Chat with a local Ollama model that can use system tools.

    Conversations stay on this machine; the model can list, read and write
    files and run shell commands when tools are enabled.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@main.command()
@click.option("--port", default=None, type=int, help="Port to run the server on")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(port: int | None, host: str | None, reload: bool) -> None:
    """Start the PrivateAgent HTTP server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port

    click.echo(f"Starting PrivateAgent server on {host}:{port}")
    uvicorn.run(
        "privateagent.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@main.command()
def models() -> None:
    """List models installed on the Ollama server."""

    async def _list() -> list[dict]:
        client = _make_client(get_settings())
        try:
            return await client.list_models()
        finally:
            await client.aclose()

    try:
        installed = asyncio.run(_list())
    except InferenceError as e:
        raise click.ClickException(str(e))

    if not installed:
        click.echo("No models installed. Pull one with 'ollama pull <model>'.")
        return

    click.echo("Installed models:")
    for model in installed:
        size = model.get("size")
        size_text = f" ({size / 1e9:.1f} GB)" if isinstance(size, (int, float)) else ""
        click.echo(f"  - {model.get('name', '?')}{size_text}")


def _print_history(agent: Agent) -> None:
    history = agent.history()
    if not history:
        click.echo("No messages yet.")
        return
    for message in history:
        preview = message.content if len(message.content) <= 200 else message.content[:200] + "..."
        click.echo(f"[{message.role}] {preview}")


def _print_tool_history(agent: Agent) -> None:
    records = agent.tool_call_history(10)
    if not records:
        click.echo("No tool calls yet.")
        return
    for record in records:
        status = "ok" if record.success else f"failed: {record.error}"
        click.echo(
            f"  {record.timestamp} {record.function} {json.dumps(record.arguments)} "
            f"({record.execution_time_ms:.0f}ms) {status}"
        )


def _handle_command(agent: Agent, line: str) -> bool:
    """Run a slash command. Returns False when the REPL should stop."""
    name, _, arg = line[1:].partition(" ")
    name = name.lower()
    arg = arg.strip()

    if name in ("exit", "quit"):
        return False
    elif name == "help":
        click.echo(HELP_TEXT)
    elif name == "history":
        _print_history(agent)
    elif name == "clear":
        agent.clear_history()
        click.echo("History cleared.")
    elif name == "export":
        path = Path(arg or "privateagent-history.json")
        path.write_text(agent.export_history())
        click.echo(f"Exported {len(agent.history())} messages to {path}")
    elif name == "import":
        if not arg:
            click.echo("Usage: /import FILE")
            return True
        try:
            document = agent.import_history(Path(arg).read_text())
        except (OSError, HistoryImportError) as e:
            click.echo(f"Import failed: {e}")
            return True
        click.echo(f"Imported {len(document.history)} messages (model: {agent.model})")
    elif name == "tools":
        if arg not in ("on", "off"):
            click.echo(f"Tools are {'on' if agent.enable_tools else 'off'}. Usage: /tools on|off")
            return True
        agent.set_tools_enabled(arg == "on")
        click.echo(f"Tools {arg}.")
    elif name == "toolhistory":
        _print_tool_history(agent)
    elif name == "system":
        if not arg:
            click.echo(f"System prompt: {agent.system_prompt}")
            return True
        agent.set_system_prompt(arg)
        click.echo("System prompt updated.")
    elif name == "tokens":
        try:
            agent.max_context_tokens = int(arg)
        except ValueError:
            click.echo("Usage: /tokens N (a positive integer)")
            return True
        click.echo(f"Context budget set to {agent.max_context_tokens} tokens.")
    elif name == "model":
        if not arg:
            click.echo(f"Model: {agent.model}")
            return True
        agent.set_model(arg)
        click.echo(f"Switched to {arg}.")
    else:
        click.echo(f"Unknown command: /{name} (try /help)")
    return True


async def _repl(agent: Agent) -> None:
    if not await agent.check_connection():
        raise click.ClickException("Cannot connect to Ollama. Is it running?")

    click.echo(f"Chatting with {agent.model} (tools {'on' if agent.enable_tools else 'off'}). Type /help for commands.")
    try:
        while True:
            try:
                line = await asyncio.to_thread(click.prompt, "\nYou", prompt_suffix="> ", default="", show_default=False)
            except click.Abort:
                break

            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not _handle_command(agent, line):
                    break
                continue

            click.echo("\nAssistant> ", nl=False)
            try:
                result = await agent.stream_chat(line, on_chunk=lambda text: click.echo(text, nl=False))
            except InferenceError as e:
                click.echo(f"\nError: {e}")
                continue
            click.echo()
            if result.context_reset:
                click.echo("(Earlier context was reset to stay within the token budget.)")
    finally:
        await agent.aclose()


@main.command()
@click.option("--model", "-m", default=None, help="Model to chat with")
@click.option("--system", "system_prompt", default=None, help="System prompt")
@click.option("--tokens", "max_context_tokens", default=None, type=click.IntRange(min=1), help="Context token budget")
@click.option("--no-tools", is_flag=True, help="Disable tool use")
def chat(model: str | None, system_prompt: str | None, max_context_tokens: int | None, no_tools: bool) -> None:
    """Start an interactive chat session.

    \b
    Example:
        privateagent chat
        privateagent chat --model mistral --no-tools
    """
    settings = get_settings()
    agent = Agent.from_settings(
        settings,
        client=_make_client(settings),
        model=model,
        system_prompt=system_prompt,
        max_context_tokens=max_context_tokens,
        enable_tools=False if no_tools else None,
    )
    asyncio.run(_repl(agent))
    click.echo("Goodbye!")


@main.command()
@click.argument("name")
@click.option("--args", "args_json", default="{}", help="Tool arguments as a JSON object")
def tool(name: str, args_json: str) -> None:
    """Run a tool directly.

    \b
    Example:
        privateagent tool list_directory --args '{"path": "."}'
        privateagent tool execute_command --args '{"command": "uname -a"}'
    """
    try:
        args = json.loads(args_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--args")

    registry = ToolRegistry()
    try:
        result = asyncio.run(registry.dispatch(name, args))
    except ToolExecutionError as e:
        raise click.ClickException(str(e))

    click.echo(format_result(result))


@main.command()
def sysinfo() -> None:
    """Show information about this system."""
    click.echo(json.dumps(get_system_info(shell=default_shell()), indent=2))


if __name__ == "__main__":
    main()
