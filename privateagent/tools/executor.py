"""Shell command executor with timeout, output ceiling and a destructive-command denylist.

The denylist is best-effort pattern matching, not a sandbox. It stops the
obvious foot-guns a model might emit; it is not a security boundary.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import re
import shutil
import signal
import time
from collections import deque
from pathlib import Path
from typing import Callable

from privateagent.schemas import CommandResult, ExecutionRecord, OutputChunk
from privateagent.tools.errors import ToolExecutionError

logger = logging.getLogger(__name__)

# Output limits
MAX_OUTPUT_BYTES = 10 * 1024 * 1024  # 10MB

# Default timeouts
DEFAULT_TIMEOUT = 30.0  # seconds
DEFAULT_STREAM_TIMEOUT = 60.0  # seconds

MAX_HISTORY = 500

READ_CHUNK_SIZE = 4096

IS_WINDOWS = platform.system() == "Windows"


class SecurityDeniedError(ToolExecutionError):
    """Raised when a command matches the denylist. No process is spawned."""

    pass


class CommandTimeoutError(ToolExecutionError):
    """Raised when a command exceeds its wall-clock timeout and is killed."""

    pass


# Destructive command patterns (matched against the lowercased command)
DENYLIST = [
    # Recursive delete rooted at /, ~ or a bare glob
    r"\brm\s+(-\S+\s+)*-\S*r\S*\s+(-\S+\s+)*(/|~|\*)",
    r"\bdel\s+/s\s+/q\s+[a-z]:\\",
    r"\brd\s+/s\s+/q\s+[a-z]:\\",
    r"\bremove-item\b.*-recurse.*\s[a-z]:\\",
    # Filesystem formatting
    r"\bmkfs(\.\w+)?\b",
    r"\bformat\s+[a-z]:",
    r"\bformat-volume\b",
    # Raw disk writes
    r"\bdd\s+if=",
    r"\bdd\b.*\bof=/dev/",
    r">\s*/dev/(sd|hd|nvme|disk|mmcblk)",
    # Fork bomb
    r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
    # Shutdown / reboot / power-off
    r"\bshutdown\b",
    r"\breboot\b",
    r"\bhalt\b",
    r"\bpoweroff\b",
    r"\binit\s+[06]\b",
    r"\bsystemctl\s+(poweroff|reboot|halt)\b",
    r"\bstop-computer\b",
    r"\brestart-computer\b",
]


def validate_command(command: str) -> tuple[bool, str]:
    """Validate a command against the denylist.

    Args:
        command: The command to validate

    Returns:
        Tuple of (allowed, reason)
    """
    lowered = command.strip().lower()
    if not lowered:
        return False, "Empty command"

    for pattern in DENYLIST:
        if re.search(pattern, lowered):
            return False, f"Blocked: matches dangerous pattern '{pattern}'"

    return True, "Allowed"


def default_shell() -> str:
    if IS_WINDOWS:
        return "powershell.exe"
    return shutil.which("bash") or "/bin/sh"


def _truncate_output(output: bytes, max_bytes: int = MAX_OUTPUT_BYTES) -> str:
    """Decode output, truncating to max_bytes."""
    if len(output) <= max_bytes:
        return output.decode("utf-8", errors="replace")
    truncated = output[:max_bytes].decode("utf-8", errors="replace")
    return truncated + "\n... [output truncated]"


async def _pump(
    stream: asyncio.StreamReader,
    buffer: bytearray,
    on_data: Callable[[bytes], None] | None = None,
    max_bytes: int = MAX_OUTPUT_BYTES,
) -> None:
    """Read a pipe to EOF, storing at most max_bytes + 1 bytes.

    The extra byte lets _truncate_output see that the ceiling was passed.
    Everything past it is read and discarded so the child never blocks on a
    full pipe.
    """
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            return
        room = max_bytes + 1 - len(buffer)
        if room > 0:
            buffer.extend(data[:room])
        if on_data is not None:
            on_data(data)


class CommandExecutor:
    """Runs shell commands under the platform shell and keeps an audit history."""

    def __init__(
        self,
        default_timeout: float = DEFAULT_TIMEOUT,
        stream_timeout: float = DEFAULT_STREAM_TIMEOUT,
        max_history: int = MAX_HISTORY,
    ):
        self.platform = platform.system().lower()
        self.shell = default_shell()
        self.default_timeout = default_timeout
        self.stream_timeout = stream_timeout
        self._history: deque[ExecutionRecord] = deque(maxlen=max_history)

    def _shell_args(self, command: str) -> list[str]:
        if IS_WINDOWS:
            return [self.shell, "-NoProfile", "-Command", command]
        return [self.shell, "-c", command]

    def _check(self, command: str, cwd: str) -> None:
        allowed, reason = validate_command(command)
        if not allowed:
            logger.warning(f"Command blocked: {command} - {reason}")
            self._record(command, cwd, success=False, error=f"Command blocked for security reasons: {reason}")
            raise SecurityDeniedError(f"Command blocked for security reasons: {reason}")

    def _record(
        self,
        command: str,
        cwd: str,
        success: bool,
        exit_code: int | None = None,
        elapsed_ms: float = 0.0,
        error: str | None = None,
    ) -> None:
        self._history.append(
            ExecutionRecord(
                command=command,
                cwd=cwd,
                exit_code=exit_code,
                elapsed_ms=elapsed_ms,
                success=success,
                error=error,
            )
        )

    async def _spawn(self, command: str, cwd: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *self._shell_args(command),
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=not IS_WINDOWS,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """Forcibly terminate the process (and its group on POSIX)."""
        if process.returncode is not None:
            return
        try:
            if IS_WINDOWS:
                process.kill()
            else:
                os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await process.wait()

    async def run(
        self,
        command: str,
        timeout: float | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Execute a command and buffer its output.

        Args:
            command: The command to execute
            timeout: Wall-clock timeout in seconds (defaults to 30s)
            cwd: Working directory (defaults to current directory)

        Returns:
            CommandResult with stdout, stderr, exit code and elapsed time

        Raises:
            SecurityDeniedError: Command matches the denylist
            CommandTimeoutError: Command exceeded the timeout and was killed
            ToolExecutionError: The shell could not be started
        """
        command = command.strip()
        cwd = str(Path(cwd).expanduser()) if cwd else os.getcwd()
        timeout = timeout or self.default_timeout

        self._check(command, cwd)
        logger.info(f"Executing command: {command} (cwd: {cwd})")

        start = time.monotonic()
        try:
            process = await self._spawn(command, cwd)
        except OSError as e:
            elapsed = (time.monotonic() - start) * 1000
            logger.error(f"Command execution failed: {e}")
            self._record(command, cwd, success=False, elapsed_ms=elapsed, error=str(e))
            raise ToolExecutionError(f"Failed to start command: {e}") from e

        stdout, stderr = bytearray(), bytearray()

        async def drain() -> None:
            await asyncio.gather(_pump(process.stdout, stdout), _pump(process.stderr, stderr))
            await process.wait()

        try:
            await asyncio.wait_for(drain(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            elapsed = (time.monotonic() - start) * 1000
            message = f"Command timed out after {timeout} seconds"
            logger.warning(f"{message}: {command}")
            self._record(command, cwd, success=False, elapsed_ms=elapsed, error=message)
            raise CommandTimeoutError(message)

        elapsed = (time.monotonic() - start) * 1000
        result = CommandResult(
            command=command,
            cwd=cwd,
            stdout=_truncate_output(bytes(stdout)),
            stderr=_truncate_output(bytes(stderr)),
            exit_code=process.returncode,
            elapsed_ms=elapsed,
        )
        self._record(command, cwd, success=True, exit_code=result.exit_code, elapsed_ms=elapsed)
        return result

    async def run_stream(
        self,
        command: str,
        on_output: Callable[[OutputChunk], None],
        timeout: float | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Execute a command, passing output to ``on_output`` as it arrives.

        Resolves when the process closes. Output read after a timeout kill is
        discarded.
        """
        command = command.strip()
        cwd = str(Path(cwd).expanduser()) if cwd else os.getcwd()
        timeout = timeout or self.stream_timeout

        self._check(command, cwd)
        logger.info(f"Streaming command: {command} (cwd: {cwd})")

        start = time.monotonic()
        try:
            process = await self._spawn(command, cwd)
        except OSError as e:
            elapsed = (time.monotonic() - start) * 1000
            self._record(command, cwd, success=False, elapsed_ms=elapsed, error=str(e))
            raise ToolExecutionError(f"Failed to start command: {e}") from e

        collected: dict[str, bytearray] = {"stdout": bytearray(), "stderr": bytearray()}

        def forward(name: str) -> Callable[[bytes], None]:
            return lambda data: on_output(OutputChunk(stream=name, text=data.decode("utf-8", errors="replace")))

        async def drain() -> None:
            await asyncio.gather(
                _pump(process.stdout, collected["stdout"], forward("stdout")),
                _pump(process.stderr, collected["stderr"], forward("stderr")),
            )
            await process.wait()

        try:
            await asyncio.wait_for(drain(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            elapsed = (time.monotonic() - start) * 1000
            message = f"Command timed out after {timeout} seconds"
            logger.warning(f"{message}: {command}")
            self._record(command, cwd, success=False, elapsed_ms=elapsed, error=message)
            raise CommandTimeoutError(message)

        elapsed = (time.monotonic() - start) * 1000
        result = CommandResult(
            command=command,
            cwd=cwd,
            stdout=_truncate_output(bytes(collected["stdout"])),
            stderr=_truncate_output(bytes(collected["stderr"])),
            exit_code=process.returncode,
            elapsed_ms=elapsed,
        )
        self._record(command, cwd, success=True, exit_code=result.exit_code, elapsed_ms=elapsed)
        return result

    def history(self, limit: int | None = 10) -> list[ExecutionRecord]:
        """Most recent executions, oldest first."""
        records = list(self._history)
        if limit is None:
            return records
        return records[-limit:] if limit > 0 else []

    def clear_history(self) -> None:
        self._history.clear()
