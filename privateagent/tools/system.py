"""File-system and host primitives exposed as tools."""

from __future__ import annotations

import logging
import os
import platform
import socket
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from privateagent.tools.errors import ToolExecutionError

logger = logging.getLogger(__name__)

# Maximum file size to read (1MB)
MAX_READ_SIZE = 1024 * 1024

GIGABYTE = 1024 ** 3


class FileOperationError(ToolExecutionError):
    """Raised when a file-system primitive fails."""

    pass


def _mtime(stat: os.stat_result) -> str:
    return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()


def list_directory(path: str = ".", detailed: bool = False) -> list[dict[str, Any]]:
    """List entries of a directory.

    Args:
        path: Directory to list (relative paths resolve against the cwd)
        detailed: Include size, modification time and permission bits

    Returns:
        One dict per entry, sorted by name
    """
    full_path = Path(path or ".").expanduser().resolve()
    try:
        entries = sorted(full_path.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise FileOperationError(f"Failed to list directory: {e}") from e

    listing = []
    for entry in entries:
        item: dict[str, Any] = {"name": entry.name, "is_directory": entry.is_dir()}
        if detailed:
            item["is_file"] = entry.is_file()
            try:
                stat = entry.stat()
                item["size"] = stat.st_size
                item["modified"] = _mtime(stat)
                item["permissions"] = oct(stat.st_mode)[-3:]
            except OSError:
                item["error"] = "Unable to read stats"
        listing.append(item)
    return listing


def read_file(filepath: str, max_size: int = MAX_READ_SIZE, encoding: str = "utf-8") -> dict[str, Any]:
    """Read a text file up to max_size bytes."""
    full_path = Path(filepath).expanduser().resolve()
    try:
        stat = full_path.stat()
        if stat.st_size > max_size:
            raise FileOperationError(
                f"Failed to read file: File too large ({stat.st_size} bytes). Max: {max_size} bytes"
            )
        content = full_path.read_text(encoding=encoding)
    except (OSError, UnicodeDecodeError) as e:
        raise FileOperationError(f"Failed to read file: {e}") from e

    return {
        "path": str(full_path),
        "size": stat.st_size,
        "content": content,
        "modified": _mtime(stat),
    }


def write_file(filepath: str, content: str, append: bool = False, encoding: str = "utf-8") -> dict[str, Any]:
    """Write (or append) text to a file."""
    full_path = Path(filepath).expanduser().resolve()
    try:
        with open(full_path, "a" if append else "w", encoding=encoding) as f:
            f.write(content)
    except OSError as e:
        raise FileOperationError(f"Failed to write file: {e}") from e

    logger.info(f"Wrote {len(content)} chars to {full_path} (append={append})")
    return {"path": str(full_path), "size": len(content), "success": True}


def _total_memory_gb() -> str:
    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return "unknown"
    return f"{round(pages * page_size / GIGABYTE)} GB"


def get_system_info(shell: str | None = None) -> dict[str, Any]:
    """Describe the host: OS, architecture, CPUs, memory and interpreter."""
    return {
        "platform": sys.platform,
        "system": platform.system(),
        "release": platform.release(),
        "arch": platform.machine(),
        "hostname": socket.gethostname(),
        "homedir": str(Path.home()),
        "tmpdir": tempfile.gettempdir(),
        "cpus": os.cpu_count() or 1,
        "total_memory": _total_memory_gb(),
        "python_version": platform.python_version(),
        "shell": shell,
    }


def get_current_directory() -> str:
    return os.getcwd()
