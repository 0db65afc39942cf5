"""Notes tools: read_file, write_file, list_files.

Confined to the user's ``notes/`` directory; any path resolving outside
of it is rejected.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from aperture.storage.paths import UserPaths
from aperture.tools.dispatcher import ToolDispatcher, mcp_response

logger = logging.getLogger(__name__)

_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB


def _validate_path(path_str: str, root: Path) -> Path:
    """Resolve ``path_str`` under ``root``. Raises ValueError if it escapes."""
    base = root.resolve()
    target = (base / path_str).resolve()
    if not target.is_relative_to(base):
        raise ValueError(
            f"Path '{path_str}' is outside the notes directory. "
            "Only paths within the notes directory are allowed."
        )
    return target


def _read(target: Path) -> str:
    if target.stat().st_size > _MAX_FILE_SIZE:
        raise ValueError(f"File too large ({target.stat().st_size} bytes, max {_MAX_FILE_SIZE})")
    return target.read_text(encoding="utf-8")


def _write(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")


def _list(target: Path) -> list[str]:
    return sorted(f"{p.name}/" if p.is_dir() else p.name for p in target.iterdir())


_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read a file from the user's notes directory",
    "properties": {
        "path": {"type": "string", "description": "Relative path within the notes directory"},
    },
    "required": ["path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Write content to a file in the user's notes directory. Creates parent directories if needed.",
    "properties": {
        "path": {"type": "string", "description": "Relative path within the notes directory"},
        "content": {"type": "string", "description": "Content to write to the file"},
    },
    "required": ["path", "content"],
}

_LIST_FILES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "List files and directories in the user's notes directory",
    "properties": {
        "path": {
            "type": "string",
            "description": "Relative directory path within the notes directory",
            "default": ".",
        },
    },
}


def register_file_tools(dispatcher: ToolDispatcher, paths: UserPaths) -> None:
    """Register notes file tools bound to one user's notes directory."""
    root = paths.notes_dir

    async def read_file(path: str) -> dict[str, Any]:
        target = _validate_path(path, root)
        if not target.is_file():
            return mcp_response(f"File not found: {path}")
        return mcp_response(await asyncio.to_thread(_read, target))

    async def write_file(path: str, content: str) -> dict[str, Any]:
        target = _validate_path(path, root)
        await asyncio.to_thread(_write, target, content)
        logger.debug("Wrote %d chars to notes/%s for %s", len(content), path, paths.user_id)
        return mcp_response(f"Written {len(content)} characters to {path}")

    async def list_files(path: str = ".") -> dict[str, Any]:
        target = _validate_path(path, root)
        if not target.is_dir():
            return mcp_response(f"Directory not found: {path}")
        entries = await asyncio.to_thread(_list, target)
        return mcp_response("\n".join(entries) or "(empty)")

    dispatcher.register("read_file", read_file, _READ_FILE_SCHEMA)
    dispatcher.register("write_file", write_file, _WRITE_FILE_SCHEMA)
    dispatcher.register("list_files", list_files, _LIST_FILES_SCHEMA)
