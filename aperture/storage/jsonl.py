"""Append-only JSON Lines files.

Writes always open in append mode: a line once written is never
rewritten, so concurrent writers can interleave but never corrupt
earlier entries. Blocking file I/O runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from aperture.errors import StorageError


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(line)


def _read_lines(path: Path) -> list[dict[str, Any]]:
    entries = []
    with path.open(encoding="utf-8") as fh:
        for line in fh:
            if line.strip():
                entries.append(json.loads(line))
    return entries


async def append_jsonl(path: Path, entry: dict[str, Any]) -> None:
    """Append one JSON object as a single line, creating parent dirs."""
    line = json.dumps(entry, ensure_ascii=False, default=str) + "\n"
    try:
        await asyncio.to_thread(_append_line, path, line)
    except OSError as e:
        raise StorageError(f"Failed to append to {path}", e) from e


async def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read all entries. Returns an empty list if the file doesn't exist."""
    try:
        return await asyncio.to_thread(_read_lines, path)
    except FileNotFoundError:
        return []
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(f"Failed to read {path}", e) from e
