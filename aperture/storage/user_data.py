"""Per-user document lifecycle: defaults on first contact, load, append.

SOUL.md and HEARTBEAT.md are user-editable; MEMORY.md only ever grows.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date

from pydantic import ValidationError

from aperture.errors import StorageError
from aperture.storage.documents import HeartbeatData, Soul, parse_heartbeat, parse_soul
from aperture.storage.paths import UserPaths

logger = logging.getLogger(__name__)

SOUL_TEMPLATE = """---
userId: "{user_id}"
agentName: Aperture
language: en
timezone: UTC
llm:
  provider: anthropic
  model: claude-sonnet-4-5-20250514
---

You are Aperture, a proactive personal assistant.

Your role is to reduce cognitive load by:
- Tracking tasks, reminders, and deadlines
- Surfacing relevant information at the right time
- Maintaining context across conversations
- Being direct and concise in communication
"""

HEARTBEAT_TEMPLATE = """---
enabled: true
maxProactivePerDay: 10
quietHours:
  start: "22:00"
  end: "08:00"
---

## Schedules

- id: morning-briefing
  cron: "0 9 * * *"
  channel: telegram:DM
  prompt: "Review my reminders and upcoming events. Summarize my day."
"""


def _init_sync(paths: UserPaths) -> list[str]:
    for directory in (
        paths.root,
        paths.sessions_dir,
        paths.events_dir,
        paths.reminders_dir,
        paths.notes_dir,
        paths.history_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)

    created = []
    if not paths.soul.exists():
        paths.soul.write_text(
            SOUL_TEMPLATE.format(user_id=paths.root.name), encoding="utf-8"
        )
        created.append(paths.soul.name)
    if not paths.heartbeat.exists():
        paths.heartbeat.write_text(HEARTBEAT_TEMPLATE, encoding="utf-8")
        created.append(paths.heartbeat.name)
    return created


async def init_user_data(paths: UserPaths) -> None:
    """Create the user's directory tree and default documents if missing.

    Existing documents are never overwritten.
    """
    try:
        created = await asyncio.to_thread(_init_sync, paths)
    except OSError as e:
        raise StorageError(f"Failed to initialize user data at {paths.root}", e) from e
    for name in created:
        logger.info("Created default %s for user %s", name, paths.user_id)


async def load_soul(paths: UserPaths) -> Soul:
    try:
        content = await asyncio.to_thread(paths.soul.read_text, encoding="utf-8")
        return parse_soul(content)
    except (OSError, ValidationError) as e:
        raise StorageError(f"Failed to load SOUL.md at {paths.soul}", e) from e


async def load_heartbeat(paths: UserPaths) -> HeartbeatData:
    try:
        content = await asyncio.to_thread(paths.heartbeat.read_text, encoding="utf-8")
        return parse_heartbeat(content)
    except (OSError, ValidationError) as e:
        raise StorageError(f"Failed to load HEARTBEAT.md at {paths.heartbeat}", e) from e


async def load_memory(paths: UserPaths) -> str:
    """MEMORY.md content, or "" if the file does not exist yet."""
    try:
        return await asyncio.to_thread(paths.memory.read_text, encoding="utf-8")
    except FileNotFoundError:
        return ""
    except OSError as e:
        raise StorageError(f"Failed to read MEMORY.md at {paths.memory}", e) from e


def _append_text(paths: UserPaths, text: str) -> None:
    paths.root.mkdir(parents=True, exist_ok=True)
    with paths.memory.open("a", encoding="utf-8") as fh:
        fh.write(text)


async def append_memory(paths: UserPaths, facts: str, day: date) -> None:
    """Append a dated section of extracted facts to MEMORY.md."""
    section = f"\n## Extracted {day.isoformat()}\n{facts.strip()}\n"
    try:
        await asyncio.to_thread(_append_text, paths, section)
    except OSError as e:
        raise StorageError(f"Failed to append to MEMORY.md at {paths.memory}", e) from e
