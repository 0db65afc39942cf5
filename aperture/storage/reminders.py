"""Reminder records: one pretty-printed JSON file per reminder."""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from aperture.errors import StorageError

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Reminder(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(
        default_factory=lambda: f"r_{int(datetime.now(UTC).timestamp() * 1000)}_{secrets.token_hex(3)}"
    )
    text: str
    due_at: datetime | None = Field(None, alias="dueAt")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="createdAt")
    completed: bool = False

    @field_validator("due_at", "created_at")
    @classmethod
    def _naive_as_utc(cls, value: datetime | None) -> datetime | None:
        return _aware(value)


def reminder_path(directory: Path, reminder_id: str) -> Path:
    return directory / f"{reminder_id}.json"


def _load_all(directory: Path) -> list[Reminder]:
    if not directory.is_dir():
        return []
    reminders = []
    for path in sorted(directory.glob("*.json")):
        try:
            reminders.append(Reminder.model_validate_json(path.read_text(encoding="utf-8")))
        except (OSError, ValidationError) as e:
            logger.warning("Failed to parse reminder file %s: %s", path.name, e)
    return sorted(reminders, key=lambda r: r.created_at)


async def load_reminders(directory: Path) -> list[Reminder]:
    """All readable reminders, oldest first. Broken files are skipped."""
    return await asyncio.to_thread(_load_all, directory)


def _write(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(data, encoding="utf-8")


async def save_reminder(directory: Path, reminder: Reminder) -> None:
    path = reminder_path(directory, reminder.id)
    try:
        await asyncio.to_thread(_write, path, reminder.model_dump_json(by_alias=True, indent=2))
    except OSError as e:
        raise StorageError(f"Failed to write reminder {path}", e) from e


async def get_reminder(directory: Path, reminder_id: str) -> Reminder | None:
    """Load one reminder by id. None if it doesn't exist."""
    path = reminder_path(directory, reminder_id)
    try:
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageError(f"Failed to read reminder {path}", e) from e
    try:
        return Reminder.model_validate_json(content)
    except ValidationError as e:
        raise StorageError(f"Malformed reminder {path}", e) from e
