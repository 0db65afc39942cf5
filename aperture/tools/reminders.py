"""Reminder tools: create, list, complete and check a user's reminders.

All tools return MCP-format responses for consistent handling by
ToolDispatcher.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from dateutil import parser as dateutil_parser

from aperture.proactive.scanner import format_scan_results, scan_user_data
from aperture.storage.paths import UserPaths
from aperture.storage.reminders import Reminder, get_reminder, load_reminders, save_reminder
from aperture.tools.dispatcher import ToolDispatcher, mcp_response

logger = logging.getLogger(__name__)


def parse_due(value: str) -> datetime:
    """Parse an ISO 8601 (or dateutil-readable) due time. Naive means UTC.

    Raises ValueError if unparseable.
    """
    try:
        dt = dateutil_parser.parse(value.strip())
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"Cannot parse due time: {value!r}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _status(reminder: Reminder) -> str:
    if reminder.completed:
        return "[done]"
    if reminder.due_at:
        return f"[due: {reminder.due_at.isoformat()}]"
    return "[no due date]"


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

_CREATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Create a new reminder with optional due date.",
    "properties": {
        "text": {"type": "string", "description": "Reminder text"},
        "due_at": {
            "type": "string",
            "description": "Due date/time in ISO 8601 format (e.g. 2026-03-15T09:00:00+08:00)",
        },
    },
    "required": ["text"],
}

_LIST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "List active reminders. Optionally include completed ones.",
    "properties": {
        "include_completed": {
            "type": "boolean",
            "description": "Include completed reminders",
            "default": False,
        },
    },
}

_COMPLETE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Mark a reminder as completed.",
    "properties": {
        "id": {"type": "string", "description": "Reminder ID to mark as completed"},
    },
    "required": ["id"],
}

_CHECK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Show overdue reminders and reminders due in the next 24 hours.",
    "properties": {},
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_reminder_tools(
    dispatcher: ToolDispatcher,
    paths: UserPaths,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """Register reminder tools bound to one user's reminders directory."""
    directory = paths.reminders_dir
    now = clock or (lambda: datetime.now(UTC))

    async def create_reminder(text: str, due_at: str | None = None) -> dict[str, Any]:
        reminder = Reminder(
            text=text,
            due_at=parse_due(due_at) if due_at else None,
            created_at=now(),
        )
        await save_reminder(directory, reminder)
        logger.info("Created reminder %s for user %s", reminder.id, paths.user_id)
        if reminder.due_at:
            return mcp_response(
                f'Reminder created: "{text}" (due: {reminder.due_at.isoformat()}, id: {reminder.id})'
            )
        return mcp_response(f'Reminder created: "{text}" (id: {reminder.id})')

    async def list_reminders(include_completed: bool = False) -> dict[str, Any]:
        reminders = await load_reminders(directory)
        if not include_completed:
            reminders = [r for r in reminders if not r.completed]
        if not reminders:
            return mcp_response("No reminders found.")
        return mcp_response(
            "\n".join(f"- {_status(r)} {r.text} (id: {r.id})" for r in reminders)
        )

    async def complete_reminder(id: str) -> dict[str, Any]:
        reminder = await get_reminder(directory, id)
        if reminder is None:
            raise ValueError(f"Reminder not found: {id}")
        reminder.completed = True
        await save_reminder(directory, reminder)
        return mcp_response(f'Reminder completed: "{reminder.text}"')

    async def check_reminders() -> dict[str, Any]:
        result = await scan_user_data(directory, now())
        if result.empty:
            return mcp_response("Nothing overdue or due in the next 24 hours.")
        return mcp_response(format_scan_results(result))

    dispatcher.register("create_reminder", create_reminder, _CREATE_SCHEMA)
    dispatcher.register("list_reminders", list_reminders, _LIST_SCHEMA)
    dispatcher.register("complete_reminder", complete_reminder, _COMPLETE_SCHEMA)
    dispatcher.register("check_reminders", check_reminders, _CHECK_SCHEMA)
