"""Scan a user's reminders for actionable items.

Used by the ``check_reminders`` tool so proactive prompts can ground
their briefings in what is overdue or coming up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from aperture.storage.reminders import Reminder, load_reminders

logger = logging.getLogger(__name__)

UPCOMING_WINDOW = timedelta(hours=24)


@dataclass
class ScanResult:
    overdue: list[Reminder] = field(default_factory=list)
    upcoming: list[Reminder] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.overdue and not self.upcoming


def scan_reminders(reminders: list[Reminder], now: datetime) -> ScanResult:
    """Split active reminders with a due date into overdue and next-24h."""
    result = ScanResult()
    for reminder in reminders:
        if reminder.completed or reminder.due_at is None:
            continue
        if reminder.due_at < now:
            result.overdue.append(reminder)
        elif reminder.due_at < now + UPCOMING_WINDOW:
            result.upcoming.append(reminder)
    return result


async def scan_user_data(reminders_dir: Path, now: datetime | None = None) -> ScanResult:
    now = now or datetime.now(UTC)
    result = scan_reminders(await load_reminders(reminders_dir), now)
    if not result.empty:
        logger.debug(
            "Scan results for %s: %d overdue, %d upcoming",
            reminders_dir,
            len(result.overdue),
            len(result.upcoming),
        )
    return result


def format_scan_results(result: ScanResult) -> str:
    parts: list[str] = []
    if result.overdue:
        parts.append("## Overdue Reminders")
        parts.extend(f'- "{r.text}" (due: {r.due_at.isoformat()})' for r in result.overdue)
    if result.upcoming:
        parts.append("## Upcoming Reminders (next 24h)")
        parts.extend(f'- "{r.text}" (due: {r.due_at.isoformat()})' for r in result.upcoming)
    return "\n".join(parts)
