"""Audit log: the unified, per-user, date-partitioned record of events.

Records incoming messages, finalized engine messages, tool calls with
args and results, proactive triggers and errors. Write-only from the
core's point of view; operators read the JSONL files directly.
"""

from __future__ import annotations

from datetime import UTC, datetime

from aperture.core.schemas import HistoryEntry
from aperture.storage.jsonl import append_jsonl
from aperture.storage.paths import UserPaths


class AuditLog:
    """Appends HistoryEntry records to history/{YYYY-MM-DD}.jsonl."""

    async def record(self, paths: UserPaths, entry: HistoryEntry) -> None:
        """Append one entry to the file for the entry's UTC date.

        Raises StorageError on I/O failure; callers decide whether that
        is fatal.
        """
        when = datetime.fromtimestamp(entry.ts / 1000, tz=UTC)
        await append_jsonl(paths.history_file(when), entry.model_dump(mode="json"))
