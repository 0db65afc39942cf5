"""Filesystem layout for per-user data.

All user data is isolated under DATA_DIR/users/{user_id}/.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_id(value: str) -> str:
    """Make an id safe for use as a single path component."""
    return _UNSAFE_CHARS.sub("_", value)


class UserPaths:
    """Resolve paths within a user's data directory."""

    def __init__(self, data_dir: str | Path, user_id: str) -> None:
        self.data_dir = Path(data_dir)
        self.user_id = user_id

    @property
    def root(self) -> Path:
        return self.data_dir / "users" / sanitize_id(self.user_id)

    @property
    def soul(self) -> Path:
        return self.root / "SOUL.md"

    @property
    def heartbeat(self) -> Path:
        return self.root / "HEARTBEAT.md"

    @property
    def memory(self) -> Path:
        return self.root / "MEMORY.md"

    @property
    def sessions_dir(self) -> Path:
        return self.root / "sessions"

    @property
    def events_dir(self) -> Path:
        return self.root / "events"

    @property
    def reminders_dir(self) -> Path:
        return self.root / "reminders"

    @property
    def notes_dir(self) -> Path:
        return self.root / "notes"

    @property
    def history_dir(self) -> Path:
        return self.root / "history"

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / sanitize_id(session_id)

    def session_context(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "context.jsonl"

    def history_file(self, when: datetime | None = None) -> Path:
        """Daily audit file, partitioned by UTC date."""
        when = when or datetime.now(UTC)
        return self.history_dir / f"{when.astimezone(UTC).date().isoformat()}.jsonl"

    def __repr__(self) -> str:
        return f"UserPaths({str(self.data_dir)!r}, {self.user_id!r})"
