"""Session context store.

Each session has one append-only ``context.jsonl``: the full record of
the conversation, never compacted or rewritten. The engine only ever
sees the most recent window of it; long-term memory lives in MEMORY.md.
"""

from __future__ import annotations

import logging
from typing import Iterable

from pydantic import ValidationError

from aperture.core.schemas import StoredMessage
from aperture.errors import StorageError
from aperture.storage.jsonl import append_jsonl, read_jsonl
from aperture.storage.paths import UserPaths

logger = logging.getLogger(__name__)


class SessionStore:
    """Per-user store of session context logs.

    Timestamps are kept non-decreasing per session: an append whose
    timestamp is older than the last stored one is clamped to it.
    """

    def __init__(self, paths: UserPaths, window: int = 50) -> None:
        if window <= 0:
            raise ValueError("window must be > 0")
        self.paths = paths
        self.window = window
        self._last_ts: dict[str, int] = {}

    async def load_context(self, session_id: str) -> list[StoredMessage]:
        """All stored messages for a session, oldest first. [] if none."""
        path = self.paths.session_context(session_id)
        raw = await read_jsonl(path)
        try:
            return [StoredMessage.model_validate(entry) for entry in raw]
        except ValidationError as e:
            raise StorageError(f"Malformed context entry in {path}", e) from e

    async def get_recent_context(self, session_id: str) -> list[StoredMessage]:
        """The last ``window`` messages. Read-only."""
        messages = await self.load_context(session_id)
        if len(messages) <= self.window:
            return messages
        logger.debug(
            "Context window applied for %s: %d of %d messages",
            session_id,
            self.window,
            len(messages),
        )
        return messages[-self.window:]

    async def append_context(self, session_id: str, message: StoredMessage) -> StoredMessage:
        """Append one message. Returns the message as stored.

        Raises StorageError on I/O failure.
        """
        last = await self._last_timestamp(session_id)
        if message.timestamp < last:
            message = message.model_copy(update={"timestamp": last})
        await append_jsonl(
            self.paths.session_context(session_id), message.model_dump(mode="json")
        )
        self._last_ts[session_id] = message.timestamp
        return message

    async def append_context_batch(
        self, session_id: str, messages: Iterable[StoredMessage]
    ) -> None:
        for message in messages:
            await self.append_context(session_id, message)

    async def _last_timestamp(self, session_id: str) -> int:
        if session_id not in self._last_ts:
            stored = await self.load_context(session_id)
            self._last_ts[session_id] = max((m.timestamp for m in stored), default=0)
        return self._last_ts[session_id]
