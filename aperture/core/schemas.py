"""Pydantic DTOs shared by the orchestration core.

These models define the records that flow between channels, the hub,
the engine and storage.
"""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MessageRole = Literal["user", "assistant", "tool_result", "compaction_marker"]
HistoryEvent = Literal[
    "msg_in",
    "msg_out",
    "message",
    "tool_start",
    "tool_end",
    "proactive_trigger",
    "proactive_silent",
    "error",
]

COMPACTION_MARKER: MessageRole = "compaction_marker"


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class Session(BaseModel):
    """One logical conversation on one channel."""

    session_id: str
    channel_type: str
    channel_id: str
    thread_id: str | None = None
    user_id: str

    @staticmethod
    def make_id(channel_type: str, channel_id: str, thread_id: str | None = None) -> str:
        """Deterministic session id for a (channel, conversation, thread) triple."""
        if thread_id:
            return f"{channel_type}:{channel_id}:{thread_id}"
        return f"{channel_type}:{channel_id}"

    @classmethod
    def for_conversation(
        cls,
        channel_type: str,
        channel_id: str,
        user_id: str,
        thread_id: str | None = None,
    ) -> Session:
        return cls(
            session_id=cls.make_id(channel_type, channel_id, thread_id),
            channel_type=channel_type,
            channel_id=channel_id,
            thread_id=thread_id,
            user_id=user_id,
        )


class InboundMessage(BaseModel):
    """A message received from a chat platform, already mapped to a user."""

    id: str
    channel_id: str
    thread_id: str | None = None
    user_id: str
    user_name: str = ""
    text: str
    timestamp: int = Field(default_factory=now_ms)


class StoredMessage(BaseModel):
    """One entry of a session's append-only context log.

    Engine-specific extras (tool ids, stop reasons, ...) are kept verbatim.
    """

    model_config = ConfigDict(extra="allow")

    role: MessageRole
    content: str | list[dict[str, Any]]
    timestamp: int = Field(default_factory=now_ms)

    @property
    def is_marker(self) -> bool:
        return self.role == COMPACTION_MARKER

    def text(self) -> str:
        """Plain text of the message: the string, or its joined text parts."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            part.get("text", "")
            for part in self.content
            if isinstance(part, dict) and part.get("type") == "text"
        )


class HistoryEntry(BaseModel):
    """One audit record. Kind-specific payload travels as extra fields."""

    model_config = ConfigDict(extra="allow")

    ts: int = Field(default_factory=now_ms)
    session: str
    event: HistoryEvent
