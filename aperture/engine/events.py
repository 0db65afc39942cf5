"""Typed engine events and the per-engine fan-out stream.

An engine run emits its events to every open subscription. Subscriptions
are scoped: ``async with stream.subscribe() as events`` guarantees the
subscription is removed on every exit path, including cancellation.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

from aperture.core.schemas import StoredMessage

logger = logging.getLogger(__name__)


@dataclass
class TextDelta:
    """A chunk of assistant text."""

    text: str


@dataclass
class MessageEnd:
    """A message was finalized and belongs in the session context."""

    message: StoredMessage


@dataclass
class ToolExecutionStart:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolExecutionEnd:
    tool_call_id: str
    tool_name: str
    result: str
    is_error: bool = False


@dataclass
class AgentEnd:
    """End of a run. ``error`` is set when the run failed or was aborted."""

    error: str | None = None


EngineEvent = Union[TextDelta, MessageEnd, ToolExecutionStart, ToolExecutionEnd, AgentEnd]


class Subscription:
    """Async iterator over events, ending after the first AgentEnd."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[EngineEvent] = asyncio.Queue()
        self._done = False

    def push(self, event: EngineEvent) -> None:
        self._queue.put_nowait(event)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> EngineEvent:
        if self._done:
            raise StopAsyncIteration
        event = await self._queue.get()
        if isinstance(event, AgentEnd):
            self._done = True
        return event


class EventStream:
    """Fan-out of engine events to open subscriptions.

    Emitting never blocks: each subscription buffers in an unbounded queue.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []

    def emit(self, event: EngineEvent) -> None:
        for sub in list(self._subscribers):
            sub.push(event)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[Subscription]:
        sub = Subscription()
        self._subscribers.append(sub)
        try:
            yield sub
        finally:
            self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
