"""Engine contract and the task-based base implementation.

The hub drives an engine through a narrow interface: set the system
prompt, replace the message list, start a run with ``prompt()``, consume
events through ``subscribe()``, then ``wait_for_idle()``. Subclasses only
implement ``_run``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from typing import Protocol, Sequence

from aperture.core.schemas import StoredMessage
from aperture.engine.events import AgentEnd, EngineEvent, EventStream, Subscription, TextDelta
from aperture.errors import AgentError, TurnTimeoutError
from aperture.storage.documents import Soul
from aperture.storage.paths import UserPaths

logger = logging.getLogger(__name__)


class Engine(Protocol):
    def set_system_prompt(self, text: str) -> None: ...

    def replace_messages(self, messages: Sequence[StoredMessage]) -> None: ...

    async def prompt(self, text: str) -> None: ...

    async def wait_for_idle(self) -> None: ...

    async def abort(self) -> None: ...

    def subscribe(self) -> AbstractAsyncContextManager[Subscription]: ...


class EngineFactory(Protocol):
    def create(self, soul: Soul, paths: UserPaths) -> Engine:
        """Long-lived engine for one user, with that user's tools."""
        ...

    def create_one_shot(self, soul: Soul, system_prompt: str) -> Engine:
        """Tool-free engine for a single background call."""
        ...


class BaseEngine:
    """Runs ``_run`` as a background task and fans out its events.

    Every run ends with exactly one AgentEnd event, whether it completed,
    failed or was aborted.
    """

    def __init__(self) -> None:
        self.system_prompt = ""
        self.messages: list[StoredMessage] = []
        self._events = EventStream()
        self._task: asyncio.Task | None = None

    def set_system_prompt(self, text: str) -> None:
        self.system_prompt = text

    def replace_messages(self, messages: Sequence[StoredMessage]) -> None:
        self.messages = list(messages)

    def subscribe(self) -> AbstractAsyncContextManager[Subscription]:
        return self._events.subscribe()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def prompt(self, text: str) -> None:
        """Start a run for ``text``. Returns once the run is scheduled."""
        if self.is_running:
            raise AgentError("Engine is already running")
        self._task = asyncio.create_task(self._execute(text), name=f"engine-{id(self)}")

    async def wait_for_idle(self) -> None:
        """Wait for the current run. Re-raises the run's error, if any."""
        task = self._task
        if task is None:
            return
        await asyncio.wait([task])
        if self._task is task:
            self._task = None
        if task.cancelled():
            raise AgentError("Engine run was aborted")
        error = task.exception()
        if error is not None:
            raise error

    async def abort(self) -> None:
        """Cancel the current run, if any, and wait for it to unwind."""
        task = self._task
        if task is None:
            return
        self._task = None
        if not task.done():
            task.cancel()
        await asyncio.wait([task])

    def _emit(self, event: EngineEvent) -> None:
        self._events.emit(event)

    async def _execute(self, text: str) -> None:
        try:
            await self._run(text)
        except asyncio.CancelledError:
            self._emit(AgentEnd(error="aborted"))
            raise
        except Exception as e:
            self._emit(AgentEnd(error=str(e) or type(e).__name__))
            raise
        self._emit(AgentEnd())

    async def _run(self, text: str) -> None:
        raise NotImplementedError


async def run_once(engine: Engine, text: str, timeout: float | None = None) -> str:
    """Prompt ``engine`` once and return the collected reply text.

    With ``timeout`` set, a run that has not finished in time raises
    TurnTimeoutError. The engine is aborted on every exit but a clean one.
    """

    async def collect() -> str:
        parts: list[str] = []
        async with engine.subscribe() as events:
            await engine.prompt(text)
            async for event in events:
                if isinstance(event, TextDelta):
                    parts.append(event.text)
        await engine.wait_for_idle()
        return "".join(parts).strip()

    finished = False
    try:
        if timeout is None:
            reply = await collect()
        else:
            try:
                reply = await asyncio.wait_for(collect(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise TurnTimeoutError(
                    f"Engine run did not finish within {timeout:.0f}s", e
                ) from e
        finished = True
        return reply
    finally:
        if not finished:
            await engine.abort()
