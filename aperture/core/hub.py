"""Orchestration hub: routes inbound and proactive prompts through turns.

History (``history/{date}.jsonl``) is the single unified log of
everything: incoming messages, finalized engine messages, tool calls,
proactive triggers and errors. Context (``sessions/{id}/context.jsonl``)
is the append-only conversation record of one session; only its tail is
fed to the engine, while MEMORY.md provides long-term memory through the
system prompt.

Every turn for a session runs on that session's WorkQueue lane, so a
conversation never has two turns in flight.

Each user has one engine, shared by all of that user's sessions behind a
per-user lock. Sessions of different users never wait on each other, but
a stuck turn in one session delays the same user's other sessions by up
to ``turn_timeout``. Background compaction is bounded by the same
timeout, so no lane is held longer than that.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from aperture.channels.base import MessageChannel
from aperture.config import Settings
from aperture.core.compactor import MemoryCompactor
from aperture.core.prompts import build_system_prompt
from aperture.core.queue import WorkQueue
from aperture.core.schemas import HistoryEntry, InboundMessage, Session
from aperture.core.sessions import SessionStore
from aperture.engine.base import Engine, EngineFactory
from aperture.engine.events import MessageEnd, TextDelta, ToolExecutionEnd, ToolExecutionStart
from aperture.errors import StorageError, TurnTimeoutError
from aperture.storage.documents import Soul
from aperture.storage.history import AuditLog
from aperture.storage.paths import UserPaths
from aperture.storage.user_data import init_user_data, load_memory, load_soul

logger = logging.getLogger(__name__)

APOLOGY = "Sorry, I encountered an error processing your message."
SILENT = "[SILENT]"

NewUserCallback = Callable[[str], Awaitable[None] | None]


@dataclass
class UserContext:
    """Everything the hub keeps per user, created once on first contact."""

    user_id: str
    paths: UserPaths
    soul: Soul
    store: SessionStore
    engine: Engine
    # One engine per user: turns from different sessions take turns on it
    engine_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class OrchestrationHub:
    """Composition root for turns.

    Owns the user contexts, the work queue and the background compaction
    tasks. Callers hand in messages or proactive prompts; the hub handles
    everything through to the channel reply and the audit trail.
    """

    def __init__(
        self,
        settings: Settings,
        engine_factory: EngineFactory,
        compactor: MemoryCompactor | None = None,
        audit: AuditLog | None = None,
        queue: WorkQueue | None = None,
    ) -> None:
        self._settings = settings
        self._factory = engine_factory
        self._compactor = compactor or MemoryCompactor(
            engine_factory,
            threshold=settings.compaction_threshold,
            keep_recent=settings.compaction_keep_recent,
            timeout=settings.turn_timeout,
        )
        self._audit = audit or AuditLog()
        self.queue = queue or WorkQueue()
        self._users: dict[str, UserContext] = {}
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._on_new_user: NewUserCallback | None = None
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def set_on_new_user(self, callback: NewUserCallback) -> None:
        """Register a callback fired once per user, on first contact."""
        self._on_new_user = callback

    @property
    def user_ids(self) -> list[str]:
        return list(self._users)

    def paths_for(self, user_id: str) -> UserPaths:
        return UserPaths(self._settings.data_dir, user_id)

    async def get_or_create_user(self, user_id: str) -> UserContext:
        """Return the user's context, creating it exactly once.

        Concurrent first contact from several sessions is serialized on a
        per-user lock; only the creator fires the new-user callback.
        """
        ctx = self._users.get(user_id)
        if ctx is not None:
            return ctx

        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            ctx = self._users.get(user_id)
            if ctx is not None:
                return ctx
            paths = self.paths_for(user_id)
            await init_user_data(paths)
            soul = await load_soul(paths)
            ctx = UserContext(
                user_id=user_id,
                paths=paths,
                soul=soul,
                store=SessionStore(paths, window=self._settings.context_window),
                engine=self._factory.create(soul, paths),
            )
            self._users[user_id] = ctx

        logger.info("User context created for %s (model=%s)", user_id, soul.config.llm.model)
        await self._notify_new_user(user_id)
        return ctx

    async def _notify_new_user(self, user_id: str) -> None:
        if self._on_new_user is None:
            return
        try:
            result = self._on_new_user(user_id)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("New-user callback failed for %s", user_id)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_message(
        self,
        message: InboundMessage,
        session: Session,
        channel: MessageChannel,
    ) -> None:
        """Handle an incoming message from any channel."""

        async def work() -> None:
            await self._process_message(message, session, channel)

        await self.queue.enqueue(session.session_id, work)

    async def handle_proactive_prompt(
        self,
        user_id: str,
        prompt: str,
        session: Session,
        channel: MessageChannel,
    ) -> None:
        """Handle a proactive prompt (heartbeat schedule or dropped event)."""

        async def work() -> None:
            await self._process_proactive(user_id, prompt, session, channel)

        await self.queue.enqueue(session.session_id, work)

    async def close(self) -> None:
        """Wait for background compactions to finish."""
        if self._background:
            logger.info("Waiting for %d background compaction(s)", len(self._background))
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    async def _process_message(
        self,
        message: InboundMessage,
        session: Session,
        channel: MessageChannel,
    ) -> None:
        paths = self.paths_for(session.user_id)
        try:
            await self._record(
                paths,
                HistoryEntry(
                    ts=message.timestamp,
                    session=session.session_id,
                    event="msg_in",
                    user_id=message.user_id,
                    text=message.text,
                ),
            )
            ctx = await self.get_or_create_user(session.user_id)
            reply = await self._run_turn(ctx, message.text, session)
            await self._deliver(ctx, reply, session, channel, is_proactive=False)
        except Exception as e:
            logger.exception("Failed to process message for session %s", session.session_id)
            await self._record_error(paths, session, e)
            try:
                await channel.send_thread_reply(session, APOLOGY)
            except Exception:
                logger.warning(
                    "Could not send apology to %s", session.session_id, exc_info=True
                )

    async def _process_proactive(
        self,
        user_id: str,
        prompt: str,
        session: Session,
        channel: MessageChannel,
    ) -> None:
        paths = self.paths_for(user_id)
        try:
            await self._record(
                paths,
                HistoryEntry(session=session.session_id, event="proactive_trigger", prompt=prompt),
            )
            ctx = await self.get_or_create_user(user_id)
            reply = await self._run_turn(ctx, prompt, session)
            await self._deliver(ctx, reply, session, channel, is_proactive=True)
        except Exception as e:
            logger.exception("Failed to process proactive prompt for %s", user_id)
            await self._record_error(paths, session, e)

    async def _run_turn(self, ctx: UserContext, text: str, session: Session) -> str:
        """One full engine run. Returns the accumulated reply text."""
        session_id = session.session_id
        timeout = self._settings.turn_timeout

        async with ctx.engine_lock:
            memory = await load_memory(ctx.paths)
            ctx.engine.set_system_prompt(build_system_prompt(ctx.soul, memory))
            ctx.engine.replace_messages(await ctx.store.get_recent_context(session_id))

            finished = False
            try:
                reply = await asyncio.wait_for(self._drive(ctx, text, session), timeout=timeout)
                finished = True
            except asyncio.TimeoutError as e:
                raise TurnTimeoutError(
                    f"Turn for {session_id} did not finish within {timeout:.0f}s", e
                ) from e
            finally:
                # Failure, timeout or cancellation: leave the engine idle
                if not finished:
                    await ctx.engine.abort()

        self._schedule_compaction(ctx, session_id)
        return reply

    async def _drive(self, ctx: UserContext, text: str, session: Session) -> str:
        """Prompt the engine and drain its events until the run ends."""
        session_id = session.session_id
        parts: list[str] = []

        async with ctx.engine.subscribe() as events:
            await ctx.engine.prompt(text)
            async for event in events:
                if isinstance(event, TextDelta):
                    parts.append(event.text)
                elif isinstance(event, MessageEnd):
                    # Context persistence failures propagate and fail the turn
                    stored = await ctx.store.append_context(session_id, event.message)
                    await self._record(
                        ctx.paths,
                        HistoryEntry(
                            ts=stored.timestamp,
                            session=session_id,
                            event="message",
                            message=stored.model_dump(mode="json"),
                        ),
                    )
                elif isinstance(event, ToolExecutionStart):
                    await self._record(
                        ctx.paths,
                        HistoryEntry(
                            session=session_id,
                            event="tool_start",
                            tool=event.tool_name,
                            tool_call_id=event.tool_call_id,
                            args=event.args,
                        ),
                    )
                elif isinstance(event, ToolExecutionEnd):
                    await self._record(
                        ctx.paths,
                        HistoryEntry(
                            session=session_id,
                            event="tool_end",
                            tool=event.tool_name,
                            tool_call_id=event.tool_call_id,
                            is_error=event.is_error,
                            result=event.result,
                        ),
                    )

        await ctx.engine.wait_for_idle()
        return "".join(parts)

    async def _deliver(
        self,
        ctx: UserContext,
        reply: str,
        session: Session,
        channel: MessageChannel,
        is_proactive: bool,
    ) -> None:
        text = reply.strip()
        if is_proactive and text == SILENT:
            logger.debug("Proactive check for %s: silent response", session.session_id)
            await self._record(
                ctx.paths, HistoryEntry(session=session.session_id, event="proactive_silent")
            )
            return
        if not text:
            return
        message_id = await channel.send_thread_reply(session, text)
        await self._record(
            ctx.paths,
            HistoryEntry(
                session=session.session_id,
                event="msg_out",
                text=text,
                message_id=message_id,
            ),
        )

    def _schedule_compaction(self, ctx: UserContext, session_id: str) -> None:
        """Run compaction on the session's lane, behind the current turn."""

        async def work() -> bool:
            return await self._compactor.maybe_compact(ctx.paths, ctx.soul, session_id, ctx.store)

        task = asyncio.create_task(
            self.queue.enqueue(session_id, work), name=f"compact-{session_id}"
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _record(self, paths: UserPaths, entry: HistoryEntry) -> None:
        """Append to the audit log. Failures are logged, never raised."""
        try:
            await self._audit.record(paths, entry)
        except StorageError:
            logger.exception("Failed to log %s history entry for %s", entry.event, entry.session)

    async def _record_error(self, paths: UserPaths, session: Session, error: Exception) -> None:
        await self._record(
            paths,
            HistoryEntry(
                session=session.session_id,
                event="error",
                error=str(error),
                code=getattr(error, "code", type(error).__name__),
            ),
        )
