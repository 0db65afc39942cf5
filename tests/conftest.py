"""Shared fixtures: scripted engines, a recording channel, tmp-dir settings."""

from __future__ import annotations

import asyncio

import pytest

from aperture.config import Settings
from aperture.core.schemas import InboundMessage, Session, StoredMessage
from aperture.engine.base import BaseEngine
from aperture.engine.events import MessageEnd, TextDelta
from aperture.errors import ChannelError
from aperture.storage.paths import UserPaths

# ---------------------------------------------------------------------------
# Scripted engine
# ---------------------------------------------------------------------------


class ScriptedEngine(BaseEngine):
    """Replays canned replies; every prompt pops the next one.

    Emits the user prompt and the assistant reply as MessageEnd events,
    like a real engine. Records what it was given on every run.
    """

    def __init__(
        self,
        replies: list[str] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        super().__init__()
        self.replies = replies if replies is not None else []
        self.delay = delay
        self.error = error
        self.prompts: list[str] = []
        self.system_prompts: list[str] = []
        self.seen_messages: list[list[StoredMessage]] = []
        self.active = 0
        self.max_active = 0

    async def _run(self, text: str) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.prompts.append(text)
            self.system_prompts.append(self.system_prompt)
            self.seen_messages.append(list(self.messages))
            self._emit(MessageEnd(StoredMessage(role="user", content=text)))
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            reply = self.replies.pop(0) if self.replies else "ok"
            self._emit(TextDelta(reply))
            self._emit(
                MessageEnd(
                    StoredMessage(role="assistant", content=[{"type": "text", "text": reply}])
                )
            )
        finally:
            self.active -= 1


class ScriptedFactory:
    """EngineFactory handing out ScriptedEngines.

    Per-user engines share ``replies``; one-shot engines share
    ``one_shot_replies``.
    """

    def __init__(
        self,
        replies: list[str] | None = None,
        one_shot_replies: list[str] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.replies = replies if replies is not None else []
        self.one_shot_replies = one_shot_replies if one_shot_replies is not None else []
        self.delay = delay
        self.engines: dict[str, ScriptedEngine] = {}
        self.one_shots: list[ScriptedEngine] = []
        self.created: list[str] = []

    def create(self, soul, paths) -> ScriptedEngine:
        engine = ScriptedEngine(self.replies, delay=self.delay)
        self.engines[paths.user_id] = engine
        self.created.append(paths.user_id)
        return engine

    def create_one_shot(self, soul, system_prompt: str) -> ScriptedEngine:
        engine = ScriptedEngine(self.one_shot_replies)
        engine.set_system_prompt(system_prompt)
        self.one_shots.append(engine)
        return engine


# ---------------------------------------------------------------------------
# Recording channel
# ---------------------------------------------------------------------------


class RecordingChannel:
    """MessageChannel that records everything it is asked to send."""

    def __init__(self, channel_type: str = "test") -> None:
        self.type = channel_type
        self.sent: list[tuple[str, str]] = []
        self.handlers = []
        self.connected = False
        self.fail_sends = False
        self.fail_dm = False

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def on_message(self, handler) -> None:
        self.handlers.append(handler)

    async def send_thread_reply(self, session: Session, text: str) -> str:
        if self.fail_sends:
            raise ChannelError("send failed")
        self.sent.append((session.session_id, text))
        return f"m{len(self.sent)}"

    async def create_dm_session(self, user_id: str) -> Session:
        if self.fail_dm:
            raise ChannelError("cannot open DM")
        return Session(
            session_id=f"{self.type}:dm:{user_id}",
            channel_type=self.type,
            channel_id=user_id,
            user_id=user_id,
        )

    async def deliver(self, message: InboundMessage, session: Session) -> None:
        """Simulate an inbound message arriving on this channel."""
        for handler in self.handlers:
            await handler(message, session)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_session(session_id: str = "test:c1", user_id: str = "u1") -> Session:
    channel_type, _, channel_id = session_id.partition(":")
    return Session(
        session_id=session_id,
        channel_type=channel_type,
        channel_id=channel_id,
        user_id=user_id,
    )


def make_message(text: str, user_id: str = "u1", msg_id: str = "1") -> InboundMessage:
    return InboundMessage(id=msg_id, channel_id="c1", user_id=user_id, text=text)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        data_dir=str(tmp_path),
        turn_timeout=5.0,
        events_poll_interval=3600.0,
    )


@pytest.fixture
def paths(tmp_path) -> UserPaths:
    return UserPaths(tmp_path, "u1")


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def factory() -> ScriptedFactory:
    return ScriptedFactory()
