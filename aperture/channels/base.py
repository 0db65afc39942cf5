"""Channel seam: the protocol every chat back-end implements, and the registry.

Proactive delivery needs a DM session on any channel, so
``create_dm_session`` is part of the protocol rather than something
callers work out per adapter.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from aperture.core.schemas import InboundMessage, Session
from aperture.errors import ChannelError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage, Session], Awaitable[None]]


class MessageChannel(Protocol):
    type: str

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def on_message(self, handler: MessageHandler) -> None: ...

    async def send_thread_reply(self, session: Session, text: str) -> str:
        """Send ``text`` into the session's conversation. Returns the message id."""
        ...

    async def create_dm_session(self, user_id: str) -> Session:
        """Session for a direct conversation with ``user_id``."""
        ...


RegistryHandler = Callable[[InboundMessage, Session, MessageChannel], Awaitable[None]]


class ChannelRegistry:
    """Active channels by type; routes their messages to one handler."""

    def __init__(self) -> None:
        self._channels: dict[str, MessageChannel] = {}
        self._handler: RegistryHandler | None = None

    def register(self, channel: MessageChannel) -> None:
        if channel.type in self._channels:
            raise ChannelError(f'Channel type "{channel.type}" already registered')
        self._channels[channel.type] = channel

        async def _route(message: InboundMessage, session: Session) -> None:
            await self._dispatch(channel, message, session)

        channel.on_message(_route)
        logger.info("Channel registered: %s", channel.type)

    def get(self, channel_type: str) -> MessageChannel | None:
        return self._channels.get(channel_type)

    @property
    def types(self) -> list[str]:
        return list(self._channels)

    def on_message(self, handler: RegistryHandler) -> None:
        self._handler = handler

    async def connect_all(self) -> None:
        for channel_type, channel in self._channels.items():
            logger.info("Connecting channel %s", channel_type)
            await channel.connect()

    async def disconnect_all(self) -> None:
        for channel_type, channel in self._channels.items():
            logger.info("Disconnecting channel %s", channel_type)
            try:
                await channel.disconnect()
            except Exception:
                logger.exception("Failed to disconnect channel %s", channel_type)

    async def _dispatch(
        self, channel: MessageChannel, message: InboundMessage, session: Session
    ) -> None:
        if self._handler is None:
            logger.warning("No message handler registered, dropping message %s", message.id)
            return
        try:
            await self._handler(message, session, channel)
        except Exception:
            logger.exception("Message handler error for session %s", session.session_id)


async def resolve_target(
    registry: ChannelRegistry, user_id: str, spec: str, suffix: str
) -> tuple[MessageChannel, Session] | None:
    """Turn ``type:DM`` or ``type:target`` into a channel and session.

    Non-DM targets get the session ``{type}:{target}:{suffix}``. Returns
    None when the channel is not registered or the DM cannot be opened.
    """
    channel_type, _, target = spec.partition(":")
    channel = registry.get(channel_type)
    if channel is None or not target:
        return None

    if target == "DM":
        try:
            return channel, await channel.create_dm_session(user_id)
        except Exception:
            logger.exception("DM session creation failed on %s for %s", channel_type, user_id)
            return None

    return channel, Session(
        session_id=f"{channel_type}:{target}:{suffix}",
        channel_type=channel_type,
        channel_id=target,
        user_id=user_id,
    )
