"""Server: wires channels, hub and proactive jobs into one process.

  Settings -> AnthropicClient -> EngineFactory -> Hub -> Channels
           -> HeartbeatScheduler + EventWatchers -> Reconciler

Heartbeat and the events watcher start lazily when a user first writes,
and eagerly for every user directory already on disk at startup.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from aperture.channels.base import ChannelRegistry, resolve_target
from aperture.channels.telegram import TelegramChannel
from aperture.config import Settings
from aperture.core.hub import OrchestrationHub
from aperture.engine.anthropic import AnthropicClient, AnthropicEngineFactory
from aperture.engine.base import EngineFactory
from aperture.proactive.heartbeat import HeartbeatScheduler
from aperture.proactive.reconcile import Reconciler
from aperture.proactive.timing import Clock, utc_now
from aperture.proactive.watcher import EventWatcher, ScheduledEvent

logger = logging.getLogger(__name__)


def _existing_users(data_dir: str) -> list[str]:
    users_dir = Path(data_dir) / "users"
    if not users_dir.is_dir():
        return []
    return sorted(p.name for p in users_dir.iterdir() if p.is_dir())


class Server:
    """Owns every long-lived component. ``start``/``stop`` bracket its life."""

    def __init__(
        self,
        settings: Settings,
        engine_factory: EngineFactory | None = None,
        channels: ChannelRegistry | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self._client: AnthropicClient | None = None
        if engine_factory is None:
            self._client = AnthropicClient(settings)
            engine_factory = AnthropicEngineFactory(settings, self._client)

        if channels is None:
            channels = ChannelRegistry()
            if settings.telegram_bot_token:
                channels.register(
                    TelegramChannel(
                        settings.telegram_bot_token,
                        allowed_users=settings.allowed_telegram_users,
                    )
                )
            else:
                logger.warning("TELEGRAM_BOT_TOKEN not set, no chat channel configured")

        self.channels = channels
        self.hub = OrchestrationHub(settings, engine_factory)
        self.heartbeat = HeartbeatScheduler(settings, self.hub, channels, clock=clock)
        self.reconciler = Reconciler(settings, engine_factory, channels, clock=clock)
        self.watchers: dict[str, EventWatcher] = {}
        self._clock = clock
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        if self._client is not None:
            await self._client.start()

        self.channels.on_message(self.hub.handle_message)
        self.hub.set_on_new_user(self.start_proactive_for_user)
        await self.channels.connect_all()

        users = await asyncio.to_thread(_existing_users, self.settings.data_dir)
        for user_id in users:
            await self.start_proactive_for_user(user_id)

        await self.reconciler.start()
        self._started = True
        logger.info(
            "Aperture started: channels=%s, users=%d", self.channels.types, len(users)
        )

    async def stop(self) -> None:
        logger.info("Shutting down Aperture...")
        await self.reconciler.stop()
        for watcher in self.watchers.values():
            await watcher.stop()
        self.watchers.clear()
        await self.heartbeat.stop_all()
        await self.channels.disconnect_all()
        await self.hub.close()
        if self._client is not None:
            await self._client.close()
        self._started = False
        logger.info("Aperture shutdown complete.")

    async def start_proactive_for_user(self, user_id: str) -> None:
        """Start the user's heartbeat and events watcher. Idempotent."""
        await self.heartbeat.start_user(user_id)
        if user_id in self.watchers:
            return
        paths = self.hub.paths_for(user_id)

        async def on_event(event: ScheduledEvent) -> None:
            await self._fire_event(user_id, event)

        watcher = EventWatcher(
            paths.events_dir,
            on_event,
            poll_interval=self.settings.events_poll_interval,
            clock=self._clock,
        )
        self.watchers[user_id] = watcher
        await watcher.start()

    async def _fire_event(self, user_id: str, event: ScheduledEvent) -> None:
        resolved = await resolve_target(self.channels, user_id, event.channel, f"event_{event.id}")
        if resolved is None:
            logger.warning("Cannot resolve channel %r for event %s, dropping", event.channel, event.id)
            return
        channel, session = resolved
        logger.info("Firing %s event %s for %s", event.type, event.id, user_id)
        await self.hub.handle_proactive_prompt(user_id, event.prompt, session, channel)

    def status(self) -> dict[str, Any]:
        return {
            "channels": self.channels.types,
            "users": self.hub.user_ids,
            "heartbeats": self.heartbeat.running_users,
            "watchers": sorted(uid for uid, w in self.watchers.items() if w.running),
            "active_sessions": self.hub.queue.active_keys,
            "reconcile": self.reconciler.running,
        }
