"""Heartbeat scheduler: per-user cron jobs that prompt the agent proactively.

Each user's HEARTBEAT.md lists schedules; every schedule becomes one
asyncio task driven by croniter in the user's timezone. Firings are gated
by a daily cap (reset lazily on the first firing of a new local day) and
by quiet hours.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, date, tzinfo
from typing import TYPE_CHECKING

from aperture.channels.base import ChannelRegistry, resolve_target
from aperture.config import Settings
from aperture.errors import StorageError
from aperture.proactive.timing import Clock, is_quiet_hours, make_cron, run_cron, utc_now
from aperture.storage.documents import HeartbeatConfig, Schedule
from aperture.storage.paths import UserPaths
from aperture.storage.user_data import load_heartbeat, load_soul

if TYPE_CHECKING:
    from aperture.core.hub import OrchestrationHub

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatRunner:
    """Live heartbeat state for one user. Mutated only by its own jobs."""

    user_id: str
    config: HeartbeatConfig
    zone: tzinfo
    last_reset_date: date
    proactive_count_today: int = 0
    jobs: dict[str, asyncio.Task] = field(default_factory=dict)

    def reset_if_new_day(self, today: date) -> bool:
        if self.last_reset_date == today:
            return False
        self.proactive_count_today = 0
        self.last_reset_date = today
        return True


class HeartbeatScheduler:
    def __init__(
        self,
        settings: Settings,
        hub: OrchestrationHub,
        channels: ChannelRegistry,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings
        self._hub = hub
        self._channels = channels
        self._clock = clock
        self._runners: dict[str, HeartbeatRunner] = {}
        self._lock = asyncio.Lock()

    def is_running(self, user_id: str) -> bool:
        return user_id in self._runners

    def runner(self, user_id: str) -> HeartbeatRunner | None:
        return self._runners.get(user_id)

    @property
    def running_users(self) -> list[str]:
        return list(self._runners)

    async def start_user(self, user_id: str) -> None:
        """Load the user's heartbeat and register its jobs. Idempotent.

        A disabled or unreadable heartbeat document is logged and skipped.
        """
        async with self._lock:
            if user_id in self._runners:
                return
            paths = UserPaths(self._settings.data_dir, user_id)
            try:
                data = await load_heartbeat(paths)
            except StorageError:
                logger.warning("Failed to load HEARTBEAT.md for %s, skipping", user_id, exc_info=True)
                return
            if not data.config.enabled:
                logger.info("Heartbeat disabled for user %s", user_id)
                return

            try:
                zone = (await load_soul(paths)).config.zone
            except StorageError:
                logger.warning("No readable SOUL.md for %s, heartbeat runs in UTC", user_id)
                zone = UTC

            now = self._clock().astimezone(zone)
            runner = HeartbeatRunner(
                user_id=user_id,
                config=data.config,
                zone=zone,
                last_reset_date=now.date(),
            )
            for schedule in data.schedules:
                if schedule.id in runner.jobs:
                    logger.warning("Duplicate schedule id %r for %s, skipping", schedule.id, user_id)
                    continue
                try:
                    make_cron(schedule.cron, now)
                except ValueError as e:
                    logger.warning("Skipping schedule %r for %s: %s", schedule.id, user_id, e)
                    continue
                runner.jobs[schedule.id] = asyncio.create_task(
                    self._job(runner, schedule),
                    name=f"heartbeat-{user_id}-{schedule.id}",
                )
                logger.info(
                    "Cron job registered for %s: %s (%s)", user_id, schedule.id, schedule.cron
                )

            self._runners[user_id] = runner
            logger.info("Heartbeat started for %s (%d jobs)", user_id, len(runner.jobs))

    async def stop_user(self, user_id: str) -> None:
        runner = self._runners.pop(user_id, None)
        if runner is None:
            return
        for task in runner.jobs.values():
            task.cancel()
        if runner.jobs:
            await asyncio.gather(*runner.jobs.values(), return_exceptions=True)
        logger.info("Heartbeat stopped for %s", user_id)

    async def stop_all(self) -> None:
        for user_id in list(self._runners):
            await self.stop_user(user_id)

    async def _job(self, runner: HeartbeatRunner, schedule: Schedule) -> None:
        async def fire() -> None:
            await self.fire(runner.user_id, schedule)

        await run_cron(
            schedule.cron,
            runner.zone,
            fire,
            clock=self._clock,
            name=f"{runner.user_id}/{schedule.id}",
        )

    async def fire(self, user_id: str, schedule: Schedule) -> bool:
        """Run one firing of ``schedule``. Returns True if a prompt was sent."""
        runner = self._runners.get(user_id)
        if runner is None:
            return False

        local_now = self._clock().astimezone(runner.zone)
        if runner.reset_if_new_day(local_now.date()):
            logger.debug("Daily proactive counter reset for %s", user_id)

        if runner.proactive_count_today >= runner.config.max_proactive_per_day:
            logger.debug("Daily proactive limit reached for %s (%s)", user_id, schedule.id)
            return False

        if is_quiet_hours(runner.config.quiet_hours, local_now):
            logger.debug("In quiet hours for %s, skipping %s", user_id, schedule.id)
            return False

        resolved = await resolve_target(self._channels, user_id, schedule.channel, "proactive")
        if resolved is None:
            logger.warning("Cannot resolve channel %r for schedule %s", schedule.channel, schedule.id)
            return False
        channel, session = resolved

        runner.proactive_count_today += 1
        logger.info("Executing proactive schedule %s for %s", schedule.id, user_id)
        await self._hub.handle_proactive_prompt(user_id, schedule.prompt, session, channel)
        return True
