"""Reconciliation job: periodically ask the agent what needs attention.

Runs for the default user on ``reconcile_cron`` (disabled unless set),
with the user's tools available so the agent can read reminders and
notes. Results are parsed into alerts and sent to ``reconcile_channel``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, tzinfo

from aperture.channels.base import ChannelRegistry, resolve_target
from aperture.config import Settings
from aperture.engine.base import EngineFactory, run_once
from aperture.errors import ConfigError, StorageError
from aperture.proactive.alerts import Alert, parse_alerts, send_alerts
from aperture.proactive.timing import Clock, is_quiet_hours, make_cron, run_cron, utc_now
from aperture.storage.documents import QuietHours
from aperture.storage.paths import UserPaths
from aperture.storage.user_data import init_user_data, load_heartbeat, load_soul

logger = logging.getLogger(__name__)

RECONCILE_SYSTEM_PROMPT = """\
You are the Aperture reconciliation agent. Your job is to compare the user's desired state against reality and surface items that need attention.

## Process

1. Check reminders and read the relevant notes
2. Look for:
   - Tasks past their deadline
   - Upcoming deadlines within the next 24 hours
   - Health items that need follow-up
   - Financial items that may need attention (e.g., bills due)
3. Generate a brief alert summary of items needing attention

## Output

One alert per line, in this form:
- [priority] — category — description — Suggested: action

Priority is high, medium or low. Category is one of health, finance, project, todo.
Only return items that genuinely need attention. Don't be noisy."""


class Reconciler:
    def __init__(
        self,
        settings: Settings,
        engine_factory: EngineFactory,
        channels: ChannelRegistry,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings
        self._factory = engine_factory
        self._channels = channels
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.paths = UserPaths(settings.data_dir, settings.default_user)

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        """Start the cron job if ``reconcile_cron`` is set."""
        expr = self._settings.reconcile_cron
        if not expr or self._task is not None:
            return
        try:
            make_cron(expr, self._clock())
        except ValueError as e:
            raise ConfigError(f"Invalid reconcile_cron: {e}", e) from e
        self._task = asyncio.create_task(
            run_cron(expr, await self._zone(), self.run, clock=self._clock, name="reconcile"),
            name="reconcile",
        )
        logger.info("Reconciliation scheduled for %s: %s", self._settings.default_user, expr)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def reconcile(self) -> list[Alert]:
        """One reconciliation pass. Returns the parsed alerts."""
        await init_user_data(self.paths)
        soul = await load_soul(self.paths)
        engine = self._factory.create(soul, self.paths)
        engine.set_system_prompt(RECONCILE_SYSTEM_PROMPT)
        text = await run_once(
            engine,
            f"Current time: {self._clock().isoformat()}\n\n"
            "Please review reminders and notes for items needing attention "
            "and report any alerts.",
            timeout=self._settings.turn_timeout,
        )
        alerts = parse_alerts(text)
        logger.info("Reconciliation for %s produced %d alert(s)", self.paths.user_id, len(alerts))
        return alerts

    async def run(self) -> None:
        """Reconcile and deliver the alerts to ``reconcile_channel``."""
        alerts = await self.reconcile()
        if not alerts:
            return

        spec = self._settings.reconcile_channel
        resolved = await resolve_target(self._channels, self.paths.user_id, spec, "reconcile")
        if resolved is None:
            logger.warning(
                "Reconcile channel %r not available, dropping %d alert(s)",
                spec,
                len(alerts),
            )
            return
        channel, session = resolved
        local_now = self._clock().astimezone(await self._zone())
        quiet = is_quiet_hours(await self._quiet_hours(), local_now)
        await send_alerts(alerts, channel, session, quiet=quiet)

    async def _zone(self) -> tzinfo:
        try:
            return (await load_soul(self.paths)).config.zone
        except StorageError:
            return UTC

    async def _quiet_hours(self) -> QuietHours:
        try:
            return (await load_heartbeat(self.paths)).config.quiet_hours
        except StorageError:
            return QuietHours()
