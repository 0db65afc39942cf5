"""Event watcher: fire prompts from JSON files dropped in a user's events/.

Event types:
- immediate: fire now, then delete the file
- one-shot: fire once ``triggerAt`` has passed, then delete the file
- periodic: left alone; recurring prompts belong in HEARTBEAT.md

A file is deleted only after its event fired successfully, so a crash in
between re-fires it on the next poll.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from aperture.proactive.timing import Clock, utc_now

logger = logging.getLogger(__name__)


class ScheduledEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: Literal["immediate", "one-shot", "periodic"]
    prompt: str
    channel: str
    trigger_at: datetime | None = Field(None, alias="triggerAt")
    created_at: datetime | None = Field(None, alias="createdAt")
    cron: str | None = None

    @field_validator("trigger_at", "created_at")
    @classmethod
    def _naive_as_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _one_shot_needs_trigger(self) -> ScheduledEvent:
        if self.type == "one-shot" and self.trigger_at is None:
            raise ValueError("one-shot events require triggerAt")
        return self


EventCallback = Callable[[ScheduledEvent], Awaitable[None]]


def _list_event_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(directory.glob("*.json"))


class EventWatcher:
    """Polls one events directory: once on start, then every poll_interval."""

    def __init__(
        self,
        events_dir: Path,
        on_event: EventCallback,
        poll_interval: float = 30.0,
        clock: Clock = utc_now,
    ) -> None:
        self.events_dir = Path(events_dir)
        self._on_event = on_event
        self._poll_interval = poll_interval
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._poll_loop(), name=f"events-{self.events_dir}")
        logger.info(
            "Events watcher started for %s (poll every %.0fs)", self.events_dir, self._poll_interval
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll()
                await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Events poll failed for %s", self.events_dir)
                await asyncio.sleep(self._poll_interval)

    async def poll(self) -> int:
        """Process every event file once. Returns the number fired."""
        try:
            files = await asyncio.to_thread(_list_event_files, self.events_dir)
        except OSError:
            logger.warning("Cannot list %s", self.events_dir, exc_info=True)
            return 0

        fired = 0
        for path in files:
            try:
                if await self._process(path):
                    fired += 1
            except Exception:
                logger.exception("Failed to process event file %s", path.name)
        return fired

    async def _process(self, path: Path) -> bool:
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        try:
            event = ScheduledEvent.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Skipping malformed event file %s: %s", path.name, e)
            return False

        if event.type == "periodic":
            return False
        if event.type == "one-shot" and event.trigger_at > self._clock():
            return False

        await self._on_event(event)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.info("%s event %s processed and removed", event.type, event.id)
        return True
