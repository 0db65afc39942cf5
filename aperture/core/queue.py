"""Per-conversation work queue.

Serializes turns that share a key (a session id) while letting different
keys run concurrently. Works for one key run strictly in enqueue order
and never overlap; a failing work is reported to its own caller and does
not stop the works queued behind it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Lane:
    # asyncio.Lock wakes waiters in FIFO order
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending: int = 0


class WorkQueue:
    """Keyed FIFO serialization of async work."""

    def __init__(self) -> None:
        self._lanes: dict[str, _Lane] = {}

    async def enqueue(self, key: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run ``work()`` once every earlier work for ``key`` has finished.

        Returns the work's result or raises its error. No retry.
        """
        lane = self._lanes.get(key)
        if lane is None:
            lane = self._lanes[key] = _Lane()
        lane.pending += 1
        try:
            async with lane.lock:
                return await work()
        finally:
            lane.pending -= 1
            if lane.pending == 0 and self._lanes.get(key) is lane:
                del self._lanes[key]
                logger.debug("Queue lane %s drained", key)

    def pending(self, key: str) -> int:
        """Number of works queued or running for ``key``."""
        lane = self._lanes.get(key)
        return lane.pending if lane else 0

    @property
    def active_keys(self) -> list[str]:
        return list(self._lanes)
