"""Time helpers shared by the proactive jobs: quiet hours and cron loops."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, tzinfo

from croniter import croniter

from aperture.storage.documents import QuietHours

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def minute_of_day(when: datetime) -> int:
    return when.hour * 60 + when.minute


def is_quiet_hours(quiet: QuietHours, now: datetime) -> bool:
    """True if ``now`` (already in the user's timezone) is in [start, end).

    A window with start > end wraps past midnight; start == end is empty.
    """
    current = minute_of_day(now)
    start, end = quiet.start_minute, quiet.end_minute
    if start <= end:
        return start <= current < end
    return current >= start or current < end


def make_cron(expr: str, start: datetime) -> croniter:
    """Cron iterator for a 5-field, or 6-field (leading seconds), expression.

    Raises ValueError for invalid expressions.
    """
    fields = expr.split()
    if len(fields) not in (5, 6):
        raise ValueError(f"Expected 5 or 6 cron fields, got {len(fields)}: {expr!r}")
    try:
        return croniter(expr, start, second_at_beginning=len(fields) == 6)
    except (ValueError, KeyError) as e:
        raise ValueError(f"Invalid cron expression {expr!r}: {e}") from e


async def run_cron(
    expr: str,
    zone: tzinfo,
    job: Callable[[], Awaitable[object]],
    clock: Clock = utc_now,
    name: str = "cron",
) -> None:
    """Call ``job`` at every cron occurrence in ``zone`` until cancelled.

    Occurrences missed while a job runs are skipped, not replayed. Job
    errors are logged; the loop keeps going.
    """
    last = clock().astimezone(zone)
    make_cron(expr, last)
    while True:
        try:
            base = max(clock().astimezone(zone), last)
            fire_at = make_cron(expr, base).get_next(datetime)
            delay = (fire_at - clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            last = fire_at
            await job()
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Cron job %s failed", name)
