"""System prompt assembly from SOUL.md and MEMORY.md."""

from __future__ import annotations

from datetime import UTC, datetime

from aperture.storage.documents import Soul


def build_system_prompt(soul: Soul, memory: str, now: datetime | None = None) -> str:
    """Persona body, then long-term memory (if any), then the current time.

    Rebuilt before every turn so edits to MEMORY.md take effect at once.
    """
    now = now or datetime.now(UTC)
    parts = [soul.body]

    if memory.strip():
        parts += ["", "## Long-term Memory", memory.strip()]

    local = now.astimezone(soul.config.zone)
    parts += [
        "",
        "## Current Time",
        f"The current time is: {now.astimezone(UTC).isoformat()}",
        f"Local time: {local.strftime('%Y-%m-%d %H:%M (%A)')}",
        f"Timezone: {soul.config.timezone}",
    ]
    return "\n".join(parts)
