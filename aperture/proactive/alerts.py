"""Reconciliation alerts: parse model output, format and deliver.

Model output is free text. Lines following

    - [high] — health — Refill prescription — Suggested: call the pharmacy

become structured alerts; when no line parses but the text is not
empty, the whole reply becomes one ``medium``/``general`` alert so
nothing the model reported is lost.
"""

from __future__ import annotations

import logging
import re
from typing import Literal

from pydantic import BaseModel

from aperture.channels.base import MessageChannel
from aperture.core.schemas import Session

logger = logging.getLogger(__name__)

Priority = Literal["high", "medium", "low"]

_FALLBACK_LIMIT = 500

_ALERT_RE = re.compile(
    r"^\s*[-*]?\s*\**\[?(high|medium|low)\]?\**\s*[—:-]\s*"
    r"\**\[?([\w/]+)\]?\**\s*[—:-]\s*(.+)$",
    re.IGNORECASE,
)
_SUGGESTED_RE = re.compile(r"\s*[—-]\s*Suggest(?:ed)?:?\s*", re.IGNORECASE)

_ICONS = {"high": "[!]", "medium": "[~]", "low": "[.]"}


class Alert(BaseModel):
    priority: Priority
    category: str
    description: str
    action: str = ""


def parse_alerts(text: str) -> list[Alert]:
    """Best-effort parse of alert lines, with a single catch-all fallback."""
    alerts: list[Alert] = []
    for line in text.splitlines():
        match = _ALERT_RE.match(line)
        if not match:
            continue
        parts = _SUGGESTED_RE.split(match.group(3), maxsplit=1)
        alerts.append(
            Alert(
                priority=match.group(1).lower(),
                category=match.group(2).lower(),
                description=parts[0].strip(),
                action=parts[1].strip() if len(parts) > 1 else "",
            )
        )

    if not alerts and text.strip():
        alerts.append(
            Alert(
                priority="medium",
                category="general",
                description=text.strip()[:_FALLBACK_LIMIT],
            )
        )
    return alerts


def format_alerts(alerts: list[Alert]) -> str:
    if not alerts:
        return ""
    lines = []
    for alert in alerts:
        action = f" -> {alert.action}" if alert.action else ""
        lines.append(f"{_ICONS[alert.priority]} {alert.category}: {alert.description}{action}")
    return "Aperture Reconciliation:\n" + "\n".join(lines)


async def send_alerts(
    alerts: list[Alert],
    channel: MessageChannel,
    session: Session,
    quiet: bool = False,
) -> bool:
    """Send alerts as one message. During quiet hours only high priority goes out.

    Returns True if a message was sent. Send failures are logged.
    """
    if quiet:
        alerts = [a for a in alerts if a.priority == "high"]
    if not alerts:
        return False
    try:
        await channel.send_thread_reply(session, format_alerts(alerts))
    except Exception:
        logger.exception("Failed to send %d alert(s) to %s", len(alerts), session.session_id)
        return False
    logger.info("Sent %d alert(s) to %s", len(alerts), session.session_id)
    return True
