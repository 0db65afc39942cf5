"""Parsers for the per-user Markdown documents: SOUL.md and HEARTBEAT.md.

Both documents carry a small frontmatter block between ``---`` lines
(flat ``key: value`` pairs plus one nested level) followed by a Markdown
body. HEARTBEAT.md lists its schedules in the body as blocks:

    - id: morning-briefing
      cron: "0 9 * * *"
      channel: telegram:DM
      prompt: "Review my reminders and upcoming events."

The grammar is line-oriented and parsed explicitly; no YAML engine.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z_][\w-]*$")
_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_hhmm(value: str) -> int:
    """Parse "HH:MM" into minute-of-day. Raises ValueError if malformed."""
    match = _HHMM_RE.match(value.strip())
    if not match:
        raise ValueError(f"Expected HH:MM, got {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"Time out of range: {value!r}")
    return hours * 60 + minutes


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class LlmConfig(BaseModel):
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5-20250514"


class SoulConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field("default", alias="userId")
    agent_name: str = Field("Aperture", alias="agentName")
    language: str = "en"
    timezone: str = "UTC"
    llm: LlmConfig = Field(default_factory=LlmConfig)

    @property
    def zone(self) -> tzinfo:
        """The user's timezone; UTC if the configured name is unknown."""
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back to UTC", self.timezone)
            return UTC


class Soul(BaseModel):
    """Parsed SOUL.md: persona config + free-form instructions body."""

    config: SoulConfig = Field(default_factory=SoulConfig)
    body: str = ""


class QuietHours(BaseModel):
    start: str = "22:00"
    end: str = "08:00"

    @field_validator("start", "end")
    @classmethod
    def _check_hhmm(cls, value: str) -> str:
        parse_hhmm(value)
        return value.strip()

    @property
    def start_minute(self) -> int:
        return parse_hhmm(self.start)

    @property
    def end_minute(self) -> int:
        return parse_hhmm(self.end)


class HeartbeatConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = True
    max_proactive_per_day: int = Field(10, alias="maxProactivePerDay", ge=0)
    quiet_hours: QuietHours = Field(default_factory=QuietHours, alias="quietHours")


class Schedule(BaseModel):
    """One proactive trigger definition. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    id: str
    cron: str
    channel: str  # "channelType:target" or "channelType:DM"
    prompt: str

    @property
    def channel_type(self) -> str:
        return self.channel.partition(":")[0]

    @property
    def target(self) -> str:
        return self.channel.partition(":")[2]


class HeartbeatData(BaseModel):
    config: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    schedules: list[Schedule] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Line grammar
# ---------------------------------------------------------------------------


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _split_kv(line: str) -> tuple[str, str] | None:
    """Split ``key: value`` (leading whitespace ignored). None if not a pair."""
    key, sep, value = line.strip().partition(":")
    if not sep or not _KEY_RE.match(key):
        return None
    return key, _unquote(value)


def split_frontmatter(content: str) -> tuple[str, str]:
    """Return (frontmatter_text, body). Frontmatter is empty if absent."""
    lines = content.splitlines()
    if not lines or lines[0].strip() != "---":
        return "", content
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            return "\n".join(lines[1:i]), "\n".join(lines[i + 1:])
    return "", content


def parse_frontmatter(text: str) -> dict[str, object]:
    """Parse flat ``key: value`` pairs with one level of indented nesting.

    A key with an empty value opens a nested mapping that collects the
    following indented pairs.
    """
    data: dict[str, object] = {}
    current: dict[str, str] | None = None
    for raw in text.splitlines():
        if not raw.strip() or raw.lstrip().startswith("#"):
            continue
        pair = _split_kv(raw)
        if pair is None:
            logger.warning("Ignoring malformed frontmatter line: %r", raw)
            continue
        key, value = pair
        indented = raw[:1].isspace()
        if indented and current is not None:
            current[key] = value
            continue
        if value == "":
            current = {}
            data[key] = current
        else:
            current = None
            data[key] = value
    return data


def parse_schedules(body: str) -> list[Schedule]:
    """Parse ``- id:`` blocks from a heartbeat body.

    Each block continues with indented ``key: value`` lines and ends at
    the first line that is not one. Blocks failing validation are
    skipped with a warning; siblings are unaffected.
    """
    schedules: list[Schedule] = []
    lines = body.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.startswith("- "):
            continue
        pair = _split_kv(line[2:])
        if pair is None or pair[0] != "id":
            continue

        fields: dict[str, str] = {"id": pair[1]}
        while i < len(lines) and lines[i][:1].isspace():
            kv = _split_kv(lines[i])
            if kv is None:
                break
            fields[kv[0]] = kv[1]
            i += 1

        try:
            schedules.append(Schedule(**fields))
        except ValidationError as e:
            logger.warning(
                "Skipping invalid schedule %r: %s", fields.get("id"), e.errors()
            )
    return schedules


def parse_soul(content: str) -> Soul:
    """Parse SOUL.md content into config + body."""
    front, body = split_frontmatter(content)
    config = SoulConfig.model_validate(parse_frontmatter(front))
    return Soul(config=config, body=body.strip())


def parse_heartbeat(content: str) -> HeartbeatData:
    """Parse HEARTBEAT.md content into config + schedules.

    Raises pydantic.ValidationError if the frontmatter is invalid.
    """
    front, body = split_frontmatter(content)
    config = HeartbeatConfig.model_validate(parse_frontmatter(front))
    return HeartbeatData(config=config, schedules=parse_schedules(body))
