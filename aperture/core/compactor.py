"""Memory compaction: distil old conversation into MEMORY.md.

Runs after turns. Once enough messages have accumulated since the last
compaction marker, the older ones (all but the most recent, still "hot"
messages) go through a one-shot, tool-free reasoning call that extracts
durable facts. The context log itself is never modified; a marker
message is appended so the same span is not processed again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from aperture.core.schemas import COMPACTION_MARKER, StoredMessage
from aperture.core.sessions import SessionStore
from aperture.engine.base import EngineFactory, run_once
from aperture.storage.documents import Soul
from aperture.storage.paths import UserPaths
from aperture.storage.user_data import append_memory, load_memory

logger = logging.getLogger(__name__)

NOTHING_NEW = "[NOTHING_NEW]"

EXTRACTION_SYSTEM_PROMPT = "You extract and summarize important facts from conversations."

COMPACTION_PROMPT = """\
You are a memory extraction assistant. Given the conversation below, extract important facts, preferences, decisions, and context that should be remembered long-term.

Rules:
- Output only the new facts as a bullet list (- prefix)
- Be concise -- one line per fact
- Include: user preferences, decisions made, important dates, names, relationships, project details
- Exclude: greetings, small talk, transient information, things already in existing memory
- If there's nothing worth remembering, output exactly: [NOTHING_NEW]

## Existing Memory
{existing_memory}

## Recent Conversation
{conversation}

Extract new facts to remember:"""


def last_marker_index(messages: list[StoredMessage]) -> int:
    """Index of the latest compaction marker, or -1."""
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].is_marker:
            return i
    return -1


def format_for_compaction(messages: list[StoredMessage]) -> str:
    """``[role]: text`` lines for user/assistant messages, text parts only."""
    return "\n".join(
        f"[{m.role}]: {m.text()}" for m in messages if m.role in ("user", "assistant")
    )


class MemoryCompactor:
    def __init__(
        self,
        engine_factory: EngineFactory,
        threshold: int = 30,
        keep_recent: int = 10,
        timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if keep_recent >= threshold:
            raise ValueError("keep_recent must be smaller than threshold")
        self._factory = engine_factory
        self.threshold = threshold
        self.keep_recent = keep_recent
        # Bounds the extraction call; compaction holds the session lane
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    async def maybe_compact(
        self,
        paths: UserPaths,
        soul: Soul,
        session_id: str,
        store: SessionStore,
    ) -> bool:
        """Compact if due. Returns True if a marker was appended.

        Never raises: any failure is logged and the turn it follows is
        unaffected.
        """
        try:
            return await self._compact(paths, soul, session_id, store)
        except Exception:
            logger.exception("Memory compaction failed for session %s", session_id)
            return False

    async def _compact(
        self,
        paths: UserPaths,
        soul: Soul,
        session_id: str,
        store: SessionStore,
    ) -> bool:
        messages = await store.load_context(session_id)
        marker = last_marker_index(messages)
        uncompacted = len(messages) - (marker + 1)
        if uncompacted < self.threshold:
            return False

        span = messages[marker + 1 : len(messages) - self.keep_recent]
        if not span:
            return False

        logger.info(
            "Running memory compaction for %s (total=%d, uncompacted=%d, span=%d)",
            session_id,
            len(messages),
            uncompacted,
            len(span),
        )

        existing = await load_memory(paths)
        prompt = COMPACTION_PROMPT.format(
            existing_memory=existing.strip() or "(empty)",
            conversation=format_for_compaction(span),
        )
        engine = self._factory.create_one_shot(soul, EXTRACTION_SYSTEM_PROMPT)
        extracted = await run_once(engine, prompt, timeout=self.timeout)

        if extracted == NOTHING_NEW:
            logger.debug("Compaction found nothing new to remember for %s", session_id)
        elif extracted:
            await append_memory(paths, extracted, self._clock().date())
            logger.info("Memory updated for %s (%d chars)", paths.user_id, len(extracted))

        await store.append_context(
            session_id,
            StoredMessage(
                role=COMPACTION_MARKER,
                content=f"Compacted {len(span)} messages",
                compacted=len(span),
            ),
        )
        return True
