"""Tests for MemoryCompactor: span selection, marker placement, failure isolation."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from aperture.core.compactor import (
    EXTRACTION_SYSTEM_PROMPT,
    NOTHING_NEW,
    MemoryCompactor,
    format_for_compaction,
    last_marker_index,
)
from aperture.core.schemas import COMPACTION_MARKER, StoredMessage
from aperture.core.sessions import SessionStore
from aperture.storage.documents import Soul
from aperture.storage.user_data import append_memory, load_memory
from tests.conftest import ScriptedFactory

SESSION = "test:c1"


def _clock() -> datetime:
    return datetime(2026, 4, 2, 10, 0, tzinfo=UTC)


async def _fill(store: SessionStore, count: int, start: int = 0) -> None:
    for i in range(start, start + count):
        role = "user" if i % 2 == 0 else "assistant"
        await store.append_context(SESSION, StoredMessage(role=role, content=f"m{i}"))


class TestHelpers:

    def test_last_marker_index(self):
        messages = [
            StoredMessage(role="user", content="a"),
            StoredMessage(role=COMPACTION_MARKER, content="Compacted 1 messages"),
            StoredMessage(role="user", content="b"),
        ]
        assert last_marker_index(messages) == 1
        assert last_marker_index(messages[:1]) == -1

    def test_format_skips_tool_results_and_uses_text_parts(self):
        messages = [
            StoredMessage(role="user", content="hello"),
            StoredMessage(
                role="assistant",
                content=[
                    {"type": "text", "text": "let me check"},
                    {"type": "tool_use", "id": "t1", "name": "list_reminders", "input": {}},
                ],
            ),
            StoredMessage(role="tool_result", content=[{"type": "tool_result", "tool_use_id": "t1"}]),
        ]
        assert format_for_compaction(messages) == "[user]: hello\n[assistant]: let me check"


class TestMemoryCompactor:

    async def test_below_threshold_does_nothing(self, paths):
        factory = ScriptedFactory(one_shot_replies=["- fact"])
        store = SessionStore(paths)
        await _fill(store, 29)

        compactor = MemoryCompactor(factory, threshold=30, keep_recent=10)
        assert await compactor.maybe_compact(paths, Soul(), SESSION, store) is False
        assert factory.one_shots == []
        assert len(await store.load_context(SESSION)) == 29

    async def test_compacts_span_and_appends_marker(self, paths):
        factory = ScriptedFactory(one_shot_replies=["- User likes green tea"])
        store = SessionStore(paths)
        await append_memory(paths, "- Existing fact", datetime(2026, 1, 1).date())
        await _fill(store, 30)

        compactor = MemoryCompactor(factory, threshold=30, keep_recent=10, clock=_clock)
        assert await compactor.maybe_compact(paths, Soul(), SESSION, store) is True

        engine = factory.one_shots[0]
        assert engine.system_prompt == EXTRACTION_SYSTEM_PROMPT
        prompt = engine.prompts[0]
        assert "- Existing fact" in prompt
        assert "[user]: m0" in prompt
        assert "[assistant]: m19" in prompt
        assert "m20" not in prompt  # the 10 most recent stay hot

        messages = await store.load_context(SESSION)
        assert len(messages) == 31
        marker = messages[-1]
        assert marker.role == COMPACTION_MARKER
        assert marker.content == "Compacted 20 messages"
        assert marker.compacted == 20

        memory = await load_memory(paths)
        assert memory.endswith("\n## Extracted 2026-04-02\n- User likes green tea\n")

    async def test_nothing_new_leaves_memory_but_still_marks(self, paths):
        factory = ScriptedFactory(one_shot_replies=[NOTHING_NEW])
        store = SessionStore(paths)
        await _fill(store, 30)

        compactor = MemoryCompactor(factory, threshold=30, keep_recent=10)
        assert await compactor.maybe_compact(paths, Soul(), SESSION, store) is True
        assert await load_memory(paths) == ""
        assert (await store.load_context(SESSION))[-1].is_marker

    async def test_second_pass_starts_after_marker(self, paths):
        factory = ScriptedFactory(one_shot_replies=["- one", "- two"])
        store = SessionStore(paths)
        compactor = MemoryCompactor(factory, threshold=30, keep_recent=10)

        await _fill(store, 30)
        assert await compactor.maybe_compact(paths, Soul(), SESSION, store) is True
        # Only 1 message after the marker: not due
        await _fill(store, 1, start=30)
        assert await compactor.maybe_compact(paths, Soul(), SESSION, store) is False

        await _fill(store, 29, start=31)
        assert await compactor.maybe_compact(paths, Soul(), SESSION, store) is True

        second_prompt = factory.one_shots[1].prompts[0]
        assert "[user]: m30" in second_prompt
        assert "[user]: m0\n" not in second_prompt
        assert "m59" not in second_prompt

        markers = [m for m in await store.load_context(SESSION) if m.is_marker]
        assert [m.compacted for m in markers] == [20, 20]

    async def test_engine_failure_is_swallowed_and_nothing_written(self, paths):
        factory = ScriptedFactory()
        store = SessionStore(paths)
        await _fill(store, 30)

        original = factory.create_one_shot

        def failing_one_shot(soul, system_prompt):
            engine = original(soul, system_prompt)
            engine.error = RuntimeError("model down")
            return engine

        factory.create_one_shot = failing_one_shot

        compactor = MemoryCompactor(factory, threshold=30, keep_recent=10)
        assert await compactor.maybe_compact(paths, Soul(), SESSION, store) is False
        assert await load_memory(paths) == ""
        assert not any(m.is_marker for m in await store.load_context(SESSION))

    def test_keep_recent_must_be_below_threshold(self):
        with pytest.raises(ValueError):
            MemoryCompactor(ScriptedFactory(), threshold=10, keep_recent=10)
