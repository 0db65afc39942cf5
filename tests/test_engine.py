"""Tests for the engine layer: event stream, BaseEngine lifecycle, Anthropic backend.

The Anthropic client runs against httpx.MockTransport; no network.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from aperture.config import Settings
from aperture.core.schemas import COMPACTION_MARKER, StoredMessage
from aperture.engine.anthropic import (
    AnthropicClient,
    AnthropicEngine,
    AnthropicEngineFactory,
    build_headers,
    to_api_messages,
)
from aperture.engine.base import run_once
from aperture.engine.events import (
    AgentEnd,
    EventStream,
    MessageEnd,
    TextDelta,
    ToolExecutionEnd,
    ToolExecutionStart,
)
from aperture.errors import AgentError, ConfigError, TurnTimeoutError
from aperture.storage.documents import LlmConfig, Soul, SoulConfig
from aperture.storage.reminders import load_reminders
from aperture.tools import build_user_tools
from tests.conftest import ScriptedEngine

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _no_credentials_env(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_AUTH_TOKEN", raising=False)


def _api_settings(tmp_path, **overrides) -> Settings:
    return Settings(
        _env_file=None,
        data_dir=str(tmp_path),
        ANTHROPIC_API_KEY="sk-ant-api-test",
        **overrides,
    )


def _response(content: list[dict], stop_reason: str = "end_turn") -> httpx.Response:
    return httpx.Response(
        200,
        json={"content": content, "stop_reason": stop_reason, "usage": {"input_tokens": 1}},
    )


class Recorder:
    """MockTransport handler replaying queued responses, recording payloads."""

    def __init__(self, responses: list[httpx.Response]) -> None:
        self.responses = responses
        self.payloads: list[dict] = []
        self.headers: list[httpx.Headers] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        self.headers.append(request.headers)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


async def _client(settings: Settings, recorder: Recorder) -> AnthropicClient:
    client = AnthropicClient(settings, transport=httpx.MockTransport(recorder))
    await client.start()
    return client


# ---------------------------------------------------------------------------
# Event stream and BaseEngine
# ---------------------------------------------------------------------------


class TestEventStream:

    async def test_subscription_removed_on_exit(self):
        stream = EventStream()
        async with stream.subscribe():
            assert stream.subscriber_count == 1
        assert stream.subscriber_count == 0

    async def test_subscription_removed_on_error(self):
        stream = EventStream()
        with pytest.raises(RuntimeError):
            async with stream.subscribe():
                raise RuntimeError("consumer failed")
        assert stream.subscriber_count == 0

    async def test_iteration_stops_after_agent_end(self):
        stream = EventStream()
        async with stream.subscribe() as events:
            stream.emit(TextDelta("a"))
            stream.emit(AgentEnd())
            stream.emit(TextDelta("after"))
            collected = [e async for e in events]
        assert collected == [TextDelta("a"), AgentEnd()]


class TestBaseEngine:

    async def test_run_once_collects_text(self):
        engine = ScriptedEngine(replies=["  hello  "])
        assert await run_once(engine, "hi") == "hello"

    async def test_run_once_timeout_aborts_engine(self):
        engine = ScriptedEngine(delay=3600)
        with pytest.raises(TurnTimeoutError):
            await run_once(engine, "hi", timeout=0.05)
        assert not engine.is_running

    async def test_cancelled_run_once_aborts_engine(self):
        engine = ScriptedEngine(delay=3600)
        task = asyncio.create_task(run_once(engine, "hi"))
        await asyncio.sleep(0.05)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert not engine.is_running

    async def test_exactly_one_agent_end_on_error(self):
        engine = ScriptedEngine(error=AgentError("nope"))
        async with engine.subscribe() as events:
            await engine.prompt("hi")
            collected = [e async for e in events]
        with pytest.raises(AgentError, match="nope"):
            await engine.wait_for_idle()

        ends = [e for e in collected if isinstance(e, AgentEnd)]
        assert len(ends) == 1
        assert ends[0].error == "nope"

    async def test_prompt_while_running_is_rejected(self):
        engine = ScriptedEngine(delay=1.0)
        await engine.prompt("first")
        with pytest.raises(AgentError):
            await engine.prompt("second")
        await engine.abort()

    async def test_abort_emits_agent_end_and_goes_idle(self):
        engine = ScriptedEngine(delay=5.0)
        async with engine.subscribe() as events:
            await engine.prompt("hi")
            await asyncio.sleep(0.01)
            await engine.abort()
            collected = [e async for e in events]

        assert isinstance(collected[-1], AgentEnd)
        assert collected[-1].error == "aborted"
        assert not engine.is_running
        await engine.wait_for_idle()  # nothing left to wait for


# ---------------------------------------------------------------------------
# Anthropic client
# ---------------------------------------------------------------------------


class TestHeaders:

    def test_api_key(self, tmp_path):
        headers = build_headers(_api_settings(tmp_path))
        assert headers["x-api-key"] == "sk-ant-api-test"
        assert "authorization" not in headers

    def test_oauth_token(self, tmp_path):
        settings = Settings(_env_file=None, data_dir=str(tmp_path), ANTHROPIC_AUTH_TOKEN="sk-ant-oat01-x")
        headers = build_headers(settings)
        assert headers["authorization"] == "Bearer sk-ant-oat01-x"
        assert headers["anthropic-beta"] == "oauth-2025-04-20"
        assert "x-api-key" not in headers

    def test_plain_auth_token(self, tmp_path):
        settings = Settings(_env_file=None, data_dir=str(tmp_path), ANTHROPIC_AUTH_TOKEN="tok")
        headers = build_headers(settings)
        assert headers["authorization"] == "Bearer tok"
        assert "anthropic-beta" not in headers


class TestAnthropicClient:

    async def test_create_message_payload(self, tmp_path):
        recorder = Recorder([_response([{"type": "text", "text": "hi"}])])
        client = await _client(_api_settings(tmp_path, max_tokens=321), recorder)
        try:
            result = await client.create_message(
                model="m-1",
                system_prompt="sys",
                messages=[{"role": "user", "content": [{"type": "text", "text": "q"}]}],
                tools=[{"name": "t", "description": "", "input_schema": {"type": "object"}}],
            )
        finally:
            await client.close()

        assert result.content == [{"type": "text", "text": "hi"}]
        assert result.stop_reason == "end_turn"
        payload = recorder.payloads[0]
        assert payload["model"] == "m-1"
        assert payload["max_tokens"] == 321
        assert payload["system"] == "sys"
        assert payload["tools"][0]["name"] == "t"
        assert recorder.headers[0]["x-api-key"] == "sk-ant-api-test"

    async def test_retries_once_on_overload(self, tmp_path):
        overloaded = httpx.Response(
            529,
            headers={"retry-after": "0"},
            json={"error": {"type": "overloaded_error", "message": "busy"}},
        )
        recorder = Recorder([overloaded, _response([{"type": "text", "text": "ok"}])])
        client = await _client(_api_settings(tmp_path), recorder)
        try:
            result = await client.create_message("m", "s", [])
        finally:
            await client.close()
        assert len(recorder.payloads) == 2
        assert result.content[0]["text"] == "ok"

    async def test_persistent_server_error_raises(self, tmp_path):
        failing = httpx.Response(
            500, headers={"retry-after": "0"}, json={"error": {"type": "api_error", "message": "boom"}}
        )
        recorder = Recorder([failing])
        client = await _client(_api_settings(tmp_path), recorder)
        try:
            with pytest.raises(AgentError, match="500"):
                await client.create_message("m", "s", [])
        finally:
            await client.close()
        assert len(recorder.payloads) == 2

    async def test_client_error_is_not_retried(self, tmp_path):
        recorder = Recorder(
            [httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}})]
        )
        client = await _client(_api_settings(tmp_path), recorder)
        try:
            with pytest.raises(AgentError, match="invalid_request_error"):
                await client.create_message("m", "s", [])
        finally:
            await client.close()
        assert len(recorder.payloads) == 1

    async def test_not_started(self, tmp_path):
        client = AnthropicClient(_api_settings(tmp_path))
        with pytest.raises(AgentError, match="not started"):
            await client.create_message("m", "s", [])


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def _tool_use(tool_id: str) -> dict:
    return {"type": "tool_use", "id": tool_id, "name": "list_reminders", "input": {}}


def _tool_result(tool_id: str) -> dict:
    return {"type": "tool_result", "tool_use_id": tool_id, "content": "none"}


class TestToApiMessages:

    def test_markers_dropped_and_same_roles_merged(self):
        messages = [
            StoredMessage(role="assistant", content="orphan reply"),
            StoredMessage(role="user", content="a"),
            StoredMessage(role=COMPACTION_MARKER, content="Compacted 4 messages"),
            StoredMessage(role="user", content="b"),
            StoredMessage(role="assistant", content=[{"type": "text", "text": "c"}]),
        ]
        assert to_api_messages(messages) == [
            {
                "role": "user",
                "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
            },
            {"role": "assistant", "content": [{"type": "text", "text": "c"}]},
        ]

    def test_complete_tool_round_is_kept(self):
        messages = [
            StoredMessage(role="user", content="q"),
            StoredMessage(role="assistant", content=[_tool_use("t1")]),
            StoredMessage(role="tool_result", content=[_tool_result("t1")]),
            StoredMessage(role="assistant", content="done"),
        ]
        converted = to_api_messages(messages)
        assert [m["role"] for m in converted] == ["user", "assistant", "user", "assistant"]
        assert converted[2]["content"] == [_tool_result("t1")]

    def test_unanswered_tool_use_dropped(self):
        messages = [
            StoredMessage(role="user", content="q"),
            StoredMessage(
                role="assistant",
                content=[{"type": "text", "text": "checking"}, _tool_use("t1")],
            ),
        ]
        assert to_api_messages(messages) == [
            {"role": "user", "content": [{"type": "text", "text": "q"}]},
            {"role": "assistant", "content": [{"type": "text", "text": "checking"}]},
        ]

    def test_leading_and_orphan_tool_results_dropped(self):
        messages = [
            StoredMessage(role="tool_result", content=[_tool_result("t0")]),
            StoredMessage(role="user", content="a"),
            StoredMessage(role="assistant", content="b"),
            StoredMessage(role="tool_result", content=[_tool_result("t9")]),
        ]
        assert to_api_messages(messages) == [
            {"role": "user", "content": [{"type": "text", "text": "a"}]},
            {"role": "assistant", "content": [{"type": "text", "text": "b"}]},
        ]


# ---------------------------------------------------------------------------
# Engine tool loop
# ---------------------------------------------------------------------------


class TestAnthropicEngine:

    async def test_tool_round_emits_full_event_sequence(self, tmp_path, paths):
        recorder = Recorder(
            [
                _response(
                    [
                        {"type": "text", "text": "Let me add that."},
                        {
                            "type": "tool_use",
                            "id": "toolu_1",
                            "name": "create_reminder",
                            "input": {"text": "Call mom", "due_at": "2026-07-01T09:00:00Z"},
                        },
                    ],
                    stop_reason="tool_use",
                ),
                _response([{"type": "text", "text": "Done."}]),
            ]
        )
        client = await _client(_api_settings(tmp_path), recorder)
        engine = AnthropicEngine(client, model="m-1", dispatcher=build_user_tools(paths))
        engine.set_system_prompt("sys")
        try:
            async with engine.subscribe() as events:
                await engine.prompt("remind me to call mom")
                collected = [e async for e in events]
            await engine.wait_for_idle()
        finally:
            await client.close()

        deltas = [e.text for e in collected if isinstance(e, TextDelta)]
        assert deltas == ["Let me add that.", "\n\nDone."]

        ends = [e.message for e in collected if isinstance(e, MessageEnd)]
        assert [m.role for m in ends] == ["user", "assistant", "tool_result", "assistant"]
        assert ends[1].stop_reason == "tool_use"
        assert ends[2].content[0]["tool_use_id"] == "toolu_1"
        assert ends[2].content[0]["is_error"] is False

        starts = [e for e in collected if isinstance(e, ToolExecutionStart)]
        finishes = [e for e in collected if isinstance(e, ToolExecutionEnd)]
        assert starts[0].tool_name == "create_reminder"
        assert starts[0].args["text"] == "Call mom"
        assert "Reminder created" in finishes[0].result

        second = recorder.payloads[1]["messages"]
        assert [m["role"] for m in second] == ["user", "assistant", "user"]
        assert second[2]["content"][0]["type"] == "tool_result"

        reminders = await load_reminders(paths.reminders_dir)
        assert [r.text for r in reminders] == ["Call mom"]

    async def test_tool_rounds_are_capped(self, tmp_path, paths):
        looping = _response([_tool_use("toolu_x")], stop_reason="tool_use")
        recorder = Recorder([looping])
        client = await _client(_api_settings(tmp_path), recorder)
        engine = AnthropicEngine(
            client, model="m", dispatcher=build_user_tools(paths), max_tool_rounds=1
        )
        try:
            await run_once(engine, "loop forever")
        finally:
            await client.close()

        assert len(recorder.payloads) == 2
        assert "tools" in recorder.payloads[0]
        assert "tools" not in recorder.payloads[1]

    async def test_api_failure_fails_the_run(self, tmp_path):
        recorder = Recorder([httpx.Response(401, json={"error": {"type": "authentication_error"}})])
        client = await _client(_api_settings(tmp_path), recorder)
        engine = AnthropicEngine(client, model="m")
        try:
            async with engine.subscribe() as events:
                await engine.prompt("hi")
                collected = [e async for e in events]
            with pytest.raises(AgentError):
                await engine.wait_for_idle()
        finally:
            await client.close()
        assert collected[-1].error is not None


class TestFactory:

    def test_create_uses_soul_model_and_user_tools(self, tmp_path, paths):
        settings = _api_settings(tmp_path)
        factory = AnthropicEngineFactory(settings, AnthropicClient(settings))
        soul = Soul(config=SoulConfig(llm=LlmConfig(model="claude-custom")))

        engine = factory.create(soul, paths)
        assert engine.model == "claude-custom"
        assert "create_reminder" in engine._dispatcher.names
        assert "read_file" in engine._dispatcher.names

    def test_one_shot_is_tool_free_background_model(self, tmp_path):
        settings = _api_settings(tmp_path, APERTURE_BACKGROUND_MODEL="claude-bg")
        factory = AnthropicEngineFactory(settings, AnthropicClient(settings))

        engine = factory.create_one_shot(Soul(), "extract facts")
        assert engine.model == "claude-bg"
        assert engine.system_prompt == "extract facts"
        assert engine._dispatcher is None

    def test_unsupported_provider(self, tmp_path, paths):
        settings = _api_settings(tmp_path)
        factory = AnthropicEngineFactory(settings, AnthropicClient(settings))
        soul = Soul(config=SoulConfig(llm=LlmConfig(provider="openai")))
        with pytest.raises(ConfigError):
            factory.create(soul, paths)
