"""Anthropic Messages API engine.

Direct httpx calls to the Messages API with an internal tool-use loop
(no external SDK). One ``AnthropicClient`` (and its connection pool) is
shared by every engine in the process.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Sequence

import httpx

from aperture.config import Settings
from aperture.core.schemas import StoredMessage
from aperture.engine.base import BaseEngine
from aperture.engine.events import MessageEnd, TextDelta, ToolExecutionEnd, ToolExecutionStart
from aperture.errors import AgentError, ConfigError
from aperture.storage.documents import Soul
from aperture.storage.paths import UserPaths
from aperture.tools import ToolDispatcher, build_user_tools

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_RETRY_STATUSES = (429, 500, 529)


@dataclass
class ApiResponse:
    """Parsed response from Anthropic Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks from API
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None


def build_headers(settings: Settings) -> dict[str, str]:
    """Auth headers for the Messages API.

    OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers;
    regular API keys use x-api-key.
    """
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }
    api_key = settings.anthropic_api_key or ""
    auth_token = settings.anthropic_auth_token or ""
    token = auth_token or api_key

    if auth_token or "sk-ant-oat" in api_key:
        headers["authorization"] = f"Bearer {token}"
        if "sk-ant-oat" in token:
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
    elif api_key:
        headers["x-api-key"] = api_key
    else:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "API calls will fail"
        )
    return headers


class AnthropicClient:
    """Thin async client for POST /v1/messages with a single retry."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=build_headers(settings),
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=self._transport,
        )
        logger.info("Anthropic client initialized (%s)", settings.api_base_url)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def create_message(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ApiResponse:
        """Call the Messages API, retrying once on 429/500/529 or timeout.

        Raises AgentError on persistent errors.
        """
        if not self._http:
            raise AgentError("Anthropic client not started -- call start() first")

        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": self._settings.max_tokens,
            "system": system_prompt,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools

        last_error: AgentError | None = None
        for attempt in range(2):
            try:
                response = await self._http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    data = response.json()
                    return ApiResponse(
                        content=data["content"],
                        stop_reason=data.get("stop_reason") or "end_turn",
                        usage=data.get("usage"),
                    )

                try:
                    error = response.json().get("error", {})
                    error_type = error.get("type", "unknown")
                    error_msg = error.get("message", "unknown error")
                except ValueError:
                    error_type = "http_error"
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    retry_after = min(float(response.headers.get("retry-after", "1")), 30.0)
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = AgentError(
                    f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
                )
                break

            except httpx.TimeoutException as e:
                last_error = AgentError(f"API request timed out: {e}", e)
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = AgentError(f"HTTP error: {e}", e)
                break

        raise last_error or AgentError("API call failed with unknown error")


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def _blocks(message: StoredMessage) -> list[dict[str, Any]]:
    if isinstance(message.content, str):
        return [{"type": "text", "text": message.content}] if message.content else []
    return [dict(block) for block in message.content]


def _merge(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    for msg in messages:
        if not msg["content"]:
            continue
        if merged and merged[-1]["role"] == msg["role"]:
            merged[-1]["content"].extend(msg["content"])
        else:
            merged.append({"role": msg["role"], "content": list(msg["content"])})
    return merged


def _drop_unpaired_tools(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Remove tool_use blocks without a following tool_result, and vice versa.

    A context window can cut through a tool round; the API rejects
    either half on its own.
    """
    for i, msg in enumerate(messages):
        if msg["role"] != "assistant":
            continue
        nxt = messages[i + 1] if i + 1 < len(messages) else None
        answered = {
            b.get("tool_use_id")
            for b in (nxt["content"] if nxt else [])
            if b.get("type") == "tool_result"
        }
        msg["content"] = [
            b for b in msg["content"] if b.get("type") != "tool_use" or b.get("id") in answered
        ]

    for i, msg in enumerate(messages):
        if msg["role"] != "user":
            continue
        prev = messages[i - 1] if i > 0 else None
        asked = {
            b.get("id")
            for b in (prev["content"] if prev and prev["role"] == "assistant" else [])
            if b.get("type") == "tool_use"
        }
        msg["content"] = [
            b for b in msg["content"] if b.get("type") != "tool_result" or b.get("tool_use_id") in asked
        ]
    return _merge(messages)


def to_api_messages(messages: Sequence[StoredMessage]) -> list[dict[str, Any]]:
    """Convert stored messages to Messages API format.

    Compaction markers are dropped, tool results travel as user content,
    leading non-user messages are skipped and consecutive same-role
    messages are merged.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message.is_marker:
            continue
        if not converted and message.role != "user":
            continue
        role = "assistant" if message.role == "assistant" else "user"
        converted.append({"role": role, "content": _blocks(message)})
    result = _drop_unpaired_tools(_merge(converted))
    while result and result[0]["role"] != "user":
        result.pop(0)
    return result


def _extract_text(content_blocks: list[dict[str, Any]]) -> str:
    return "\n".join(b["text"] for b in content_blocks if b.get("type") == "text" and b.get("text"))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AnthropicEngine(BaseEngine):
    """Runs one prompt through the tool-use loop.

    Emits a MessageEnd for the user prompt, every assistant response and
    every batch of tool results, so the caller can persist the whole turn.
    """

    def __init__(
        self,
        client: AnthropicClient,
        model: str,
        dispatcher: ToolDispatcher | None = None,
        max_tool_rounds: int = 10,
    ) -> None:
        super().__init__()
        self._client = client
        self.model = model
        self._dispatcher = dispatcher
        self._max_tool_rounds = max_tool_rounds

    async def _run(self, text: str) -> None:
        self._finalize(StoredMessage(role="user", content=text))
        tools = self._dispatcher.tool_definitions() if self._dispatcher else None
        emitted_text = False
        rounds = 0

        while True:
            exhausted = rounds >= self._max_tool_rounds
            if exhausted and tools:
                logger.warning("Tool loop reached max_tool_rounds=%d", self._max_tool_rounds)
            response = await self._client.create_message(
                model=self.model,
                system_prompt=self.system_prompt,
                messages=to_api_messages(self.messages),
                tools=None if exhausted else tools,
            )

            reply_text = _extract_text(response.content)
            if reply_text:
                self._emit(TextDelta(("\n\n" if emitted_text else "") + reply_text))
                emitted_text = True
            self._finalize(
                StoredMessage(
                    role="assistant",
                    content=response.content,
                    stop_reason=response.stop_reason,
                    model=self.model,
                )
            )

            if response.stop_reason != "tool_use" or not self._dispatcher or exhausted:
                return

            results: list[dict[str, Any]] = []
            for block in response.content:
                if block.get("type") != "tool_use":
                    continue
                tool_id = block["id"]
                name = block["name"]
                args = block.get("input") or {}
                self._emit(ToolExecutionStart(tool_call_id=tool_id, tool_name=name, args=args))
                result_text, is_error = await self._dispatcher.dispatch(name, args)
                self._emit(
                    ToolExecutionEnd(
                        tool_call_id=tool_id,
                        tool_name=name,
                        result=result_text,
                        is_error=is_error,
                    )
                )
                results.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": tool_id,
                        "content": result_text,
                        "is_error": is_error,
                    }
                )
            self._finalize(StoredMessage(role="tool_result", content=results))
            rounds += 1

    def _finalize(self, message: StoredMessage) -> None:
        self.messages.append(message)
        self._emit(MessageEnd(message))


class AnthropicEngineFactory:
    """Builds per-user engines and tool-free one-shot engines."""

    def __init__(self, settings: Settings, client: AnthropicClient) -> None:
        self._settings = settings
        self._client = client

    def create(self, soul: Soul, paths: UserPaths) -> AnthropicEngine:
        llm = soul.config.llm
        if llm.provider != "anthropic":
            raise ConfigError(f"Unsupported LLM provider for {paths.user_id}: {llm.provider}")
        return AnthropicEngine(
            self._client,
            model=llm.model or self._settings.model,
            dispatcher=build_user_tools(paths),
            max_tool_rounds=self._settings.max_tool_rounds,
        )

    def create_one_shot(self, soul: Soul, system_prompt: str) -> AnthropicEngine:
        engine = AnthropicEngine(self._client, model=self._settings.background_model)
        engine.set_system_prompt(system_prompt)
        return engine
