"""Tool dispatcher for the Anthropic tool-use loop.

Handlers are async callables taking the tool input as keyword arguments
and returning an MCP-format response:
``{"content": [{"type": "text", "text": "..."}]}``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[dict[str, Any]]]


def mcp_response(text: str) -> dict[str, Any]:
    """Build MCP-format response."""
    return {"content": [{"type": "text", "text": text}]}


class ToolDispatcher:
    """Registers tool handlers and dispatches tool calls from the engine.

    Dispatch never raises: unknown tools and handler failures come back
    as ``(message, True)`` so the model can see and react to them.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: ToolHandler, schema: dict[str, Any]) -> None:
        """Register a handler with its JSON schema (``description`` included)."""
        self._handlers[name] = handler
        self._schemas[name] = schema

    @property
    def names(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Dispatch a tool call and return (result_text, is_error)."""
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown tool: {name}", True
        try:
            result = await handler(**args)
            return result["content"][0]["text"], False
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return f"Tool error: {e}", True

    def tool_definitions(self) -> list[dict[str, Any]]:
        """All tool definitions in Anthropic API format."""
        definitions = []
        for name, schema in self._schemas.items():
            input_schema = {k: v for k, v in schema.items() if k != "description"}
            definitions.append(
                {
                    "name": name,
                    "description": schema.get("description", ""),
                    "input_schema": input_schema,
                }
            )
        return definitions
