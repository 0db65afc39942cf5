"""Reasoning engine seam.

The hub depends only on the ``Engine`` / ``EngineFactory`` protocols and
the typed events; ``aperture.engine.anthropic`` is the shipped backend.
"""

from aperture.engine.base import BaseEngine, Engine, EngineFactory, run_once
from aperture.engine.events import (
    AgentEnd,
    EngineEvent,
    EventStream,
    MessageEnd,
    Subscription,
    TextDelta,
    ToolExecutionEnd,
    ToolExecutionStart,
)

__all__ = [
    "BaseEngine",
    "Engine",
    "EngineFactory",
    "run_once",
    # Events
    "AgentEnd",
    "EngineEvent",
    "EventStream",
    "MessageEnd",
    "Subscription",
    "TextDelta",
    "ToolExecutionEnd",
    "ToolExecutionStart",
]
