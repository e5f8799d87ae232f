"""Engine registry — get the right adapter by name."""

from __future__ import annotations

from ralph_moss.engines.base import EngineBase
from ralph_moss.engines.claude import ClaudeEngine
from ralph_moss.engines.command import CommandEngine


def get_engine(name: str, *, command: str = "") -> EngineBase:
    """Return an engine adapter for *name*."""
    match name:
        case "claude":
            return ClaudeEngine()
        case "command":
            return CommandEngine(command)
        case _:
            raise ValueError(f"Unknown engine: {name}")


ENGINE_NAMES = ("claude", "command")
