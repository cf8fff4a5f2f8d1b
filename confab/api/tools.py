"""Tool descriptors and the per-turn ToolSet registry.

Provides:
- ToolDescriptor: name, description, JSON input schema, async executor
- ToolSet: a name -> descriptor mapping plus the instruction text that
  tells the model when to use the tools; dispatches calls and renders
  provider-facing definitions

A ToolSet is assembled fresh for every turn and never persisted.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

ToolExecutor = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: dict[str, Any]
    execute: ToolExecutor


def result_text(result: Any) -> str:
    """Render a tool result as the text handed back to the model.

    MCP-format responses ({"content": [{"type": "text", ...}]}) are
    unwrapped; strings pass through; everything else is JSON.
    """
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        texts = [
            item.get("text", "")
            for item in result["content"]
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(result, ensure_ascii=False, default=str)


@dataclass
class ToolSet(Mapping[str, ToolDescriptor]):
    """Tool registry offered to a single model call."""

    tools: dict[str, ToolDescriptor] = field(default_factory=dict)
    description: str = ""

    def __getitem__(self, name: str) -> ToolDescriptor:
        return self.tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.tools)

    def __len__(self) -> int:
        return len(self.tools)

    def register(self, descriptor: ToolDescriptor) -> None:
        self.tools[descriptor.name] = descriptor

    def merge(self, other: Mapping[str, ToolDescriptor]) -> None:
        """Add every tool of other; later registrations win on name clashes."""
        for name, descriptor in other.items():
            if name in self.tools:
                logger.debug("Tool %s overridden during merge", name)
            self.tools[name] = descriptor

    async def dispatch(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Dispatch a tool call and return (result_text, is_error)."""
        descriptor = self.tools.get(name)
        if descriptor is None:
            return f"Unknown tool: {name}", True
        try:
            result = await descriptor.execute(**args)
            return result_text(result), False
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return f"Tool error: {e}", True

    def definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in provider-neutral JSON form."""
        return [
            {
                "name": d.name,
                "description": d.description,
                "input_schema": d.input_schema,
            }
            for d in self.tools.values()
        ]
