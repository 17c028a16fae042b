"""Tool registry -- named, schema-described operations on the workspace.

Each Tool carries its JSON schema, an async handler and two execution
flags that are not advertised to the model: requires_approval (human gate)
and file_access (read/write signal for the UI).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from zox.tools.workspace import Workspace

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any], Workspace], Awaitable[str]]
FileAccess = Literal["read", "write"]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    requires_approval: bool = False
    file_access: FileAccess | None = None

    async def execute(self, args: dict[str, Any], workspace: Workspace) -> str:
        return await self.handler(args, workspace)

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Closed name -> Tool table."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing registered tool: %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    def describe(self) -> str:
        """Tool catalogue for the agent system prompt."""
        lines = []
        for tool in self._tools.values():
            props = tool.input_schema.get("properties", {})
            required = set(tool.input_schema.get("required", []))
            params = ", ".join(
                f"{name}{'' if name in required else '?'}: {spec.get('type', 'string')}"
                for name, spec in props.items()
            )
            lines.append(f"- {tool.name}({params}): {tool.description}")
        return "\n".join(lines)
