"""Workspace tools, their registry and the approval-gated executor."""

from zox.tools.builtin import BUILTIN_TOOLS, default_registry
from zox.tools.executor import ToolExecutor, ToolOutcome, ToolRefused, ToolStatus
from zox.tools.registry import Tool, ToolRegistry
from zox.tools.workspace import Workspace, WorkspaceError

__all__ = [
    "BUILTIN_TOOLS",
    "Tool",
    "ToolExecutor",
    "ToolOutcome",
    "ToolRefused",
    "ToolRegistry",
    "ToolStatus",
    "Workspace",
    "WorkspaceError",
    "default_registry",
]
