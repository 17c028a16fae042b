"""Built-in workspace tools: read_file, write_file, replace_lines,
search_project, list_files.

Every handler takes (args, workspace) and returns plain text. Expected
failures (bad paths, missing files, bad arguments) come back as
"Error: ..." strings so the model can correct itself; file I/O runs in a
worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from zox.tools.registry import Tool, ToolRegistry
from zox.tools.workspace import Workspace, WorkspaceError

logger = logging.getLogger(__name__)

# Limits
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_SEARCH_MATCHES = 50
_SNIPPET_CHARS = 100


class ToolArgumentError(ValueError):
    pass


def _str_arg(args: dict[str, Any], name: str, default: str | None = None) -> str:
    value = args.get(name, default)
    if value is None:
        raise ToolArgumentError(f"'{name}' field required")
    return str(value)


def _int_arg(args: dict[str, Any], name: str, default: int | None = None) -> int:
    value = args.get(name, default)
    if value is None:
        raise ToolArgumentError(f"'{name}' field required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ToolArgumentError(f"'{name}' must be an integer, got {value!r}") from None


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def read_file(args: dict[str, Any], workspace: Workspace) -> str:
    try:
        path = workspace.resolve(_str_arg(args, "path"))
    except (ToolArgumentError, WorkspaceError) as e:
        return f"Error: {e}"

    def _read() -> str:
        if not path.is_file():
            return f"Error: File not found: {workspace.relative(path)}"
        size = path.stat().st_size
        if size > _MAX_FILE_SIZE:
            return f"Error: File too large ({size} bytes, max {_MAX_FILE_SIZE})"
        return path.read_text(encoding="utf-8", errors="replace")

    try:
        return await asyncio.to_thread(_read)
    except OSError as e:
        return f"Error reading '{workspace.relative(path)}': {e}"


async def write_file(args: dict[str, Any], workspace: Workspace) -> str:
    try:
        path = workspace.resolve(_str_arg(args, "path"))
        content = _str_arg(args, "content", "")
    except (ToolArgumentError, WorkspaceError) as e:
        return f"Error: {e}"

    def _write() -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8")
        path.write_bytes(data)
        return len(data)

    try:
        written = await asyncio.to_thread(_write)
    except OSError as e:
        return f"Error writing to '{workspace.relative(path)}': {e}"
    return f"Successfully wrote {written} bytes to {workspace.relative(path)}"


async def replace_lines(args: dict[str, Any], workspace: Workspace) -> str:
    """Replace an inclusive, 1-indexed line range with new content."""
    try:
        path = workspace.resolve(_str_arg(args, "path"))
        start_line = _int_arg(args, "start_line", 1)
        end_line = _int_arg(args, "end_line", start_line)
        new_content = _str_arg(args, "new_content", "")
    except (ToolArgumentError, WorkspaceError) as e:
        return f"Error: {e}"

    if start_line < 1 or end_line < 1:
        return "Error: Lines are 1-indexed, cannot be 0"
    if start_line > end_line:
        return "Error: start_line cannot be greater than end_line"

    def _replace() -> str:
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return f"Error: File not found: {workspace.relative(path)}"
        total = len(lines)
        if start_line > total:
            return f"Error: start_line {start_line} exceeds file length {total}"
        end_idx = min(end_line, total)
        result = lines[:start_line - 1] + new_content.splitlines() + lines[end_idx:]
        path.write_text("\n".join(result), encoding="utf-8")
        return (
            f"Replaced lines {start_line}-{end_idx} in {workspace.relative(path)}. "
            f"File now has {len(result)} lines."
        )

    try:
        return await asyncio.to_thread(_replace)
    except (OSError, UnicodeDecodeError) as e:
        return f"Error editing '{workspace.relative(path)}': {e}"


async def search_project(args: dict[str, Any], workspace: Workspace) -> str:
    """Case-insensitive filename and line search across the workspace."""
    query = str(args.get("query", "")).strip()
    if not query:
        return "Error: 'query' cannot be empty"
    needle = query.lower()

    def _search() -> str:
        matches: list[str] = []
        files_scanned = 0
        for dirpath, dirnames, filenames in os.walk(workspace.root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for filename in sorted(filenames):
                file_path = Path(dirpath) / filename
                relative = workspace.relative(file_path)
                files_scanned += 1
                if needle in relative.lower():
                    matches.append(f"Filename match: {relative}")
                    if len(matches) >= _MAX_SEARCH_MATCHES:
                        return _format(matches)
                try:
                    if file_path.stat().st_size > _MAX_FILE_SIZE:
                        continue
                    text = file_path.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError):
                    continue
                for line_no, line in enumerate(text.splitlines(), start=1):
                    if needle in line.lower():
                        matches.append(f"{relative}:{line_no}:{line[:_SNIPPET_CHARS]}")
                        if len(matches) >= _MAX_SEARCH_MATCHES:
                            return _format(matches)
        if not matches:
            return f"No matches found for '{query}' (scanned {files_scanned} files)"
        return _format(matches)

    def _format(matches: list[str]) -> str:
        return f"Found {len(matches)} matches:\n" + "\n".join(matches)

    return await asyncio.to_thread(_search)


async def list_files(args: dict[str, Any], workspace: Workspace) -> str:
    try:
        path = workspace.resolve(str(args.get("path") or "."))
    except WorkspaceError as e:
        return f"Error: {e}"

    def _list() -> str:
        if not path.is_dir():
            return f"Error: '{workspace.relative(path)}' is not a directory"
        items = sorted(
            f"{'[DIR]' if entry.is_dir() else '[FILE]'} {entry.name}"
            for entry in path.iterdir()
        )
        return f"Contents of {workspace.relative(path)}:\n" + "\n".join(items)

    try:
        return await asyncio.to_thread(_list)
    except OSError as e:
        return f"Error reading directory: {e}"


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

BUILTIN_TOOLS: dict[str, Tool] = {
    tool.name: tool
    for tool in (
        Tool(
            name="read_file",
            description="Read the contents of a file in the workspace.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "File path relative to the workspace"},
                },
                "required": ["path"],
            },
            handler=read_file,
            file_access="read",
        ),
        Tool(
            name="write_file",
            description="Create or overwrite a file in the workspace. Parent directories are created.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "File path relative to the workspace"},
                    "content": {"type": "string", "description": "Full file content"},
                },
                "required": ["path", "content"],
            },
            handler=write_file,
            requires_approval=True,
            file_access="write",
        ),
        Tool(
            name="replace_lines",
            description="Replace lines start_line..end_line (1-indexed, inclusive) of a file.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "start_line": {"type": "integer"},
                    "end_line": {"type": "integer"},
                    "new_content": {"type": "string", "description": "Replacement text"},
                },
                "required": ["path", "start_line", "end_line", "new_content"],
            },
            handler=replace_lines,
            requires_approval=True,
            file_access="write",
        ),
        Tool(
            name="search_project",
            description="Search file names and file contents in the workspace for text.",
            input_schema={
                "type": "object",
                "properties": {"query": {"type": "string"}},
                "required": ["query"],
            },
            handler=search_project,
        ),
        Tool(
            name="list_files",
            description="List files and directories at a path (default: workspace root).",
            input_schema={
                "type": "object",
                "properties": {"path": {"type": "string"}},
            },
            handler=list_files,
            file_access="read",
        ),
    )
}


def default_registry() -> ToolRegistry:
    return ToolRegistry(list(BUILTIN_TOOLS.values()))
