"""Workspace root that every file tool is confined to.

Paths are normalized component by component before touching the
filesystem: '.' is dropped, '..' pops a component, and popping above the
root is rejected. Absolute paths are accepted only when they already lie
inside the root. The result is also resolved through symlinks, including
those in parent directories of a file that does not exist yet, and must
stay inside the root.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePath

logger = logging.getLogger(__name__)


class WorkspaceError(ValueError):
    """A path escapes the workspace or is otherwise unusable."""


class Workspace:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, path: str) -> Path:
        """Map a user/model supplied path onto a location inside the root."""
        raw = (path or "").strip()
        if "\x00" in raw:
            raise WorkspaceError("Path contains a NUL byte")

        pure = PurePath(raw) if raw else PurePath(".")
        if pure.is_absolute():
            try:
                pure = pure.relative_to(self.root)
            except ValueError:
                raise WorkspaceError(
                    f"Path '{path}' is outside the workspace '{self.root}'"
                ) from None

        parts: list[str] = []
        for part in pure.parts:
            if part in ("", "."):
                continue
            if part == "..":
                if not parts:
                    raise WorkspaceError(f"Path '{path}' escapes the workspace root")
                parts.pop()
                continue
            parts.append(part)

        target = self.root.joinpath(*parts)
        # Non-strict resolve also follows symlinked parents of a new file
        if not target.resolve().is_relative_to(self.root):
            raise WorkspaceError(f"Path '{path}' resolves outside the workspace")
        return target

    def relative(self, target: Path) -> str:
        try:
            rel = target.relative_to(self.root)
        except ValueError:
            return str(target)
        return rel.as_posix() or "."

    def read_text(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8")

    def write_text(self, path: str, content: str) -> Path:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target
