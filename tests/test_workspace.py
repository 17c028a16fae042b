"""Tests for workspace path confinement."""

from __future__ import annotations

import os

import pytest

from zox.tools.workspace import Workspace, WorkspaceError


class TestResolve:
    def test_relative_path(self, workspace):
        assert workspace.resolve("src/main.py") == workspace.root / "src" / "main.py"

    def test_empty_is_root(self, workspace):
        assert workspace.resolve("") == workspace.root
        assert workspace.resolve(".") == workspace.root

    def test_dotdot_inside_root_normalized(self, workspace):
        assert workspace.resolve("a/../b.txt") == workspace.root / "b.txt"
        assert workspace.resolve("./a/./b") == workspace.root / "a" / "b"

    @pytest.mark.parametrize("path", ["../secret", "a/../../secret", "../../etc/passwd", ".."])
    def test_escape_rejected(self, workspace, path):
        with pytest.raises(WorkspaceError):
            workspace.resolve(path)

    def test_absolute_inside_root(self, workspace):
        inside = str(workspace.root / "notes" / "todo.md")
        assert workspace.resolve(inside) == workspace.root / "notes" / "todo.md"

    def test_absolute_outside_rejected(self, workspace):
        with pytest.raises(WorkspaceError):
            workspace.resolve("/etc/passwd")

    def test_sibling_prefix_rejected(self, workspace):
        sibling = str(workspace.root) + "-evil/file.txt"
        with pytest.raises(WorkspaceError):
            workspace.resolve(sibling)

    def test_nul_byte_rejected(self, workspace):
        with pytest.raises(WorkspaceError):
            workspace.resolve("a\x00b")

    def test_symlink_escape_rejected(self, workspace, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("top secret")
        os.symlink(outside, workspace.root / "link")

        with pytest.raises(WorkspaceError):
            workspace.resolve("link/secret.txt")
        with pytest.raises(WorkspaceError):
            workspace.resolve("link")

    def test_new_file_under_symlinked_dir_rejected(self, workspace, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, workspace.root / "link")

        with pytest.raises(WorkspaceError):
            workspace.resolve("link/new.txt")
        with pytest.raises(WorkspaceError):
            workspace.resolve("link/deeper/new.txt")

    def test_dangling_symlink_outside_rejected(self, workspace, tmp_path):
        os.symlink(tmp_path / "missing.txt", workspace.root / "dangling")
        with pytest.raises(WorkspaceError):
            workspace.resolve("dangling")

    def test_symlink_inside_allowed(self, workspace):
        (workspace.root / "real").mkdir()
        os.symlink(workspace.root / "real", workspace.root / "alias")
        assert workspace.resolve("alias") == workspace.root / "alias"


class TestHelpers:
    def test_relative(self, workspace):
        assert workspace.relative(workspace.root / "a" / "b.txt") == "a/b.txt"
        assert workspace.relative(workspace.root) == "."

    def test_write_and_read_text(self, workspace):
        workspace.write_text("deep/dir/file.txt", "content")
        assert workspace.read_text("deep/dir/file.txt") == "content"

    def test_ensure_creates_root(self, tmp_path):
        ws = Workspace(tmp_path / "new" / "root")
        ws.ensure()
        assert ws.root.is_dir()
