"""
Tests for Path Resolver
"""

import os
import tempfile
from pathlib import Path

import pytest

from fsproxy.fs.exceptions import PathTraversal
from fsproxy.fs.resolver import PathResolver, SandboxRootError


class TestPathResolver:
    """Test suite for sandbox path resolution."""

    @pytest.fixture
    def temp_sandbox(self):
        """Create a temporary sandbox directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir).resolve()

    @pytest.fixture
    def resolver(self, temp_sandbox):
        return PathResolver(temp_sandbox)

    def test_resolve_simple_path(self, resolver, temp_sandbox):
        resolved = resolver.resolve("notes/a.txt")
        assert resolved.absolute == temp_sandbox / "notes" / "a.txt"
        assert resolved.relative == "notes/a.txt"

    def test_resolve_empty_path_is_root(self, resolver, temp_sandbox):
        resolved = resolver.resolve("")
        assert resolved.absolute == temp_sandbox
        assert resolved.is_root

    def test_resolve_dot_is_root(self, resolver, temp_sandbox):
        assert resolver.resolve(".").absolute == temp_sandbox
        assert resolver.resolve("./").is_root

    def test_collapses_inner_dot_segments(self, resolver, temp_sandbox):
        """Test that . and .. segments inside the root are collapsed."""
        resolved = resolver.resolve("a/./b/../c.txt")
        assert resolved.absolute == temp_sandbox / "a" / "c.txt"
        assert resolved.relative == "a/c.txt"

    def test_trailing_slash_tolerated(self, resolver, temp_sandbox):
        assert resolver.resolve("notes/").absolute == temp_sandbox / "notes"

    @pytest.mark.parametrize("path", [
        "..",
        "../etc/passwd",
        "a/../../etc",
        "a/b/../../../x",
        "./../x",
    ])
    def test_rejects_escaping_dotdot(self, resolver, path):
        """Test that .. segments escaping the root are rejected."""
        with pytest.raises(PathTraversal):
            resolver.resolve(path)

    @pytest.mark.parametrize("path", [
        "/etc/passwd",
        "//server/share",
        "C:/Windows",
        "c:relative",
    ])
    def test_rejects_absolute_and_drive_paths(self, resolver, path):
        with pytest.raises(PathTraversal):
            resolver.resolve(path)

    @pytest.mark.parametrize("path", [
        "a//b",
        "a/\x00/b",
        "file\x00.txt",
        "a\\..\\..\\b",
    ])
    def test_rejects_malformed_segments(self, resolver, path):
        """Test that empty, NUL-containing and backslash paths are rejected."""
        with pytest.raises(PathTraversal):
            resolver.resolve(path)

    def test_rejects_symlink_pointing_outside(self, resolver, temp_sandbox):
        with tempfile.TemporaryDirectory() as outside:
            (Path(outside) / "secret.txt").write_text("secret")
            os.symlink(outside, temp_sandbox / "escape")

            with pytest.raises(PathTraversal):
                resolver.resolve("escape/secret.txt")

    def test_rejects_symlink_inside_root(self, resolver, temp_sandbox):
        """Test that even symlinks staying inside the root are refused."""
        (temp_sandbox / "real").mkdir()
        (temp_sandbox / "real" / "a.txt").write_text("a")
        os.symlink(temp_sandbox / "real", temp_sandbox / "alias")

        with pytest.raises(PathTraversal):
            resolver.resolve("alias/a.txt")

    def test_rejects_symlinked_file(self, resolver, temp_sandbox):
        (temp_sandbox / "target.txt").write_text("data")
        os.symlink(temp_sandbox / "target.txt", temp_sandbox / "link.txt")

        with pytest.raises(PathTraversal):
            resolver.resolve("link.txt")

    def test_nonexistent_path_resolves(self, resolver, temp_sandbox):
        """Test that paths that do not exist yet resolve for writing."""
        resolved = resolver.resolve("new/dir/file.txt")
        assert resolved.absolute == temp_sandbox / "new" / "dir" / "file.txt"

    def test_verify_detects_swapped_directory(self, resolver, temp_sandbox):
        """Test that verify catches a directory replaced by a symlink."""
        (temp_sandbox / "docs").mkdir()
        resolved = resolver.resolve("docs/a.txt")

        with tempfile.TemporaryDirectory() as outside:
            os.rmdir(temp_sandbox / "docs")
            os.symlink(outside, temp_sandbox / "docs")

            with pytest.raises(PathTraversal):
                resolver.verify(resolved)

    def test_contains(self, resolver, temp_sandbox):
        assert resolver.contains(temp_sandbox)
        assert resolver.contains(temp_sandbox / "x" / "y")
        assert not resolver.contains(temp_sandbox.parent)
        assert not resolver.contains(Path(str(temp_sandbox) + "-sibling"))


class TestSandboxRoot:
    """Test sandbox root validation."""

    def test_missing_root(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(SandboxRootError):
                PathResolver(Path(tmpdir) / "missing")

    def test_root_is_a_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            file_path = Path(tmpdir) / "file.txt"
            file_path.write_text("x")
            with pytest.raises(SandboxRootError):
                PathResolver(file_path)

    def test_root_is_canonicalized(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            real = Path(tmpdir).resolve() / "real"
            real.mkdir()
            os.symlink(real, Path(tmpdir) / "alias")

            resolver = PathResolver(Path(tmpdir) / "alias")
            assert resolver.root == real
