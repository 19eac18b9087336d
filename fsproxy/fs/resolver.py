"""
Path Resolver

Converts client-supplied relative paths into canonical absolute paths
confined to the sandbox root.

Symlink policy: any symbolic link inside the sandbox, at any depth of
the requested path, is rejected as a traversal attempt. Links are never
followed, even when their target would land inside the root.
"""

import os
import re
import stat
from pathlib import Path

from structlog import get_logger

from fsproxy.fs.exceptions import PathTraversal
from fsproxy.fs.models import ResolvedPath

logger = get_logger(__name__)

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


class SandboxRootError(ValueError):
    """The configured sandbox root is missing or not a directory."""


class PathResolver:
    """
    Resolves relative paths against an immutable sandbox root.

    Usage:
        resolver = PathResolver("/data")
        resolved = resolver.resolve("notes/a.txt")
        resolved.absolute  # PosixPath('/data/notes/a.txt')
    """

    def __init__(self, sandbox_root: str | Path):
        """
        Initialize the resolver.

        Args:
            sandbox_root: Existing directory all paths are confined to.

        Raises:
            SandboxRootError: If the root does not exist or is not a directory.
        """
        try:
            root = Path(sandbox_root).resolve(strict=True)
        except (FileNotFoundError, RuntimeError) as e:
            raise SandboxRootError(f"Sandbox root does not exist: {sandbox_root}") from e
        if not root.is_dir():
            raise SandboxRootError(f"Sandbox root is not a directory: {sandbox_root}")

        self._root = root

        logger.info("path_resolver_initialized", sandbox_root=str(root))

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, relative_path: str) -> ResolvedPath:
        """
        Resolve a client path to a sandbox-confined absolute path.

        An empty path (or "/"-free equivalent such as ".") resolves to the
        root itself. A single trailing slash is tolerated.

        Raises:
            PathTraversal: If the path is absolute, contains empty or NUL
                segments, escapes the root via "..", or crosses a symlink.
        """
        parts = self._normalize(relative_path)
        relative = "/".join(parts)

        self._reject_symlinks(parts, relative)

        canonical = Path(os.path.realpath(self._root.joinpath(*parts)))
        if not self.contains(canonical):
            logger.warning("path_escape_blocked", path=relative_path)
            raise PathTraversal("Path escapes the sandbox root", relative_path)

        return ResolvedPath(absolute=canonical, relative=relative)

    def verify(self, resolved: ResolvedPath) -> None:
        """
        Re-check a previously resolved path immediately before use.

        Catches a directory or file being swapped for a symlink between
        resolution and the filesystem call.
        """
        parts = resolved.relative.split("/") if resolved.relative else []
        self._reject_symlinks(parts, resolved.relative)
        if Path(os.path.realpath(resolved.absolute)) != resolved.absolute:
            raise PathTraversal("Path changed after resolution", resolved.relative)

    def contains(self, path: Path) -> bool:
        """Whether an absolute canonical path lies within the root."""
        return path == self._root or self._root in path.parents

    def _normalize(self, relative_path: str) -> list[str]:
        if "\x00" in relative_path:
            raise PathTraversal("Path contains a NUL byte", relative_path)
        if "\\" in relative_path:
            raise PathTraversal("Backslash separators are not accepted", relative_path)
        if relative_path.startswith("/") or _DRIVE_PREFIX.match(relative_path):
            raise PathTraversal("Absolute paths are not accepted", relative_path)

        trimmed = relative_path[:-1] if relative_path.endswith("/") else relative_path
        if not trimmed:
            return []

        parts: list[str] = []
        for segment in trimmed.split("/"):
            if segment == "":
                raise PathTraversal("Path contains an empty segment", relative_path)
            if segment == ".":
                continue
            if segment == "..":
                if not parts:
                    logger.warning("path_escape_blocked", path=relative_path)
                    raise PathTraversal("Path escapes the sandbox root", relative_path)
                parts.pop()
                continue
            parts.append(segment)
        return parts

    def _reject_symlinks(self, parts: list[str], relative: str) -> None:
        current = self._root
        for part in parts:
            current = current / part
            try:
                mode = os.lstat(current).st_mode
            except (FileNotFoundError, NotADirectoryError):
                # Remaining segments do not exist yet; nothing to follow
                return
            if stat.S_ISLNK(mode):
                logger.warning("symlink_blocked", path=relative, link=str(current))
                raise PathTraversal("Path crosses a symbolic link", relative)
