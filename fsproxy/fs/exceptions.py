"""
Mediation Errors

Exception hierarchy for the path resolver, concurrency guard and
file operation executor. Every error carries an ErrorKind so the HTTP
layer and the metadata recorder can classify it without isinstance
chains.
"""

import errno

from fsproxy.fs.models import ErrorKind


class FSProxyError(Exception):
    """Base exception for mediated file operation failures."""

    kind: ErrorKind = ErrorKind.IO_ERROR

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.message = message
        self.path = path


class PathTraversal(FSProxyError):
    """The requested path escapes, or cannot be confined to, the sandbox."""

    kind = ErrorKind.PATH_TRAVERSAL


class NotFound(FSProxyError):
    kind = ErrorKind.NOT_FOUND


class NotADirectory(FSProxyError):
    kind = ErrorKind.NOT_A_DIRECTORY


class IsADirectory(FSProxyError):
    kind = ErrorKind.IS_A_DIRECTORY


class AlreadyExists(FSProxyError):
    kind = ErrorKind.ALREADY_EXISTS


class StorageError(FSProxyError):
    """Underlying I/O failure."""

    kind = ErrorKind.IO_ERROR

    def __init__(
        self,
        message: str,
        path: str | None = None,
        os_errno: int | None = None,
    ):
        super().__init__(message, path)
        self.os_errno = os_errno

    @property
    def out_of_space(self) -> bool:
        return self.os_errno in (errno.ENOSPC, errno.EDQUOT)


class PayloadTooLarge(StorageError):
    kind = ErrorKind.PAYLOAD_TOO_LARGE


class RangeNotSatisfiable(FSProxyError):
    kind = ErrorKind.RANGE_NOT_SATISFIABLE

    def __init__(self, message: str, path: str | None = None, size: int = 0):
        super().__init__(message, path)
        self.size = size


class ShuttingDown(FSProxyError):
    """The guard was closed while the caller was waiting for a lock."""

    kind = ErrorKind.SHUTTING_DOWN


class Conflict(FSProxyError):
    """A lock could not be acquired within the configured timeout."""

    kind = ErrorKind.CONFLICT


_ERRNO_MAP: dict[int, type[FSProxyError]] = {
    errno.ENOENT: NotFound,
    errno.ENOTDIR: NotADirectory,
    errno.EISDIR: IsADirectory,
    errno.EEXIST: AlreadyExists,
    errno.ELOOP: PathTraversal,
}


def from_os_error(exc: OSError, path: str | None = None) -> FSProxyError:
    """
    Translate an OSError into the mediation taxonomy.

    Args:
        exc: The error raised by the filesystem call.
        path: Client-facing relative path for error reporting.

    Returns:
        The matching FSProxyError; unknown errno values become StorageError.
    """
    error_cls = _ERRNO_MAP.get(exc.errno)
    message = exc.strerror or str(exc)
    if error_cls is PathTraversal:
        return PathTraversal("Symbolic link in path", path)
    if error_cls is not None:
        return error_cls(message, path)
    return StorageError(message, path, os_errno=exc.errno)
