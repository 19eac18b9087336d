"""
File Operation Executor

Performs read, write and list actions against resolved sandbox paths.

Blocking filesystem calls run on the event loop's default executor
(bounded at startup) and file content moves through aiofiles in
fixed-size chunks, so a slow disk never stalls unrelated requests and
large files are never buffered whole.

Every action re-verifies the resolved path right before touching the
filesystem, opens with O_NOFOLLOW, then compares the opened descriptor
against an lstat of the path to catch a swap between check and use.
"""

import asyncio
import errno
import os
import re
import stat
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Callable
from uuid import uuid4

import aiofiles
from structlog import get_logger

from fsproxy.fs.exceptions import (
    AlreadyExists,
    IsADirectory,
    NotADirectory,
    PathTraversal,
    PayloadTooLarge,
    RangeNotSatisfiable,
    StorageError,
    from_os_error,
)
from fsproxy.fs.models import ByteRange, DirEntry, ResolvedPath, WriteMode
from fsproxy.fs.resolver import PathResolver

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
TEMP_SUFFIX = ".fsproxy-tmp"

_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)
_O_DIRECTORY = getattr(os, "O_DIRECTORY", 0)
_O_CLOEXEC = getattr(os, "O_CLOEXEC", 0)

_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


def resolve_range(spec: str | None, size: int) -> ByteRange | None:
    """
    Resolve a single-range HTTP Range header against a file size.

    Unsupported or malformed specs (multiple ranges, other units) are
    ignored and the full content is served.

    Returns:
        The inclusive byte range, or None for the whole file.

    Raises:
        RangeNotSatisfiable: If the range lies entirely past the end.
    """
    if not spec:
        return None
    match = _RANGE_PATTERN.match(spec.strip())
    if match is None:
        return None

    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        # Suffix range: the final N bytes
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable("Empty suffix range", size=size)
        return ByteRange(start=max(size - suffix, 0), end=size - 1)

    start = int(first)
    end = int(last) if last else size - 1
    if start >= size:
        raise RangeNotSatisfiable("Range starts past end of file", size=size)
    if end < start:
        return None
    return ByteRange(start=start, end=min(end, size - 1))


class ReadStream:
    """
    Incremental reader over an opened file.

    Iterating yields chunks of at most chunk_size bytes. The stream is
    closed when iteration ends for any reason; close callbacks (lock
    release, audit recording) run exactly once.
    """

    def __init__(
        self,
        path: ResolvedPath,
        handle,
        size: int,
        byte_range: ByteRange | None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.path = path
        self.size = size
        self.byte_range = byte_range
        self.bytes_sent = 0
        self._handle = handle
        self._chunk_size = chunk_size
        self._callbacks: list[Callable[["ReadStream", BaseException | None], None]] = []
        self._closed = False

    @property
    def content_length(self) -> int:
        return self.byte_range.length if self.byte_range else self.size

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_callback(
        self, callback: Callable[["ReadStream", BaseException | None], None]
    ) -> None:
        self._callbacks.append(callback)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        error: BaseException | None = None
        try:
            remaining = self.content_length
            if self.byte_range:
                await self._handle.seek(self.byte_range.start)
            while remaining > 0:
                try:
                    chunk = await self._handle.read(min(self._chunk_size, remaining))
                except OSError as e:
                    raise from_os_error(e, self.path.relative) from e
                if not chunk:
                    break
                remaining -= len(chunk)
                self.bytes_sent += len(chunk)
                yield chunk
        except BaseException as e:
            error = e
            raise
        finally:
            await self.aclose(error)

    async def aclose(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        # Callbacks first: they must run even if closing the handle is interrupted
        for callback in self._callbacks:
            try:
                callback(self, error)
            except Exception as e:
                logger.error("read_close_callback_error", path=str(self.path), error=str(e))
        await self._handle.close()

    async def read_all(self) -> bytes:
        """Collect the whole stream; intended for small files and tests."""
        return b"".join([chunk async for chunk in self])


class FileExecutor:
    """
    Executes file operations on resolved paths.

    The executor does no locking of its own; callers serialize access
    through the ConcurrencyGuard.

    Usage:
        executor = FileExecutor(resolver)
        stream = await executor.open_read(resolved)
        written, created = await executor.write(resolved, chunks)
        entries = await executor.list_dir(resolved)
    """

    def __init__(
        self,
        resolver: PathResolver,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_upload_bytes: int | None = None,
    ):
        """
        Initialize the executor.

        Args:
            resolver: Resolver used to re-verify paths before each call.
            chunk_size: Streaming chunk size in bytes.
            max_upload_bytes: Reject writes larger than this; None for no cap.
        """
        self._resolver = resolver
        self._chunk_size = chunk_size
        self._max_upload_bytes = max_upload_bytes

    # =========================================================================
    # Read
    # =========================================================================

    async def open_read(
        self,
        path: ResolvedPath,
        range_spec: str | None = None,
    ) -> ReadStream:
        """
        Open a file for streamed reading.

        Raises:
            NotFound: If the file does not exist.
            IsADirectory: If the path is a directory.
            RangeNotSatisfiable: If range_spec lies past the end of the file.
            StorageError: On other I/O failures.
        """
        fd, size = await asyncio.to_thread(self._open_file, path)
        try:
            byte_range = resolve_range(range_spec, size)
        except RangeNotSatisfiable as e:
            os.close(fd)
            e.path = path.relative
            raise
        try:
            handle = await aiofiles.open(fd, "rb")
        except BaseException:
            os.close(fd)
            raise
        return ReadStream(path, handle, size, byte_range, self._chunk_size)

    def _open_file(self, path: ResolvedPath) -> tuple[int, int]:
        self._resolver.verify(path)
        try:
            fd = os.open(path.absolute, os.O_RDONLY | _O_NOFOLLOW | _O_CLOEXEC)
        except OSError as e:
            raise from_os_error(e, path.relative) from e
        try:
            st = os.fstat(fd)
            if stat.S_ISDIR(st.st_mode):
                raise IsADirectory("Path is a directory", path.relative)
            if not stat.S_ISREG(st.st_mode):
                raise StorageError("Path is not a regular file", path.relative)
            self._check_same_file(path, st)
        except BaseException:
            os.close(fd)
            raise
        return fd, st.st_size

    # =========================================================================
    # Write
    # =========================================================================

    async def write(
        self,
        path: ResolvedPath,
        chunks: AsyncIterable[bytes],
        mode: WriteMode = WriteMode.CREATE_OR_TRUNCATE,
    ) -> tuple[int, bool]:
        """
        Write a byte stream to a file atomically.

        Content goes to a temporary sibling that is renamed over the target
        only after every byte is on disk, so readers see the old content or
        the new content in full. Missing parent directories are created.

        Returns:
            Tuple of (bytes written, whether the file was newly created).

        Raises:
            AlreadyExists: If mode is CREATE_ONLY and the target exists.
            IsADirectory: If the target is a directory.
            NotADirectory: If a parent component is a file.
            PayloadTooLarge: If the upload exceeds max_upload_bytes.
            StorageError: On other I/O failures.
        """
        if path.is_root:
            raise IsADirectory("Cannot write to the sandbox root", path.relative)

        await asyncio.to_thread(self._prepare_target, path, mode)

        async with self._temporary_sibling(path) as (tmp_path, handle):
            written = 0
            try:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    written += len(chunk)
                    if self._max_upload_bytes is not None and written > self._max_upload_bytes:
                        raise PayloadTooLarge(
                            f"Upload exceeds {self._max_upload_bytes} bytes", path.relative
                        )
                    await handle.write(chunk)
                await handle.flush()
                await asyncio.to_thread(os.fsync, handle.fileno())
            except OSError as e:
                raise from_os_error(e, path.relative) from e
            await handle.close()

            created = await asyncio.to_thread(self._commit, tmp_path, path, mode)

        return written, created

    def _prepare_target(self, path: ResolvedPath, mode: WriteMode) -> None:
        self._resolver.verify(path)
        parent = path.absolute.parent

        missing: list[Path] = []
        current = parent
        while not os.path.lexists(current):
            missing.append(current)
            current = current.parent
        for directory in reversed(missing):
            try:
                os.mkdir(directory)
            except FileExistsError:
                pass
            except OSError as e:
                raise from_os_error(e, path.relative) from e
        if missing:
            logger.debug("parent_directories_created", path=path.relative, count=len(missing))

        try:
            parent_mode = os.lstat(parent).st_mode
        except OSError as e:
            raise from_os_error(e, path.relative) from e
        if stat.S_ISLNK(parent_mode):
            raise PathTraversal("Path crosses a symbolic link", path.relative)
        if not stat.S_ISDIR(parent_mode):
            raise NotADirectory("Parent path is not a directory", path.relative)

        try:
            target_mode = os.lstat(path.absolute).st_mode
        except FileNotFoundError:
            return
        if stat.S_ISLNK(target_mode):
            raise PathTraversal("Target is a symbolic link", path.relative)
        if stat.S_ISDIR(target_mode):
            raise IsADirectory("Path is a directory", path.relative)
        if mode == WriteMode.CREATE_ONLY:
            raise AlreadyExists("File already exists", path.relative)

    @asynccontextmanager
    async def _temporary_sibling(self, path: ResolvedPath):
        """
        Scoped temporary file beside the target.

        Yields (temp path, open aiofiles handle). On success the caller has
        renamed the file away; on any other exit, including cancellation,
        the file is closed and removed.
        """
        tmp_path = path.absolute.with_name(
            f".{path.absolute.name}.{uuid4().hex[:12]}{TEMP_SUFFIX}"
        )
        try:
            fd = await asyncio.to_thread(
                os.open,
                tmp_path,
                os.O_WRONLY | os.O_CREAT | os.O_EXCL | _O_NOFOLLOW | _O_CLOEXEC,
                0o644,
            )
        except OSError as e:
            raise from_os_error(e, path.relative) from e

        try:
            handle = await aiofiles.open(fd, "wb")
        except BaseException:
            os.close(fd)
            _remove_quietly(tmp_path)
            raise

        try:
            yield tmp_path, handle
        finally:
            # Unlink before closing; the worker thread finishes the unlink even
            # if this task is cancelled again while awaiting it
            if await asyncio.to_thread(_remove_quietly, tmp_path):
                logger.info("temporary_file_removed", path=path.relative)
            if not handle.closed:
                try:
                    await handle.close()
                except OSError as e:
                    logger.warning("temporary_file_close_failed", path=path.relative, error=str(e))

    def _commit(self, tmp_path: Path, path: ResolvedPath, mode: WriteMode) -> bool:
        self._resolver.verify(path)
        target = path.absolute

        if mode == WriteMode.CREATE_ONLY:
            try:
                # link() fails if the target exists, making create-only atomic
                os.link(tmp_path, target)
            except FileExistsError as e:
                raise AlreadyExists("File already exists", path.relative) from e
            except OSError as e:
                if not _links_unsupported(e):
                    raise from_os_error(e, path.relative) from e
                if os.path.lexists(target):
                    raise AlreadyExists("File already exists", path.relative) from e
                self._replace(tmp_path, path)
                return True
            _remove_quietly(tmp_path)
            return True

        try:
            target_mode = os.lstat(target).st_mode
        except FileNotFoundError:
            target_mode = None
        if target_mode is not None and stat.S_ISDIR(target_mode):
            raise IsADirectory("Path is a directory", path.relative)
        if target_mode is not None and stat.S_ISLNK(target_mode):
            raise PathTraversal("Target is a symbolic link", path.relative)

        self._replace(tmp_path, path)
        return target_mode is None

    def _replace(self, tmp_path: Path, path: ResolvedPath) -> None:
        try:
            os.replace(tmp_path, path.absolute)
        except OSError as e:
            raise from_os_error(e, path.relative) from e

    # =========================================================================
    # List
    # =========================================================================

    async def list_dir(self, path: ResolvedPath, recursive: bool = False) -> list[DirEntry]:
        """
        List a directory, ordered by name.

        Symbolic links and in-flight temporary files are omitted. With
        recursive=True, nested entries are named relative to the listed
        directory ("sub/file.txt").

        Raises:
            NotFound: If the directory does not exist.
            NotADirectory: If the path is a file.
        """
        return await asyncio.to_thread(self._list_dir, path, recursive)

    def _list_dir(self, path: ResolvedPath, recursive: bool) -> list[DirEntry]:
        self._resolver.verify(path)
        try:
            fd = os.open(path.absolute, os.O_RDONLY | _O_DIRECTORY | _O_NOFOLLOW | _O_CLOEXEC)
        except OSError as e:
            raise from_os_error(e, path.relative) from e
        try:
            st = os.fstat(fd)
            if not stat.S_ISDIR(st.st_mode):
                raise NotADirectory("Path is not a directory", path.relative)
            self._check_same_file(path, st)
            entries: list[DirEntry] = []
            self._scan(fd, "", recursive, entries, path)
        finally:
            os.close(fd)

        entries.sort(key=lambda entry: entry.name)
        return entries

    def _scan(
        self,
        dir_fd: int,
        prefix: str,
        recursive: bool,
        entries: list[DirEntry],
        path: ResolvedPath,
    ) -> None:
        subdirs: list[str] = []
        try:
            with os.scandir(dir_fd) as it:
                for entry in it:
                    if entry.is_symlink() or entry.name.endswith(TEMP_SUFFIX):
                        continue
                    is_dir = entry.is_dir(follow_symlinks=False)
                    size = 0 if is_dir else entry.stat(follow_symlinks=False).st_size
                    entries.append(DirEntry(name=prefix + entry.name, is_directory=is_dir, size=size))
                    if is_dir and recursive:
                        subdirs.append(entry.name)
        except OSError as e:
            raise from_os_error(e, path.relative) from e

        for name in subdirs:
            try:
                child_fd = os.open(
                    name, os.O_RDONLY | _O_DIRECTORY | _O_NOFOLLOW | _O_CLOEXEC, dir_fd=dir_fd
                )
            except OSError as e:
                # Removed or replaced while listing; skip it
                logger.debug("list_subdirectory_skipped", path=path.relative, name=name, error=str(e))
                continue
            try:
                self._scan(child_fd, f"{prefix}{name}/", recursive, entries, path)
            finally:
                os.close(child_fd)

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _check_same_file(self, path: ResolvedPath, opened: os.stat_result) -> None:
        """Compare an opened descriptor with what the path names now."""
        try:
            current = os.lstat(path.absolute)
        except OSError as e:
            raise from_os_error(e, path.relative) from e
        if (current.st_dev, current.st_ino) != (opened.st_dev, opened.st_ino):
            logger.warning("path_swapped_during_open", path=path.relative)
            raise PathTraversal("Path changed while opening", path.relative)


def _remove_quietly(path: Path) -> bool:
    try:
        os.unlink(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.error("temporary_file_cleanup_failed", path=str(path), error=str(e))
        return False
    return True


def _links_unsupported(exc: OSError) -> bool:
    return exc.errno in (errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EXDEV)
