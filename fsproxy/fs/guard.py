"""
Concurrency Guard

Per-path readers-writer locking for mediated file operations.

Each contested path gets a reference-counted entry in a process-wide
lock table. Waiters queue in arrival order on that path only, so a slow
writer never delays operations on unrelated paths. Entries are dropped
from the table as soon as no holder or waiter references them.
"""

import asyncio
import threading
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from structlog import get_logger

from fsproxy.fs.exceptions import Conflict, ShuttingDown
from fsproxy.fs.models import LockMode, ResolvedPath

logger = get_logger(__name__)

T = TypeVar("T")


class _PathLock:
    """Lock state for one canonical path."""

    __slots__ = ("readers", "writer", "refs", "waiters")

    def __init__(self) -> None:
        self.readers = 0
        self.writer = False
        self.refs = 0
        self.waiters: deque[tuple[LockMode, asyncio.Future]] = deque()

    def compatible(self, mode: LockMode) -> bool:
        if mode == LockMode.WRITE:
            return not self.writer and self.readers == 0
        return not self.writer

    def grant(self, mode: LockMode) -> None:
        if mode == LockMode.WRITE:
            self.writer = True
        else:
            self.readers += 1

    def release(self, mode: LockMode) -> None:
        if mode == LockMode.WRITE:
            self.writer = False
        else:
            self.readers -= 1


class PathLease:
    """
    A granted lock on one path.

    release() is idempotent so it can be called from both a stream's
    cleanup and a response's background task.
    """

    def __init__(self, guard: "ConcurrencyGuard", key: str, mode: LockMode):
        self._guard = guard
        self.key = key
        self.mode = mode
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._guard._release(self.key, self.mode)


class ConcurrencyGuard:
    """
    Readers-writer lock table keyed by resolved path.

    Usage:
        guard = ConcurrencyGuard(timeout=5.0)

        async with guard.hold(resolved, LockMode.WRITE):
            ...

        result = await guard.with_lock(resolved, LockMode.READ, action)
    """

    def __init__(self, timeout: float | None = None):
        """
        Initialize the guard.

        Args:
            timeout: Seconds to wait for a lock before failing with
                Conflict. None waits indefinitely.
        """
        self._timeout = timeout
        self._table: dict[str, _PathLock] = {}
        # Guards _table and every _PathLock's state; never held across an await
        self._mutex = threading.Lock()
        self._closed = False

    @property
    def table_size(self) -> int:
        with self._mutex:
            return len(self._table)

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self, path: ResolvedPath | str, mode: LockMode) -> PathLease:
        """
        Acquire a lock on a path, waiting behind earlier requests.

        Raises:
            ShuttingDown: If the guard is closed before or while waiting.
            Conflict: If the configured timeout elapses first.
        """
        key = path.key if isinstance(path, ResolvedPath) else path

        with self._mutex:
            if self._closed:
                raise ShuttingDown("Server is shutting down", str(path))
            entry = self._table.get(key)
            if entry is None:
                entry = self._table[key] = _PathLock()
            entry.refs += 1
            if not entry.waiters and entry.compatible(mode):
                entry.grant(mode)
                return PathLease(self, key, mode)
            waiter = asyncio.get_running_loop().create_future()
            entry.waiters.append((mode, waiter))

        logger.debug("path_lock_waiting", path=key, mode=mode.value)

        try:
            if self._timeout is None:
                await waiter
            else:
                await asyncio.wait_for(asyncio.shield(waiter), self._timeout)
        except BaseException as e:
            self._abandon(key, mode, waiter)
            if isinstance(e, asyncio.TimeoutError):
                logger.warning("path_lock_timeout", path=key, mode=mode.value)
                raise Conflict("Timed out waiting for path lock", str(path)) from e
            raise

        return PathLease(self, key, mode)

    @asynccontextmanager
    async def hold(self, path: ResolvedPath | str, mode: LockMode) -> AsyncIterator[PathLease]:
        """Scoped acquisition; the lock is released on every exit path."""
        lease = await self.acquire(path, mode)
        try:
            yield lease
        finally:
            lease.release()

    async def with_lock(
        self,
        path: ResolvedPath | str,
        mode: LockMode,
        action: Callable[[], Awaitable[T]],
    ) -> T:
        """Run an async action while holding the lock on a path."""
        async with self.hold(path, mode):
            return await action()

    def close(self) -> int:
        """
        Refuse new acquisitions and fail every queued waiter.

        Holders keep their locks until they release them.

        Returns:
            Number of waiters failed with ShuttingDown.
        """
        failed = 0
        with self._mutex:
            self._closed = True
            for key, entry in self._table.items():
                for _, waiter in entry.waiters:
                    if not waiter.done():
                        waiter.set_exception(ShuttingDown("Server is shutting down", key))
                        failed += 1
        logger.info("concurrency_guard_closed", failed_waiters=failed)
        return failed

    def _release(self, key: str, mode: LockMode) -> None:
        with self._mutex:
            entry = self._table[key]
            entry.release(mode)
            entry.refs -= 1
            self._wake(entry)
            self._discard_if_unused(key, entry)

    def _abandon(self, key: str, mode: LockMode, waiter: asyncio.Future) -> None:
        """Clean up after a waiter that was cancelled, timed out or failed."""
        with self._mutex:
            entry = self._table[key]
            granted = (
                waiter.done()
                and not waiter.cancelled()
                and waiter.exception() is None
            )
            if granted:
                # Granted between wakeup and cancellation; hand it back
                entry.release(mode)
            else:
                try:
                    entry.waiters.remove((mode, waiter))
                except ValueError:
                    pass
                if not waiter.done():
                    waiter.cancel()
            entry.refs -= 1
            self._wake(entry)
            self._discard_if_unused(key, entry)

    def _wake(self, entry: _PathLock) -> None:
        while entry.waiters:
            mode, waiter = entry.waiters[0]
            if waiter.done():
                entry.waiters.popleft()
                continue
            if not entry.compatible(mode):
                return
            entry.waiters.popleft()
            entry.grant(mode)
            waiter.set_result(None)

    def _discard_if_unused(self, key: str, entry: _PathLock) -> None:
        if entry.refs == 0:
            del self._table[key]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Current lock table state, for diagnostics."""
        with self._mutex:
            return {
                key: {
                    "readers": entry.readers,
                    "writer": entry.writer,
                    "waiting": len(entry.waiters),
                }
                for key, entry in self._table.items()
            }
