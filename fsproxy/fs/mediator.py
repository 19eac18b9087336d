"""
File Mediator

Wires the resolver, concurrency guard, executor and metadata recorder
into the request control flow:

    resolve -> lock -> execute -> release -> record

Each operation yields an OperationResult for success and failure alike;
failures are recorded and then re-raised to the caller.
"""

import asyncio
import time
from datetime import datetime, UTC
from typing import AsyncIterable, Protocol

from structlog import get_logger

from fsproxy.fs.exceptions import FSProxyError
from fsproxy.fs.executor import FileExecutor, ReadStream
from fsproxy.fs.guard import ConcurrencyGuard
from fsproxy.fs.models import (
    ErrorKind,
    LockMode,
    OperationKind,
    OperationRequest,
    OperationResult,
    OperationStatus,
)
from fsproxy.fs.resolver import PathResolver

logger = get_logger(__name__)


class Recorder(Protocol):
    """Anything that accepts finished operation results."""

    def record(self, result: OperationResult) -> None:
        ...


class FileMediator:
    """
    Mediates untrusted file operation requests.

    Usage:
        mediator = FileMediator(resolver, guard, executor, recorder)

        request = OperationRequest(kind=OperationKind.WRITE, relative_path="a.txt")
        result = await mediator.write(request, chunks)

        stream = await mediator.read(OperationRequest(kind=OperationKind.READ, relative_path="a.txt"))
        async for chunk in stream:
            ...
    """

    def __init__(
        self,
        resolver: PathResolver,
        guard: ConcurrencyGuard,
        executor: FileExecutor,
        recorder: Recorder | None = None,
    ):
        self.resolver = resolver
        self.guard = guard
        self.executor = executor
        self.recorder = recorder

    async def read(
        self,
        request: OperationRequest,
        range_spec: str | None = None,
    ) -> ReadStream:
        """
        Open a file for streaming under a shared lock.

        The lock is held until the returned stream is exhausted or
        closed; the read is recorded at that point.
        """
        started = time.monotonic()
        result = self._new_result(OperationKind.READ, request)
        try:
            resolved = self.resolver.resolve(request.relative_path)
            lease = await self.guard.acquire(resolved, LockMode.READ)
            try:
                stream = await self.executor.open_read(resolved, range_spec)
            except BaseException:
                lease.release()
                raise
        except BaseException as e:
            self._finish_failed(result, e, started)
            raise

        def on_close(closed: ReadStream, error: BaseException | None) -> None:
            lease.release()
            result.bytes_transferred = closed.bytes_sent
            if error is None and closed.bytes_sent < closed.content_length:
                # Closed before the body was fully sent, e.g. client disconnect
                error = asyncio.CancelledError("read stream closed early")
            if error is not None:
                self._finish_failed(result, error, started)
            else:
                self._finish(result, started)
                logger.debug("file_read", path=result.path, bytes=closed.bytes_sent)

        stream.add_close_callback(on_close)
        return stream

    async def write(
        self,
        request: OperationRequest,
        payload: AsyncIterable[bytes],
    ) -> OperationResult:
        """Atomically write a byte stream under an exclusive lock."""
        started = time.monotonic()
        result = self._new_result(OperationKind.WRITE, request)
        try:
            resolved = self.resolver.resolve(request.relative_path)
            async with self.guard.hold(resolved, LockMode.WRITE):
                written, created = await self.executor.write(
                    resolved, payload, request.write_mode
                )
        except BaseException as e:
            self._finish_failed(result, e, started)
            raise

        result.bytes_transferred = written
        result.created = created
        self._finish(result, started)
        logger.info(
            "file_written",
            path=result.path,
            bytes=written,
            created=created,
            mode=request.write_mode.value,
        )
        return result

    async def list(self, request: OperationRequest) -> OperationResult:
        """List a directory under a shared lock."""
        started = time.monotonic()
        result = self._new_result(OperationKind.LIST, request)
        try:
            resolved = self.resolver.resolve(request.relative_path)
            async with self.guard.hold(resolved, LockMode.READ):
                entries = await self.executor.list_dir(resolved, request.recursive)
        except BaseException as e:
            self._finish_failed(result, e, started)
            raise

        result.entries = entries
        self._finish(result, started)
        logger.debug("directory_listed", path=result.path, entries=len(entries))
        return result

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _new_result(self, kind: OperationKind, request: OperationRequest) -> OperationResult:
        return OperationResult(
            kind=kind,
            path=request.relative_path,
            timestamp=datetime.now(UTC),
        )

    def _finish(self, result: OperationResult, started: float) -> None:
        result.duration_ms = (time.monotonic() - started) * 1000
        self._record(result)

    def _finish_failed(
        self,
        result: OperationResult,
        error: BaseException,
        started: float,
    ) -> None:
        result.status = OperationStatus.ERROR
        if isinstance(error, FSProxyError):
            result.error_kind = error.kind
            result.error_message = error.message
        elif isinstance(error, (asyncio.CancelledError, GeneratorExit)):
            result.error_kind = ErrorKind.IO_ERROR
            result.error_message = "Operation cancelled"
        else:
            result.error_kind = ErrorKind.IO_ERROR
            result.error_message = str(error) or type(error).__name__

        log_method = logger.info if isinstance(error, FSProxyError) else logger.warning
        log_method(
            "file_operation_failed",
            kind=result.kind.value,
            path=result.path,
            error_kind=result.error_kind.value,
            error=result.error_message,
        )
        self._finish(result, started)

    def _record(self, result: OperationResult) -> None:
        if self.recorder is None:
            return
        try:
            self.recorder.record(result)
        except Exception as e:
            logger.error(
                "metadata_record_failed",
                operation_id=str(result.operation_id),
                error=str(e),
            )
