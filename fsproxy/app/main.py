"""
fsproxy - FastAPI Application

Main entry point for the sandboxed file proxy API server.
"""

import asyncio
import os
import platform
import signal
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from structlog import get_logger

from fsproxy import __version__
from fsproxy.app.api import dirs, files, operations
from fsproxy.app.config import get_settings
from fsproxy.app.logging_config import configure_logging
from fsproxy.app.services.metadata_store import MetadataStore
from fsproxy.app.services.recorder import MetadataRecorder
from fsproxy.fs.exceptions import FSProxyError, StorageError
from fsproxy.fs.executor import FileExecutor
from fsproxy.fs.guard import ConcurrencyGuard
from fsproxy.fs.mediator import FileMediator
from fsproxy.fs.models import ErrorKind
from fsproxy.fs.resolver import PathResolver

logger = get_logger(__name__)

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.PATH_TRAVERSAL: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NOT_A_DIRECTORY: 400,
    ErrorKind.IS_A_DIRECTORY: 409,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RANGE_NOT_SATISFIABLE: 416,
    ErrorKind.PAYLOAD_TOO_LARGE: 413,
    ErrorKind.SHUTTING_DOWN: 503,
    ErrorKind.IO_ERROR: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Builds the mediation stack on startup; a missing or invalid sandbox
    root aborts startup. On shutdown, lock waiters are failed and pending
    audit records are drained.
    """
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    # Bounded pool shared by asyncio.to_thread and aiofiles
    asyncio.get_running_loop().set_default_executor(
        ThreadPoolExecutor(max_workers=settings.io_workers, thread_name_prefix="fsproxy-io")
    )

    resolver = PathResolver(settings.sandbox_root)

    store: MetadataStore | None = None
    recorder: MetadataRecorder | None = None
    if settings.metadata_url:
        store = MetadataStore.from_url(settings.metadata_url)
        recorder = MetadataRecorder(store, queue_size=settings.recorder_queue_size)
        recorder.start()

    guard = ConcurrencyGuard(timeout=settings.lock_timeout_seconds)
    executor = FileExecutor(
        resolver,
        chunk_size=settings.chunk_size,
        max_upload_bytes=settings.max_upload_bytes,
    )
    mediator = FileMediator(resolver, guard, executor, recorder)

    files.set_mediator(mediator)
    operations.set_metadata_store(store)
    app.state.mediator = mediator
    app.state.recorder = recorder

    logger.info(
        "fsproxy_starting",
        version=__version__,
        sandbox_root=str(resolver.root),
        auditing=store is not None,
        io_workers=settings.io_workers,
    )

    yield

    guard.close()
    if recorder is not None:
        await recorder.close()
    if store is not None:
        store.close()
    files.set_mediator(None)
    operations.set_metadata_store(None)
    app.state.mediator = None
    app.state.recorder = None
    logger.info("fsproxy_shutdown")


# Create FastAPI app
app = FastAPI(
    title="fsproxy",
    description="Sandboxed file proxy",
    version=__version__,
    lifespan=lifespan,
)


def fail_lock_waiters() -> int:
    """
    Close the running guard so queued lock waiters fail with ShuttingDown.

    Safe to call more than once, and before startup or after teardown.

    Returns:
        Number of waiters failed.
    """
    mediator: FileMediator | None = getattr(app.state, "mediator", None)
    if mediator is None or mediator.guard.closed:
        return 0
    return mediator.guard.close()


@app.exception_handler(FSProxyError)
async def fsproxy_error_handler(request: Request, exc: FSProxyError) -> JSONResponse:
    """Translate mediation failures into HTTP status codes."""
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if isinstance(exc, StorageError) and exc.out_of_space:
        status_code = 507

    headers = None
    if exc.kind == ErrorKind.RANGE_NOT_SATISFIABLE:
        headers = {"Content-Range": f"bytes */{getattr(exc, 'size', 0)}"}

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.kind.value,
            "detail": exc.message,
            "path": exc.path,
        },
        headers=headers,
    )


# Include API routers
app.include_router(files.router)
app.include_router(dirs.router)
app.include_router(operations.router, prefix="/api")


# Health check
@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    mediator: FileMediator | None = getattr(request.app.state, "mediator", None)
    recorder: MetadataRecorder | None = getattr(request.app.state, "recorder", None)
    return {
        "status": "healthy",
        "version": __version__,
        "pid": os.getpid(),
        "platform": platform.system().lower(),
        "sandbox_root": str(mediator.resolver.root) if mediator else None,
        "lock_table_size": mediator.guard.table_size if mediator else 0,
        "recorder": recorder.stats if recorder else None,
    }


# API Info
@app.get("/api")
async def api_info():
    """API information endpoint."""
    return {
        "name": "fsproxy API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "files": "/files/{path}",
            "dirs": "/dirs/{path}",
            "operations": "/api/operations",
            "health": "/health",
        },
    }


@app.post("/shutdown")
async def shutdown(request: Request):
    """
    Begin a graceful shutdown.

    Queued lock waiters fail with ShuttingDown immediately; the server
    process receives SIGTERM shortly after the response is sent.
    """
    if not get_settings().enable_shutdown_endpoint:
        raise HTTPException(status_code=404, detail="Not Found")

    fail_lock_waiters()

    logger.warning("shutdown_requested", client=request.client.host if request.client else None)
    asyncio.get_running_loop().call_later(0.1, os.kill, os.getpid(), signal.SIGTERM)
    return {"status": "shutting_down"}
