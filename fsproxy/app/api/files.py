"""
File API Routes

Streamed file reads and atomic file writes.
"""

import mimetypes

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from fsproxy.fs.mediator import FileMediator
from fsproxy.fs.models import OperationKind, OperationRequest, WriteMode

router = APIRouter(prefix="/files", tags=["files"])

# Global mediator instance (will be set by main app)
_mediator: FileMediator | None = None


def get_mediator() -> FileMediator:
    """Get the mediator instance."""
    if _mediator is None:
        raise HTTPException(
            status_code=503,
            detail="File mediator not initialized"
        )
    return _mediator


def set_mediator(mediator: FileMediator | None) -> None:
    """Set the global mediator instance."""
    global _mediator
    _mediator = mediator


@router.get("/{path:path}")
async def read_file(
    path: str,
    range_header: str | None = Header(None, alias="Range"),
) -> StreamingResponse:
    """
    Stream a file's content.

    Honors a single "Range: bytes=..." header with a 206 response.
    The shared lock on the path is held until the body has been sent.
    """
    mediator = get_mediator()
    stream = await mediator.read(
        OperationRequest(kind=OperationKind.READ, relative_path=path),
        range_spec=range_header,
    )

    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Length": str(stream.content_length),
    }
    status_code = 200
    if stream.byte_range is not None:
        status_code = 206
        headers["Content-Range"] = (
            f"bytes {stream.byte_range.start}-{stream.byte_range.end}/{stream.size}"
        )

    return StreamingResponse(
        stream,
        status_code=status_code,
        media_type=media_type,
        headers=headers,
        # Releases the lock if the body iterator never ran
        background=BackgroundTask(stream.aclose),
    )


@router.put("/{path:path}")
async def write_file(
    path: str,
    request: Request,
    mode: WriteMode = Query(WriteMode.CREATE_OR_TRUNCATE, description="Write mode"),
    if_none_match: str | None = Header(None),
) -> JSONResponse:
    """
    Write the request body to a file.

    Returns 201 when the file was created and 200 when it was replaced.
    "If-None-Match: *" selects create-only mode.
    """
    if if_none_match is not None and if_none_match.strip() == "*":
        mode = WriteMode.CREATE_ONLY

    mediator = get_mediator()
    result = await mediator.write(
        OperationRequest(kind=OperationKind.WRITE, relative_path=path, write_mode=mode),
        request.stream(),
    )

    return JSONResponse(
        status_code=201 if result.created else 200,
        content={
            "path": result.path,
            "bytes_written": result.bytes_transferred,
            "created": result.created,
            "operation_id": str(result.operation_id),
        },
    )
