"""
Directory API Routes

Directory listings as JSON arrays of {name, isDirectory, size}.
"""

from fastapi import APIRouter, Query

from fsproxy.app.api.files import get_mediator
from fsproxy.fs.models import DirEntry, OperationKind, OperationRequest

router = APIRouter(prefix="/dirs", tags=["dirs"])


@router.get("", response_model=list[DirEntry])
async def list_root(
    recursive: bool = Query(False, description="Include nested entries"),
) -> list[DirEntry]:
    """List the sandbox root."""
    return await list_directory("", recursive)


@router.get("/{path:path}", response_model=list[DirEntry])
async def list_directory(
    path: str,
    recursive: bool = Query(False, description="Include nested entries"),
) -> list[DirEntry]:
    """
    List a directory ordered by name.

    Shallow by default; recursive=true includes nested entries named
    relative to the listed directory.
    """
    mediator = get_mediator()
    result = await mediator.list(
        OperationRequest(kind=OperationKind.LIST, relative_path=path, recursive=recursive)
    )
    return result.entries or []
