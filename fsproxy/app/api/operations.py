"""
Operations API Routes

Read access to the audit records kept by the metadata store.
"""

import asyncio

from fastapi import APIRouter, HTTPException, Query

from fsproxy.app.services.metadata_store import MetadataStore
from fsproxy.fs.models import OperationKind, OperationStatus

router = APIRouter(prefix="/operations", tags=["operations"])

# Global store instance (set by main app when auditing is configured)
_store: MetadataStore | None = None


def get_metadata_store() -> MetadataStore:
    """Get the metadata store instance."""
    if _store is None:
        raise HTTPException(
            status_code=503,
            detail="Metadata store not configured"
        )
    return _store


def set_metadata_store(store: MetadataStore | None) -> None:
    """Set the global metadata store instance."""
    global _store
    _store = store


@router.get("")
async def list_operations(
    path: str | None = Query(None, description="Only records for this path"),
    kind: OperationKind | None = Query(None, description="Only this operation kind"),
    status: OperationStatus | None = Query(None, description="Only this outcome"),
    limit: int = Query(100, ge=1, le=1000),
) -> list[dict]:
    """
    Get recorded operations, newest first.

    Records are written in the background, so an operation may take a
    moment to appear.
    """
    store = get_metadata_store()
    return await asyncio.to_thread(
        store.get_records, path=path, kind=kind, status=status, limit=limit
    )


@router.get("/stats")
async def operation_stats() -> dict:
    """Get operation counts per kind and status."""
    store = get_metadata_store()
    return await asyncio.to_thread(store.get_stats)
