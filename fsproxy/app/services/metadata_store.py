"""
Metadata Store Service

SQLite-backed audit log of mediated file operations. Supports record
ingestion, filtered retrieval and aggregate counts.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from structlog import get_logger

from fsproxy.fs.models import OperationKind, OperationResult, OperationStatus

logger = get_logger(__name__)

SQLITE_SCHEME = "sqlite:///"


class MetadataStoreConfigError(ValueError):
    """The metadata store connection string cannot be used."""


def parse_metadata_url(url: str) -> Path:
    """
    Turn a metadata connection string into a database file path.

    Accepts "sqlite:///relative.db", "sqlite:////abs/path.db" or a bare
    filesystem path.

    Raises:
        MetadataStoreConfigError: For any other URL scheme.
    """
    if url.startswith(SQLITE_SCHEME):
        location = url[len(SQLITE_SCHEME):]
        if not location:
            raise MetadataStoreConfigError("sqlite URL has no database path")
        return Path(location)
    if "://" in url:
        scheme = url.split("://", 1)[0]
        raise MetadataStoreConfigError(f"Unsupported metadata store scheme: {scheme}")
    return Path(url)


class MetadataStore:
    """
    SQLite-backed operation records.

    Connections are thread-local so the store can be used from the
    worker pool that the recorder dispatches writes to.

    Usage:
        store = MetadataStore(db_path="./data/operations.db")
        store.add_record(result)
        records = store.get_records(path="notes/a.txt", limit=20)
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize the metadata store.

        Args:
            db_path: Path to SQLite database file (parents are created).
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        self._init_schema()

        logger.info("metadata_store_initialized", db_path=str(self._db_path))

    @classmethod
    def from_url(cls, url: str) -> "MetadataStore":
        return cls(parse_metadata_url(url))

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "conn", None) is None:
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            # WAL lets readers proceed while the recorder writes
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    @contextmanager
    def _transaction(self):
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS operations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    operation_id TEXT NOT NULL UNIQUE,
                    kind TEXT NOT NULL,
                    path TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error_kind TEXT,
                    bytes_transferred INTEGER NOT NULL DEFAULT 0,
                    duration_ms REAL NOT NULL DEFAULT 0,
                    timestamp TEXT NOT NULL,
                    data JSON NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_path
                ON operations(path)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_timestamp
                ON operations(timestamp)
            """)

    def add_record(self, result: OperationResult) -> None:
        """
        Persist an operation result.

        Directory entries are not stored; only their count is kept.
        """
        data = result.model_dump(mode="json", exclude={"entries"})
        if result.entries is not None:
            data["entry_count"] = len(result.entries)

        with self._transaction() as conn:
            conn.execute("""
                INSERT OR IGNORE INTO operations (
                    operation_id, kind, path, status, error_kind,
                    bytes_transferred, duration_ms, timestamp, data
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                str(result.operation_id),
                result.kind.value,
                result.path,
                result.status.value,
                result.error_kind.value if result.error_kind else None,
                result.bytes_transferred,
                result.duration_ms,
                result.timestamp.isoformat(),
                json.dumps(data),
            ))

        logger.debug(
            "operation_recorded",
            operation_id=str(result.operation_id),
            kind=result.kind.value,
            path=result.path,
        )

    def get_records(
        self,
        path: str | None = None,
        kind: str | OperationKind | None = None,
        status: str | OperationStatus | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """
        Get recorded operations, newest first.

        Args:
            path: Only records for this relative path.
            kind: Only records of this operation kind.
            status: Only records with this status.
            limit: Maximum number of records to return.
        """
        conn = self._get_connection()

        query = "SELECT data FROM operations WHERE 1 = 1"
        params: list[Any] = []

        if path is not None:
            query += " AND path = ?"
            params.append(path)
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value if isinstance(kind, OperationKind) else kind)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value if isinstance(status, OperationStatus) else status)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = conn.execute(query, params).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def get_stats(self) -> dict[str, Any]:
        """Counts per kind and status plus total bytes moved."""
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT kind, status, COUNT(*) AS count,
                   COALESCE(SUM(bytes_transferred), 0) AS bytes
            FROM operations
            GROUP BY kind, status
        """).fetchall()

        by_kind: dict[str, dict[str, int]] = {}
        total = 0
        total_bytes = 0
        for row in rows:
            by_kind.setdefault(row["kind"], {})[row["status"]] = row["count"]
            total += row["count"]
            total_bytes += row["bytes"]

        return {
            "total_operations": total,
            "total_bytes": total_bytes,
            "by_kind": by_kind,
        }

    def get_total_count(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) FROM operations").fetchone()[0]

    def clear(self) -> int:
        """
        Delete every stored record.

        Returns:
            Number of records removed.
        """
        with self._transaction() as conn:
            count = conn.execute("SELECT COUNT(*) FROM operations").fetchone()[0]
            conn.execute("DELETE FROM operations")
        logger.info("metadata_store_cleared", count=count)
        return count

    def close(self) -> None:
        """Close every connection opened by any thread."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
        logger.info("metadata_store_closed", db_path=str(self._db_path))
