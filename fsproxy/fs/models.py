"""
File Operation Models

Pydantic models for operation requests, results and directory entries.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class OperationKind(str, Enum):
    """Kinds of operation the proxy mediates."""

    READ = "read"
    WRITE = "write"
    LIST = "list"


class LockMode(str, Enum):
    """Access mode requested from the concurrency guard."""

    READ = "read"
    """Shared access; any number of readers may hold the path."""

    WRITE = "write"
    """Exclusive access; excludes readers and other writers."""


class WriteMode(str, Enum):
    """How a write treats an existing target file."""

    CREATE_OR_TRUNCATE = "create_or_truncate"
    """Create the file or replace its content entirely."""

    CREATE_ONLY = "create_only"
    """Fail with AlreadyExists if the target is present."""


class OperationStatus(str, Enum):
    """Outcome of a mediated operation."""

    OK = "ok"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Failure taxonomy shared by the resolver, guard and executor."""

    PATH_TRAVERSAL = "PathTraversal"
    NOT_FOUND = "NotFound"
    NOT_A_DIRECTORY = "NotADirectory"
    IS_A_DIRECTORY = "IsADirectory"
    ALREADY_EXISTS = "AlreadyExists"
    IO_ERROR = "IOError"
    SHUTTING_DOWN = "ShuttingDown"
    CONFLICT = "Conflict"
    RANGE_NOT_SATISFIABLE = "RangeNotSatisfiable"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"


@dataclass(frozen=True)
class ResolvedPath:
    """
    A canonical absolute path confined to the sandbox root.

    Only the PathResolver constructs these; holding one means the
    path was checked to be a descendant of (or equal to) the root.
    """

    absolute: Path
    relative: str

    @property
    def is_root(self) -> bool:
        return self.relative == ""

    @property
    def key(self) -> str:
        """Lock table key for this path."""
        return str(self.absolute)

    def __str__(self) -> str:
        return self.relative or "/"


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range resolved against a known file size."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


class DirEntry(BaseModel):
    """A single directory listing entry."""

    name: str = Field(
        description="Entry name, relative to the listed directory"
    )

    is_directory: bool = Field(
        serialization_alias="isDirectory",
        description="Whether the entry is a directory"
    )

    size: int = Field(
        default=0,
        description="Size in bytes (0 for directories)"
    )


class OperationRequest(BaseModel):
    """
    A single client request, consumed once by the mediator.

    The write payload is not part of the model; it is passed to the
    mediator as an async byte iterator alongside the request.
    """

    kind: OperationKind
    relative_path: str
    write_mode: WriteMode = WriteMode.CREATE_OR_TRUNCATE
    recursive: bool = False


class OperationResult(BaseModel):
    """
    Outcome of a mediated operation.

    Returned to the HTTP layer and forwarded to the metadata recorder.
    """

    operation_id: UUID = Field(
        default_factory=uuid4,
        description="Unique identifier for this operation"
    )

    kind: OperationKind = Field(
        description="Kind of operation performed"
    )

    path: str = Field(
        description="Client-supplied relative path"
    )

    status: OperationStatus = Field(
        default=OperationStatus.OK,
        description="Whether the operation succeeded"
    )

    bytes_transferred: int = Field(
        default=0,
        description="Bytes read or written"
    )

    error_kind: ErrorKind | None = Field(
        default=None,
        description="Failure class if the operation failed"
    )

    error_message: str | None = Field(
        default=None,
        description="Human readable failure detail"
    )

    entries: list[DirEntry] | None = Field(
        default=None,
        description="Directory entries (list operations only)"
    )

    created: bool = Field(
        default=False,
        description="Whether a write created a new file"
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the operation started"
    )

    duration_ms: float = Field(
        default=0.0,
        description="Wall-clock time spent in the operation"
    )

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.OK
