"""
Tests for Metadata Store and Recorder
"""

import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from fsproxy.app.services.metadata_store import (
    MetadataStore,
    MetadataStoreConfigError,
    parse_metadata_url,
)
from fsproxy.app.services.recorder import MetadataRecorder
from fsproxy.fs.models import (
    DirEntry,
    ErrorKind,
    OperationKind,
    OperationResult,
    OperationStatus,
)


def make_result(**overrides) -> OperationResult:
    values = {
        "kind": OperationKind.WRITE,
        "path": "notes/a.txt",
        "bytes_transferred": 5,
        "created": True,
    }
    values.update(overrides)
    return OperationResult(**values)


class TestParseMetadataUrl:
    """Test connection string handling."""

    def test_sqlite_relative(self):
        assert parse_metadata_url("sqlite:///data/ops.db") == Path("data/ops.db")

    def test_sqlite_absolute(self):
        assert parse_metadata_url("sqlite:////var/lib/fsproxy/ops.db") == Path("/var/lib/fsproxy/ops.db")

    def test_bare_path(self):
        assert parse_metadata_url("./ops.db") == Path("./ops.db")

    def test_unsupported_scheme(self):
        with pytest.raises(MetadataStoreConfigError):
            parse_metadata_url("postgresql://localhost/fsproxy")

    def test_empty_sqlite_path(self):
        with pytest.raises(MetadataStoreConfigError):
            parse_metadata_url("sqlite:///")


class TestMetadataStore:
    """Test suite for SQLite-backed operation records."""

    @pytest.fixture
    def store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = MetadataStore(Path(tmpdir) / "audit" / "ops.db")
            yield store
            store.close()

    def test_add_and_get_record(self, store):
        result = make_result()
        store.add_record(result)

        records = store.get_records()
        assert len(records) == 1
        assert records[0]["operation_id"] == str(result.operation_id)
        assert records[0]["path"] == "notes/a.txt"
        assert records[0]["bytes_transferred"] == 5

    def test_duplicate_operation_ignored(self, store):
        result = make_result()
        store.add_record(result)
        store.add_record(result)

        assert store.get_total_count() == 1

    def test_filters(self, store):
        store.add_record(make_result(path="a.txt"))
        store.add_record(make_result(path="b.txt", kind=OperationKind.READ))
        store.add_record(make_result(
            path="b.txt",
            kind=OperationKind.READ,
            status=OperationStatus.ERROR,
            error_kind=ErrorKind.NOT_FOUND,
        ))

        assert len(store.get_records(path="b.txt")) == 2
        assert len(store.get_records(kind=OperationKind.WRITE)) == 1
        assert len(store.get_records(kind="read", status="error")) == 1
        assert len(store.get_records(limit=1)) == 1

    def test_list_entries_stored_as_count(self, store):
        store.add_record(make_result(
            kind=OperationKind.LIST,
            path="notes",
            entries=[DirEntry(name="a.txt", is_directory=False, size=5)],
        ))

        record = store.get_records()[0]
        assert "entries" not in record
        assert record["entry_count"] == 1

    def test_stats(self, store):
        store.add_record(make_result(bytes_transferred=10))
        store.add_record(make_result(kind=OperationKind.READ, bytes_transferred=3))
        store.add_record(make_result(
            kind=OperationKind.READ,
            status=OperationStatus.ERROR,
            bytes_transferred=0,
        ))

        stats = store.get_stats()
        assert stats["total_operations"] == 3
        assert stats["total_bytes"] == 13
        assert stats["by_kind"]["read"] == {"ok": 1, "error": 1}

    def test_clear(self, store):
        store.add_record(make_result())
        store.add_record(make_result())

        assert store.clear() == 2
        assert store.get_total_count() == 0


class TestMetadataRecorder:
    """Test suite for background audit recording."""

    @pytest.fixture
    def store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = MetadataStore(Path(tmpdir) / "ops.db")
            yield store
            store.close()

    @pytest.mark.asyncio
    async def test_records_are_persisted(self, store):
        recorder = MetadataRecorder(store)
        recorder.start()

        recorder.record(make_result())
        recorder.record(make_result(kind=OperationKind.READ))
        await recorder.flush()

        assert store.get_total_count() == 2
        assert recorder.stats["recorded"] == 2
        await recorder.close()

    @pytest.mark.asyncio
    async def test_record_does_not_wait(self, store):
        """Test that record() returns before anything is persisted."""
        recorder = MetadataRecorder(store)
        recorder.start()

        recorder.record(make_result())
        assert recorder.pending == 1

        await recorder.close()
        assert store.get_total_count() == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_isolated(self):
        failing_store = MagicMock(spec=MetadataStore)
        failing_store.add_record.side_effect = sqlite3.OperationalError("disk I/O error")
        recorder = MetadataRecorder(failing_store)
        recorder.start()

        recorder.record(make_result())
        await recorder.flush()

        assert recorder.stats["failed"] == 1
        assert recorder.stats["recorded"] == 0
        await recorder.close()

    @pytest.mark.asyncio
    async def test_full_queue_drops_records(self, store):
        recorder = MetadataRecorder(store, queue_size=1)

        recorder.record(make_result())
        recorder.record(make_result())

        assert recorder.stats["dropped"] == 1
        assert recorder.pending == 1

    @pytest.mark.asyncio
    async def test_close_without_start(self, store):
        recorder = MetadataRecorder(store)
        await recorder.close()

        assert recorder.stats["recorded"] == 0
