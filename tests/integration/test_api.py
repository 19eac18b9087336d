"""
Integration tests for the fsproxy HTTP API

Runs the full application (lifespan included) against a temporary
sandbox through FastAPI's TestClient.
"""

import time

import pytest
from fastapi.testclient import TestClient

from fsproxy.app.config import reset_settings
from fsproxy.app.main import app


@pytest.fixture
def sandbox(tmp_path):
    root = tmp_path / "sandbox"
    root.mkdir()
    return root


@pytest.fixture
def client(monkeypatch, tmp_path, sandbox):
    """Start the app with auditing enabled."""
    monkeypatch.setenv("FSPROXY_SANDBOX_ROOT", str(sandbox))
    monkeypatch.setenv("FSPROXY_METADATA_URL", f"sqlite:///{tmp_path}/ops.db")
    monkeypatch.delenv("FSPROXY_ENABLE_SHUTDOWN_ENDPOINT", raising=False)
    reset_settings()
    with TestClient(app) as test_client:
        yield test_client
    reset_settings()


def wait_for_records(client: TestClient, expected: int, **params) -> list[dict]:
    """Poll the audit API until the background recorder catches up."""
    records: list[dict] = []
    for _ in range(50):
        response = client.get("/api/operations", params=params)
        assert response.status_code == 200
        records = response.json()
        if len(records) >= expected:
            break
        time.sleep(0.05)
    return records


class TestFilesApi:
    """Test /files read and write endpoints."""

    def test_write_read_list_scenario(self, client, sandbox):
        response = client.put("/files/notes/a.txt", content=b"hello")
        assert response.status_code == 201
        assert response.json()["bytes_written"] == 5
        assert response.json()["created"] is True

        response = client.get("/files/notes/a.txt")
        assert response.status_code == 200
        assert response.content == b"hello"
        assert response.headers["content-length"] == "5"

        response = client.get("/dirs/notes")
        assert response.status_code == 200
        assert response.json() == [{"name": "a.txt", "isDirectory": False, "size": 5}]

        assert (sandbox / "notes" / "a.txt").read_bytes() == b"hello"

    def test_overwrite_returns_200(self, client):
        client.put("/files/a.txt", content=b"first")
        response = client.put("/files/a.txt", content=b"second")

        assert response.status_code == 200
        assert response.json()["created"] is False
        assert client.get("/files/a.txt").content == b"second"

    def test_read_missing(self, client):
        response = client.get("/files/missing.txt")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_read_directory(self, client, sandbox):
        (sandbox / "docs").mkdir()

        response = client.get("/files/docs")

        assert response.status_code == 409
        assert response.json()["error"] == "IsADirectory"

    def test_write_directory(self, client, sandbox):
        (sandbox / "docs").mkdir()

        assert client.put("/files/docs", content=b"x").status_code == 409

    def test_create_only_conflict(self, client):
        assert client.put("/files/once.txt", content=b"1").status_code == 201

        response = client.put(
            "/files/once.txt", content=b"2", headers={"If-None-Match": "*"}
        )
        assert response.status_code == 409
        assert response.json()["error"] == "AlreadyExists"

        response = client.put("/files/once.txt", content=b"3", params={"mode": "create_only"})
        assert response.status_code == 409
        assert client.get("/files/once.txt").content == b"1"

    def test_nul_in_path_rejected(self, client):
        response = client.get("/files/bad%00name.txt")

        assert response.status_code == 400
        assert response.json()["error"] == "PathTraversal"

    def test_range_request(self, client):
        client.put("/files/a.txt", content=b"hello")

        response = client.get("/files/a.txt", headers={"Range": "bytes=1-3"})

        assert response.status_code == 206
        assert response.content == b"ell"
        assert response.headers["content-range"] == "bytes 1-3/5"

    def test_range_not_satisfiable(self, client):
        client.put("/files/a.txt", content=b"hello")

        response = client.get("/files/a.txt", headers={"Range": "bytes=10-"})

        assert response.status_code == 416
        assert response.headers["content-range"] == "bytes */5"

    def test_large_file_round_trip(self, client):
        payload = bytes(range(256)) * 1024

        assert client.put("/files/big.bin", content=payload).status_code == 201
        assert client.get("/files/big.bin").content == payload


class TestDirsApi:
    """Test /dirs listing endpoints."""

    def test_list_root(self, client, sandbox):
        (sandbox / "b").mkdir()
        (sandbox / "a.txt").write_text("abc")

        response = client.get("/dirs")

        assert response.status_code == 200
        assert response.json() == [
            {"name": "a.txt", "isDirectory": False, "size": 3},
            {"name": "b", "isDirectory": True, "size": 0},
        ]

    def test_list_recursive(self, client, sandbox):
        (sandbox / "x" / "y").mkdir(parents=True)
        (sandbox / "x" / "y" / "z.txt").write_text("z")

        response = client.get("/dirs/x", params={"recursive": "true"})

        assert [e["name"] for e in response.json()] == ["y", "y/z.txt"]

    def test_list_file(self, client, sandbox):
        (sandbox / "a.txt").write_text("x")

        response = client.get("/dirs/a.txt")

        assert response.status_code == 400
        assert response.json()["error"] == "NotADirectory"

    def test_list_missing(self, client):
        assert client.get("/dirs/missing").status_code == 404


class TestServiceEndpoints:
    """Test health, audit and shutdown endpoints."""

    def test_health(self, client, sandbox):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["sandbox_root"] == str(sandbox.resolve())
        assert data["lock_table_size"] == 0
        assert isinstance(data["pid"], int)

    def test_api_info(self, client):
        assert client.get("/api").json()["name"] == "fsproxy API"

    def test_operations_are_audited(self, client):
        client.put("/files/a.txt", content=b"hello")
        client.get("/files/missing.txt")

        records = wait_for_records(client, 2)

        assert {(r["kind"], r["status"]) for r in records} == {
            ("write", "ok"),
            ("read", "error"),
        }

    def test_operations_filter_and_stats(self, client):
        client.put("/files/a.txt", content=b"hello")
        client.put("/files/b.txt", content=b"hi")
        wait_for_records(client, 2)

        records = client.get("/api/operations", params={"path": "b.txt"}).json()
        assert len(records) == 1
        assert records[0]["bytes_transferred"] == 2

        stats = client.get("/api/operations/stats").json()
        assert stats["by_kind"]["write"]["ok"] == 2
        assert stats["total_bytes"] == 7

    def test_shutdown_disabled_by_default(self, client):
        assert client.post("/shutdown").status_code == 404


class TestWithoutAuditing:
    """Test the app with no metadata store configured."""

    @pytest.fixture
    def client(self, monkeypatch, sandbox):
        monkeypatch.setenv("FSPROXY_SANDBOX_ROOT", str(sandbox))
        monkeypatch.delenv("FSPROXY_METADATA_URL", raising=False)
        reset_settings()
        with TestClient(app) as test_client:
            yield test_client
        reset_settings()

    def test_files_work(self, client):
        assert client.put("/files/a.txt", content=b"x").status_code == 201
        assert client.get("/files/a.txt").content == b"x"

    def test_operations_unavailable(self, client):
        assert client.get("/api/operations").status_code == 503

    def test_health_reports_no_recorder(self, client):
        assert client.get("/health").json()["recorder"] is None
