"""
HTTP endpoint integration tests for the fantasy sync API.

These tests verify that FastAPI endpoints:
- Return correct HTTP status codes
- Map structured sync errors to HTTP errors
- Expose queue, trigger and cascade state

Uses FastAPI TestClient for in-memory HTTP testing; background scheduler and
executors are not started.
"""
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import FakeRoundReader, RecordingHandlers

from fantasy_sync.main import create_app
from fantasy_sync.services.sync.plugins import SyncPlugin
from fantasy_sync.services.sync.runtime import SyncRuntime, build_runtime


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def runtime(session_factory, round_reader: FakeRoundReader, handlers: RecordingHandlers) -> SyncRuntime:
    plugin = SyncPlugin(
        handlers=handlers.registry(),
        round_reader=round_reader,
        collection_resolvers={"round_entries": AsyncMock(return_value=[101, 102])},
    )
    return build_runtime(plugin, session_factory=session_factory)


@pytest.fixture
def test_client(runtime: SyncRuntime) -> TestClient:
    return TestClient(create_app(runtime=runtime, start_background=False))


# =============================================================================
# TESTS
# =============================================================================

class TestRootAndHealthEndpoints:
    """Test root and health check endpoints."""

    def test_root_endpoint(self, test_client: TestClient):
        response = test_client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert data["endpoints"]["sync"] == "/api/v1/sync"

    def test_health_endpoint(self, test_client: TestClient):
        response = test_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["queue"]["status"] == "connected"
        assert data["components"]["scheduler"]["running"] is False

    def test_health_without_runtime(self):
        response = TestClient(create_app(start_background=False)).get("/health")
        assert response.json()["status"] == "starting"

    def test_correlation_id_header_echoed(self, test_client: TestClient):
        response = test_client.get("/health", headers={"X-Correlation-ID": "req-42"})
        assert response.headers["X-Correlation-ID"] == "req-42"

    def test_metrics_endpoint(self, test_client: TestClient):
        response = test_client.get("/metrics/")
        assert response.status_code == 200
        assert "sync_" in response.text


class TestTaskEndpoints:
    """Manual enqueue and task lookups."""

    def test_trigger_task(self, test_client: TestClient):
        response = test_client.post("/api/v1/sync/tasks/standings/trigger", json={"subject_ref": "15"})

        assert response.status_code == 200
        task = response.json()["task"]
        assert task["dedup_key"] == "standings:15"
        assert task["source"] == "api"
        assert task["created"] is True

    def test_trigger_without_body_is_global(self, test_client: TestClient):
        response = test_client.post("/api/v1/sync/tasks/teams-sync/trigger")

        assert response.status_code == 200
        assert response.json()["task"]["dedup_key"] == "teams-sync:global"

    def test_repeated_trigger_is_deduplicated(self, test_client: TestClient):
        first = test_client.post("/api/v1/sync/tasks/standings/trigger", json={"subject_ref": "15"}).json()
        second = test_client.post("/api/v1/sync/tasks/standings/trigger", json={"subject_ref": "15"}).json()

        assert second["task"]["created"] is False
        assert second["task"]["task_id"] == first["task"]["task_id"]

    def test_unknown_task_type_is_404(self, test_client: TestClient):
        response = test_client.post("/api/v1/sync/tasks/nightly-everything/trigger")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "unknown_task_type"

    def test_negative_delay_rejected(self, test_client: TestClient):
        response = test_client.post("/api/v1/sync/tasks/standings/trigger", json={"delay_seconds": -1})
        assert response.status_code == 422

    def test_get_task(self, test_client: TestClient):
        task_id = test_client.post("/api/v1/sync/tasks/standings/trigger").json()["task"]["task_id"]

        response = test_client.get(f"/api/v1/sync/tasks/{task_id}")

        assert response.status_code == 200
        assert response.json()["status"] == "waiting"

    def test_get_task_not_found(self, test_client: TestClient):
        response = test_client.get("/api/v1/sync/tasks/does-not-exist")
        assert response.status_code == 404

    def test_counts_and_filters(self, test_client: TestClient):
        test_client.post("/api/v1/sync/tasks/standings/trigger", json={"subject_ref": "15"})
        test_client.post("/api/v1/sync/tasks/teams-sync/trigger")

        counts = test_client.get("/api/v1/sync/tasks/counts").json()
        filtered = test_client.get("/api/v1/sync/tasks?task_type=standings&status=waiting").json()

        assert counts["waiting"] == 2
        assert [t["dedup_key"] for t in filtered] == ["standings:15"]

    def test_invalid_status_filter(self, test_client: TestClient):
        response = test_client.get("/api/v1/sync/tasks?status=paused")
        assert response.status_code == 422


class TestDescriptionEndpoints:
    """Task types, cascades, conditions and scheduler jobs."""

    def test_task_types(self, test_client: TestClient):
        data = test_client.get("/api/v1/sync/task-types").json()
        assert len(data) == 23

    def test_cascades(self, test_client: TestClient):
        data = test_client.get("/api/v1/sync/cascades").json()
        roots = {c["root"] for c in data}
        assert "round-results" in roots

    def test_conditions(self, test_client: TestClient):
        response = test_client.get("/api/v1/sync/conditions")

        assert response.status_code == 200
        assert response.json()["round_id"] == 15

    def test_scheduler_jobs(self, test_client: TestClient):
        data = test_client.get("/api/v1/sync/scheduler/jobs").json()

        assert data["running"] is False
        assert len(data["jobs"]) == 14

    def test_run_unknown_trigger(self, test_client: TestClient):
        response = test_client.post("/api/v1/sync/scheduler/triggers/nightly-everything/run")
        assert response.status_code == 404

    def test_run_trigger(self, test_client: TestClient):
        response = test_client.post("/api/v1/sync/scheduler/triggers/standings-daily/run")

        assert response.status_code == 200
        assert response.json()["status"] in {"enqueued", "deduplicated", "skipped"}
