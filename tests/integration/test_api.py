"""
Integration tests for the HTTP API against the shared test database.

Endpoints covered:
- System: health, diagnostics
- Admin: stage mappings and metric definitions
- Flow: metric list and detail views
- Ingestion: id runs, syncs, status
"""

from datetime import timedelta

import pytest

from flowmetrics.models.events import utcnow
from flowmetrics.routers import ingestion as ingestion_router
from flowmetrics.storage import get_storage
from tests.conftest import FakeSource, make_history

MAPPING = {
    "canonical_stage": "Procurement",
    "start_stage_id": 1,
    "end_stage_id": 2,
    "avg_min_days": 1,
    "avg_max_days": 10,
}


def create_mapping(client, **overrides):
    payload = dict(MAPPING, **overrides)
    response = client.post("/api/v1/admin/mappings", json=payload)
    assert response.status_code == 200, response.text
    return response.json()["data"]


def create_definition(client, **overrides):
    payload = dict(
        metric_key="procurement",
        display_title="Procurement Lead Time",
        canonical_stage="Procurement",
        sort_order=1,
    )
    payload.update(overrides)
    response = client.post("/api/v1/admin/metrics", json=payload)
    assert response.status_code == 200, response.text
    return response.json()["data"]


@pytest.fixture
def fake_source(monkeypatch):
    """Replace the Pipedrive client with a scripted source for ingestion routes."""
    start = utcnow() - timedelta(days=2)
    source = FakeSource(
        histories={
            1: make_history(1, [(1, start), (2, start + timedelta(days=1))]),
            2: make_history(2, [(1, start), (2, start + timedelta(days=3))]),
            3: [],
        },
        failures={4: 99},
        deals=[{"id": 1, "title": "Deal One"}, {"id": 2, "title": "Deal Two"}],
    )
    monkeypatch.setattr(ingestion_router, "build_source", lambda: source)
    return source


# ============================================================================
# System Endpoints
# ============================================================================


class TestSystemEndpoints:
    """Test health and diagnostics."""

    def test_root_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc-123"})

        assert response.headers["X-Request-ID"] == "abc-123"

    @pytest.mark.parametrize(
        "method,path,status",
        [("get", "/api/v1/nowhere", 404), ("post", "/health", 405)],
    )
    def test_routing_errors_use_envelope(self, client, method, path, status):
        response = getattr(client, method)(path)

        assert response.status_code == status
        assert response.json()["success"] is False
        assert "error" in response.json()

    def test_system_health_reports_database(self, client):
        data = client.get("/api/v1/system/health").json()["data"]

        assert data["database"] == "healthy"
        assert data["version"] == "0.1.0"

    def test_diagnostics_table_counts(self, client):
        create_mapping(client)

        data = client.get("/api/v1/system/diagnostics").json()["data"]

        assert data["tables"]["stage_mappings"] == 1
        assert data["tables"]["stage_intervals"] == 0


# ============================================================================
# Admin Endpoints
# ============================================================================


class TestAdminMappings:
    """Test stage mapping endpoints."""

    def test_create_and_list_mapping(self, client):
        created = create_mapping(client)

        listed = client.get("/api/v1/admin/mappings").json()["data"]

        assert created["address"]["kind"] == "id"
        assert [m["canonical_stage"] for m in listed] == ["Procurement"]

    def test_post_existing_stage_replaces(self, client):
        first = create_mapping(client)
        second = create_mapping(client, avg_max_days=20)

        assert second["mapping_id"] == first["mapping_id"]
        assert second["avg_max_days"] == 20

    def test_invalid_mapping_lists_every_error(self, client):
        response = client.post(
            "/api/v1/admin/mappings",
            json={"canonical_stage": "", "avg_min_days": 5, "avg_max_days": 1},
        )

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert len(body["error"]["errors"]) == 3

    def test_get_unknown_mapping_404(self, client):
        response = client.get("/api/v1/admin/mappings/999999")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_update_comment(self, client):
        mapping = create_mapping(client)

        response = client.put(
            f"/api/v1/admin/mappings/{mapping['mapping_id']}/comment",
            json={"metric_comment": "Supplier backlog"},
        )

        assert response.json()["data"]["metric_comment"] == "Supplier backlog"

    def test_delete_in_use_mapping_conflicts(self, client):
        mapping = create_mapping(client)
        create_definition(client)

        response = client.delete(f"/api/v1/admin/mappings/{mapping['mapping_id']}")

        assert response.status_code == 409

    def test_delete_unused_mapping(self, client):
        mapping = create_mapping(client)

        response = client.delete(f"/api/v1/admin/mappings/{mapping['mapping_id']}")

        assert response.status_code == 200
        assert client.get("/api/v1/admin/mappings").json()["data"] == []


class TestAdminDefinitions:
    """Test metric definition endpoints."""

    def test_definition_without_mapping_rejected(self, client):
        response = client.post(
            "/api/v1/admin/metrics",
            json={"metric_key": "x", "display_title": "X", "canonical_stage": "Missing"},
        )

        assert response.status_code == 422

    def test_update_and_deactivate(self, client):
        create_mapping(client)
        definition = create_definition(client)

        response = client.put(
            f"/api/v1/admin/metrics/{definition['metric_id']}", json={"is_active": False}
        )

        assert response.json()["data"]["is_active"] is False
        assert client.get("/api/v1/admin/metrics?active_only=true").json()["data"] == []

    def test_reorder(self, client):
        create_mapping(client)
        a = create_definition(client, metric_key="a", sort_order=1)
        b = create_definition(client, metric_key="b", sort_order=2)

        response = client.post(
            "/api/v1/admin/metrics/reorder", json={"metric_ids": [b["metric_id"], a["metric_id"]]}
        )

        assert [d["metric_key"] for d in response.json()["data"]] == ["b", "a"]

    def test_delete_definition(self, client):
        create_mapping(client)
        definition = create_definition(client)

        response = client.delete(f"/api/v1/admin/metrics/{definition['metric_id']}")

        assert response.status_code == 200
        assert client.delete(f"/api/v1/admin/metrics/{definition['metric_id']}").status_code == 404


# ============================================================================
# Flow Metric Endpoints
# ============================================================================


class TestFlowMetrics:
    """Test the dashboard read path."""

    def test_unknown_period_rejected(self, client):
        response = client.get("/api/v1/flow/metrics?period=2w")

        assert response.status_code == 422

    def test_period_and_explicit_bounds_rejected(self, client):
        create_mapping(client)

        response = client.get(
            "/api/v1/flow/metrics/Procurement?period=7d&start=2026-01-01T00:00:00"
        )

        assert response.status_code == 422

    def test_unknown_stage_404(self, client):
        response = client.get("/api/v1/flow/metrics/Nowhere")

        assert response.status_code == 404

    def test_metric_without_data_is_no_data(self, client):
        create_mapping(client)

        data = client.get("/api/v1/flow/metrics/Procurement").json()["data"]

        assert data["count"] == 0
        assert data["average"] == 0.0
        assert data["status"] == "no_data"


# ============================================================================
# Ingestion Endpoints
# ============================================================================


class TestIngestionEndpoints:
    """Test ingestion runs through the API."""

    def test_run_ids_then_metrics(self, client, fake_source):
        create_mapping(client)
        create_definition(client)

        response = client.post("/api/v1/ingestion/run", json={"entity_ids": [1, 2, 3, 4]})

        assert response.status_code == 200
        report = response.json()["data"]
        assert report["succeeded"] == 3
        assert [f["entity_id"] for f in report["failed"]] == [4]
        assert report["no_data"] == [3]
        assert "3/4 succeeded" in report["summary"]

        listed = client.get("/api/v1/flow/metrics?period=7d").json()["data"]
        assert listed[0]["count"] == 2
        assert listed[0]["average"] == 2.0
        assert listed[0]["status"] == "watch"

        detail = client.get(
            f"/api/v1/flow/definitions/{listed[0]['definition']['metric_id']}?period=7d"
        ).json()["data"]
        assert detail["average"] == listed[0]["average"]
        assert {row["entity_id"] for row in detail["entities"]} == {1, 2}

    def test_empty_id_list_rejected(self, client, fake_source):
        response = client.post("/api/v1/ingestion/run", json={"entity_ids": []})

        assert response.status_code == 422

    def test_incremental_sync_and_status(self, client, fake_source):
        response = client.post("/api/v1/ingestion/sync", json={"mode": "incremental", "days": 3})

        assert response.status_code == 200
        assert response.json()["data"]["succeeded"] == 2
        assert get_storage().read_entity_metadata(1).title == "Deal One"

        status = client.get("/api/v1/ingestion/status").json()["data"]
        assert status["running"] is False
        assert status["recent_runs"][0]["sync_type"] == "incremental"
        assert status["flow_data"]["entities"] == 2
