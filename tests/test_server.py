"""Tests for the HTTP API.

Collaborators are swapped through app.dependency_overrides so no test
touches the working directory or the network.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from nodeflow import __version__
from nodeflow.core.collaborators import HttpResponse
from nodeflow.core.config import EngineSettings
from nodeflow.studio import server


@pytest.fixture
def client(entity_store, history, fake_transport):
    """TestClient with in-memory entities, a temp history and a fake transport."""
    server.app.dependency_overrides = {
        server.get_settings: lambda: EngineSettings(),
        server.get_entity_store: lambda: entity_store,
        server.get_history: lambda: history,
        server.get_transport: lambda: fake_transport,
    }
    with TestClient(server.app) as test_client:
        yield test_client
    server.app.dependency_overrides = {}


class TestExecuteEndpoint:
    """Tests for POST /api/execute."""

    def test_success_response_shape(self, client, score_workflow):
        response = client.post(
            "/api/execute", json={"nodes": score_workflow, "initialContext": {"score": 75}}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["context"] == {"score": 75}
        assert [e["nodeId"] for e in body["executionLog"]] == ["trigger", "condition", "high"]
        assert set(body["executionLog"][0]) == {"nodeId", "type", "timestamp"}

    def test_initial_context_optional(self, client, score_workflow):
        response = client.post("/api/execute", json={"nodes": score_workflow})
        assert response.status_code == 200
        assert response.json()["context"] == {}

    def test_empty_nodes(self, client):
        response = client.post("/api/execute", json={"nodes": []})
        assert response.status_code == 400
        assert response.json() == {"error": "No nodes to execute"}

    def test_missing_nodes_field(self, client):
        response = client.post("/api/execute", json={"initialContext": {}})
        assert response.status_code == 400
        assert response.json() == {"error": "No nodes to execute"}

    def test_null_initial_context(self, client, score_workflow):
        response = client.post("/api/execute", json={"nodes": score_workflow, "initialContext": None})
        assert response.status_code == 200
        assert response.json()["context"] == {}

    @pytest.mark.parametrize("body", [{"nodes": "x"}, {"nodes": [1, 2]}, {"nodes": [], "initialContext": [1]}])
    def test_wrong_field_types(self, client, body):
        response = client.post("/api/execute", json=body)
        assert response.status_code == 400
        assert list(response.json()) == ["error"]
        assert response.json()["error"].startswith("Invalid request")

    def test_validate_wrong_field_type(self, client):
        response = client.post("/api/validate", json={"nodes": "x"})
        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid request")

    def test_dangling_reference(self, client):
        nodes = [{"id": "t", "type": "trigger", "config": {"nextNodeId": "ghost"}}]
        response = client.post("/api/execute", json={"nodes": nodes})
        assert response.status_code == 400
        assert "Node ghost not found" in response.json()["error"]

    def test_malformed_config(self, client):
        nodes = [{"id": "call", "type": "api_call", "config": {}}]
        response = client.post("/api/execute", json={"nodes": nodes})
        assert response.status_code == 400
        assert "url" in response.json()["error"]

    def test_unknown_entity(self, client):
        nodes = [{"id": "q", "type": "database_query", "config": {"entityName": "Orders", "operation": "list"}}]
        response = client.post("/api/execute", json={"nodes": nodes})
        assert response.status_code == 404
        assert response.json() == {"error": "Entity Orders not found"}

    def test_transform_failure_is_500(self, client):
        nodes = [
            {
                "id": "c",
                "type": "data_transform",
                "config": {"transformations": [{"type": "calculate", "params": {"expression": "{x} / 0"}}]},
            }
        ]
        response = client.post("/api/execute", json={"nodes": nodes, "initialContext": {"x": 1}})
        assert response.status_code == 500
        assert "Division by zero" in response.json()["error"]

    def test_api_call_uses_injected_transport(self, client, fake_transport):
        fake_transport.responses["https://api.test/users/3"] = HttpResponse(404, {"error": "gone"})
        nodes = [{"id": "a", "type": "api_call", "config": {"url": "https://api.test/users/{id}"}}]

        response = client.post("/api/execute", json={"nodes": nodes, "initialContext": {"id": 3}})

        assert response.status_code == 200
        context = response.json()["context"]
        assert context["__lastStatusCode"] == 404
        assert context["apiResponse"] == {"error": "gone"}

    def test_database_changes_visible_to_later_runs(self, client, entity_store):
        create = [
            {
                "id": "c",
                "type": "database_query",
                "config": {"entityName": "users", "operation": "create", "data": {"name": "Grace"}},
            }
        ]
        client.post("/api/execute", json={"nodes": create})

        list_nodes = [{"id": "l", "type": "database_query", "config": {"entityName": "users", "operation": "list"}}]
        response = client.post("/api/execute", json={"nodes": list_nodes})
        names = [u["name"] for u in response.json()["context"]["dbResult"]]
        assert names == ["Ada", "Linus", "Grace"]


class TestValidateEndpoint:
    """Tests for POST /api/validate."""

    def test_valid(self, client, score_workflow):
        response = client.post("/api/validate", json={"nodes": score_workflow})
        assert response.json() == {"valid": True, "errors": [], "warnings": []}

    def test_errors_and_warnings(self, client):
        nodes = [
            {"id": "o", "type": "output"},
            {"id": "o", "type": "output"},
        ]
        body = client.post("/api/validate", json={"nodes": nodes}).json()
        assert body["valid"] is False
        assert any("Duplicate" in e for e in body["errors"])
        assert any("not a trigger" in w for w in body["warnings"])


class TestHistoryEndpoints:
    """Tests for GET /api/executions."""

    def test_runs_are_recorded(self, client, score_workflow):
        client.post("/api/execute", json={"nodes": score_workflow, "initialContext": {"score": 1}})
        nodes = [{"id": "q", "type": "database_query", "config": {"entityName": "Nope", "operation": "list"}}]
        client.post("/api/execute", json={"nodes": nodes})

        runs = client.get("/api/executions").json()
        assert [r["status"] for r in runs] == ["failed", "completed"]

        detail = client.get(f"/api/executions/{runs[0]['id']}").json()
        assert detail["error_type"] == "EntityNotFoundError"
        assert [e["nodeId"] for e in detail["execution_log"]] == ["q"]

    def test_limit(self, client, score_workflow):
        for _ in range(3):
            client.post("/api/execute", json={"nodes": score_workflow})
        assert len(client.get("/api/executions", params={"limit": 2}).json()) == 2

    def test_unknown_execution(self, client):
        response = client.get("/api/executions/run-missing")
        assert response.status_code == 404
        assert response.json()["detail"] == "Execution not found"

    def test_history_disabled(self, client):
        server.app.dependency_overrides[server.get_history] = lambda: None
        assert client.get("/api/executions").json() == []


class TestHealth:
    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok", "version": __version__}
