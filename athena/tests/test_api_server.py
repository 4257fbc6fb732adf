import pytest
from fastapi.testclient import TestClient

import api_server
from api_server import create_app
from athena.errors import InternalError
from athena.graph.entity_store import EntityStore


API = "/api/v1"


def create_node(client: TestClient, label: str, **properties) -> dict:
    response = client.post(f"{API}/nodes", json={"label": label, "properties": properties})
    assert response.status_code == 201
    return response.json()


def create_edge(client: TestClient, from_id: str, to_id: str, label: str, **properties) -> dict:
    response = client.post(
        f"{API}/edges",
        json={"from": from_id, "to": to_id, "label": label, "properties": properties},
    )
    assert response.status_code == 201
    return response.json()


class TestServiceEndpoints:
    """Test health, agents, stats and checkpoint."""

    def test_health(self, client: TestClient):
        response = client.get(f"{API}/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_agents_come_from_settings(self, client: TestClient):
        response = client.get(f"{API}/agents")
        assert response.status_code == 200
        assert response.json() == {"agents": ["agent-email-importer", "agent-web-clipper"]}

    def test_stats(self, client: TestClient):
        a = create_node(client, "Topic")
        b = create_node(client, "Topic")
        create_edge(client, a["id"], b["id"], "relates")

        stats = client.get(f"{API}/stats").json()

        assert stats["nodes"] == {"Topic": 2}
        assert stats["edges"] == {"relates": 1}
        assert stats["total_nodes"] == 2
        assert stats["revision"] == 3

    def test_checkpoint(self, client: TestClient):
        before = client.get(f"{API}/checkpoint").json()
        create_node(client, "Topic")
        after = client.get(f"{API}/checkpoint").json()

        assert set(after) == {"id", "revision", "timestamp", "hash"}
        assert after["revision"] == before["revision"] + 1
        assert after["hash"] != before["hash"]


class TestNodeEndpoints:
    """Test node routes."""

    def test_create_and_get_node(self, client: TestClient):
        node = create_node(client, "Topic", title="Graphs", tags=["a"])

        assert node["label"] == "Topic"
        assert node["version"] == 1
        assert node["properties"] == {"title": "Graphs", "tags": ["a"]}
        assert node["created_at"] == node["updated_at"]

        response = client.get(f"{API}/nodes/{node['id']}")
        assert response.status_code == 200
        assert response.json() == node

    def test_create_node_without_properties(self, client: TestClient):
        response = client.post(f"{API}/nodes", json={"label": "Note"})
        assert response.status_code == 201
        assert response.json()["properties"] == {}

    def test_list_nodes(self, client: TestClient):
        first = create_node(client, "A")
        second = create_node(client, "B")
        response = client.get(f"{API}/nodes")
        assert [n["id"] for n in response.json()["nodes"]] == [first["id"], second["id"]]

    def test_empty_label_is_400(self, client: TestClient):
        response = client.post(f"{API}/nodes", json={"label": ""})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert client.get(f"{API}/nodes").json()["nodes"] == []

    def test_malformed_body_is_400(self, client: TestClient):
        response = client.post(f"{API}/nodes", json={"properties": {}})
        assert response.status_code == 400
        body = response.json()["error"]
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]["errors"]

    def test_missing_node_is_404(self, client: TestClient):
        response = client.get(f"{API}/nodes/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_patch_node(self, client: TestClient):
        node = create_node(client, "Task", status="open", owner="sam")

        response = client.patch(
            f"{API}/nodes/{node['id']}",
            json={"expected_version": 1, "properties": {"status": "done"}},
        )

        assert response.status_code == 200
        updated = response.json()
        assert updated["version"] == 2
        assert updated["properties"] == {"status": "done", "owner": "sam"}

    def test_patch_unset(self, client: TestClient):
        node = create_node(client, "Task", status="open", draft=True)
        response = client.patch(f"{API}/nodes/{node['id']}", json={"expected_version": 1, "unset": ["draft"]})
        assert response.json()["properties"] == {"status": "open"}

    def test_stale_patch_is_409(self, client: TestClient):
        node = create_node(client, "Task", status="open")
        client.patch(f"{API}/nodes/{node['id']}", json={"expected_version": 1, "properties": {"status": "doing"}})

        response = client.patch(
            f"{API}/nodes/{node['id']}",
            json={"expected_version": 1, "properties": {"status": "done"}},
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "CONFLICT"
        assert error["details"]["current_version"] == 2
        assert client.get(f"{API}/nodes/{node['id']}").json()["properties"] == {"status": "doing"}

    @pytest.mark.parametrize("body", [
        {"properties": {"a": 1}},
        {"expected_version": 0, "properties": {"a": 1}},
        {"expected_version": "1", "properties": {"a": 1}},
        {"expected_version": 1, "properties": ["a"]},
    ])
    def test_bad_patch_body_is_400(self, client: TestClient, body):
        node = create_node(client, "Task")
        response = client.patch(f"{API}/nodes/{node['id']}", json=body)
        assert response.status_code == 400

    def test_patch_node_route_rejects_edge_id(self, client: TestClient):
        a = create_node(client, "Topic")
        edge = create_edge(client, a["id"], a["id"], "refers")
        response = client.patch(f"{API}/nodes/{edge['id']}", json={"expected_version": 1, "properties": {}})
        assert response.status_code == 404

    def test_delete_node(self, client: TestClient):
        node = create_node(client, "Topic")
        response = client.delete(f"{API}/nodes/{node['id']}")
        assert response.status_code == 204
        assert client.get(f"{API}/nodes/{node['id']}").status_code == 404

    def test_delete_node_with_edges_is_409(self, client: TestClient):
        a = create_node(client, "Topic")
        b = create_node(client, "Topic")
        edge = create_edge(client, a["id"], b["id"], "relates")

        response = client.delete(f"{API}/nodes/{a['id']}")

        assert response.status_code == 409
        assert response.json()["error"]["details"]["incident_edges"] == [edge["id"]]
        assert client.get(f"{API}/edges/{edge['id']}").status_code == 200

    def test_cascade_delete(self, client: TestClient):
        a = create_node(client, "Topic")
        b = create_node(client, "Topic")
        edge = create_edge(client, a["id"], b["id"], "relates")

        response = client.delete(f"{API}/nodes/{a['id']}", params={"cascade": "true"})

        assert response.status_code == 204
        assert client.get(f"{API}/edges/{edge['id']}").status_code == 404
        assert client.get(f"{API}/nodes/{b['id']}").status_code == 200

    def test_incident_edges(self, client: TestClient):
        a = create_node(client, "Topic")
        b = create_node(client, "Topic")
        edge = create_edge(client, a["id"], b["id"], "relates")

        response = client.get(f"{API}/nodes/{b['id']}/edges")

        assert response.status_code == 200
        assert [e["id"] for e in response.json()["edges"]] == [edge["id"]]


class TestEdgeEndpoints:
    """Test edge routes."""

    def test_create_and_get_edge(self, client: TestClient):
        a = create_node(client, "Topic")
        b = create_node(client, "Topic")
        edge = create_edge(client, a["id"], b["id"], "relates", weight=2)

        assert edge["from"] == a["id"]
        assert edge["to"] == b["id"]
        assert edge["version"] == 1
        assert client.get(f"{API}/edges/{edge['id']}").json() == edge
        assert [e["id"] for e in client.get(f"{API}/edges").json()["edges"]] == [edge["id"]]

    def test_edge_to_missing_node_is_404(self, client: TestClient):
        a = create_node(client, "Topic")
        response = client.post(f"{API}/edges", json={"from": a["id"], "to": "ghost", "label": "relates"})

        assert response.status_code == 404
        assert response.json()["error"]["details"]["missing"] == ["ghost"]
        assert client.get(f"{API}/edges").json()["edges"] == []

    def test_patch_edge(self, client: TestClient):
        a = create_node(client, "Topic")
        edge = create_edge(client, a["id"], a["id"], "refers")

        response = client.patch(f"{API}/edges/{edge['id']}", json={"expected_version": 1, "properties": {"w": 1}})

        assert response.status_code == 200
        assert response.json()["version"] == 2

    def test_delete_edge(self, client: TestClient):
        a = create_node(client, "Topic")
        edge = create_edge(client, a["id"], a["id"], "refers")

        assert client.delete(f"{API}/edges/{edge['id']}").status_code == 204
        assert client.delete(f"{API}/edges/{edge['id']}").status_code == 404
        assert client.delete(f"{API}/nodes/{a['id']}").status_code == 204


class TestQueryEndpoint:
    """Test pattern queries over HTTP."""

    def test_query_relates(self, client: TestClient):
        a = create_node(client, "Topic")
        b = create_node(client, "Topic")
        create_node(client, "Task", status="done")
        edge = create_edge(client, a["id"], b["id"], "relates")

        response = client.post(f"{API}/query", json={"pattern": {
            "nodes": [{"name": "a", "label": "Topic"}, {"name": "b", "label": "Topic"}],
            "edges": [{"label": "relates", "from": "a", "to": "b"}],
        }})

        assert response.status_code == 200
        body = response.json()
        assert [n["id"] for n in body["nodes"]] == [a["id"], b["id"]]
        assert [e["id"] for e in body["edges"]] == [edge["id"]]

    def test_empty_query_returns_everything(self, client: TestClient):
        create_node(client, "Topic")
        create_node(client, "Task")
        body = client.post(f"{API}/query", json={}).json()
        assert len(body["nodes"]) == 2

    def test_invalid_pattern_is_400(self, client: TestClient):
        response = client.post(f"{API}/query", json={"pattern": {"nodes": [{"label": ""}]}})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_limit_above_configured_maximum_is_400(self, client: TestClient):
        response = client.post(f"{API}/query", json={"pattern": {"limit": 51}})
        assert response.status_code == 400


class TestInternalErrors:
    """Test the 500 mapping."""

    def test_unexpected_exception_is_500(self, store: EntityStore, test_settings, monkeypatch):
        def boom():
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "stats", boom)
        client = TestClient(create_app(store=store, config=test_settings), raise_server_exceptions=False)

        response = client.get(f"{API}/stats")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "INTERNAL_ERROR"
        assert "disk on fire" not in response.text

    def test_internal_graph_error_hides_details(self, store: EntityStore, test_settings, monkeypatch):
        def fail():
            raise InternalError("Graph snapshot could not be written", details={"path": "/secret/graph.json"})

        monkeypatch.setattr(store, "checkpoint", fail)
        client = TestClient(create_app(store=store, config=test_settings), raise_server_exceptions=False)

        response = client.get(f"{API}/checkpoint")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"
        assert "/secret" not in response.text


class TestAppFactory:
    """Test building the default app."""

    def test_import_builds_no_app(self):
        """Importing the module opens no store."""
        assert not hasattr(api_server, "app")

    def test_get_app_uses_settings(self, monkeypatch, test_settings):
        monkeypatch.setattr(api_server, "settings", test_settings)

        with TestClient(api_server.get_app()) as client:
            assert client.get(f"{API}/agents").json() == {"agents": test_settings.agents}
            assert client.get(f"{API}/nodes").json() == {"nodes": []}


class TestSnapshotWriteFailure:
    """Test HTTP behaviour when the snapshot file cannot be written."""

    def test_failed_create_is_500_and_not_visible(self, storage_path, test_settings):
        store = EntityStore(str(storage_path))
        storage_path.with_name(storage_path.name + ".tmp").mkdir()
        client = TestClient(create_app(store=store, config=test_settings), raise_server_exceptions=False)

        response = client.post(f"{API}/nodes", json={"label": "Task"})

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"
        assert client.get(f"{API}/nodes").json() == {"nodes": []}
        assert client.get(f"{API}/stats").json()["revision"] == 0
