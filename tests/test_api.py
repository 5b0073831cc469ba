"""
HTTP API tests against the FastAPI app with an in-memory transport.
"""

import pytest
from dependency_injector import providers
from fastapi.testclient import TestClient

from sheetsbase.core.container import container
from sheetsbase.main import app
from sheetsbase.routers.query import get_table_service


@pytest.fixture
def client(table_service, cache):
    app.dependency_overrides[get_table_service] = lambda: table_service
    container.cache.override(providers.Object(cache))
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        container.cache.reset_override()
        app.dependency_overrides.clear()


def delete(client, payload):
    return client.request("DELETE", "/api/delete", json=payload)


class TestQueryEndpoint:
    def test_query(self, client):
        response = client.post("/api/query", json={
            "table": "flowers",
            "select": "name, price",
            "filters": [{"field": "type", "op": "eq", "value": "roses"}],
            "order": {"field": "price", "direction": "desc"},
            "limit": 1,
        })

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "data": [{"name": "Rosa", "price": "10"}],
            "count": 1,
        }

    def test_missing_table(self, client):
        response = client.post("/api/query", json={"select": "*"})
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert "table" in body["error"]

    def test_unknown_operator(self, client):
        response = client.post("/api/query", json={
            "table": "flowers",
            "filters": [{"field": "price", "op": "between", "value": 1}],
        })
        assert response.status_code == 400
        assert response.json()["error"] == "Unknown operator: between"

    @pytest.mark.parametrize("bad_filter", [
        {"field": ["name"], "op": "eq", "value": "Rosa"},
        {"field": "name", "op": ["eq"], "value": "Rosa"},
    ])
    def test_non_string_filter_parts(self, client, bad_filter):
        response = client.post("/api/query", json={"table": "flowers", "filters": [bad_filter]})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_malformed_body(self, client):
        response = client.post("/api/query", content=b"{not json", headers={"content-type": "application/json"})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_store_failure_is_bad_gateway(self, client, transport):
        transport.fail_with = ConnectionError("quota exceeded")
        response = client.post("/api/query", json={"table": "flowers"})
        assert response.status_code == 502
        assert response.json()["table"] == "flowers"


class TestMutationEndpoints:
    def test_insert(self, client, transport):
        response = client.post("/api/insert", json={
            "table": "flowers",
            "data": {"name": "Lily"},
            "idConfig": {"type": "readable", "prefix": "flower"},
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["id"].startswith("flower-")
        assert body["data"]["created_at"]
        assert transport.tables["flowers"][-1]["id"] == body["id"]

    def test_insert_requires_data(self, client):
        response = client.post("/api/insert", json={"table": "flowers"})
        assert response.status_code == 400
        assert response.json()["field"] == "data"

    def test_update(self, client):
        response = client.put("/api/update", json={"table": "flowers", "id": "2", "data": {"price": "25"}})

        assert response.status_code == 200
        body = response.json()
        assert body["rowNumber"] == 3
        assert body["data"]["price"] == "25"
        assert body["data"]["name"] == "Tulip"

    def test_update_not_found(self, client):
        response = client.put("/api/update", json={"table": "flowers", "id": "99", "data": {"price": "1"}})
        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_delete(self, client):
        response = delete(client, {"table": "flowers", "id": 1})
        assert response.status_code == 200
        assert response.json()["rowNumber"] == 2

        again = delete(client, {"table": "flowers", "id": 1})
        assert again.status_code == 404

    def test_write_then_read_sees_change(self, client):
        query = {"table": "flowers", "filters": [{"field": "id", "op": "eq", "value": "1"}]}
        assert client.post("/api/query", json=query).json()["data"][0]["price"] == "10"

        client.put("/api/update", json={"table": "flowers", "id": "1", "data": {"price": "11"}})

        assert client.post("/api/query", json=query).json()["data"][0]["price"] == "11"


class TestCacheEndpoints:
    def test_stats_and_clear(self, client, transport):
        client.post("/api/query", json={"table": "flowers"})
        client.post("/api/query", json={"table": "flowers"})

        stats = client.get("/api/cache/stats").json()["stats"]
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["keys"] == 1

        cleared = client.post("/api/cache/clear", json={"table": "flowers"}).json()
        assert cleared["cleared"] == 1
        assert cleared["message"] == "Cache cleared for: flowers"

        client.post("/api/query", json={"table": "flowers"})
        assert transport.count("fetch_all") == 2

    def test_clear_everything(self, client):
        client.post("/api/query", json={"table": "flowers"})
        client.post("/api/query", json={"table": "orders"})

        response = client.post("/api/cache/clear")

        assert response.status_code == 200
        assert response.json()["cleared"] == 2
        assert response.json()["message"] == "Cache fully cleared"


class TestServiceEndpoints:
    def test_root(self, client):
        body = client.get("/").json()
        assert body["status"] == "running"
        assert body["endpoints"]["query"] == "POST /api/query"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["cache"]["enabled"] is True

    def test_unknown_route_uses_error_body(self, client):
        response = client.get("/api/tables")
        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Route not found"
        assert body["path"] == "/api/tables"
        assert "POST /api/query" in body["availableEndpoints"]

    def test_wrong_method_uses_error_body(self, client):
        response = client.get("/api/query")
        assert response.status_code == 405
        assert response.json()["success"] is False
