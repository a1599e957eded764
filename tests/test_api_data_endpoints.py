# tests/test_api_data_endpoints.py
"""
Tests for the /api/data, /api/search and /api/stats endpoints.
Each test runs against a disposable store injected through get_store.
"""
import json

import pytest
from fastapi.testclient import TestClient

from data_manager.app import app, get_store
from data_manager import auth as authmod
from data_manager.auth import InMemoryFixedWindowLimiter
from data_manager.db import RecordStore

API_KEY = "test-key-123"
HEADERS = {"x-api-key": API_KEY}


@pytest.fixture
def store(tmp_path):
    s = RecordStore(str(tmp_path / "api.db"))
    s.init()
    yield s
    s.close()


@pytest.fixture(autouse=True)
def setup_app(monkeypatch, store):
    monkeypatch.setattr(authmod, "API_KEY", API_KEY)
    monkeypatch.setattr(authmod, "_rate_limiter", InMemoryFixedWindowLimiter(limit=10_000))
    app.dependency_overrides[get_store] = lambda: store
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


def _create(client, **body):
    r = client.post("/api/data", headers=HEADERS, json=body)
    assert r.status_code == 201, r.text
    return r.json()["data"]


def test_full_entry_lifecycle(client):
    r = client.post(
        "/api/data",
        headers=HEADERS,
        json={"name": "Test Entry", "value": "Test Value", "metadata": {"test": True}},
    )
    assert r.status_code == 201
    j = r.json()
    assert j["success"] is True
    assert j["message"] == "Data created successfully"
    entry_id = j["data"]["id"]
    assert entry_id

    r = client.get(f"/api/data/{entry_id}", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["data"]["name"] == "Test Entry"
    assert r.json()["data"]["value"] == "Test Value"

    r = client.put(
        f"/api/data/{entry_id}",
        headers=HEADERS,
        json={"name": "Updated Entry", "value": "Updated Value", "metadata": {"updated": True}},
    )
    assert r.status_code == 200
    assert r.json()["data"]["name"] == "Updated Entry"
    assert r.json()["message"] == "Data updated successfully"

    r = client.get("/api/search", headers=HEADERS, params={"q": "Updated"})
    assert r.status_code == 200
    assert entry_id in [d["id"] for d in r.json()["data"]]

    r = client.delete(f"/api/data/{entry_id}", headers=HEADERS)
    assert r.status_code == 200
    assert r.json() == {"success": True, "message": "Data deleted successfully"}

    r = client.get(f"/api/data/{entry_id}", headers=HEADERS)
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "Data not found"}


def test_created_entry_shape(client):
    data = _create(client, name="shape")
    assert set(data) == {"id", "name", "value", "metadata", "created_at", "updated_at"}
    assert data["value"] is None
    assert data["metadata"] is None
    assert data["created_at"] == data["updated_at"]


def test_generated_ids_are_unique(client):
    ids = {_create(client, name=f"n{i}")["id"] for i in range(20)}
    assert len(ids) == 20


def test_metadata_is_returned_as_encoded_text(client):
    data = _create(client, name="meta", metadata={"nested": {"list": [1, 2, 3]}, "flag": False})
    assert isinstance(data["metadata"], str)
    assert json.loads(data["metadata"]) == {"nested": {"list": [1, 2, 3]}, "flag": False}


def test_empty_value_stored_as_null(client):
    data = _create(client, name="blank", value="")
    assert data["value"] is None


@pytest.mark.parametrize("body", [None, {}, {"name": ""}, {"value": "no name"}])
def test_create_requires_name(client, body):
    if body is None:
        r = client.post("/api/data", headers=HEADERS)
    else:
        r = client.post("/api/data", headers=HEADERS, json=body)
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "Name is required"}


def test_create_rejects_malformed_body(client):
    r = client.post(
        "/api/data",
        headers={**HEADERS, "content-type": "application/json"},
        content=b"{not json",
    )
    assert r.status_code == 400
    assert r.json()["success"] is False


def test_create_reports_store_failure(client, store, monkeypatch):
    monkeypatch.setattr(store, "create", lambda record: False)
    r = client.post("/api/data", headers=HEADERS, json={"name": "x"})
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Failed to create data"}


def test_update_requires_name(client):
    entry_id = _create(client, name="keep")["id"]
    r = client.put(f"/api/data/{entry_id}", headers=HEADERS, json={"value": "v"})
    assert r.status_code == 400
    assert r.json()["error"] == "Name is required"


def test_update_missing_entry_is_404(client):
    r = client.put("/api/data/does-not-exist", headers=HEADERS, json={"name": "x"})
    assert r.status_code == 404
    assert r.json()["error"] == "Data not found"


def test_update_keeps_id_and_created_at(client):
    created = _create(client, name="orig", value="v1")
    r = client.put(f"/api/data/{created['id']}", headers=HEADERS, json={"name": "new"})
    updated = r.json()["data"]
    assert updated["id"] == created["id"]
    assert updated["created_at"] == created["created_at"]
    assert updated["updated_at"] >= updated["created_at"]
    assert updated["value"] is None


def test_update_reports_store_failure(client, store, monkeypatch):
    entry_id = _create(client, name="x")["id"]
    monkeypatch.setattr(store, "update", lambda entry_id, fields: False)
    r = client.put(f"/api/data/{entry_id}", headers=HEADERS, json={"name": "y"})
    assert r.status_code == 500
    assert r.json()["error"] == "Failed to update data"


def test_delete_missing_entry_is_404(client):
    r = client.delete("/api/data/does-not-exist", headers=HEADERS)
    assert r.status_code == 404


def test_delete_reports_store_failure(client, store, monkeypatch):
    entry_id = _create(client, name="x")["id"]
    monkeypatch.setattr(store, "delete_by_id", lambda entry_id: False)
    r = client.delete(f"/api/data/{entry_id}", headers=HEADERS)
    assert r.status_code == 500
    assert r.json()["error"] == "Failed to delete data"


def test_list_pagination(client):
    for i in range(5):
        _create(client, name=f"entry {i}")

    r = client.get("/api/data", headers=HEADERS, params={"limit": 2, "offset": 0})
    j = r.json()
    assert r.status_code == 200
    assert len(j["data"]) == 2
    assert j["pagination"] == {"total": 5, "limit": 2, "offset": 0, "hasMore": True}

    j = client.get("/api/data", headers=HEADERS, params={"limit": 2, "offset": 4}).json()
    assert len(j["data"]) == 1
    assert j["pagination"]["hasMore"] is False

    j = client.get("/api/data", headers=HEADERS, params={"offset": 99}).json()
    assert j["data"] == []
    assert j["pagination"]["hasMore"] is False


@pytest.mark.parametrize(
    "params,expected",
    [
        ({}, (100, 0)),
        ({"limit": "abc", "offset": "xyz"}, (100, 0)),
        ({"limit": "0"}, (100, 0)),
        ({"limit": "-5", "offset": "-3"}, (100, 0)),
        ({"limit": "10abc", "offset": "2"}, (10, 2)),
        ({"limit": "99999999999999999999"}, (2 ** 63 - 1, 0)),
        ({"offset": "99999999999999999999"}, (100, 2 ** 63 - 1)),
    ],
)
def test_list_coerces_query_params(client, params, expected):
    j = client.get("/api/data", headers=HEADERS, params=params).json()
    assert (j["pagination"]["limit"], j["pagination"]["offset"]) == expected


def test_search_requires_query(client):
    for params in ({}, {"q": ""}):
        r = client.get("/api/search", headers=HEADERS, params=params)
        assert r.status_code == 400
        assert r.json() == {"success": False, "error": "Search query is required"}


def test_search_matches_name_or_value(client):
    _create(client, name="Alpha", value="first")
    _create(client, name="Beta", value="ALPHABET soup")
    _create(client, name="Gamma", value="third")

    j = client.get("/api/search", headers=HEADERS, params={"q": "alpha"}).json()
    assert j["count"] == 2
    assert sorted(d["name"] for d in j["data"]) == ["Alpha", "Beta"]

    j = client.get("/api/search", headers=HEADERS, params={"q": "zeta"}).json()
    assert j == {"success": True, "data": [], "count": 0}


def test_stats(client):
    r = client.get("/api/stats", headers=HEADERS)
    assert r.json() == {"success": True, "stats": {"totalEntries": 0}}
    _create(client, name="one")
    r = client.get("/api/stats", headers=HEADERS)
    assert r.json()["stats"]["totalEntries"] == 1


def test_store_exception_is_generic_500(client, store, monkeypatch):
    def boom():
        raise RuntimeError("disk on fire at /secret/path")

    monkeypatch.setattr(store, "count", boom)
    r = client.get("/api/stats", headers=HEADERS)
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Internal server error"}


def test_unhandled_exception_is_generic_500():
    def broken_store():
        raise RuntimeError("no store")

    app.dependency_overrides[get_store] = broken_store
    client = TestClient(app, raise_server_exceptions=False)
    r = client.get("/api/stats", headers=HEADERS)
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Internal server error"}


def test_list_with_huge_limit_returns_everything(client):
    _create(client, name="only")
    r = client.get("/api/data", headers=HEADERS, params={"limit": "99999999999999999999"})
    assert r.status_code == 200
    assert len(r.json()["data"]) == 1
    assert r.json()["pagination"]["hasMore"] is False


@pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
def test_non_json_metadata_rejected(client, store, literal):
    body = '{"name": "x", "metadata": {"score": %s}}' % literal
    r = client.post(
        "/api/data",
        headers={**HEADERS, "content-type": "application/json"},
        content=body.encode(),
    )
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "Metadata must be valid JSON"}
    assert store.count() == 0


def test_non_json_metadata_rejected_on_update(client):
    created = _create(client, name="keep", metadata={"ok": 1})
    r = client.put(
        f"/api/data/{created['id']}",
        headers={**HEADERS, "content-type": "application/json"},
        content=b'{"name": "changed", "metadata": NaN}',
    )
    assert r.status_code == 400
    r = client.get(f"/api/data/{created['id']}", headers=HEADERS)
    assert r.json()["data"]["name"] == "keep"
    assert json.loads(r.json()["data"]["metadata"]) == {"ok": 1}


@pytest.mark.parametrize("method", ["PATCH", "OPTIONS"])
def test_unsupported_method_is_route_not_found(client, method):
    r = client.request(method, "/api/data", headers=HEADERS)
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "Route not found"}
