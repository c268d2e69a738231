"""
Tests for the board server JSON API.
"""
import sqlite3

import pytest

import taskbins.store as store_module
from taskbins.server import create_app

SECRET = "s3cret"
BASE = "/api/users/alice/tasks"


@pytest.fixture()
def client(db_path):
    app = create_app(db_path, api_secret="")
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture()
def secured_client(db_path):
    app = create_app(db_path, api_secret=SECRET)
    app.config["TESTING"] = True
    return app.test_client()


def create(client, title, **fields):
    r = client.post(BASE, json={"title": title, **fields})
    assert r.status_code == 201, r.get_json()
    return r.get_json()["id"]


def titles(client, order_by="order"):
    return [t["title"] for t in client.get(f"{BASE}?order_by={order_by}").get_json()["tasks"]]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Reads
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_health(client, db_path):
    data = client.get("/health").get_json()
    assert data == {"status": "ok", "db": db_path}


def test_empty_collection(client):
    r = client.get(BASE)
    assert r.status_code == 200
    assert r.get_json() == {"tasks": [], "count": 0}


def test_list_sorted_by_order(client):
    create(client, "second", order=1)
    create(client, "first", order=0)
    assert titles(client) == ["first", "second"]


def test_invalid_order_by(client):
    assert client.get(f"{BASE}?order_by=bogus").status_code == 400


def test_users_do_not_see_each_other(client):
    create(client, "alice's")
    assert client.get("/api/users/bob/tasks").get_json()["count"] == 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Writes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_returns_record_shape(client):
    record_id = create(client, "Write brief", note="one pager")
    task = client.get(BASE).get_json()["tasks"][0]
    assert task["id"] == record_id
    assert task["title"] == "Write brief"
    assert task["note"] == "one pager"
    assert task["status"] == "todo"
    assert task["order"] == 0
    assert task["createdAt"]


@pytest.mark.parametrize("body", [
    {},
    {"title": "  "},
    {"title": "x", "createdAt": "2000-01-01"},
    {"title": "x", "status": "archived"},
])
def test_create_rejects_invalid_body(client, body):
    r = client.post(BASE, json=body)
    assert r.status_code == 400
    assert "error" in r.get_json()


def test_create_rejects_non_object_body(client):
    assert client.post(BASE, data="not json").status_code == 400
    assert client.post(BASE, json=["title"]).status_code == 400


def test_patch_updates_fields(client):
    record_id = create(client, "Task")
    r = client.patch(f"{BASE}/{record_id}", json={"status": "done", "order": 4})
    assert r.get_json() == {"ok": True}
    task = client.get(BASE).get_json()["tasks"][0]
    assert (task["status"], task["order"]) == ("done", 4)


def test_patch_missing_returns_404(client):
    r = client.patch(f"{BASE}/ghost", json={"order": 1})
    assert r.status_code == 404
    assert r.get_json()["id"] == "ghost"


def test_delete_is_idempotent(client):
    record_id = create(client, "Temp")
    assert client.delete(f"{BASE}/{record_id}").status_code == 200
    assert client.delete(f"{BASE}/{record_id}").status_code == 200
    assert client.get(BASE).get_json()["count"] == 0


def test_batch_reorders(client):
    a = create(client, "A", order=0)
    b = create(client, "B", order=1)
    r = client.post(f"{BASE}/batch", json={"updates": [
        {"id": b, "fields": {"order": 0}},
        {"id": a, "fields": {"order": 1}},
    ]})
    assert r.status_code == 200
    assert titles(client) == ["B", "A"]


def test_batch_with_missing_id_changes_nothing(client):
    a = create(client, "A", order=0)
    b = create(client, "B", order=1)
    r = client.post(f"{BASE}/batch", json={"updates": [
        {"id": b, "fields": {"order": 0}},
        {"id": "ghost", "fields": {"order": 5}},
        {"id": a, "fields": {"order": 1}},
    ]})
    assert r.status_code == 404
    assert r.get_json()["id"] == "ghost"
    assert titles(client) == ["A", "B"]


@pytest.mark.parametrize("body", [
    {},
    {"updates": "x"},
    {"updates": [{"id": "a"}]},
    {"updates": [{"fields": {"order": 1}}]},
])
def test_batch_rejects_malformed_body(client, body):
    assert client.post(f"{BASE}/batch", json=body).status_code == 400


def test_store_failure_returns_503(client, monkeypatch):
    def broken(_path):
        raise sqlite3.OperationalError("disk I/O error")

    client.get(BASE)  # store for alice is built before the failure
    monkeypatch.setattr(store_module, "_connect", broken)
    r = client.post(BASE, json={"title": "x"})
    assert r.status_code == 503
    assert client.get(BASE).status_code == 503


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_missing_api_key_is_401(secured_client):
    assert secured_client.post(BASE, json={"title": "x"}).status_code == 401


def test_wrong_api_key_is_403(secured_client):
    r = secured_client.post(BASE, json={"title": "x"}, headers={"X-API-Key": "nope"})
    assert r.status_code == 403


def test_valid_api_key_allows_writes(secured_client):
    r = secured_client.post(BASE, json={"title": "x"}, headers={"X-API-Key": SECRET})
    assert r.status_code == 201


def test_reads_do_not_need_api_key(secured_client):
    assert secured_client.get(BASE).status_code == 200


def test_secret_defaults_to_environment(db_path, monkeypatch):
    monkeypatch.setenv("TASKBINS_API_SECRET", "from-env")
    client = create_app(db_path).test_client()
    assert client.post(BASE, json={"title": "x"}).status_code == 401
    r = client.post(BASE, json={"title": "x"}, headers={"X-API-Key": "from-env"})
    assert r.status_code == 201
