"""
Tests for the Flask server: auth, task CRUD, batch sync and conflict resolution.
"""
import pytest

from taskflow_server import create_app

from conftest import make_task

SECRET = "s3cret"
AUTH = {"X-API-Key": SECRET}


@pytest.fixture
def app(tmp_path):
    app = create_app(db_path=str(tmp_path / "server.db"), api_secret=SECRET)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def server_store(app):
    return app.config["TASK_STORE"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_mutations_require_api_key(client):
    """Test mutating endpoints check the X-API-Key header"""
    body = {"title": "x"}
    assert client.post("/api/tasks", json=body).status_code == 401
    assert client.post("/api/tasks", json=body, headers={"X-API-Key": "wrong"}).status_code == 403
    assert client.post("/api/tasks", json=body, headers=AUTH).status_code == 201


def test_missing_secret_disables_mutations(tmp_path):
    """Test mutations are refused when no secret is configured"""
    app = create_app(db_path=str(tmp_path / "s.db"), api_secret="")
    resp = app.test_client().post("/api/tasks", json={"title": "x"}, headers=AUTH)
    assert resp.status_code == 503


def test_health(client):
    """Test the health endpoint"""
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Task CRUD
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_fills_server_fields(client):
    """Test create fills id and timestamps for a bare body"""
    resp = client.post("/api/tasks", json={"title": "Server made", "priority": "High"}, headers=AUTH)
    task = resp.get_json()["task"]
    assert resp.status_code == 201
    assert task["id"]
    assert task["createdAt"] == task["updatedAt"]
    assert task["priority"] == "High"
    assert task["status"] == "todo"


def test_create_keeps_client_fields_and_rejects_duplicates(client):
    """Test create keeps client ids and answers 409 for a known id"""
    body = make_task("client-1", title="Offline").to_dict()
    assert client.post("/api/tasks", json=body, headers=AUTH).status_code == 201
    resp = client.post("/api/tasks", json=body, headers=AUTH)
    assert resp.status_code == 409
    assert resp.get_json()["task"]["id"] == "client-1"


def test_create_validation_error(client):
    """Test an invalid task body is a 400"""
    resp = client.post("/api/tasks", json={"title": "  "}, headers=AUTH)
    assert resp.status_code == 400
    assert "title" in resp.get_json()["error"]


def test_get_list_and_filter(client, server_store):
    """Test listing, filtering and fetching single tasks"""
    server_store.save([make_task("a"), make_task("b")])
    resp = client.get("/api/tasks")
    assert [t["id"] for t in resp.get_json()["tasks"]] == ["a", "b"]
    assert client.get("/api/tasks?status=done").get_json()["tasks"] == []
    assert client.get("/api/tasks/a").get_json()["task"]["id"] == "a"
    assert client.get("/api/tasks/zzz").status_code == 404


def test_update_full_and_partial(client, server_store):
    """Test full and partial updates, with updatedAt moving forward"""
    server_store.save([make_task("a", title="v1")])

    body = make_task("a", title="v2", updated_day=3).to_dict()
    resp = client.put("/api/tasks/a", json=body, headers=AUTH)
    assert resp.status_code == 200
    assert resp.get_json()["task"]["updatedAt"] == body["updatedAt"]

    resp = client.put("/api/tasks/a", json={"status": "done"}, headers=AUTH)
    task = resp.get_json()["task"]
    assert task["status"] == "done"
    assert task["title"] == "v2"
    assert task["updatedAt"] > body["updatedAt"]
    assert server_store.get("a").title == "v2"


def test_update_rejects_stale_and_mismatched(client, server_store):
    """Test stale, mismatched and unknown updates are refused"""
    server_store.save([make_task("a", updated_day=5)])
    stale = make_task("a", title="old", updated_day=2).to_dict()
    assert client.put("/api/tasks/a", json=stale, headers=AUTH).status_code == 409
    other = make_task("b", updated_day=6).to_dict()
    assert client.put("/api/tasks/a", json=other, headers=AUTH).status_code == 400
    assert client.put("/api/tasks/missing", json=stale, headers=AUTH).status_code == 404


def test_delete(client, server_store):
    """Test delete and a second delete of the same id"""
    server_store.save([make_task("a")])
    assert client.delete("/api/tasks/a", headers=AUTH).get_json() == {"deleted": "a"}
    assert client.delete("/api/tasks/a", headers=AUTH).status_code == 404


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Sync endpoints
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_batch_sync(client, server_store):
    """Test the batch sync endpoint merges and stores client changes"""
    server_store.save([
        make_task("shared", title="server", updated_day=1),
        make_task("server-only", updated_day=2),
    ])
    client_tasks = [
        make_task("shared", title="client", updated_day=3).to_dict(),
        make_task("client-only", updated_day=4).to_dict(),
    ]

    resp = client.post("/api/sync", json={"tasks": client_tasks}, headers=AUTH)
    data = resp.get_json()

    assert resp.status_code == 200
    assert data["stats"] == {"total": 3, "created": 1, "updated": 1, "serverOnly": 1}
    assert [t["id"] for t in data["tasks"]] == ["client-only", "shared", "server-only"]
    assert server_store.get("shared").title == "client"
    assert server_store.get("client-only") is not None


def test_batch_sync_rejects_bad_bodies(client):
    """Test batch sync rejects missing or invalid task arrays"""
    assert client.post("/api/sync", json={"nope": 1}, headers=AUTH).status_code == 400
    resp = client.post("/api/sync", json={"tasks": [{"id": "x"}]}, headers=AUTH)
    assert resp.status_code == 400


def test_sync_status_and_full(client, server_store):
    """Test sync status counts and the full download order"""
    server_store.save([make_task("a", updated_day=2), make_task("b", updated_day=7)])

    status = client.get("/api/sync/status").get_json()
    assert status["status"] == "ready"
    assert status["serverStats"]["totalTasks"] == 2
    assert status["serverStats"]["todoTasks"] == 2
    assert status["serverStats"]["lastUpdated"].startswith("2024-01-07")

    full = client.get("/api/sync/full").get_json()
    assert [t["id"] for t in full["tasks"]] == ["b", "a"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Conflict resolution
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_resolve_client_server_and_merge(client, server_store):
    """Test client resolutions overwrite, server and merge keep the stored copy"""
    server_store.save([
        make_task("a", title="server a", updated_day=2),
        make_task("b", title="server b", updated_day=2),
        make_task("c", title="server c", updated_day=2),
    ])
    conflicts = [
        {
            "clientVersion": make_task("a", title="client a", updated_day=1).to_dict(),
            "serverVersion": server_store.get("a").to_dict(),
        },
        {
            "clientVersion": make_task("b", title="client b").to_dict(),
            "serverVersion": server_store.get("b").to_dict(),
        },
        {
            "clientVersion": make_task("c", title="client c").to_dict(),
            "serverVersion": server_store.get("c").to_dict(),
        },
    ]

    resp = client.post(
        "/api/sync/resolve",
        json={"conflicts": conflicts, "resolutions": ["client", "server", "merge"]},
        headers=AUTH,
    )
    data = resp.get_json()

    assert resp.status_code == 200
    assert [t["title"] for t in data["resolvedTasks"]] == ["client a", "server b", "server c"]
    stored = server_store.get("a")
    assert stored.title == "client a"
    assert stored.updated_at > make_task("a", updated_day=2).updated_at
    assert stored.created_at == make_task("a").created_at
    assert server_store.get("b").title == "server b"
    assert server_store.get("c").title == "server c"


def test_resolve_skips_client_version_of_unknown_task(client, server_store):
    """Test a client resolution for an id the server lacks writes nothing"""
    conflict = {"clientVersion": make_task("ghost").to_dict(), "serverVersion": None}
    resp = client.post(
        "/api/sync/resolve",
        json={"conflicts": [conflict], "resolutions": ["client"]},
        headers=AUTH,
    )
    assert resp.status_code == 200
    assert resp.get_json()["resolvedTasks"] == []
    assert server_store.get("ghost") is None


def test_resolve_rejects_bad_bodies(client, server_store):
    """Test shape errors are 400s and leave the store untouched"""
    server_store.save([make_task("a", title="server")])
    good = {"clientVersion": make_task("a", title="client").to_dict(), "serverVersion": {}}

    def post(body):
        return client.post("/api/sync/resolve", json=body, headers=AUTH)

    assert post({"conflicts": "x", "resolutions": []}).status_code == 400
    assert post({"conflicts": [good], "resolutions": []}).status_code == 400
    assert post({"conflicts": [good, good], "resolutions": ["client", "both"]}).status_code == 400
    assert post({"conflicts": [good, {"clientVersion": {"id": "a"}}],
                 "resolutions": ["client", "client"]}).status_code == 400
    assert server_store.get("a").title == "server"


def test_resolve_requires_api_key(client):
    """Test conflict resolution is a mutating endpoint"""
    resp = client.post("/api/sync/resolve", json={"conflicts": [], "resolutions": []})
    assert resp.status_code == 401
