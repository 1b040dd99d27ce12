#!/usr/bin/env python3
"""
TaskFlow Server
---------------
JSON REST API over a server-side SQLite task store. The server is the system
of record; clients push their offline changes either per task or through the
batch /api/sync endpoint, which runs the same reconciler the client uses.

Usage:
    python taskflow_server.py --port 3001 --db /var/lib/taskflow/server.db
    # or
    taskflow serve

API:
    GET    /api/health
    GET    /api/tasks              → { tasks }
    GET    /api/tasks/<id>         → { task }
    POST   /api/tasks              → 201 { task }       (X-API-Key)
    PUT    /api/tasks/<id>         → { task }           (X-API-Key)
    DELETE /api/tasks/<id>         → { deleted }        (X-API-Key)
    POST   /api/sync               → { tasks, stats }   (X-API-Key)
    POST   /api/sync/resolve       → { resolvedTasks }  (X-API-Key)
    GET    /api/sync/status        → { status, serverStats, timestamp }
    GET    /api/sync/full          → { tasks, timestamp }
"""

import hmac
import logging
import os
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path

from flask import Flask, current_app, jsonify, request

from pkg.taskflow.reconciler import reconcile, sort_by_recency
from pkg.taskflow.schema import (
    Task,
    TaskStatus,
    ValidationError,
    make_task_id,
)
from pkg.taskflow.store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_DB = Path.home() / ".local" / "share" / "taskflow" / "server.db"


# ── Auth ─────────────────────────────────────────────────────────────────────

def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get("API_SECRET") or ""
        if not secret:
            return jsonify({"error": "API_SECRET not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


# ── Helpers ──────────────────────────────────────────────────────────────────

def get_store() -> TaskStore:
    return current_app.config["TASK_STORE"]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def task_from_body(data, task_id=None) -> Task:
    """Build a Task from a request body, filling server-generated fields."""
    if not isinstance(data, dict):
        raise ValidationError("JSON object body is required")
    data = dict(data)
    if task_id is not None:
        if data.get("id") not in (None, "", task_id):
            raise ValidationError("Body id does not match URL id")
        data["id"] = task_id
    now = now_iso()
    data.setdefault("id", None)
    if not data["id"]:
        data["id"] = make_task_id()
    if not data.get("createdAt"):
        data["createdAt"] = now
    if not data.get("updatedAt"):
        data["updatedAt"] = now
    return Task.from_dict(data)


def body_json():
    return request.get_json(force=True, silent=True)


# ── App ──────────────────────────────────────────────────────────────────────

def create_app(db_path=None, api_secret=None) -> Flask:
    app = Flask(__name__)

    if db_path is None:
        db_path = os.environ.get("TASKFLOW_SERVER_DB") or str(DEFAULT_DB)
    if api_secret is None:
        api_secret = os.environ.get("TASKFLOW_API_SECRET", "")

    app.config["TASK_STORE"] = TaskStore(str(db_path))
    app.config["API_SECRET"] = api_secret

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return jsonify({"error": str(e)}), 400

    @app.route("/api/health")
    @app.route("/health")
    def health():
        store = get_store()
        return jsonify({"status": "ok", "db": store.db_path, "tasks": store.count()})

    @app.route("/api/tasks", methods=["GET"])
    def api_tasks():
        tasks = get_store().load()
        status = request.args.get("status")
        category = request.args.get("category")
        priority = request.args.get("priority")
        if status:
            tasks = [t for t in tasks if t.status.value == status]
        if category:
            tasks = [t for t in tasks if t.category == category]
        if priority:
            tasks = [t for t in tasks if t.priority.value == priority]
        return jsonify({"tasks": [t.to_dict() for t in tasks], "count": len(tasks)})

    @app.route("/api/tasks/<task_id>", methods=["GET"])
    def api_get_task(task_id):
        task = get_store().get(task_id)
        if not task:
            return jsonify({"error": "Task not found"}), 404
        return jsonify({"task": task.to_dict()})

    @app.route("/api/tasks", methods=["POST"])
    @require_api_key
    def api_create_task():
        task = task_from_body(body_json())
        store = get_store()
        existing = store.get(task.id)
        if existing:
            return jsonify({"error": "Task already exists", "task": existing.to_dict()}), 409
        store.upsert([task])
        logger.info("Created task %s", task.id)
        return jsonify({"task": task.to_dict()}), 201

    @app.route("/api/tasks/<task_id>", methods=["PUT"])
    @require_api_key
    def api_update_task(task_id):
        store = get_store()
        current = store.get(task_id)
        if not current:
            return jsonify({"error": "Task not found"}), 404

        data = body_json()
        if not isinstance(data, dict):
            raise ValidationError("JSON object body is required")
        # Partial bodies update only the fields they carry; createdAt is immutable
        merged = {**current.to_dict(), **data, "createdAt": current.to_dict()["createdAt"]}
        if not data.get("updatedAt"):
            merged["updatedAt"] = None
        task = task_from_body(merged, task_id=task_id)

        if task.updated_at < current.updated_at:
            return jsonify({"error": "Stale update", "task": current.to_dict()}), 409

        store.upsert([task])
        return jsonify({"task": task.to_dict()})

    @app.route("/api/tasks/<task_id>", methods=["DELETE"])
    @require_api_key
    def api_delete_task(task_id):
        if not get_store().delete(task_id):
            return jsonify({"error": "Task not found"}), 404
        logger.info("Deleted task %s", task_id)
        return jsonify({"deleted": task_id})

    @app.route("/api/sync", methods=["POST"])
    @require_api_key
    def api_sync():
        data = body_json()
        if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
            return jsonify({"error": "tasks array is required"}), 400

        client_tasks = [Task.from_dict(item) for item in data["tasks"]]
        store = get_store()
        result = reconcile(client_tasks, store.load())
        store.upsert(result.to_create_on_server + result.to_update_on_server)

        logger.info("Sync: %s", result.stats())
        return jsonify({
            "tasks": [t.to_dict() for t in sort_by_recency(result.merged)],
            "stats": result.stats(),
        })

    @app.route("/api/sync/resolve", methods=["POST"])
    @require_api_key
    def api_sync_resolve():
        """
        Settle conflicts the client could not merge on its own.

        Body: {conflicts: [{clientVersion, serverVersion}], resolutions: [...]},
        one resolution per conflict. "client" overwrites the stored task with
        the client version; "server" and "merge" keep the server version.
        """
        data = body_json()
        if not isinstance(data, dict):
            data = {}
        conflicts = data.get("conflicts")
        resolutions = data.get("resolutions")
        if not isinstance(conflicts, list) or not isinstance(resolutions, list):
            return jsonify({"error": "conflicts and resolutions arrays are required"}), 400
        if len(conflicts) != len(resolutions):
            return jsonify({"error": "conflicts and resolutions must have the same length"}), 400

        store = get_store()
        now = now_iso()
        writes = []
        resolved = []
        for conflict, resolution in zip(conflicts, resolutions):
            if not isinstance(conflict, dict):
                raise ValidationError("Each conflict must be an object")
            if resolution in ("server", "merge"):
                resolved.append(conflict.get("serverVersion"))
                continue
            if resolution != "client":
                raise ValidationError(f"Unknown resolution: {resolution!r}")

            version = conflict.get("clientVersion")
            if not isinstance(version, dict) or not version.get("id"):
                raise ValidationError("clientVersion with an id is required")
            current = store.get(version["id"])
            if current is None:
                # Nothing to overwrite
                continue
            task = Task.from_dict({
                **version,
                "createdAt": current.to_dict()["createdAt"],
                "updatedAt": now,
            })
            writes.append(task)
            resolved.append(task.to_dict())

        # Every conflict was validated before this single write
        store.upsert(writes)
        logger.info("Resolved %d conflicts (%d client versions written)", len(conflicts), len(writes))
        return jsonify({"message": "Conflicts resolved", "resolvedTasks": resolved, "timestamp": now})

    @app.route("/api/sync/status")
    def api_sync_status():
        tasks = get_store().load()
        last_updated = max((t.updated_at for t in tasks), default=None)
        return jsonify({
            "status": "ready",
            "serverStats": {
                "totalTasks": len(tasks),
                "todoTasks": sum(1 for t in tasks if t.status == TaskStatus.TODO),
                "inProgressTasks": sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
                "doneTasks": sum(1 for t in tasks if t.status == TaskStatus.DONE),
                "lastUpdated": last_updated.isoformat() if last_updated else None,
            },
            "timestamp": now_iso(),
        })

    @app.route("/api/sync/full")
    def api_sync_full():
        tasks = sort_by_recency(get_store().load())
        return jsonify({"tasks": [t.to_dict() for t in tasks], "timestamp": now_iso()})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

def run(host: str = "127.0.0.1", port: int = 3001, db_path=None):
    app = create_app(db_path=db_path)
    store = app.config["TASK_STORE"]
    print(f"""
╔═══════════════════════════════════════╗
║  TaskFlow Server                      ║
╠═══════════════════════════════════════╣
║  URL:  http://{host}:{port:<20}║
║  DB:   {store.db_path:<31}║
╚═══════════════════════════════════════╝
""")
    app.run(host=host, port=port, debug=False, threaded=True)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="TaskFlow Server")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=3001)
    parser.add_argument("--db", help="Path to server.db (overrides TASKFLOW_SERVER_DB)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [taskflow-server] %(levelname)s: %(message)s",
    )
    run(host=args.host, port=args.port, db_path=args.db)
