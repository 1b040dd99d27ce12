"""
Task storage backend (SQLite).

Holds one task collection per database file. The client uses it as its local
working copy; the server uses a separate file as the system of record.

    load()  → list of valid tasks ([] when nothing stored or unreadable)
    save()  → full replace in one transaction (optionally with the pending pushes)
    clear() → drop every task and every pending push

    load_pending() / save_pending() → the client's queued server pushes
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .outbox import PendingPush, PushOp
from .schema import Task, ValidationError, format_timestamp

logger = logging.getLogger(__name__)

STORE_VERSION = "1.0"
DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "taskflow" / "tasks.db"


class CorruptDataError(Exception):
    """Raised when the persisted task data cannot be read."""
    pass


@contextmanager
def _connect(db_path: str):
    """Open a connection in WAL mode; always closed on exit."""
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        yield conn
    finally:
        conn.close()


def _task_row(task: Task, position: int) -> tuple:
    data = task.to_dict()
    return (
        data["id"],
        position,
        data["title"],
        data["description"],
        data["category"],
        data["priority"],
        data["status"],
        data["dueDate"],
        data["createdAt"],
        data["updatedAt"],
    )


_INSERT = """
    INSERT OR REPLACE INTO tasks
    (id, position, title, description, category, priority, status,
     due_date, created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_PENDING = """
    INSERT INTO pending_pushes
    (task_id, position, op, task, attempts, last_error)
    VALUES (?, ?, ?, ?, ?, ?)
"""


def _pending_row(item: PendingPush, position: int) -> tuple:
    body = json.dumps(item.task.to_dict()) if item.task is not None else None
    return (item.task_id, position, item.op.value, body, item.attempts, item.last_error)


class TaskStore:
    """SQLite-backed store for one task collection."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(DEFAULT_DB_PATH)
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._init_schema()
        except sqlite3.DatabaseError as e:
            # Left as is: load() reports no data, the next save() rebuilds it.
            logger.warning("Task store %s is unreadable: %s", self.db_path, e)

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    position INTEGER NOT NULL DEFAULT 0,
                    title TEXT,
                    description TEXT,
                    category TEXT,
                    priority TEXT DEFAULT 'Medium',
                    status TEXT DEFAULT 'todo',
                    due_date TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pending_pushes (
                    task_id TEXT PRIMARY KEY,
                    position INTEGER NOT NULL DEFAULT 0,
                    op TEXT NOT NULL,
                    task TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT NOT NULL DEFAULT ''
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS store_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_updated ON tasks(updated_at)")
            conn.commit()

    def _quarantine(self):
        """Move an unreadable database aside so a fresh one can be written."""
        src = Path(self.db_path)
        dest = src.with_name(src.name + ".corrupt")
        logger.warning("Moving unreadable task store %s to %s", src, dest)
        src.replace(dest)
        for suffix in ("-wal", "-shm"):
            Path(self.db_path + suffix).unlink(missing_ok=True)
        self._init_schema()

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "title": row["title"],
            "description": row["description"],
            "category": row["category"],
            "priority": row["priority"],
            "status": row["status"],
            "dueDate": row["due_date"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }

    def _read_rows(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            with _connect(self.db_path) as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.DatabaseError as e:
            raise CorruptDataError(f"{self.db_path}: {e}") from e

    def _rows_to_tasks(self, rows: Iterable[sqlite3.Row]) -> List[Task]:
        tasks = []
        for row in rows:
            try:
                tasks.append(Task.from_dict(self._row_to_dict(row)))
            except ValidationError as e:
                logger.warning("Dropping invalid stored task: %s", e)
        return tasks

    # ── Collection API ───────────────────────────────────────────────────────

    def load(self) -> List[Task]:
        """All valid tasks in saved order. Never raises for missing or bad data."""
        try:
            rows = self._read_rows("SELECT * FROM tasks ORDER BY position ASC, id ASC")
        except CorruptDataError as e:
            logger.warning("Treating task store as empty: %s", e)
            return []
        return self._rows_to_tasks(rows)

    def save(self, tasks: Iterable[Task], pending: Optional[Iterable[PendingPush]] = None) -> None:
        """
        Replace the stored collection. The old set survives any failure.

        When `pending` is given the pending pushes are replaced in the same
        transaction, so a task change and its queued push land together.
        """
        rows = [_task_row(t, i) for i, t in enumerate(tasks)]
        pending_rows = None
        if pending is not None:
            pending_rows = [_pending_row(p, i) for i, p in enumerate(pending)]
        try:
            self._replace_all(rows, pending_rows)
        except sqlite3.DatabaseError as e:
            if type(e) is not sqlite3.DatabaseError:
                raise
            logger.warning("Task store %s unreadable on save: %s", self.db_path, e)
            self._quarantine()
            self._replace_all(rows, pending_rows)
        logger.debug("Saved %d tasks to %s", len(rows), self.db_path)

    def _replace_all(self, rows: List[tuple], pending_rows: Optional[List[tuple]] = None) -> None:
        with _connect(self.db_path) as conn:
            with conn:
                conn.execute("DELETE FROM tasks")
                conn.executemany(_INSERT, rows)
                if pending_rows is not None:
                    conn.execute("DELETE FROM pending_pushes")
                    conn.executemany(_INSERT_PENDING, pending_rows)
                conn.execute(
                    "INSERT OR REPLACE INTO store_meta (key, value) VALUES ('saved_at', ?)",
                    (datetime.now(timezone.utc).isoformat(),),
                )
                conn.execute(
                    "INSERT OR REPLACE INTO store_meta (key, value) VALUES ('version', ?)",
                    (STORE_VERSION,),
                )

    def clear(self) -> None:
        """Remove every stored task and pending push."""
        try:
            with _connect(self.db_path) as conn:
                with conn:
                    conn.execute("DELETE FROM tasks")
                    conn.execute("DELETE FROM pending_pushes")
        except sqlite3.DatabaseError as e:
            if type(e) is not sqlite3.DatabaseError:
                raise
            logger.warning("Task store %s unreadable on clear: %s", self.db_path, e)
            self._quarantine()

    # ── Per-task API (server side) ───────────────────────────────────────────

    def get(self, task_id: str) -> Optional[Task]:
        """Retrieve a task by ID."""
        rows = self._read_rows("SELECT * FROM tasks WHERE id = ?", (task_id,))
        tasks = self._rows_to_tasks(rows)
        return tasks[0] if tasks else None

    def upsert(self, tasks: Iterable[Task]) -> None:
        """Insert or replace tasks in one transaction, keeping existing order."""
        with _connect(self.db_path) as conn:
            with conn:
                row = conn.execute("SELECT COALESCE(MAX(position), -1) FROM tasks").fetchone()
                next_pos = row[0] + 1
                for task in tasks:
                    existing = conn.execute(
                        "SELECT position FROM tasks WHERE id = ?", (task.id,)
                    ).fetchone()
                    if existing:
                        position = existing[0]
                    else:
                        position = next_pos
                        next_pos += 1
                    conn.execute(_INSERT, _task_row(task, position))

    def delete(self, task_id: str) -> bool:
        """Delete a task. Returns False if it did not exist."""
        with _connect(self.db_path) as conn:
            with conn:
                cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                return cur.rowcount == 1

    def count(self) -> int:
        try:
            rows = self._read_rows("SELECT COUNT(*) FROM tasks")
        except CorruptDataError:
            return 0
        return int(rows[0][0])

    # ── Pending pushes (client side) ─────────────────────────────────────────

    def load_pending(self) -> List[PendingPush]:
        """Queued pushes in enqueue order. Unreadable entries are dropped."""
        try:
            rows = self._read_rows("SELECT * FROM pending_pushes ORDER BY position ASC")
        except CorruptDataError as e:
            logger.warning("Treating pending pushes as empty: %s", e)
            return []
        items = []
        for row in rows:
            try:
                op = PushOp(row["op"])
                task = Task.from_dict(json.loads(row["task"])) if row["task"] else None
            except (ValueError, TypeError, ValidationError) as e:
                logger.warning("Dropping unreadable pending push %s: %s", row["task_id"], e)
                continue
            if op != PushOp.DELETE and task is None:
                logger.warning("Dropping %s push %s without a task body", op.value, row["task_id"])
                continue
            items.append(PendingPush(row["task_id"], op, task, row["attempts"], row["last_error"]))
        return items

    def save_pending(self, items: Iterable[PendingPush]) -> None:
        """Replace the queued pushes, leaving the tasks alone."""
        rows = [_pending_row(p, i) for i, p in enumerate(items)]
        with _connect(self.db_path) as conn:
            with conn:
                conn.execute("DELETE FROM pending_pushes")
                conn.executemany(_INSERT_PENDING, rows)

    # ── Backup / info ────────────────────────────────────────────────────────

    def _meta(self) -> Dict[str, str]:
        try:
            rows = self._read_rows("SELECT key, value FROM store_meta")
        except CorruptDataError:
            return {}
        return {row["key"]: row["value"] for row in rows}

    def storage_info(self) -> Dict[str, Any]:
        path = Path(self.db_path)
        meta = self._meta()
        return {
            "type": "sqlite",
            "path": self.db_path,
            "size": path.stat().st_size if path.exists() else 0,
            "tasks": self.count(),
            "version": meta.get("version"),
            "savedAt": meta.get("saved_at"),
        }

    def create_backup(self) -> Dict[str, Any]:
        """Snapshot of the collection as a JSON-serializable envelope."""
        tasks = self.load()
        last_modified = max((t.updated_at for t in tasks), default=None)
        return {
            "version": STORE_VERSION,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "storageType": "sqlite",
            "tasks": [t.to_dict() for t in tasks],
            "metadata": {
                "taskCount": len(tasks),
                "lastModified": format_timestamp(last_modified),
            },
        }

    def restore_from_backup(self, backup: Any) -> Dict[str, int]:
        """
        Replace the collection with the valid tasks of a backup envelope.

        Raises ValidationError if the envelope is malformed or holds no valid task.
        """
        if not isinstance(backup, dict) or not isinstance(backup.get("tasks"), list):
            raise ValidationError("Invalid backup data format")

        valid = []
        for entry in backup["tasks"]:
            try:
                valid.append(Task.from_dict(entry))
            except ValidationError as e:
                logger.warning("Skipping backup entry: %s", e)

        if not valid:
            raise ValidationError("No valid tasks found in backup")

        self.save(valid)
        return {"restored": len(valid), "skipped": len(backup["tasks"]) - len(valid)}

