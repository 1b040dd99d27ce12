"""
Tests for the sync cycle against an in-memory fake server.
"""
import threading

import pytest

from pkg.taskflow import events as ev
from pkg.taskflow.board import TaskBoard
from pkg.taskflow.client import TransportError
from pkg.taskflow.outbox import PushOp
from pkg.taskflow.sync import SyncManager

from conftest import make_task


class FakeServer:
    """Stands in for TaskflowClient; holds the server's tasks in a dict."""

    def __init__(self, tasks=()):
        self.tasks = {t.id: t for t in tasks}
        self.fail_ids = set()
        self.offline = False
        self.calls = []
        self._lock = threading.Lock()

    def _check(self, op, task_id):
        with self._lock:
            self.calls.append((op, task_id))
        if self.offline:
            raise TransportError("connection refused")
        if task_id in self.fail_ids:
            raise TransportError("HTTP 502", 502)

    def get_tasks(self):
        self._check("get", None)
        return list(self.tasks.values())

    def create_task(self, task):
        self._check("create", task.id)
        if task.id in self.tasks:
            raise TransportError("Task already exists", 409)
        self.tasks[task.id] = task
        return task

    def update_task(self, task):
        self._check("update", task.id)
        if task.id not in self.tasks:
            raise TransportError("Task not found", 404)
        self.tasks[task.id] = task
        return task

    def delete_task(self, task_id):
        self._check("delete", task_id)
        self.tasks.pop(task_id, None)


@pytest.fixture
def board(store):
    return TaskBoard(store)


def test_sync_merges_and_pushes(board, store):
    """Test a sync merges both sides and pushes local winners"""
    board.replace([
        make_task("local-only"),
        make_task("shared-local-newer", updated_day=3, title="mine"),
        make_task("shared-server-newer", updated_day=1, title="stale"),
    ])
    server = FakeServer([
        make_task("shared-local-newer", updated_day=2, title="theirs"),
        make_task("shared-server-newer", updated_day=4, title="fresh"),
        make_task("server-only"),
    ])
    manager = SyncManager(board, server)

    report = manager.sync()

    assert report.ok
    assert report.created == ["local-only"]
    assert report.updated == ["shared-local-newer"]
    titles = {t.id: t.title for t in board.tasks}
    assert titles == {
        "local-only": "Task",
        "shared-local-newer": "mine",
        "shared-server-newer": "fresh",
        "server-only": "Task",
    }
    assert set(server.tasks) == set(titles)
    assert server.tasks["shared-local-newer"].title == "mine"
    assert {t.id for t in store.load()} == set(titles)
    assert len(board.outbox) == 0
    assert manager.last_sync is not None


def test_offline_sync_changes_nothing(board, store):
    """Test an unreachable server leaves board and outbox alone"""
    board.create_task("Offline edit")
    server = FakeServer()
    server.offline = True
    failures = []
    board.events.subscribe(ev.SYNC_FAILED, lambda report: failures.append(report))

    report = SyncManager(board, server).sync()

    assert report.offline
    assert not report.ok
    assert "Working offline" in report.summary()
    assert len(board.outbox) == 1
    assert len(store.load()) == 1
    assert failures == [report]


def test_partial_push_failure_keeps_merged_snapshot(board, store):
    """Test one failed push keeps the merge and retries next time"""
    board.replace([make_task("ok"), make_task("flaky")])
    server = FakeServer([make_task("remote")])
    server.fail_ids.add("flaky")

    report = SyncManager(board, server).sync()

    assert report.created == ["ok"]
    assert list(report.failed) == ["flaky"]
    assert {t.id for t in store.load()} == {"ok", "flaky", "remote"}
    pending = board.outbox.get("flaky")
    assert pending.op == PushOp.CREATE
    assert pending.attempts == 1

    # Next cycle succeeds once the server recovers
    server.fail_ids.clear()
    report = SyncManager(board, server).sync()
    assert report.ok
    assert report.created == ["flaky"]
    assert "flaky" in server.tasks


def test_local_delete_is_not_resurrected(board):
    """Test a queued delete removes the task on the server"""
    board.replace([make_task("a"), make_task("b")])
    server = FakeServer([make_task("a"), make_task("b")])

    board.delete_task("a")
    report = SyncManager(board, server).sync()

    assert report.deleted == ["a"]
    assert [t.id for t in board.tasks] == ["b"]
    assert "a" not in server.tasks


def test_server_version_wins_over_queued_stale_update(board):
    """Test a newer server copy cancels a queued older update"""
    board.replace([make_task("a", updated_day=2)])
    board.outbox.enqueue(PushOp.UPDATE, board.get("a"))
    server = FakeServer([make_task("a", updated_day=5, title="server")])

    report = SyncManager(board, server).sync()

    assert report.updated == []
    assert board.get("a").title == "server"
    assert len(board.outbox) == 0
    assert ("update", "a") not in server.calls


def test_create_conflict_falls_back_to_update(board):
    """Test a create answered with 409 is sent as an update"""
    server = FakeServer()
    manager = SyncManager(board, server)
    task = board.create_task("Made offline")
    server.tasks[task.id] = make_task(task.id, title="raced")

    report = manager.flush()

    assert report.created == [task.id]
    assert server.tasks[task.id].title == "Made offline"


def test_update_of_missing_task_recreates_it(board):
    """Test an update answered with 404 is sent as a create"""
    board.replace([make_task("a")])
    task = board.update_task("a", title="edited")
    server = FakeServer()

    report = SyncManager(board, server).flush()

    assert report.updated == ["a"]
    assert server.tasks["a"] == task


def test_sync_emits_completed_event(board):
    """Test a finished sync emits its report"""
    reports = []
    board.events.subscribe(ev.SYNC_COMPLETED, lambda report: reports.append(report))
    report = SyncManager(board, FakeServer([make_task("x")])).sync()
    assert reports == [report]
    assert report.summary().startswith("1 tasks")


def test_failed_pushes_are_retried_by_a_new_process(board, store):
    """Test a fresh board over the same store retries what failed"""
    board.replace([make_task("a")])
    board.delete_task("a")
    created = board.create_task("Offline")
    server = FakeServer([make_task("a")])
    server.offline = True
    SyncManager(board, server).flush()

    assert {p.task_id for p in store.load_pending()} == {"a", created.id}

    # Later run: new board, server reachable again
    server.offline = False
    fresh = TaskBoard(store)
    fresh.load()
    report = SyncManager(fresh, server).sync()

    assert report.ok
    assert report.deleted == ["a"]
    assert report.created == [created.id]
    assert set(server.tasks) == {created.id}
    assert store.load_pending() == []


def test_delete_queued_by_an_earlier_board_is_not_resurrected(store):
    """Test a delete from an earlier board still wins over the server copy"""
    first = TaskBoard(store)
    first.replace([make_task("a"), make_task("b")])
    first.delete_task("a")

    later = TaskBoard(store)
    later.load()
    server = FakeServer([make_task("a"), make_task("b")])
    report = SyncManager(later, server).sync()

    assert report.deleted == ["a"]
    assert [t.id for t in later.tasks] == ["b"]
    assert [t.id for t in store.load()] == ["b"]
    assert "a" not in server.tasks
