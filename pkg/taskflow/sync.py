"""
Sync cycle between the local board and the TaskFlow server.

    1. GET server tasks          (unreachable → offline report, nothing changes)
    2. reconcile(local, server)
    3. persist merged snapshot   (always, before any push)
    4. push the outbox           (concurrently, each with the client timeout)
    5. persist the outbox        (what failed is retried by the next process too)

A failed push stays in the outbox and is reported per task; it never rolls
back the merged snapshot.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from . import events as ev
from .board import TaskBoard
from .client import TaskflowClient, TransportError
from .outbox import PendingPush, PushOp
from .reconciler import reconcile
from .schema import Task, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    merged: List[Task] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    offline: bool = False
    error: str = ""
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return not self.offline and not self.failed

    def summary(self) -> str:
        if self.offline:
            return f"Working offline: {self.error}"
        parts = [
            f"{len(self.merged)} tasks",
            f"{len(self.created)} created",
            f"{len(self.updated)} updated",
            f"{len(self.deleted)} deleted",
        ]
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        return ", ".join(parts)


class SyncManager:
    """Runs sync cycles for one board against one server."""

    def __init__(self, board: TaskBoard, client: TaskflowClient, workers: int = 4):
        self.board = board
        self.client = client
        self.outbox = board.outbox
        self.workers = max(1, workers)
        self.last_sync: Optional[datetime] = None

    def sync(self) -> SyncReport:
        report = SyncReport()
        try:
            server_tasks = self.client.get_tasks()
        except TransportError as e:
            logger.warning("Server sync failed, working offline: %s", e)
            report.offline = True
            report.error = str(e)
            report.merged = self.board.tasks
            report.finished_at = utc_now()
            self.board.events.emit(ev.SYNC_FAILED, report=report)
            return report

        # Tasks deleted locally but still on the server must not come back
        pending_deletes = {
            p.task_id for p in self.outbox.pending() if p.op == PushOp.DELETE
        }
        server_tasks = [t for t in server_tasks if t.id not in pending_deletes]

        result = reconcile(self.board.tasks, server_tasks)
        self.board.replace(result.merged)
        report.merged = list(result.merged)

        # Reconcile decides what the server is missing; that replaces any
        # create/update queued for the same ids.
        for task in result.to_create_on_server:
            self.outbox.pop(task.id)
            self.outbox.enqueue(PushOp.CREATE, task)
        for task in result.to_update_on_server:
            self.outbox.pop(task.id)
            self.outbox.enqueue(PushOp.UPDATE, task)
        pushed_ids = {t.id for t in result.to_create_on_server + result.to_update_on_server}
        for item in self.outbox.pending():
            if item.op != PushOp.DELETE and item.task_id not in pushed_ids:
                # Server already has this version or a newer one
                self.outbox.pop(item.task_id)

        self._push_all(report)
        self.board.persist_outbox()

        self.last_sync = report.finished_at = utc_now()
        logger.info("Sync finished: %s", report.summary())
        self.board.events.emit(ev.SYNC_COMPLETED, report=report)
        return report

    def flush(self) -> SyncReport:
        """Push whatever is queued without reconciling."""
        report = SyncReport(merged=self.board.tasks)
        self._push_all(report)
        self.board.persist_outbox()
        report.finished_at = utc_now()
        return report

    def _push_all(self, report: SyncReport) -> None:
        items = self.outbox.pending()
        if not items:
            return
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            outcomes = list(pool.map(self._push_one, items))

        for item, error in zip(items, outcomes):
            if error is not None:
                logger.warning("Push %s %s failed: %s", item.op.value, item.task_id, error)
                self.outbox.mark_failed(item.task_id, error)
                report.failed[item.task_id] = error
                continue
            self.outbox.settle(item)
            if item.op == PushOp.CREATE:
                report.created.append(item.task_id)
            elif item.op == PushOp.UPDATE:
                report.updated.append(item.task_id)
            else:
                report.deleted.append(item.task_id)

    def _push_one(self, item: PendingPush) -> Optional[str]:
        """Send one push; returns an error message or None."""
        try:
            if item.op == PushOp.CREATE:
                try:
                    self.client.create_task(item.task)
                except TransportError as e:
                    # Someone else created it first: overwrite with our version
                    if e.status != 409:
                        raise
                    self.client.update_task(item.task)
            elif item.op == PushOp.UPDATE:
                try:
                    self.client.update_task(item.task)
                except TransportError as e:
                    # Deleted on the server meanwhile: put it back
                    if e.status != 404:
                        raise
                    self.client.create_task(item.task)
            else:
                self.client.delete_task(item.task_id)
        except TransportError as e:
            return str(e) or f"HTTP {e.status}"
        return None
