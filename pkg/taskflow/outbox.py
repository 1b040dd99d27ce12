"""
Outbox of pending server pushes.

One entry per task id. Re-enqueueing an id replaces the older entry, so a push
always sends the latest local version and replaying it is harmless. The outbox
itself is in memory; TaskBoard and SyncManager write its contents to the
store's pending_pushes table so queued pushes outlive the process.
"""
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .schema import Task


class PushOp(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class PendingPush:
    task_id: str
    op: PushOp
    task: Optional[Task] = None     # None for deletes
    attempts: int = 0
    last_error: str = ""


# (op, task, task_id) as passed to enqueue()
Push = Tuple[PushOp, Optional[Task], Optional[str]]


def _coalesce(items: Dict[str, PendingPush], op: PushOp, task: Optional[Task], task_id: Optional[str]) -> None:
    task_id = task_id or (task.id if task else None)
    if not task_id:
        raise ValueError("enqueue needs a task or a task_id")

    current = items.get(task_id)
    if current is None:
        items[task_id] = PendingPush(task_id, op, task)
        return

    if op == PushOp.DELETE:
        if current.op == PushOp.CREATE:
            # Never reached the server: nothing to delete
            del items[task_id]
        else:
            items[task_id] = PendingPush(task_id, PushOp.DELETE)
    elif current.op == PushOp.CREATE:
        # Still unknown to the server; keep it a create with the new body
        items[task_id] = replace(current, task=task)
    else:
        items[task_id] = replace(current, op=op, task=task)


class PushOutbox:
    """Pending pushes keyed by task id, in first-enqueued order."""

    def __init__(self):
        self._items: Dict[str, PendingPush] = {}
        self._lock = threading.Lock()

    def enqueue(self, op: PushOp, task: Optional[Task] = None, task_id: Optional[str] = None) -> None:
        with self._lock:
            _coalesce(self._items, op, task, task_id)

    def staged(self, pushes: Iterable[Push]) -> List[PendingPush]:
        """What pending() would return after enqueueing `pushes`; changes nothing."""
        with self._lock:
            items = dict(self._items)
        for op, task, task_id in pushes:
            _coalesce(items, op, task, task_id)
        return list(items.values())

    def restore(self, items: Iterable[PendingPush]) -> None:
        """Replace the contents with previously persisted items."""
        with self._lock:
            self._items = {item.task_id: item for item in items}

    def pending(self) -> List[PendingPush]:
        with self._lock:
            return list(self._items.values())

    def get(self, task_id: str) -> Optional[PendingPush]:
        with self._lock:
            return self._items.get(task_id)

    def pop(self, task_id: str) -> Optional[PendingPush]:
        with self._lock:
            return self._items.pop(task_id, None)

    def settle(self, item: PendingPush) -> None:
        """Drop `item` after a successful push, unless it was superseded meanwhile."""
        with self._lock:
            current = self._items.get(item.task_id)
            if current is not None and current.op == item.op and current.task == item.task:
                del self._items[item.task_id]

    def mark_failed(self, task_id: str, error: str) -> None:
        with self._lock:
            current = self._items.get(task_id)
            if current is not None:
                self._items[task_id] = replace(
                    current, attempts=current.attempts + 1, last_error=error
                )

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._items
