"""
Task board: owner of the current task snapshot.

Mutations are two-phase: the new snapshot and the push it queues are written
to the local store in one transaction, then the in-memory outbox is updated
for the next sync. The snapshot itself is an immutable tuple that is swapped
wholesale, so readers never see a half-applied change.
"""
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from . import events as ev
from .events import TaskEvents
from .outbox import Push, PushOp, PushOutbox
from .schema import (
    Task,
    TaskPriority,
    TaskStatus,
    ValidationError,
    new_task,
    parse_timestamp,
    utc_now,
)
from .store import TaskStore

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {"title", "description", "category", "priority", "status", "due_date"}

SORT_KEYS = (
    "createdAt-desc", "createdAt-asc",
    "updatedAt-desc", "updatedAt-asc",
    "dueDate-asc", "dueDate-desc",
    "priority-high", "priority-low",
    "title-asc", "title-desc",
)


def _coerce_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Validate field names and convert raw values to Task types."""
    illegal = set(changes) - EDITABLE_FIELDS
    if illegal:
        raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(illegal))}")

    out = dict(changes)
    if "title" in out:
        out["title"] = (out["title"] or "").strip()
    if "priority" in out and not isinstance(out["priority"], TaskPriority):
        out["priority"] = TaskPriority.from_str(out["priority"])
    if "status" in out and not isinstance(out["status"], TaskStatus):
        out["status"] = TaskStatus.from_str(out["status"])
    if out.get("due_date") is not None:
        try:
            out["due_date"] = parse_timestamp(out["due_date"])
        except ValueError:
            raise ValidationError(f"Invalid due date: {out['due_date']!r}")
    return out


class TaskBoard:
    """In-memory board backed by a TaskStore."""

    def __init__(
        self,
        store: TaskStore,
        outbox: Optional[PushOutbox] = None,
        events: Optional[TaskEvents] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.outbox = outbox if outbox is not None else PushOutbox()
        self.events = events if events is not None else TaskEvents()
        self._clock = clock
        self._tasks: tuple = ()

    # ── Snapshot ─────────────────────────────────────────────────────────────

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks)

    def load(self) -> List[Task]:
        """Replace the snapshot and the outbox with what the local store holds."""
        self._tasks = tuple(self.store.load())
        self.outbox.restore(self.store.load_pending())
        logger.info("Loaded %d tasks from %s", len(self._tasks), self.store.db_path)
        self.events.emit(ev.TASKS_UPDATED, tasks=self.tasks)
        return self.tasks

    def replace(self, tasks: Iterable[Task], persist: bool = True) -> None:
        """Swap in a whole new snapshot (e.g. the result of a reconcile)."""
        snapshot = tuple(tasks)
        if persist:
            self.store.save(snapshot)
        self._tasks = snapshot
        self.events.emit(ev.TASKS_UPDATED, tasks=self.tasks)

    def _commit(self, snapshot: tuple, pushes: Sequence[Push] = ()) -> None:
        # Store first: if the write fails neither the board nor the outbox change
        self.store.save(snapshot, pending=self.outbox.staged(pushes))
        self._tasks = snapshot
        for op, task, task_id in pushes:
            self.outbox.enqueue(op, task, task_id)

    def persist_outbox(self) -> None:
        """Write the outbox to the store after pushes settled or failed."""
        self.store.save_pending(self.outbox.pending())

    # ── CRUD ─────────────────────────────────────────────────────────────────

    def create_task(self, title: str, **fields) -> Task:
        task = new_task(title, now=self._clock(), **fields)
        if self.get(task.id) is not None:
            raise ValidationError(f"Task {task.id} already exists")

        self._commit(self._tasks + (task,), [(PushOp.CREATE, task, None)])

        self.events.emit(ev.TASK_CREATED, task=task)
        self.events.emit(ev.TASKS_UPDATED, tasks=self.tasks)
        return task

    def update_task(self, task_id: str, **changes) -> Task:
        index = self._index_of(task_id)
        current = self._tasks[index]

        updated = replace(current, **_coerce_changes(changes))
        now = self._clock()
        floor = current.updated_at + timedelta(microseconds=1)
        updated = replace(updated, updated_at=max(now, floor)).validate()

        snapshot = self._tasks[:index] + (updated,) + self._tasks[index + 1:]
        self._commit(snapshot, [(PushOp.UPDATE, updated, None)])

        self.events.emit(ev.TASK_UPDATED, task=updated, previous=current)
        self.events.emit(ev.TASKS_UPDATED, tasks=self.tasks)
        return updated

    def move_task(self, task_id: str, status: Any) -> Task:
        """Drag-and-drop between columns is just a status update."""
        return self.update_task(task_id, status=status)

    def delete_task(self, task_id: str) -> Task:
        index = self._index_of(task_id)
        deleted = self._tasks[index]

        snapshot = self._tasks[:index] + self._tasks[index + 1:]
        self._commit(snapshot, [(PushOp.DELETE, None, task_id)])

        self.events.emit(ev.TASK_DELETED, task=deleted)
        self.events.emit(ev.TASKS_UPDATED, tasks=self.tasks)
        return deleted

    def clear(self) -> None:
        """Forget all local data, including queued pushes."""
        self.store.clear()
        self.outbox.clear()
        self._tasks = ()
        self.events.emit(ev.TASKS_UPDATED, tasks=[])

    def import_tasks(self, data: Any) -> Dict[str, int]:
        """
        Merge the tasks of an export envelope into the board.

        Valid tasks whose id is not on the board yet are appended and queued as
        creates; everything already present is left untouched. Returns
        {imported, skipped} where skipped counts valid tasks that were already
        there. Raises ValidationError for a malformed envelope or when it holds
        no valid task.
        """
        if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
            raise ValidationError("Invalid import data format")

        valid = []
        for entry in data["tasks"]:
            try:
                valid.append(Task.from_dict(entry))
            except ValidationError as e:
                logger.warning("Skipping import entry: %s", e)
        if not valid:
            raise ValidationError("No valid tasks found in import data")

        seen = {t.id for t in self._tasks}
        added = []
        for task in valid:
            if task.id not in seen:
                seen.add(task.id)
                added.append(task)

        if added:
            self._commit(self._tasks + tuple(added), [(PushOp.CREATE, t, None) for t in added])
            self.events.emit(ev.TASKS_UPDATED, tasks=self.tasks)
        logger.info("Imported %d tasks (%d skipped)", len(added), len(valid) - len(added))
        return {"imported": len(added), "skipped": len(valid) - len(added)}

    def _index_of(self, task_id: str) -> int:
        for i, task in enumerate(self._tasks):
            if task.id == task_id:
                return i
        raise KeyError(f"Task not found: {task_id}")

    # ── Queries ──────────────────────────────────────────────────────────────

    def get(self, task_id: str) -> Optional[Task]:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def by_status(self, status: Any) -> List[Task]:
        if not isinstance(status, TaskStatus):
            status = TaskStatus.from_str(status)
        return [t for t in self._tasks if t.status == status]

    def by_category(self, category: str) -> List[Task]:
        return [t for t in self._tasks if t.category == category]

    def by_priority(self, priority: Any) -> List[Task]:
        if not isinstance(priority, TaskPriority):
            priority = TaskPriority.from_str(priority)
        return [t for t in self._tasks if t.priority == priority]

    def categories(self) -> List[str]:
        return sorted({t.category for t in self._tasks if t.category})

    def search(self, query: str, tasks: Optional[Iterable[Task]] = None) -> List[Task]:
        """Case-insensitive match on title, description and category."""
        pool = list(self._tasks if tasks is None else tasks)
        term = (query or "").strip().lower()
        if not term:
            return pool
        return [
            t for t in pool
            if term in t.title.lower()
            or (t.description and term in t.description.lower())
            or (t.category and term in t.category.lower())
        ]

    def filter(
        self,
        status: Any = None,
        category: Optional[str] = None,
        priority: Any = None,
        search: Optional[str] = None,
    ) -> List[Task]:
        result = self.tasks
        if status:
            wanted = status if isinstance(status, TaskStatus) else TaskStatus.from_str(status)
            result = [t for t in result if t.status == wanted]
        if category:
            result = [t for t in result if t.category == category]
        if priority:
            wanted = priority if isinstance(priority, TaskPriority) else TaskPriority.from_str(priority)
            result = [t for t in result if t.priority == wanted]
        if search:
            result = self.search(search, result)
        return result

    @staticmethod
    def sort(tasks: Iterable[Task], sort_by: str) -> List[Task]:
        """Sort by one of SORT_KEYS; unknown keys keep the input order."""
        tasks = list(tasks)
        if sort_by == "createdAt-desc":
            return sorted(tasks, key=lambda t: t.created_at, reverse=True)
        if sort_by == "createdAt-asc":
            return sorted(tasks, key=lambda t: t.created_at)
        if sort_by == "updatedAt-desc":
            return sorted(tasks, key=lambda t: t.updated_at, reverse=True)
        if sort_by == "updatedAt-asc":
            return sorted(tasks, key=lambda t: t.updated_at)
        if sort_by == "dueDate-asc":
            # Tasks without a due date go last
            dated = sorted((t for t in tasks if t.due_date), key=lambda t: t.due_date)
            return dated + [t for t in tasks if not t.due_date]
        if sort_by == "dueDate-desc":
            # ...and first when descending
            dated = sorted((t for t in tasks if t.due_date), key=lambda t: t.due_date, reverse=True)
            return [t for t in tasks if not t.due_date] + dated
        if sort_by == "priority-high":
            return sorted(tasks, key=lambda t: t.priority.rank, reverse=True)
        if sort_by == "priority-low":
            return sorted(tasks, key=lambda t: t.priority.rank)
        if sort_by == "title-asc":
            return sorted(tasks, key=lambda t: t.title.lower())
        if sort_by == "title-desc":
            return sorted(tasks, key=lambda t: t.title.lower(), reverse=True)
        return tasks

    def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Board statistics grouped by status and priority."""
        now = parse_timestamp(now) if now is not None else self._clock()
        tasks = self._tasks
        total = len(tasks)

        by_status = {s.value: 0 for s in TaskStatus}
        by_priority = {p.value.lower(): 0 for p in TaskPriority}
        for t in tasks:
            by_status[t.status.value] += 1
            by_priority[t.priority.value.lower()] += 1

        overdue = sum(
            1 for t in tasks
            if t.due_date and t.due_date < now and t.status != TaskStatus.DONE
        )
        due_today = sum(1 for t in tasks if t.due_date and t.due_date.date() == now.date())

        return {
            "total": total,
            "byStatus": by_status,
            "byPriority": by_priority,
            "categories": len(self.categories()),
            "overdue": overdue,
            "dueToday": due_today,
            "completionRate": round(by_status["done"] / total * 100) if total else 0,
        }
