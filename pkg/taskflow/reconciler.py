"""
Task reconciliation: merge a local task set with a server task set.

Rules (per task id):
    local only            → keep local, create on server
    both, local newer     → keep local, update server
    both, server >= local → keep server (ties go to the server)
    server only           → keep server

reconcile() is pure: no I/O, no clock. Pushing the create/update lists is the
caller's job, and a failed push never invalidates `merged`.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from .schema import Task


@dataclass(frozen=True)
class ReconcileResult:
    merged: List[Task] = field(default_factory=list)
    to_create_on_server: List[Task] = field(default_factory=list)
    to_update_on_server: List[Task] = field(default_factory=list)
    server_only: int = 0

    def stats(self) -> Dict[str, int]:
        """Counts in the shape the /api/sync endpoint reports."""
        return {
            "total": len(self.merged),
            "created": len(self.to_create_on_server),
            "updated": len(self.to_update_on_server),
            "serverOnly": self.server_only,
        }


def _index(tasks: Iterable[Task]) -> Dict[str, Task]:
    # Last occurrence of an id wins; position is that of the first occurrence.
    index: Dict[str, Task] = {}
    for task in tasks:
        index[task.id] = task
    return index


def reconcile(local_tasks: Iterable[Task], server_tasks: Iterable[Task]) -> ReconcileResult:
    """
    Merge two task collections keyed by id, resolving conflicts by updatedAt.

    Output order: local ids in first-seen order, then server-only ids.
    """
    local = _index(local_tasks)
    server = _index(server_tasks)

    merged: List[Task] = []
    to_create: List[Task] = []
    to_update: List[Task] = []

    for task_id, local_task in local.items():
        server_task = server.get(task_id)
        if server_task is None:
            merged.append(local_task)
            to_create.append(local_task)
        elif local_task.updated_at > server_task.updated_at:
            merged.append(local_task)
            to_update.append(local_task)
        else:
            merged.append(server_task)

    server_only = 0
    for task_id, server_task in server.items():
        if task_id not in local:
            merged.append(server_task)
            server_only += 1

    return ReconcileResult(
        merged=merged,
        to_create_on_server=to_create,
        to_update_on_server=to_update,
        server_only=server_only,
    )


def sort_by_recency(tasks: Iterable[Task]) -> List[Task]:
    """Most recently updated first; ties ordered by id so the result is stable."""
    by_id = sorted(tasks, key=lambda t: t.id)
    return sorted(by_id, key=lambda t: t.updated_at, reverse=True)
