"""Shared test fixtures for TaskFlow tests."""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure the repository root is importable (pkg/ and taskflow_server.py)
sys.path.insert(0, str(Path(__file__).parent.parent))

from pkg.taskflow.schema import Task  # noqa: E402
from pkg.taskflow.store import TaskStore  # noqa: E402


def ts(day: int, hour: int = 0) -> datetime:
    """Fixed UTC timestamp in January 2024."""
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc)


def make_task(task_id: str, updated_day: int = 1, title: str = "Task", **kwargs) -> Task:
    kwargs.setdefault("created_at", ts(1))
    return Task(id=task_id, title=title, updated_at=ts(updated_day), **kwargs)


@pytest.fixture
def store(tmp_path):
    return TaskStore(str(tmp_path / "tasks.db"))
