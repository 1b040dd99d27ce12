"""
Task schema and wire codec.

A Task is an immutable snapshot. Mutations produce a new Task via
dataclasses.replace(), which lets the reconciler and the board pass whole
collections around without copying.

Wire format (REST API and backups) uses the camelCase keys of the TaskFlow
server: id, title, description, category, priority, status, dueDate,
createdAt, updatedAt. Optional values that are absent travel as null, which
keeps "no description" distinct from "empty description".
"""
import time
import uuid
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any


REQUIRED_FIELDS = ("id", "title", "createdAt", "updatedAt")


class ValidationError(Exception):
    """Raised when a task fails required-field or value checks."""
    pass


class TaskStatus(Enum):
    """Board columns."""
    TODO = "todo"
    IN_PROGRESS = "inProgress"
    DONE = "done"

    @classmethod
    def from_str(cls, value: str) -> "TaskStatus":
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValidationError(f"Invalid status: {value!r}")


class TaskPriority(Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @classmethod
    def from_str(cls, value: str) -> "TaskPriority":
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValidationError(f"Invalid priority: {value!r}")

    @property
    def rank(self) -> int:
        return {"Low": 1, "Medium": 2, "High": 3}[self.value]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_task_id() -> str:
    """Client-side task ID: random hex + ms timestamp (task_<hex>_<ms>)."""
    return f"task_{uuid.uuid4().hex[:9]}_{int(time.time() * 1000)}"


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 timestamp (or datetime) into an aware UTC datetime.

    Accepts a trailing 'Z' and date-only strings. Naive values are taken as UTC.
    Raises ValueError on anything unparseable.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


@dataclass(frozen=True)
class Task:
    """One card on the board."""

    id: str
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    due_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def validate(self) -> "Task":
        """Return self if the task is well-formed, raise ValidationError otherwise."""
        if not self.id or not str(self.id).strip():
            raise ValidationError("Task id is required")
        if not self.title or not self.title.strip():
            raise ValidationError("Task title is required")
        if self.updated_at < self.created_at:
            raise ValidationError(f"Task {self.id}: updatedAt precedes createdAt")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase wire format."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority.value,
            "status": self.status.value,
            "dueDate": format_timestamp(self.due_date),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Deserialize from the wire format. Raises ValidationError."""
        validate_task_dict(data)

        due_date = None
        if data.get("dueDate"):
            # The server stores an unparseable due date as null; do the same.
            try:
                due_date = parse_timestamp(data["dueDate"])
            except ValueError:
                due_date = None

        priority = TaskPriority.MEDIUM
        if data.get("priority"):
            priority = TaskPriority.from_str(data["priority"])

        status = TaskStatus.TODO
        if data.get("status"):
            status = TaskStatus.from_str(data["status"])

        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            description=data.get("description"),
            category=data.get("category"),
            priority=priority,
            status=status,
            due_date=due_date,
            created_at=parse_timestamp(data["createdAt"]),
            updated_at=parse_timestamp(data["updatedAt"]),
        )


def validate_task_dict(data: Any) -> None:
    """
    Check a wire-format task before it is turned into a Task.

    Required: id, title (non-blank), createdAt, updatedAt (parseable).
    """
    if not isinstance(data, dict):
        raise ValidationError(f"Task must be an object, got {type(data).__name__}")
    missing = [k for k in REQUIRED_FIELDS if data.get(k) in (None, "")]
    if missing:
        raise ValidationError(f"Task {data.get('id')!r} missing fields: {', '.join(missing)}")
    if not isinstance(data["title"], str) or not data["title"].strip():
        raise ValidationError(f"Task {data['id']!r}: title is required")
    for key in ("createdAt", "updatedAt"):
        try:
            parse_timestamp(data[key])
        except (TypeError, ValueError):
            raise ValidationError(f"Task {data['id']!r}: invalid {key} {data[key]!r}")


def new_task(
    title: str,
    description: Optional[str] = None,
    category: Optional[str] = None,
    priority: Any = TaskPriority.MEDIUM,
    status: Any = TaskStatus.TODO,
    due_date: Any = None,
    task_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Task:
    """Build a fresh, validated task with createdAt == updatedAt == now."""
    now = now or utc_now()
    if not isinstance(priority, TaskPriority):
        priority = TaskPriority.from_str(priority)
    if not isinstance(status, TaskStatus):
        status = TaskStatus.from_str(status)
    if due_date is not None:
        try:
            due_date = parse_timestamp(due_date)
        except ValueError:
            raise ValidationError(f"Invalid due date: {due_date!r}")
    return Task(
        id=task_id or make_task_id(),
        title=(title or "").strip(),
        description=description,
        category=category,
        priority=priority,
        status=status,
        due_date=due_date,
        created_at=now,
        updated_at=now,
    ).validate()
