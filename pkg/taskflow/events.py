"""
Task-change notifications.

The board publishes; UIs, the CLI and tests subscribe. Callbacks run
synchronously in the publisher's thread, and one failing callback does not
stop the others.
"""
import logging
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

TASK_CREATED = "task_created"
TASK_UPDATED = "task_updated"
TASK_DELETED = "task_deleted"
TASKS_UPDATED = "tasks_updated"
SYNC_COMPLETED = "sync_completed"
SYNC_FAILED = "sync_failed"


class TaskEvents:
    """Observer registry: event_type -> callbacks."""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_type: str, callback: Callable) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self.subscribers.setdefault(event_type, []).append(callback)
        return lambda: self.unsubscribe(event_type, callback)

    def unsubscribe(self, event_type: str, callback: Callable) -> None:
        callbacks = self.subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event_type: str, **kwargs) -> None:
        """Emit an event to all subscribers."""
        for callback in list(self.subscribers.get(event_type, [])):
            try:
                callback(**kwargs)
            except Exception:
                logger.exception("Error in %s callback", event_type)
