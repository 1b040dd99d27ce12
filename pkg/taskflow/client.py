"""
HTTP client for the TaskFlow REST API.

Every request carries a timeout. Failures of any kind (network, timeout, HTTP
error status, bad JSON) come back as TransportError; callers decide whether to
retry via `err.retryable` or use request_with_retry().
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from .schema import Task, ValidationError

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """A request to the server failed. status == 0 means it never got an answer."""

    def __init__(self, message: str, status: int = 0, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status = status
        self.data = data or {}

    @property
    def is_network_error(self) -> bool:
        return self.status == 0

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 403)

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500

    @property
    def retryable(self) -> bool:
        # 408/429 are the client errors worth another try
        return self.is_network_error or self.is_server_error or self.status in (408, 429)


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 10.0) -> float:
    """Delay before retry number `attempt` (1-based): base * 2**(attempt-1), capped."""
    return min(base * (2 ** (attempt - 1)), cap)


class TaskflowClient:
    """REST client for the task endpoints."""

    def __init__(
        self,
        base_url: str = "http://localhost:3001/api",
        token: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep
        self.session = requests.Session()
        # Push workers share this client; token reads and resets go through the lock
        self._token_lock = threading.Lock()

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def request(self, method: str, endpoint: str, data: Any = None) -> Any:
        """Send one request and return the decoded JSON body."""
        url = f"{self.base_url}{endpoint}"
        logger.debug("API request: %s %s", method, url)
        with self._token_lock:
            token = self.token
        try:
            r = self.session.request(
                method,
                url,
                json=data,
                headers=self._headers(token),
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransportError(f"{method} {url} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        if r.status_code == 401:
            with self._token_lock:
                # Only forget the token this request was refused with
                if self.token == token:
                    self.token = None
            raise TransportError("Authentication required", 401)

        if not r.ok:
            try:
                body = r.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            message = body.get("error") or body.get("message") or f"HTTP {r.status_code}"
            raise TransportError(message, r.status_code, body)

        try:
            return r.json()
        except ValueError as e:
            raise TransportError(f"{method} {url}: invalid JSON response", r.status_code) from e

    def request_with_retry(self, method: str, endpoint: str, data: Any = None) -> Any:
        """request() with exponential backoff on retryable failures."""
        attempt = 1
        while True:
            try:
                return self.request(method, endpoint, data)
            except TransportError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = backoff_delay(attempt, self.retry_base_delay, self.retry_max_delay)
                logger.info("Retrying %s %s in %.1fs (%s)", method, endpoint, delay, e)
                self._sleep(delay)
                attempt += 1

    # ── Tasks ────────────────────────────────────────────────────────────────

    @staticmethod
    def _task_from_response(body: Any) -> Task:
        payload = body.get("task", body) if isinstance(body, dict) else body
        try:
            return Task.from_dict(payload)
        except ValidationError as e:
            raise TransportError(f"Server returned an invalid task: {e}", 200) from e

    def get_tasks(self) -> List[Task]:
        """All server tasks. Invalid entries are skipped with a warning."""
        body = self.request_with_retry("GET", "/tasks")
        items = body.get("tasks", []) if isinstance(body, dict) else body
        if not isinstance(items, list):
            raise TransportError("Server returned no task list", 200)
        tasks = []
        for item in items:
            try:
                tasks.append(Task.from_dict(item))
            except ValidationError as e:
                logger.warning("Skipping invalid server task: %s", e)
        return tasks

    def get_task(self, task_id: str) -> Task:
        return self._task_from_response(self.request_with_retry("GET", f"/tasks/{task_id}"))

    def create_task(self, task: Task) -> Task:
        return self._task_from_response(self.request_with_retry("POST", "/tasks", task.to_dict()))

    def update_task(self, task: Task) -> Task:
        body = self.request_with_retry("PUT", f"/tasks/{task.id}", task.to_dict())
        return self._task_from_response(body)

    def delete_task(self, task_id: str) -> None:
        try:
            self.request_with_retry("DELETE", f"/tasks/{task_id}")
        except TransportError as e:
            # Already gone on the server is what we wanted
            if e.status != 404:
                raise

    def sync_tasks(self, tasks: List[Task]) -> Dict[str, Any]:
        """Server-side batch reconcile. Returns {tasks: [Task], stats: {...}}."""
        body = self.request_with_retry("POST", "/sync", {"tasks": [t.to_dict() for t in tasks]})
        merged = []
        for item in body.get("tasks", []):
            try:
                merged.append(Task.from_dict(item))
            except ValidationError as e:
                logger.warning("Skipping invalid synced task: %s", e)
        return {"tasks": merged, "stats": body.get("stats", {})}

    def resolve_conflicts(self, conflicts: List[Dict[str, Any]], resolutions: List[str]) -> List[Dict[str, Any]]:
        """
        Settle conflicts on the server. Each conflict carries clientVersion and
        serverVersion; each resolution is "client", "server" or "merge".
        Returns the resolved task dicts.
        """
        body = self.request_with_retry(
            "POST", "/sync/resolve", {"conflicts": conflicts, "resolutions": resolutions}
        )
        return body.get("resolvedTasks", []) if isinstance(body, dict) else []

    def sync_status(self) -> Dict[str, Any]:
        return self.request("GET", "/sync/status")

    def health(self) -> bool:
        """Check if the server is reachable."""
        try:
            self.request("GET", "/health")
            return True
        except TransportError:
            return False
