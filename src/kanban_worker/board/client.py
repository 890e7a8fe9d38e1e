"""HTTP client for the task board API."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from kanban_worker.board.dependencies import DependencyGraph
from kanban_worker.board.models import (
    BoardEvent,
    FollowUpTask,
    HeartbeatAck,
    Task,
    TaskComment,
    TaskDependency,
    TaskFilter,
    TaskPatch,
    TaskStatus,
    Worker,
    WorkerStatus,
)
from kanban_worker.errors import (
    BoardApiError,
    ClaimConflict,
    DependencyCycleRejected,
    TransientApiError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_USER_AGENT = "kanban-worker/1.0"
WORKSPACE_HEADER = "X-Workspace-Id"

_CYCLE_MARKERS = ("circular dependency", "cycle")


class TaskBoard(Protocol):
    """Board operations the execution loop depends on."""

    def fetch_next(self, task_filter: TaskFilter | None = None) -> Task | None: ...

    def claim(self, task_id: str, worker_name: str) -> Task: ...

    def update_status(self, task_id: str, patch: TaskPatch) -> Task: ...

    def add_comment(self, task_id: str, comment: TaskComment) -> dict[str, Any]: ...

    def add_event(self, event: BoardEvent) -> None: ...


class BoardClient:
    """Typed wrapper over the board REST API.

    Transport-level failures and 5xx/429 answers surface as `TransientApiError`,
    claim races as `ClaimConflict`, other 4xx answers as `BoardApiError`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        workspace_id: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"User-Agent": user_agent, "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if workspace_id:
            headers[WORKSPACE_HEADER] = workspace_id
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def fetch_next(self, task_filter: TaskFilter | None = None) -> Task | None:
        """Return the highest-priority unassigned `todo` task, or None."""

        params = task_filter.to_params() if task_filter is not None else {}
        payload = self._request("GET", "/api/tasks/next", params=params)
        raw_task = payload.get("task")
        if not isinstance(raw_task, dict):
            return None
        return Task.from_payload(raw_task)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[Task]:
        params: dict[str, str | int] = {"limit": limit}
        if status is not None:
            params["status"] = status.value
        payload = self._request("GET", "/api/tasks", params=params)
        return _tasks_from(payload.get("tasks"))

    def get_task(self, task_id: str) -> Task:
        payload = self._request("GET", f"/api/tasks/{task_id}")
        return _task_from(payload)

    def claim(self, task_id: str, worker_name: str) -> Task:
        """Claim a task for `worker_name`; the board performs the compare-and-set."""

        try:
            payload = self._request(
                "POST",
                f"/api/tasks/{task_id}/claim",
                json={"worker": worker_name},
            )
        except BoardApiError as error:
            if error.status_code == httpx.codes.CONFLICT:
                raise ClaimConflict(task_id, str(error)) from error
            raise
        if payload.get("success") is False:
            raise ClaimConflict(task_id, str(payload.get("message") or "") or None)
        return _task_from(payload)

    def update_status(self, task_id: str, patch: TaskPatch) -> Task:
        payload = self._request("PATCH", f"/api/tasks/{task_id}", json=patch.to_payload())
        return _task_from(payload)

    def add_comment(self, task_id: str, comment: TaskComment) -> dict[str, Any]:
        payload = self._request(
            "POST",
            f"/api/tasks/{task_id}/comments",
            json=comment.to_payload(),
        )
        comment_payload = payload.get("comment")
        return comment_payload if isinstance(comment_payload, dict) else {}

    def add_event(self, event: BoardEvent) -> None:
        self._request("POST", "/api/events", json=event.to_payload())

    def create_follow_up_task(self, follow_up: FollowUpTask) -> Task:
        payload = self._request("POST", "/api/tasks", json=follow_up.to_payload())
        return _task_from(payload)

    def list_dependencies(self, task_id: str) -> list[TaskDependency]:
        payload = self._request("GET", f"/api/tasks/{task_id}/dependencies")
        raw = payload.get("dependencies")
        if not isinstance(raw, list):
            return []
        return [TaskDependency.from_payload(item) for item in raw if isinstance(item, dict)]

    def add_dependency(self, task_id: str, depends_on_task_id: str) -> TaskDependency:
        """Insert a blocked-by edge after checking it cannot close a cycle."""

        graph = DependencyGraph(
            lambda node: [edge.depends_on_task_id for edge in self.list_dependencies(node)],
        )
        graph.check_insert(task_id, depends_on_task_id)
        try:
            payload = self._request(
                "POST",
                f"/api/tasks/{task_id}/dependencies",
                json={"depends_on_task_id": depends_on_task_id},
            )
        except BoardApiError as error:
            lowered = str(error).lower()
            if any(marker in lowered for marker in _CYCLE_MARKERS):
                raise DependencyCycleRejected(task_id, depends_on_task_id, str(error)) from error
            raise
        raw = payload.get("dependency")
        if not isinstance(raw, dict):
            return TaskDependency(task_id=task_id, depends_on_task_id=depends_on_task_id)
        return TaskDependency.from_payload(raw)

    def heartbeat(
        self,
        worker_name: str,
        status: WorkerStatus,
        current_task_id: str | None = None,
    ) -> HeartbeatAck:
        payload = self._request(
            "POST",
            "/api/workers/heartbeat",
            json={
                "worker_name": worker_name,
                "status": status.value,
                "current_task_id": current_task_id,
            },
        )
        raw_worker = payload.get("worker")
        worker = (
            Worker.from_payload(raw_worker)
            if isinstance(raw_worker, dict)
            else Worker(name=worker_name, status=status, current_task_id=current_task_id)
        )
        next_in = payload.get("next_heartbeat_in")
        return HeartbeatAck(
            worker=worker,
            next_heartbeat_in=next_in if isinstance(next_in, int) else None,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> BoardClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling board %s %s", method, path)
            raise TransientApiError(f"Timeout calling {method} {path}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling board %s %s: %s", method, path, error)
            raise TransientApiError(f"HTTP error calling {method} {path}: {error}") from error

        if response.is_success:
            return _json_body(response)

        message = f"{method} {path} failed with HTTP {response.status_code}: {_error_text(response)}"
        if response.status_code >= httpx.codes.INTERNAL_SERVER_ERROR or (
            response.status_code == httpx.codes.TOO_MANY_REQUESTS
        ):
            logger.warning("Transient board failure: %s", message)
            raise TransientApiError(message, status_code=response.status_code)
        raise BoardApiError(message, status_code=response.status_code)


def _json_body(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as error:
        raise TransientApiError(
            f"Board returned non-JSON body for {response.request.url}",
            status_code=response.status_code,
        ) from error
    if not isinstance(payload, dict):
        return {}
    return payload


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        for key in ("error", "message"):
            value = payload.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return response.text[:200]


def _task_from(payload: dict[str, Any]) -> Task:
    raw_task = payload.get("task")
    if not isinstance(raw_task, dict):
        raise BoardApiError(f"Board response has no task object: {payload!r}")
    return Task.from_payload(raw_task)


def _tasks_from(raw: object) -> list[Task]:
    if not isinstance(raw, list):
        return []
    return [Task.from_payload(item) for item in raw if isinstance(item, dict)]
