"""In-memory board and scripted runner used by loop and CLI tests."""

from __future__ import annotations

import json
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import httpx

from kanban_worker.board.models import (
    BoardEvent,
    Task,
    TaskComment,
    TaskFilter,
    TaskPatch,
    TaskPriority,
    TaskStatus,
)
from kanban_worker.errors import ClaimConflict, KanbanWorkerError
from kanban_worker.orchestrator.runner_base import AgentRunRequest, ProcessResult
from kanban_worker.orchestrator.safety import SafetyPolicy
from kanban_worker.orchestrator.worker import ExecutionLoop

ECHO_AGENT_COMMAND = f"{sys.executable} -m kanban_worker.orchestrator.echo_agent --prompt {{prompt}}"

_PRIORITY_RANK = {
    TaskPriority.URGENT.value: 0,
    TaskPriority.HIGH.value: 1,
    TaskPriority.MEDIUM.value: 2,
    TaskPriority.LOW.value: 3,
}


class FakeBoard:
    """In-memory board with the same claim compare-and-set as the real API."""

    def __init__(self, tasks: list[Task] | None = None) -> None:
        self._lock = threading.Lock()
        self.tasks: dict[str, Task] = {task.id: task for task in tasks or []}
        self.order = [task.id for task in tasks or []]
        self.fetch_calls = 0
        self.claim_calls = 0
        self.patches: list[tuple[str, TaskPatch]] = []
        self.comments: list[tuple[str, TaskComment]] = []
        self.events: list[BoardEvent] = []
        self.fetch_errors: list[KanbanWorkerError] = []
        self.patch_errors: list[KanbanWorkerError] = []
        self.steal_on_fetch: set[str] = set()

    def fetch_next(self, task_filter: TaskFilter | None = None) -> Task | None:
        with self._lock:
            self.fetch_calls += 1
            if self.fetch_errors:
                raise self.fetch_errors.pop(0)
            candidates = [
                self.tasks[task_id]
                for task_id in self.order
                if self.tasks[task_id].status == TaskStatus.TODO.value
                and not self.tasks[task_id].assigned_to
                and (
                    task_filter is None
                    or task_filter.task_list_id is None
                    or self.tasks[task_id].task_list_id == task_filter.task_list_id
                )
            ]
            if not candidates:
                return None
            candidates.sort(key=lambda task: _PRIORITY_RANK.get(task.priority, 99))
            chosen = candidates[0]
            if chosen.id in self.steal_on_fetch:
                self.steal_on_fetch.discard(chosen.id)
                chosen.assigned_to = "other-worker"
            return _copy(chosen)

    def claim(self, task_id: str, worker_name: str) -> Task:
        with self._lock:
            self.claim_calls += 1
            task = self.tasks[task_id]
            if task.assigned_to or task.status != TaskStatus.TODO.value:
                raise ClaimConflict(task_id)
            task.assigned_to = worker_name
            return _copy(task)

    def update_status(self, task_id: str, patch: TaskPatch) -> Task:
        with self._lock:
            if self.patch_errors:
                raise self.patch_errors.pop(0)
            self.patches.append((task_id, patch))
            task = self.tasks[task_id]
            if patch.status is not None:
                task.status = patch.status.value
            if patch.assigned_to is not None:
                task.assigned_to = patch.assigned_to or None
            if patch.loop_count is not None:
                task.loop_count = patch.loop_count
            if patch.error_count is not None:
                task.error_count = patch.error_count
            if patch.files_changed is not None:
                task.files_changed = list(patch.files_changed)
            if patch.completion_notes is not None:
                task.completion_notes = patch.completion_notes
            return _copy(task)

    def add_comment(self, task_id: str, comment: TaskComment) -> dict[str, object]:
        with self._lock:
            self.comments.append((task_id, comment))
        return {"task_id": task_id, "content": comment.content}

    def add_event(self, event: BoardEvent) -> None:
        with self._lock:
            self.events.append(event)

    def comment_texts(self, task_id: str) -> list[str]:
        return [comment.content for owner, comment in self.comments if owner == task_id]

    def event_types(self) -> list[str]:
        return [event.event_type.value for event in self.events]

    def statuses_patched(self, task_id: str) -> list[str]:
        return [
            patch.status.value
            for owner, patch in self.patches
            if owner == task_id and patch.status is not None
        ]


@dataclass(slots=True)
class ScriptedRunner:
    """Runner returning scripted results or raising scripted errors in order."""

    script: list[ProcessResult | Exception | Callable[[AgentRunRequest], ProcessResult]]
    repeat_last: bool = True
    requests: list[AgentRunRequest] = field(default_factory=list)

    def run(self, request: AgentRunRequest) -> ProcessResult:
        self.requests.append(request)
        if len(self.script) > 1 or not self.repeat_last:
            step = self.script.pop(0)
        else:
            step = self.script[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        return step


def agent_output(
    *,
    files: tuple[str, ...] = (),
    exit_signal: bool | None = None,
    indicators: int = 0,
    text: str = "",
    stderr: str = "",
    exit_code: int = 0,
) -> ProcessResult:
    lines = [f"modified: {path}" for path in files]
    if text:
        lines.append(text)
    if exit_signal is not None:
        lines.append(
            'RALPH_STATUS: {"EXIT_SIGNAL": %s, "COMPLETION_INDICATORS": %d}'
            % ("true" if exit_signal else "false", indicators),
        )
    return ProcessResult.from_output(exit_code=exit_code, stdout="\n".join(lines), stderr=stderr)


def make_task(
    task_id: str,
    *,
    title: str | None = None,
    priority: str = TaskPriority.MEDIUM.value,
    loop_count: int = 0,
    task_list_id: str | None = None,
) -> Task:
    return Task(
        id=task_id,
        title=title or f"Task {task_id}",
        status=TaskStatus.TODO.value,
        priority=priority,
        description=f"Description of {task_id}",
        loop_count=loop_count,
        task_list_id=task_list_id,
    )


def make_loop(  # noqa: PLR0913
    board: FakeBoard,
    runner: ScriptedRunner,
    working_dir: Path,
    *,
    worker_name: str = "worker-1",
    max_loops: int = 50,
    error_threshold: int = 5,
    no_progress_threshold: int = 3,
    agent_command_template: str = "agent {prompt}",
    timeout_seconds: float = 30.0,
) -> ExecutionLoop:
    return ExecutionLoop(
        board=board,
        runner=runner,
        safety=SafetyPolicy(
            error_threshold=error_threshold,
            no_progress_threshold=no_progress_threshold,
        ),
        worker_name=worker_name,
        working_dir=working_dir,
        agent_command_template=agent_command_template,
        timeout_seconds=timeout_seconds,
        max_loops=max_loops,
        poll_interval_seconds=0,
        graceful_shutdown_seconds=0.5,
    )


def _copy(task: Task) -> Task:
    return Task(
        id=task.id,
        title=task.title,
        status=task.status,
        priority=task.priority,
        description=task.description,
        assigned_to=task.assigned_to,
        task_list_id=task.task_list_id,
        labels=list(task.labels),
        loop_count=task.loop_count,
        error_count=task.error_count,
        files_changed=list(task.files_changed),
        completion_notes=task.completion_notes,
    )


class BoardApi:
    """Request handler for `httpx.MockTransport` emulating the board REST API."""

    def __init__(self, tasks: list[dict[str, object]] | None = None) -> None:
        self._lock = threading.Lock()
        self.tasks: dict[str, dict[str, object]] = {str(task["id"]): dict(task) for task in tasks or []}
        self.dependencies: list[dict[str, str]] = []
        self.requests: list[httpx.Request] = []
        self.comments: list[dict[str, object]] = []
        self.events: list[dict[str, object]] = []
        self.heartbeats: list[dict[str, object]] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            parts = request.url.path.strip("/").split("/")
            body = json.loads(request.content) if request.content else {}
            return self._route(request.method, parts[1:], body, request)

    def writes(self, method: str, path_suffix: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path.endswith(path_suffix)
        ]

    def _route(  # noqa: C901, PLR0911
        self,
        method: str,
        parts: list[str],
        body: dict[str, object],
        request: httpx.Request,
    ) -> httpx.Response:
        if parts == ["tasks", "next"] and method == "GET":
            candidates = [
                task
                for task in self.tasks.values()
                if task.get("status") == "todo" and not task.get("assigned_to")
            ]
            candidates.sort(key=lambda task: _PRIORITY_RANK.get(str(task.get("priority")), 99))
            return httpx.Response(200, json={"task": candidates[0] if candidates else None})
        if parts == ["workers", "heartbeat"] and method == "POST":
            self.heartbeats.append(body)
            worker = {
                "name": body["worker_name"],
                "status": body["status"],
                "current_task_id": body.get("current_task_id"),
                "last_heartbeat": datetime.now(tz=UTC).isoformat(),
                "total_tasks_completed": 0,
            }
            return httpx.Response(200, json={"worker": worker, "next_heartbeat_in": 10})
        if parts == ["events"] and method == "POST":
            self.events.append(body)
            return httpx.Response(201, json={"success": True})
        if len(parts) < 2 or parts[0] != "tasks":
            return httpx.Response(404, json={"error": "Not found"})

        task = self.tasks.get(parts[1])
        if task is None:
            return httpx.Response(404, json={"error": "Task not found"})
        action = parts[2] if len(parts) > 2 else None
        if action is None and method == "GET":
            return httpx.Response(200, json={"task": task})
        if action is None and method == "PATCH":
            task.update(body)
            if body.get("assigned_to") == "":
                task["assigned_to"] = None
            return httpx.Response(200, json={"task": task})
        if action == "claim" and method == "POST":
            if task.get("assigned_to") or task.get("status") != "todo":
                return httpx.Response(409, json={"error": "Task already claimed"})
            task["assigned_to"] = body["worker"]
            return httpx.Response(200, json={"task": task})
        if action == "comments" and method == "POST":
            self.comments.append({"task_id": parts[1], **body})
            return httpx.Response(201, json={"comment": {"id": len(self.comments), **body}})
        if action == "dependencies" and method == "GET":
            edges = [edge for edge in self.dependencies if edge["task_id"] == parts[1]]
            return httpx.Response(200, json={"dependencies": edges, "blocked_by": []})
        if action == "dependencies" and method == "POST":
            edge = {"task_id": parts[1], "depends_on_task_id": str(body["depends_on_task_id"])}
            self.dependencies.append(edge)
            return httpx.Response(201, json={"dependency": edge})
        return httpx.Response(405, json={"error": f"Unsupported {request.method}"})
