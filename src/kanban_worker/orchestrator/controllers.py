"""Controllers for worker CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

import httpx

from kanban_worker.board.client import BoardClient
from kanban_worker.board.models import (
    TaskFilter,
    WorkerStatus,
    effective_worker_status,
)
from kanban_worker.config import Settings
from kanban_worker.orchestrator.heartbeat import HeartbeatReporter
from kanban_worker.orchestrator.runner import ProcessRunner
from kanban_worker.orchestrator.runner_base import AgentRunner
from kanban_worker.orchestrator.safety import SafetyPolicy
from kanban_worker.orchestrator.worker import ExecutionLoop

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BoardConnectionOptions:
    """CLI overrides for the board connection; None keeps the env value."""

    api_url: str | None = None
    api_key: str | None = None
    workspace: str | None = None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the execution loop."""

    connection: BoardConnectionOptions
    name: str | None = None
    working_dir: Path | None = None
    agent_command: str | None = None
    task_list_id: str | None = None
    timeout_seconds: float | None = None
    max_loops: int | None = None
    circuit_breaker: int | None = None
    no_progress: int | None = None
    poll_interval: float | None = None
    heartbeat_interval: float | None = None
    graceful_shutdown: float | None = None
    exit_when_idle: bool | None = None
    max_tasks: int | None = None


@dataclass(slots=True)
class DependencyListCommand:
    connection: BoardConnectionOptions
    task_id: str


@dataclass(slots=True)
class DependencyAddCommand:
    connection: BoardConnectionOptions
    task_id: str
    depends_on_task_id: str


@dataclass(slots=True)
class HeartbeatCommand:
    """CLI input for a one-off heartbeat."""

    connection: BoardConnectionOptions
    name: str | None
    status: str


@dataclass(slots=True)
class WorkerRunResult:
    lines: list[str]
    halted: bool


class OrchestratorCliController:
    """Wire settings, board client, runner and loop for CLI commands."""

    def __init__(
        self,
        *,
        transport: httpx.BaseTransport | None = None,
        runner: AgentRunner | None = None,
    ) -> None:
        self._transport = transport
        self._runner = runner

    def run_worker(self, command: WorkerRunCommand) -> WorkerRunResult:
        settings = resolve_worker_settings(Settings.from_env(), command)
        settings.validate()
        worker_settings = settings.worker

        with self._board_client(settings) as client:
            heartbeat = HeartbeatReporter(
                client=client,
                worker_name=worker_settings.name,
                interval_seconds=worker_settings.heartbeat_interval_seconds,
            )
            loop = ExecutionLoop(
                board=client,
                runner=self._runner or ProcessRunner(),
                safety=SafetyPolicy(
                    error_threshold=worker_settings.circuit_breaker_threshold,
                    no_progress_threshold=worker_settings.no_progress_threshold,
                ),
                heartbeat=heartbeat,
                worker_name=worker_settings.name,
                working_dir=worker_settings.working_dir,
                agent_command_template=worker_settings.agent_command_template,
                timeout_seconds=worker_settings.timeout_seconds,
                max_loops=worker_settings.max_loops,
                poll_interval_seconds=worker_settings.poll_interval_seconds,
                graceful_shutdown_seconds=worker_settings.graceful_shutdown_seconds,
                task_filter=TaskFilter(task_list_id=settings.board.task_list_id),
            )
            logger.info(
                "Starting %s in %s (workspace=%s, max_loops=%d, circuit_breaker=%d, no_progress=%d)",
                worker_settings.name,
                worker_settings.working_dir,
                settings.board.workspace_id,
                worker_settings.max_loops,
                worker_settings.circuit_breaker_threshold,
                worker_settings.no_progress_threshold,
            )
            summary = loop.run_loop(
                max_tasks=command.max_tasks,
                max_idle_polls=(
                    worker_settings.max_idle_polls if worker_settings.exit_when_idle else None
                ),
            )

        lines = [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"released={summary.released} iterations={summary.iterations} "
            f"errors={summary.errors} timeouts={summary.timeouts} "
            f"claim_conflicts={summary.claim_conflicts} idle_polls={summary.idle_polls}",
        ]
        if summary.halted:
            lines.append(f"Worker halted: {summary.halt_reason}")
        return WorkerRunResult(lines=lines, halted=summary.halted)

    def list_dependencies(self, command: DependencyListCommand) -> list[str]:
        settings = _with_connection(Settings.from_env(), command.connection)
        settings.validate_board()
        with self._board_client(settings) as client:
            dependencies = client.list_dependencies(command.task_id)

        lines = [f"Dependencies of {command.task_id}: {len(dependencies)}"]
        for dependency in dependencies:
            lines.append(f"  blocked by {dependency.depends_on_task_id}")
        return lines

    def add_dependency(self, command: DependencyAddCommand) -> list[str]:
        settings = _with_connection(Settings.from_env(), command.connection)
        settings.validate_board()
        with self._board_client(settings) as client:
            dependency = client.add_dependency(command.task_id, command.depends_on_task_id)
        return [f"Dependency added: {dependency.task_id} blocked by {dependency.depends_on_task_id}"]

    def heartbeat(self, command: HeartbeatCommand) -> list[str]:
        settings = _with_connection(Settings.from_env(), command.connection)
        settings.validate_board()
        name = command.name or settings.worker.name
        with self._board_client(settings) as client:
            ack = client.heartbeat(name, WorkerStatus(command.status))

        worker = ack.worker
        last = worker.last_heartbeat.isoformat() if worker.last_heartbeat is not None else "-"
        return [
            f"Worker: {worker.name}",
            f"Status: {worker.status.value} (effective: {effective_worker_status(worker).value})",
            f"Current task: {worker.current_task_id or '-'}",
            f"Last heartbeat: {last}",
            f"Tasks completed: {worker.total_tasks_completed}",
            f"Next heartbeat in: {ack.next_heartbeat_in if ack.next_heartbeat_in is not None else '-'}s",
        ]

    @contextmanager
    def _board_client(self, settings: Settings) -> Iterator[BoardClient]:
        client = BoardClient(
            base_url=settings.board.api_url,
            api_key=settings.board.api_key,
            workspace_id=settings.board.workspace_id,
            timeout_seconds=settings.board.request_timeout_seconds,
            max_retries=settings.board.max_retries,
            transport=self._transport,
        )
        try:
            yield client
        finally:
            client.close()


def resolve_worker_settings(settings: Settings, command: WorkerRunCommand) -> Settings:
    """Apply CLI overrides on top of environment settings."""

    settings = _with_connection(settings, command.connection)
    overrides = {
        "name": command.name,
        "working_dir": command.working_dir,
        "agent_command_template": command.agent_command,
        "timeout_seconds": command.timeout_seconds,
        "max_loops": command.max_loops,
        "circuit_breaker_threshold": command.circuit_breaker,
        "no_progress_threshold": command.no_progress,
        "poll_interval_seconds": command.poll_interval,
        "heartbeat_interval_seconds": command.heartbeat_interval,
        "graceful_shutdown_seconds": command.graceful_shutdown,
        "exit_when_idle": command.exit_when_idle,
    }
    worker = replace(
        settings.worker,
        **{key: value for key, value in overrides.items() if value is not None},
    )
    board = settings.board
    if command.task_list_id is not None:
        board = replace(board, task_list_id=command.task_list_id)
    return replace(settings, board=board, worker=worker)


def _with_connection(settings: Settings, connection: BoardConnectionOptions) -> Settings:
    overrides = {
        "api_url": connection.api_url,
        "api_key": connection.api_key,
        "workspace_id": connection.workspace,
    }
    board = replace(
        settings.board,
        **{key: value for key, value in overrides.items() if value is not None},
    )
    return replace(settings, board=board)
