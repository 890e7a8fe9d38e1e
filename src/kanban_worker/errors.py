"""Error taxonomy shared by the board client, agent runner and execution loop."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kanban_worker.orchestrator.runner_base import ProcessResult


class ErrorKind(str, Enum):
    """Normalized failure kinds consumed by the safety policy."""

    TRANSIENT_API = "transient_api"
    BOARD_API = "board_api"
    CLAIM_CONFLICT = "claim_conflict"
    PROCESS_TIMEOUT = "process_timeout"
    PROCESS_SPAWN = "process_spawn"
    PROCESS_NON_ZERO_EXIT = "process_non_zero_exit"
    PARSE_AMBIGUOUS = "parse_ambiguous"
    CIRCUIT_OPEN = "circuit_open"
    DEPENDENCY_CYCLE = "dependency_cycle"


COUNTED_ERROR_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.TRANSIENT_API,
        ErrorKind.BOARD_API,
        ErrorKind.PROCESS_TIMEOUT,
        ErrorKind.PROCESS_SPAWN,
        ErrorKind.PROCESS_NON_ZERO_EXIT,
    },
)


class KanbanWorkerError(RuntimeError):
    """Base error carrying a machine-readable kind."""

    kind: ErrorKind = ErrorKind.BOARD_API


class TransientApiError(KanbanWorkerError):
    """Network failure or 5xx/429 answer from the board; retried on next poll."""

    kind = ErrorKind.TRANSIENT_API

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BoardApiError(KanbanWorkerError):
    """Non-retryable 4xx answer from the board."""

    kind = ErrorKind.BOARD_API

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ClaimConflict(KanbanWorkerError):
    """Another worker won the claim race for this task."""

    kind = ErrorKind.CLAIM_CONFLICT

    def __init__(self, task_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Task {task_id} is already claimed")
        self.task_id = task_id


class DependencyCycleRejected(KanbanWorkerError):
    """Dependency insert would close a cycle in the task graph."""

    kind = ErrorKind.DEPENDENCY_CYCLE

    def __init__(self, task_id: str, depends_on_task_id: str, message: str | None = None) -> None:
        super().__init__(
            message
            or (
                f"Adding dependency {task_id} -> {depends_on_task_id} "
                "would create a circular dependency"
            ),
        )
        self.task_id = task_id
        self.depends_on_task_id = depends_on_task_id


class CircuitOpen(KanbanWorkerError):
    """Safety breaker tripped; the worker must stop until reset."""

    kind = ErrorKind.CIRCUIT_OPEN


class AgentRunError(KanbanWorkerError):
    """Agent process failure with whatever output was captured."""

    kind = ErrorKind.PROCESS_SPAWN

    def __init__(
        self,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


class ProcessSpawnError(AgentRunError):
    """Agent executable could not be started."""

    kind = ErrorKind.PROCESS_SPAWN


class ProcessTimeout(AgentRunError):
    """Agent exceeded its time limit (or shutdown grace) and was killed."""

    kind = ErrorKind.PROCESS_TIMEOUT

    def __init__(
        self,
        message: str,
        *,
        timeout_seconds: float,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message, stdout=stdout, stderr=stderr, exit_code=None)
        self.timeout_seconds = timeout_seconds


class ProcessNonZeroExit(AgentRunError):
    """Agent exited with a non-zero status; parsed output is kept for reporting."""

    kind = ErrorKind.PROCESS_NON_ZERO_EXIT

    def __init__(self, message: str, *, result: ProcessResult) -> None:
        super().__init__(
            message,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
        )
        self.result = result
