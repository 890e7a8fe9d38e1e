"""Runtime configuration for the board client and the worker loop."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_AGENT_COMMAND_TEMPLATE = "claude --print {prompt}"


@dataclass(slots=True)
class BoardSettings:
    """Board API connection settings."""

    api_url: str = "http://localhost:3000"
    api_key: str | None = None
    workspace_id: str = "default"
    task_list_id: str | None = None
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class WorkerSettings:
    """Execution loop, agent and safety settings."""

    name: str = field(default_factory=lambda: _default_worker_name())
    working_dir: Path = field(default_factory=Path.cwd)
    agent_command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    timeout_seconds: float = 300.0
    max_loops: int = 50
    circuit_breaker_threshold: int = 5
    no_progress_threshold: int = 3
    poll_interval_seconds: float = 30.0
    heartbeat_interval_seconds: float = 10.0
    graceful_shutdown_seconds: float = 5.0
    exit_when_idle: bool = False
    max_idle_polls: int = 1


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    board: BoardSettings = field(default_factory=BoardSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            board=BoardSettings(
                api_url=os.getenv(
                    "KANBAN_API_URL",
                    os.getenv("KANBAN_WORKER_API_URL", "http://localhost:3000"),
                ),
                api_key=os.getenv("KANBAN_API_KEY") or os.getenv("KANBAN_WORKER_API_KEY") or None,
                workspace_id=os.getenv("KANBAN_WORKER_WORKSPACE", "default"),
                task_list_id=os.getenv("KANBAN_WORKER_TASK_LIST_ID") or None,
                request_timeout_seconds=float(
                    os.getenv("KANBAN_WORKER_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("KANBAN_WORKER_HTTP_MAX_RETRIES", "3")),
            ),
            worker=WorkerSettings(
                name=os.getenv("KANBAN_WORKER_NAME") or _default_worker_name(),
                working_dir=Path(os.getenv("KANBAN_WORKER_DIR", str(Path.cwd()))),
                agent_command_template=os.getenv(
                    "KANBAN_WORKER_AGENT_COMMAND",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                timeout_seconds=float(os.getenv("KANBAN_WORKER_TIMEOUT_SECONDS", "300")),
                max_loops=int(os.getenv("KANBAN_WORKER_MAX_LOOPS", "50")),
                circuit_breaker_threshold=int(os.getenv("KANBAN_WORKER_CIRCUIT_BREAKER", "5")),
                no_progress_threshold=int(os.getenv("KANBAN_WORKER_NO_PROGRESS", "3")),
                poll_interval_seconds=float(
                    os.getenv("KANBAN_WORKER_POLL_INTERVAL_SECONDS", "30"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("KANBAN_WORKER_HEARTBEAT_INTERVAL_SECONDS", "10"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("KANBAN_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
                exit_when_idle=_env_bool("KANBAN_WORKER_EXIT_WHEN_IDLE", default=False),
                max_idle_polls=int(os.getenv("KANBAN_WORKER_MAX_IDLE_POLLS", "1")),
            ),
        )

    def validate_board(self) -> None:
        """Raise configuration error if the board API cannot be addressed."""

        if not self.board.api_url.strip():
            raise ValueError("KANBAN_API_URL must not be empty.")
        parsed = urlparse(self.board.api_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"KANBAN_API_URL must be an http(s) URL: {self.board.api_url!r}")
        if self.board.request_timeout_seconds <= 0:
            raise ValueError("KANBAN_WORKER_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.board.max_retries < 0:
            raise ValueError("KANBAN_WORKER_HTTP_MAX_RETRIES must be >= 0.")

    def validate(self) -> None:
        """Raise configuration error for values that would make the loop unsafe."""

        self.validate_board()
        worker = self.worker
        if not worker.name.strip():
            raise ValueError("KANBAN_WORKER_NAME must not be empty.")
        if "{prompt}" not in worker.agent_command_template:
            raise ValueError("KANBAN_WORKER_AGENT_COMMAND must contain {prompt} placeholder.")
        if worker.timeout_seconds <= 0:
            raise ValueError("KANBAN_WORKER_TIMEOUT_SECONDS must be > 0.")
        if worker.max_loops <= 0:
            raise ValueError("KANBAN_WORKER_MAX_LOOPS must be > 0.")
        if worker.circuit_breaker_threshold <= 0:
            raise ValueError("KANBAN_WORKER_CIRCUIT_BREAKER must be > 0.")
        if worker.no_progress_threshold <= 0:
            raise ValueError("KANBAN_WORKER_NO_PROGRESS must be > 0.")
        if worker.poll_interval_seconds < 0:
            raise ValueError("KANBAN_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if worker.heartbeat_interval_seconds <= 0:
            raise ValueError("KANBAN_WORKER_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if worker.graceful_shutdown_seconds < 0:
            raise ValueError("KANBAN_WORKER_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if worker.max_idle_polls <= 0:
            raise ValueError("KANBAN_WORKER_MAX_IDLE_POLLS must be > 0.")
        if not worker.working_dir.is_dir():
            raise ValueError(f"Working directory does not exist: {worker.working_dir}")


def _default_worker_name() -> str:
    return f"worker-{socket.gethostname()}"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
