"""CLI entrypoint for kanban-worker."""

import logging
from pathlib import Path

import rich_click as click
from rich.logging import RichHandler

from kanban_worker import __version__
from kanban_worker.errors import DependencyCycleRejected, KanbanWorkerError
from kanban_worker.orchestrator.controllers import (
    BoardConnectionOptions,
    DependencyAddCommand,
    DependencyListCommand,
    HeartbeatCommand,
    OrchestratorCliController,
    WorkerRunCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()


def _connection_options(func):
    func = click.option(
        "--workspace",
        "-w",
        default=None,
        help="Workspace id. Defaults to KANBAN_WORKER_WORKSPACE or `default`.",
    )(func)
    func = click.option(
        "--api-key",
        default=None,
        help="Board API key. Defaults to KANBAN_API_KEY.",
    )(func)
    return click.option(
        "--api-url",
        default=None,
        help="Board base URL. Defaults to KANBAN_API_URL.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="kanban-worker")
def kanban_worker() -> None:
    """Autonomous kanban task worker."""


@kanban_worker.command("run")
@_connection_options
@click.option("--name", default=None, help="Worker name shown on the board.")
@click.option(
    "--dir",
    "-d",
    "working_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory the agent runs in.",
)
@click.option(
    "--agent-command",
    default=None,
    help="Agent command template. Supports {prompt}, {workdir} and {task_id}.",
)
@click.option("--task-list", "task_list_id", default=None, help="Only pick tasks from this list.")
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-invocation agent time limit.",
)
@click.option(
    "--max-loops",
    "-m",
    type=click.IntRange(min=1),
    default=None,
    help="Max agent invocations per task before it goes to review.",
)
@click.option(
    "--circuit-breaker",
    "-c",
    type=click.IntRange(min=1),
    default=None,
    help="Consecutive errors that halt the worker.",
)
@click.option(
    "--no-progress",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Consecutive iterations without progress that halt the worker.",
)
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between polls when the board has no work.",
)
@click.option(
    "--heartbeat-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between heartbeats.",
)
@click.option(
    "--graceful-shutdown",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds the agent gets to exit after SIGTERM before SIGKILL.",
)
@click.option(
    "--exit-when-idle/--keep-polling",
    default=None,
    help="Exit once the board has no claimable task instead of polling forever.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many tasks.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def run(  # noqa: PLR0913
    api_url: str | None,
    api_key: str | None,
    workspace: str | None,
    name: str | None,
    working_dir: Path | None,
    agent_command: str | None,
    task_list_id: str | None,
    timeout_seconds: float | None,
    max_loops: int | None,
    circuit_breaker: int | None,
    no_progress: int | None,
    poll_interval: float | None,
    heartbeat_interval: float | None,
    graceful_shutdown: float | None,
    exit_when_idle: bool | None,
    max_tasks: int | None,
    verbose: bool,
) -> None:
    """Start the task execution loop."""

    setup_logging(verbose=verbose)
    try:
        result = ORCHESTRATOR_CONTROLLER.run_worker(
            WorkerRunCommand(
                connection=BoardConnectionOptions(
                    api_url=api_url,
                    api_key=api_key,
                    workspace=workspace,
                ),
                name=name,
                working_dir=working_dir,
                agent_command=agent_command,
                task_list_id=task_list_id,
                timeout_seconds=timeout_seconds,
                max_loops=max_loops,
                circuit_breaker=circuit_breaker,
                no_progress=no_progress,
                poll_interval=poll_interval,
                heartbeat_interval=heartbeat_interval,
                graceful_shutdown=graceful_shutdown,
                exit_when_idle=exit_when_idle,
                max_tasks=max_tasks,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.halted:
        raise click.ClickException("Worker halted by circuit breaker.")


@kanban_worker.group()
def deps() -> None:
    """Task dependency commands."""


@deps.command("list")
@_connection_options
@click.argument("task_id")
def deps_list(api_url: str | None, api_key: str | None, workspace: str | None, task_id: str) -> None:
    """List the tasks blocking TASK_ID."""

    _emit_lines(
        _call_board(
            ORCHESTRATOR_CONTROLLER.list_dependencies,
            DependencyListCommand(
                connection=BoardConnectionOptions(api_url=api_url, api_key=api_key, workspace=workspace),
                task_id=task_id,
            ),
        ),
    )


@deps.command("add")
@_connection_options
@click.argument("task_id")
@click.argument("depends_on_task_id")
def deps_add(
    api_url: str | None,
    api_key: str | None,
    workspace: str | None,
    task_id: str,
    depends_on_task_id: str,
) -> None:
    """Mark TASK_ID as blocked by DEPENDS_ON_TASK_ID, refusing cycles."""

    _emit_lines(
        _call_board(
            ORCHESTRATOR_CONTROLLER.add_dependency,
            DependencyAddCommand(
                connection=BoardConnectionOptions(api_url=api_url, api_key=api_key, workspace=workspace),
                task_id=task_id,
                depends_on_task_id=depends_on_task_id,
            ),
        ),
    )


@kanban_worker.command("heartbeat")
@_connection_options
@click.option("--name", default=None, help="Worker name shown on the board.")
@click.option(
    "--status",
    type=click.Choice(["idle", "working", "offline", "error"], case_sensitive=False),
    default="idle",
    show_default=True,
    help="Status to report.",
)
def heartbeat(
    api_url: str | None,
    api_key: str | None,
    workspace: str | None,
    name: str | None,
    status: str,
) -> None:
    """Send one heartbeat and print the board's view of the worker."""

    _emit_lines(
        _call_board(
            ORCHESTRATOR_CONTROLLER.heartbeat,
            HeartbeatCommand(
                connection=BoardConnectionOptions(api_url=api_url, api_key=api_key, workspace=workspace),
                name=name,
                status=status.lower(),
            ),
        ),
    )


def setup_logging(*, verbose: bool = False) -> None:
    """Route library logging through rich; `--verbose` switches to DEBUG."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.INFO if verbose else logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _call_board(handler, command) -> list[str]:
    try:
        return handler(command)
    except DependencyCycleRejected as error:
        raise click.ClickException(f"Dependency rejected: {error}") from error
    except (KanbanWorkerError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    kanban_worker()
