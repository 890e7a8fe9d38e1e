from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from fakes import ECHO_AGENT_COMMAND, BoardApi

from kanban_worker import __version__
from kanban_worker import main as cli_main
from kanban_worker.main import kanban_worker
from kanban_worker.orchestrator.controllers import OrchestratorCliController

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Worker Commands"),
]

API_URL = "https://board.test"


@pytest.fixture()
def board_api(clean_env, monkeypatch) -> BoardApi:
    api = BoardApi(
        [
            {"id": "t1", "title": "Add health endpoint", "status": "todo", "priority": "high"},
            {"id": "t2", "title": "Write docs", "status": "review", "priority": "low"},
        ],
    )
    monkeypatch.setattr(
        cli_main,
        "ORCHESTRATOR_CONTROLLER",
        OrchestratorCliController(transport=api.transport()),
    )
    return api


def _run_args(tmp_path: Path, agent_args: str, *extra: str) -> list[str]:
    return [
        "run",
        "--api-url",
        API_URL,
        "--api-key",
        "tk_test",
        "--name",
        "cli-worker",
        "--dir",
        str(tmp_path),
        "--agent-command",
        f"{ECHO_AGENT_COMMAND} {agent_args}",
        "--poll-interval",
        "0",
        "--graceful-shutdown",
        "0.5",
        "--exit-when-idle",
        *extra,
    ]


def test_version_option() -> None:
    result = CliRunner().invoke(kanban_worker, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_run_completes_task_with_real_agent(board_api: BoardApi, tmp_path: Path) -> None:
    result = CliRunner().invoke(
        kanban_worker,
        _run_args(tmp_path, "--file src/health.py --exit-signal --indicators 1"),
    )

    assert result.exit_code == 0, result.output
    assert "Worker summary: processed=1 completed=1" in result.output
    task = board_api.tasks["t1"]
    assert task["status"] == "review"
    assert task["assigned_to"] == "cli-worker"
    assert task["files_changed"] == ["src/health.py"]
    assert task["loop_count"] == 1
    assert [event["event_type"] for event in board_api.events] == ["task_claimed", "task_completed"]
    assert all(
        request.headers["Authorization"] == "Bearer tk_test" for request in board_api.requests
    )
    assert {beat["status"] for beat in board_api.heartbeats} >= {"working", "idle"}


def test_run_exits_non_zero_when_breaker_opens(board_api: BoardApi, tmp_path: Path) -> None:
    result = CliRunner().invoke(
        kanban_worker,
        _run_args(tmp_path, "--stderr 'Error: cannot continue' --exit-code 2", "--circuit-breaker", "2"),
    )

    assert result.exit_code == 1
    assert "Worker halted: 2 consecutive errors" in result.output
    assert "Worker halted by circuit breaker." in result.output
    task = board_api.tasks["t1"]
    assert task["status"] == "todo"
    assert task["assigned_to"] is None
    assert task["error_count"] == 2
    assert [event["event_type"] for event in board_api.events] == ["task_claimed", "stuck", "error"]


def test_run_rejects_template_without_prompt(board_api: BoardApi, tmp_path: Path) -> None:
    result = CliRunner().invoke(
        kanban_worker,
        ["run", "--api-url", API_URL, "--dir", str(tmp_path), "--agent-command", "agent --yes"],
    )

    assert result.exit_code == 1
    assert "{prompt}" in result.output
    assert board_api.requests == []


def test_deps_add_and_list(board_api: BoardApi) -> None:
    runner = CliRunner()

    added = runner.invoke(kanban_worker, ["deps", "add", "t2", "t1", "--api-url", API_URL])
    listed = runner.invoke(kanban_worker, ["deps", "list", "t2", "--api-url", API_URL])

    assert added.exit_code == 0, added.output
    assert "Dependency added: t2 blocked by t1" in added.output
    assert listed.exit_code == 0, listed.output
    assert "Dependencies of t2: 1" in listed.output
    assert "blocked by t1" in listed.output


def test_deps_add_refuses_cycle(board_api: BoardApi) -> None:
    board_api.dependencies = [{"task_id": "t1", "depends_on_task_id": "t2"}]

    result = CliRunner().invoke(kanban_worker, ["deps", "add", "t2", "t1", "--api-url", API_URL])

    assert result.exit_code == 1
    assert "Dependency rejected" in result.output
    assert board_api.writes("POST", "/dependencies") == []


def test_heartbeat_command_reports_worker(board_api: BoardApi) -> None:
    result = CliRunner().invoke(
        kanban_worker,
        ["heartbeat", "--api-url", API_URL, "--name", "cli-worker", "--status", "working"],
    )

    assert result.exit_code == 0, result.output
    assert "Worker: cli-worker" in result.output
    assert "Status: working (effective: working)" in result.output
    assert "Next heartbeat in: 10s" in result.output
    assert board_api.heartbeats == [{"worker_name": "cli-worker", "status": "working", "current_task_id": None}]
