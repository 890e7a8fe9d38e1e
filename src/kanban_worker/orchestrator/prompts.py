"""Prompts handed to the coding agent."""

from __future__ import annotations

from kanban_worker.board.models import Task
from kanban_worker.orchestrator.output_parser import STATUS_BLOCK_PREFIX

_STATUS_BLOCK_EXAMPLE = f'{STATUS_BLOCK_PREFIX} {{"EXIT_SIGNAL": true, "COMPLETION_INDICATORS": 2}}'


def build_prompt(*, task: Task, loop_number: int, files_changed: list[str]) -> str:
    if loop_number <= 1:
        return build_initial_prompt(task)
    return build_continuation_prompt(files_changed=files_changed)


def build_initial_prompt(task: Task) -> str:
    """Full task details for the first invocation."""

    lines = ["Please complete the following task:", "", f"Title: {task.title}"]
    if task.description:
        lines.append(f"Description: {task.description}")
    lines.append(f"Priority: {task.priority}")
    if task.labels:
        lines.append(f"Labels: {', '.join(task.labels)}")
    lines.extend(
        [
            "",
            "Announce every file you touch on its own line, e.g. `modified: path/to/file`.",
            "IMPORTANT: When the task is complete, output a status block like this:",
            _STATUS_BLOCK_EXAMPLE,
        ],
    )
    return "\n".join(lines) + "\n"


def build_continuation_prompt(*, files_changed: list[str]) -> str:
    return (
        "Continue working on the task. "
        f"Progress: {len(files_changed)} files changed so far. "
        f"When complete, output the {STATUS_BLOCK_PREFIX.rstrip(':')} block."
    )
