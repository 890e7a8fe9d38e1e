"""Runner interface for agent process execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TextIO

from kanban_worker.orchestrator.output_parser import parse_output


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent invocation."""

    command_template: str
    prompt: str
    working_dir: Path
    timeout_seconds: float
    task_id: str = ""
    graceful_shutdown_seconds: float = 5.0
    shutdown_requested: Callable[[], bool] | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Outcome of one agent invocation; immutable once built."""

    exit_code: int
    stdout: str
    stderr: str
    exit_signal: bool
    completion_indicators: int
    files_modified: tuple[str, ...]
    errors: tuple[str, ...]
    structured_signal: bool = False
    heuristic_indicators: int = 0

    @classmethod
    def from_output(cls, *, exit_code: int, stdout: str, stderr: str) -> ProcessResult:
        parsed = parse_output(stdout, stderr)
        return cls(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            exit_signal=parsed.exit_signal,
            completion_indicators=parsed.completion_indicators,
            files_modified=parsed.files_modified,
            errors=parsed.errors,
            structured_signal=parsed.structured_signal,
            heuristic_indicators=parsed.heuristic_indicators,
        )

    @property
    def made_progress(self) -> bool:
        return bool(self.files_modified) or self.completion_indicators > 0

    @property
    def ambiguous(self) -> bool:
        return not self.structured_signal and self.heuristic_indicators == 0


@dataclass(slots=True)
class EchoStreams:
    """Where live agent output is forwarded; None disables forwarding."""

    stdout: TextIO | None = None
    stderr: TextIO | None = None


class AgentRunner(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> ProcessResult:
        """Run the agent once; raise `AgentRunError` subclasses on failure."""
