"""Execution loop that claims board tasks and drives the coding agent."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from kanban_worker.board.client import TaskBoard
from kanban_worker.board.models import (
    BoardEvent,
    CommentType,
    EventType,
    Task,
    TaskComment,
    TaskFilter,
    TaskPatch,
    TaskStatus,
)
from kanban_worker.errors import (
    AgentRunError,
    ClaimConflict,
    KanbanWorkerError,
    ProcessNonZeroExit,
    ProcessTimeout,
)
from kanban_worker.orchestrator.heartbeat import HeartbeatReporter
from kanban_worker.orchestrator.prompts import build_prompt
from kanban_worker.orchestrator.runner_base import AgentRunner, AgentRunRequest, ProcessResult
from kanban_worker.orchestrator.safety import IterationOutcome, SafetyPolicy

logger = logging.getLogger(__name__)

PROGRESS_COMMENT_EVERY = 5
MAX_LISTED_FILES = 3


class LoopState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CLAIMED = "claimed"
    RUNNING = "running"
    EVALUATING = "evaluating"
    ITERATE = "iterate"
    DONE = "done"
    ABORTED = "aborted"
    HALTED = "halted"


class TaskOutcome(str, Enum):
    COMPLETED = "completed"
    RELEASED = "released"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    released: int = 0
    iterations: int = 0
    errors: int = 0
    timeouts: int = 0
    claim_conflicts: int = 0
    idle_polls: int = 0
    halted: bool = False
    halt_reason: str | None = None


@dataclass(slots=True)
class TaskProgress:
    """Mutable per-claim execution context."""

    task: Task
    loop_count: int
    error_count: int
    files_changed: list[str] = field(default_factory=list)
    completion_indicators_total: int = 0

    def merge_files(self, files: tuple[str, ...]) -> list[str]:
        added = [path for path in files if path not in self.files_changed]
        self.files_changed.extend(added)
        return added

    def counters_patch(self, **overrides: object) -> TaskPatch:
        patch = TaskPatch(
            files_changed=list(self.files_changed),
            error_count=self.error_count,
            loop_count=self.loop_count,
        )
        for name, value in overrides.items():
            setattr(patch, name, value)
        return patch


class ExecutionLoop:
    """Fetch -> claim -> run -> evaluate -> update, one task at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        board: TaskBoard,
        runner: AgentRunner,
        safety: SafetyPolicy,
        worker_name: str,
        working_dir: Path,
        agent_command_template: str,
        timeout_seconds: float,
        max_loops: int,
        poll_interval_seconds: float,
        graceful_shutdown_seconds: float,
        heartbeat: HeartbeatReporter | None = None,
        task_filter: TaskFilter | None = None,
    ) -> None:
        if max_loops <= 0:
            raise ValueError("max_loops must be > 0.")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0.")
        self.board = board
        self.runner = runner
        self.safety = safety
        self.heartbeat = heartbeat
        self.worker_name = worker_name
        self.working_dir = working_dir
        self.agent_command_template = agent_command_template
        self.timeout_seconds = timeout_seconds
        self.max_loops = max_loops
        self.poll_interval_seconds = poll_interval_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.task_filter = task_filter
        self.state = LoopState.IDLE
        self._stop_event = threading.Event()
        self._stop_signal_name: str | None = None
        self._last_task_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_signal_name = signal_name
        self._stop_event.set()

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until halted, stopped, `max_tasks` reached or the board stays empty.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting
                (None = keep polling forever).
        """

        summary = WorkerRunSummary()
        consecutive_idle = 0
        if self.heartbeat is not None:
            self.heartbeat.start()
        try:
            with self._signal_handlers():
                while True:
                    if self.safety.is_open:
                        self._halt(summary)
                        return summary
                    if self.stop_requested:
                        logger.info("Stop requested (%s), exiting loop", self._stop_signal_name)
                        return summary
                    if max_tasks is not None and summary.processed >= max_tasks:
                        return summary

                    self.state = LoopState.FETCHING
                    try:
                        task = self.board.fetch_next(self.task_filter)
                    except KanbanWorkerError as error:
                        summary.errors += 1
                        self.safety.record_error(error.kind)
                        logger.warning("Fetching next task failed: %s", error)
                        self._sleep(self.poll_interval_seconds)
                        continue

                    if task is None:
                        consecutive_idle += 1
                        summary.idle_polls += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            logger.info("No tasks available after %d poll(s)", consecutive_idle)
                            return summary
                        self._sleep(self.poll_interval_seconds)
                        continue

                    consecutive_idle = 0
                    claimed = self._claim(task, summary)
                    if claimed is None:
                        continue
                    self.process_task(claimed, summary)
        finally:
            if self.state != LoopState.HALTED:
                self.state = LoopState.IDLE
            if self.heartbeat is not None:
                self.heartbeat.stop()

    def process_task(self, task: Task, summary: WorkerRunSummary) -> TaskOutcome:
        """Iterate the agent on one claimed task until completion or release."""

        self.safety.ensure_closed()
        summary.processed += 1
        self._last_task_id = task.id
        logger.info("Executing task %s: %s (priority=%s)", task.id, task.title, task.priority)
        progress = TaskProgress(
            task=task,
            loop_count=task.loop_count,
            error_count=task.error_count,
            files_changed=list(task.files_changed),
        )
        self._patch(task.id, TaskPatch(status=TaskStatus.IN_PROGRESS), summary)
        self._comment(task.id, f"{self.worker_name} has started working on this task")
        self._event(
            EventType.TASK_CLAIMED,
            f"{self.worker_name} claimed task: {task.title}",
            task_id=task.id,
        )
        if self.heartbeat is not None:
            self.heartbeat.set_working(task.id)
        try:
            return self._iterate(progress, summary)
        finally:
            if self.heartbeat is not None:
                self.heartbeat.set_idle()

    def _iterate(self, progress: TaskProgress, summary: WorkerRunSummary) -> TaskOutcome:
        task = progress.task
        first_loop = progress.loop_count + 1
        while True:
            if self.safety.is_open:
                return self._release(
                    progress,
                    summary,
                    reason=f"Circuit breaker activated: {self.safety.state.tripped_reason}",
                    event_type=EventType.STUCK,
                )
            if self.stop_requested:
                return self._release(
                    progress,
                    summary,
                    reason=f"Worker shutting down ({self._stop_signal_name})",
                    event_type=EventType.SESSION_END,
                )
            if progress.loop_count >= self.max_loops:
                self._comment(
                    task.id,
                    f"Max loops ({self.max_loops}) reached without completion. "
                    f"Files changed: {len(progress.files_changed)}",
                    comment_type=CommentType.SUMMARY,
                    loop_number=progress.loop_count,
                )
                return self._complete(
                    progress,
                    summary,
                    notes="Max loops reached without clear completion signal",
                )

            progress.loop_count += 1
            summary.iterations += 1
            loop_number = progress.loop_count
            logger.info("Task %s loop %d/%d", task.id, loop_number, self.max_loops)
            if loop_number == first_loop or loop_number % PROGRESS_COMMENT_EVERY == 1:
                self._comment(task.id, f"Starting loop {loop_number}", loop_number=loop_number)

            self.state = LoopState.RUNNING
            try:
                result = self.runner.run(self._run_request(progress))
            except AgentRunError as error:
                self.state = LoopState.EVALUATING
                if self.stop_requested:
                    logger.info("Agent interrupted by shutdown: %s", error)
                    continue
                self._record_agent_error(progress, error, summary)
            else:
                self.state = LoopState.EVALUATING
                if self._evaluate(progress, result, summary):
                    return self._complete(
                        progress,
                        summary,
                        notes="Task completed: exit signal received",
                    )

            if not self.safety.is_open:
                self.state = LoopState.ITERATE
                self._patch(task.id, progress.counters_patch(), summary)

    def _evaluate(
        self,
        progress: TaskProgress,
        result: ProcessResult,
        summary: WorkerRunSummary,
    ) -> bool:
        """Record a clean run; return True when the agent signalled completion."""

        task_id = progress.task.id
        loop_number = progress.loop_count
        added = progress.merge_files(result.files_modified)
        progress.completion_indicators_total += result.completion_indicators
        outcome = self.safety.record(IterationOutcome.success(result))
        logger.debug(
            "Task %s loop %d: outcome=%s exit_signal=%s indicators=%d files=%d",
            task_id,
            loop_number,
            outcome.value,
            result.exit_signal,
            result.completion_indicators,
            len(progress.files_changed),
        )
        if result.ambiguous:
            logger.info("Task %s loop %d: no completion signal in agent output", task_id, loop_number)

        if added:
            listed = ", ".join(added[:MAX_LISTED_FILES])
            suffix = "..." if len(added) > MAX_LISTED_FILES else ""
            self._comment(
                task_id,
                f"Modified {len(added)} file(s): {listed}{suffix}",
                loop_number=loop_number,
            )
        if result.errors:
            self._comment(
                task_id,
                f"Agent reported {len(result.errors)} error line(s): {result.errors[0]}",
                comment_type=CommentType.ERROR,
                loop_number=loop_number,
            )
        return result.exit_signal

    def _record_agent_error(
        self,
        progress: TaskProgress,
        error: AgentRunError,
        summary: WorkerRunSummary,
    ) -> None:
        progress.error_count += 1
        summary.errors += 1
        result: ProcessResult | None = None
        if isinstance(error, ProcessTimeout):
            summary.timeouts += 1
        if isinstance(error, ProcessNonZeroExit):
            result = error.result
            progress.merge_files(result.files_modified)
        self.safety.record(IterationOutcome.failure(error.kind, result))
        logger.warning(
            "Task %s loop %d failed (%s): %s",
            progress.task.id,
            progress.loop_count,
            error.kind.value,
            error,
        )
        detail = result.errors[0] if result is not None and result.errors else str(error)
        self._comment(
            progress.task.id,
            f"Execution error ({error.kind.value}): {detail}",
            comment_type=CommentType.ERROR,
            loop_number=progress.loop_count,
        )

    def _complete(self, progress: TaskProgress, summary: WorkerRunSummary, *, notes: str) -> TaskOutcome:
        task = progress.task
        self._patch(
            task.id,
            progress.counters_patch(status=TaskStatus.REVIEW, completion_notes=notes),
            summary,
        )
        self._comment(
            task.id,
            f"{notes}. Total loops: {progress.loop_count}, "
            f"Files changed: {len(progress.files_changed)}",
            comment_type=CommentType.SUMMARY,
            loop_number=progress.loop_count,
        )
        self._event(
            EventType.TASK_COMPLETED,
            f"Task moved to review: {task.title}",
            task_id=task.id,
            metadata={
                "loop_count": progress.loop_count,
                "error_count": progress.error_count,
                "files_changed": len(progress.files_changed),
                "completion_indicators": progress.completion_indicators_total,
            },
        )
        summary.completed += 1
        self.state = LoopState.DONE
        logger.info("Task %s moved to review: %s", task.id, notes)
        return TaskOutcome.COMPLETED

    def _release(
        self,
        progress: TaskProgress,
        summary: WorkerRunSummary,
        *,
        reason: str,
        event_type: EventType,
    ) -> TaskOutcome:
        """Hand an unfinished task back to `todo` for another worker."""

        task = progress.task
        self._comment(
            task.id,
            reason,
            comment_type=CommentType.ERROR,
            loop_number=progress.loop_count,
        )
        self._patch(
            task.id,
            progress.counters_patch(status=TaskStatus.TODO, assigned_to=""),
            summary,
        )
        self._event(event_type, reason, task_id=task.id)
        summary.released += 1
        self.state = LoopState.ABORTED
        logger.warning("Task %s released back to todo: %s", task.id, reason)
        return TaskOutcome.RELEASED

    def _halt(self, summary: WorkerRunSummary) -> None:
        if summary.halted:
            return
        reason = self.safety.state.tripped_reason or "circuit breaker open"
        summary.halted = True
        summary.halt_reason = reason
        self.state = LoopState.HALTED
        logger.critical(
            "Circuit breaker open for %s: %s. Worker halted; restart or reset required.",
            self.worker_name,
            reason,
        )
        message = f"{self.worker_name} halted: circuit breaker open ({reason})"
        if self._last_task_id is not None:
            self._comment(self._last_task_id, message, comment_type=CommentType.ERROR)
        self._event(
            EventType.ERROR,
            message,
            task_id=self._last_task_id,
            metadata={
                "consecutive_errors": self.safety.state.consecutive_errors,
                "consecutive_no_progress": self.safety.state.consecutive_no_progress,
            },
        )

    def _claim(self, task: Task, summary: WorkerRunSummary) -> Task | None:
        logger.debug("Attempting to claim task %s", task.id)
        try:
            claimed = self.board.claim(task.id, self.worker_name)
        except ClaimConflict as conflict:
            summary.claim_conflicts += 1
            logger.info("Lost claim race for task %s: %s", task.id, conflict)
            return None
        except KanbanWorkerError as error:
            summary.errors += 1
            self.safety.record_error(error.kind)
            logger.warning("Claiming task %s failed: %s", task.id, error)
            return None
        self.state = LoopState.CLAIMED
        logger.info("Claimed task %s: %s", claimed.id, claimed.title)
        return claimed

    def _run_request(self, progress: TaskProgress) -> AgentRunRequest:
        return AgentRunRequest(
            command_template=self.agent_command_template,
            prompt=build_prompt(
                task=progress.task,
                loop_number=progress.loop_count,
                files_changed=progress.files_changed,
            ),
            working_dir=self.working_dir,
            timeout_seconds=self.timeout_seconds,
            task_id=progress.task.id,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
            shutdown_requested=lambda: self.stop_requested,
            env={
                "KANBAN_TASK_ID": progress.task.id,
                "KANBAN_WORKER_NAME": self.worker_name,
                "KANBAN_LOOP_NUMBER": str(progress.loop_count),
            },
        )

    def _patch(self, task_id: str, patch: TaskPatch, summary: WorkerRunSummary) -> None:
        try:
            self.board.update_status(task_id, patch)
        except KanbanWorkerError as error:
            summary.errors += 1
            self.safety.record_error(error.kind)
            logger.warning("Updating task %s failed: %s", task_id, error)

    def _comment(
        self,
        task_id: str,
        content: str,
        *,
        comment_type: CommentType = CommentType.PROGRESS,
        loop_number: int | None = None,
    ) -> None:
        try:
            self.board.add_comment(
                task_id,
                TaskComment(
                    author=self.worker_name,
                    content=content,
                    comment_type=comment_type,
                    loop_number=loop_number,
                ),
            )
        except KanbanWorkerError as error:
            logger.warning("Posting comment on task %s failed: %s", task_id, error)

    def _event(
        self,
        event_type: EventType,
        message: str,
        *,
        task_id: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> None:
        event_metadata: dict[str, object] = {"worker_name": self.worker_name}
        if metadata:
            event_metadata.update(metadata)
        try:
            self.board.add_event(
                BoardEvent(
                    event_type=event_type,
                    message=message,
                    task_id=task_id,
                    metadata=event_metadata,
                ),
            )
        except KanbanWorkerError as error:
            logger.warning("Posting %s event failed: %s", event_type.value, error)

    def _sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(timeout=seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
