"""Per-worker circuit breaker and no-progress tracking."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from kanban_worker.errors import COUNTED_ERROR_KINDS, CircuitOpen, ErrorKind
from kanban_worker.orchestrator.runner_base import ProcessResult

_AGENT_ERROR_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.PROCESS_TIMEOUT,
        ErrorKind.PROCESS_SPAWN,
        ErrorKind.PROCESS_NON_ZERO_EXIT,
    },
)


class OutcomeClass(str, Enum):
    PROGRESS = "progress"
    STAGNANT = "stagnant"
    ERROR = "error"
    IGNORED = "ignored"


@dataclass(frozen=True, slots=True)
class IterationOutcome:
    """What one loop iteration produced: a parsed result, an error kind, or both."""

    result: ProcessResult | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def success(cls, result: ProcessResult) -> IterationOutcome:
        kind = ErrorKind.PARSE_AMBIGUOUS if result.ambiguous and not result.made_progress else None
        return cls(result=result, error_kind=kind)

    @classmethod
    def failure(cls, kind: ErrorKind, result: ProcessResult | None = None) -> IterationOutcome:
        return cls(result=result, error_kind=kind)


@dataclass(slots=True)
class SafetyState:
    consecutive_errors: int = 0
    consecutive_no_progress: int = 0
    tripped_reason: str | None = None


class SafetyPolicy:
    """Open the breaker after too many consecutive errors or stagnant iterations.

    Every failure bumps the error counter. A failed agent run also bumps the
    no-progress counter unless its partial output shows changed files; board
    failures leave it alone. Clean iterations reset the error counter and either
    reset (progress) or bump (stagnant) the no-progress counter. Claim conflicts
    are ignored. Once open, the breaker stays open until `reset()`.
    """

    def __init__(self, *, error_threshold: int, no_progress_threshold: int) -> None:
        if error_threshold <= 0:
            raise ValueError("error_threshold must be > 0.")
        if no_progress_threshold <= 0:
            raise ValueError("no_progress_threshold must be > 0.")
        self.error_threshold = error_threshold
        self.no_progress_threshold = no_progress_threshold
        self.state = SafetyState()

    @property
    def is_open(self) -> bool:
        return self.state.tripped_reason is not None

    def record(self, outcome: IterationOutcome) -> OutcomeClass:
        classified = classify_outcome(outcome)
        if self.is_open or classified == OutcomeClass.IGNORED:
            return classified

        if classified == OutcomeClass.ERROR:
            self.state.consecutive_errors += 1
            if outcome.error_kind in _AGENT_ERROR_KINDS:
                if outcome.result is not None and outcome.result.made_progress:
                    self.state.consecutive_no_progress = 0
                else:
                    self.state.consecutive_no_progress += 1
        elif classified == OutcomeClass.STAGNANT:
            self.state.consecutive_errors = 0
            self.state.consecutive_no_progress += 1
        else:
            self.state.consecutive_errors = 0
            self.state.consecutive_no_progress = 0

        self._maybe_trip()
        return classified

    def record_error(self, kind: ErrorKind) -> OutcomeClass:
        return self.record(IterationOutcome.failure(kind))

    def ensure_closed(self) -> None:
        if self.state.tripped_reason is not None:
            raise CircuitOpen(f"Circuit breaker open: {self.state.tripped_reason}")

    def reset(self) -> None:
        """Explicit operator reset."""

        self.state = SafetyState()

    def _maybe_trip(self) -> None:
        if self.state.consecutive_errors >= self.error_threshold:
            self.state.tripped_reason = (
                f"{self.state.consecutive_errors} consecutive errors "
                f"(threshold {self.error_threshold})"
            )
        elif self.state.consecutive_no_progress >= self.no_progress_threshold:
            self.state.tripped_reason = (
                f"{self.state.consecutive_no_progress} consecutive iterations without progress "
                f"(threshold {self.no_progress_threshold})"
            )


def classify_outcome(outcome: IterationOutcome) -> OutcomeClass:
    """Classify by error kind first, then by visible progress."""

    if outcome.error_kind == ErrorKind.CLAIM_CONFLICT:
        return OutcomeClass.IGNORED
    if outcome.error_kind in COUNTED_ERROR_KINDS:
        return OutcomeClass.ERROR
    if outcome.result is not None and outcome.result.made_progress:
        return OutcomeClass.PROGRESS
    return OutcomeClass.STAGNANT
