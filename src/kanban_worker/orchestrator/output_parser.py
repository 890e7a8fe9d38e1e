"""Best-effort interpretation of free-form agent output.

Completion detection is heuristic: an agent that finishes without emitting the
status block or any completion phrase is indistinguishable from one that made
no progress, and is reported as ambiguous.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass

OUTPUT_PARSER_VERSION = "v1"
STATUS_BLOCK_PREFIX = "RALPH_STATUS:"

_STATUS_BLOCK = re.compile(re.escape(STATUS_BLOCK_PREFIX) + r"\s*(\{.*?\})", re.DOTALL)
_COMPLETION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"task\s+(?:is\s+)?complete", re.IGNORECASE),
    re.compile(r"successfully\s+completed", re.IGNORECASE),
    re.compile(r"finished\s+(?:the\s+)?task", re.IGNORECASE),
    re.compile(r"done\s+with\s+(?:the\s+)?task", re.IGNORECASE),
    re.compile(r"implementation\s+complete", re.IGNORECASE),
)
_FILE_ANNOUNCEMENT = re.compile(r"(?:modified|created|updated|edited):\s*(\S+)", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class StatusBlock:
    exit_signal: bool
    completion_indicators: int


@dataclass(frozen=True, slots=True)
class ParsedOutput:
    """Typed view of one agent invocation's output."""

    exit_signal: bool
    completion_indicators: int
    files_modified: tuple[str, ...]
    errors: tuple[str, ...]
    structured_signal: bool
    heuristic_indicators: int

    @property
    def ambiguous(self) -> bool:
        return not self.structured_signal and self.heuristic_indicators == 0


def parse_output(stdout: str, stderr: str) -> ParsedOutput:
    """Map raw stdout/stderr to completion signal, files and error lines."""

    status = parse_status_block(stdout)
    heuristic = count_completion_phrases(stdout)
    if status is not None:
        exit_signal = status.exit_signal
        indicators = status.completion_indicators
    else:
        exit_signal = False
        indicators = heuristic

    return ParsedOutput(
        exit_signal=exit_signal,
        completion_indicators=indicators,
        files_modified=extract_files_modified(stdout),
        errors=extract_error_lines(stderr),
        structured_signal=status is not None,
        heuristic_indicators=heuristic,
    )


def parse_status_block(stdout: str) -> StatusBlock | None:
    """Return the first well-formed status block, or None."""

    for match in _STATUS_BLOCK.finditer(stdout):
        status = _decode_status_block(match.group(1))
        if status is not None:
            return status
    return None


def _reject_constant(token: str) -> None:
    raise ValueError(f"Non-finite constant in status block: {token}")


def _decode_status_block(raw: str) -> StatusBlock | None:
    try:
        payload = json.loads(raw, parse_constant=_reject_constant)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None

    indicators_raw = payload.get("COMPLETION_INDICATORS", 0)
    if isinstance(indicators_raw, bool) or not isinstance(indicators_raw, (int, float)):
        indicators = 0
    elif isinstance(indicators_raw, float) and not math.isfinite(indicators_raw):
        return None
    else:
        indicators = max(0, int(indicators_raw))
    return StatusBlock(
        exit_signal=payload.get("EXIT_SIGNAL") is True,
        completion_indicators=indicators,
    )


def count_completion_phrases(stdout: str) -> int:
    return sum(1 for pattern in _COMPLETION_PATTERNS if pattern.search(stdout))


def extract_files_modified(stdout: str) -> tuple[str, ...]:
    files: list[str] = []
    seen: set[str] = set()
    for match in _FILE_ANNOUNCEMENT.finditer(stdout):
        path = match.group(1).strip().strip("`'\",")
        if not path or path in seen:
            continue
        seen.add(path)
        files.append(path)
    return tuple(files)


def extract_error_lines(stderr: str) -> tuple[str, ...]:
    if not stderr:
        return ()
    return tuple(line for line in stderr.splitlines() if "error" in line.lower())
