"""Subprocess-based runner for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import threading
import time
from typing import IO, TextIO

from kanban_worker.errors import ProcessNonZeroExit, ProcessSpawnError, ProcessTimeout
from kanban_worker.orchestrator.runner_base import AgentRunRequest, EchoStreams, ProcessResult

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.1
READER_JOIN_SECONDS = 2.0


class ProcessRunner:
    """Spawn the agent per request, tee its output, enforce the time limit."""

    def __init__(self, *, echo: EchoStreams | None = None) -> None:
        self.echo = echo if echo is not None else EchoStreams(stdout=sys.stdout, stderr=sys.stderr)

    def run(self, request: AgentRunRequest) -> ProcessResult:
        run_args = build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            working_dir=str(request.working_dir),
            task_id=request.task_id,
        )
        env = os.environ.copy()
        env.update(request.env)

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.working_dir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            raise ProcessSpawnError(
                f"Agent command or working directory not found: {run_args[0]} "
                f"(cwd={request.working_dir})",
            ) from error
        except OSError as error:
            raise ProcessSpawnError(f"Agent failed to start: {error}") from error

        logger.debug("Spawned agent pid=%s: %s", process.pid, run_args[0])
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = [
            _start_reader(process.stdout, stdout_chunks, self.echo.stdout, "agent-stdout"),
            _start_reader(process.stderr, stderr_chunks, self.echo.stderr, "agent-stderr"),
        ]

        try:
            stop_reason = _wait_for_exit(process, request)
        finally:
            if process.poll() is None:
                _terminate_process(process, grace_seconds=request.graceful_shutdown_seconds)
            for reader in readers:
                reader.join(timeout=READER_JOIN_SECONDS)

        stdout = "".join(stdout_chunks)
        stderr = "".join(stderr_chunks)
        if stop_reason is not None:
            raise ProcessTimeout(
                stop_reason,
                timeout_seconds=request.timeout_seconds,
                stdout=stdout,
                stderr=stderr,
            )

        returncode = process.returncode
        result = ProcessResult.from_output(exit_code=returncode, stdout=stdout, stderr=stderr)
        if returncode != 0:
            raise ProcessNonZeroExit(
                f"Agent exited with code {returncode}: {_stderr_tail(stderr)}",
                result=result,
            )
        return result


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    working_dir: str,
    task_id: str,
) -> list[str]:
    """Render the agent command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise ProcessSpawnError("Agent command template is empty.")
    if "{prompt}" not in stripped:
        raise ProcessSpawnError("Agent command template must include {prompt}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            workdir=shlex.quote(working_dir),
            task_id=shlex.quote(task_id),
        )
    except (KeyError, IndexError) as error:
        raise ProcessSpawnError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProcessSpawnError("Agent command template rendered empty command.")
    return argv


def _wait_for_exit(
    process: subprocess.Popen[str],
    request: AgentRunRequest,
) -> str | None:
    """Block until exit; return a stop reason if the agent had to be killed."""

    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0.0, request.graceful_shutdown_seconds)

    while True:
        if process.poll() is not None:
            return None

        now = time.monotonic()
        if now - start_monotonic >= request.timeout_seconds:
            logger.warning(
                "Agent pid=%s exceeded %.0fs timeout, terminating",
                process.pid,
                request.timeout_seconds,
            )
            _terminate_process(process, grace_seconds=graceful_seconds)
            return f"Agent timed out after {request.timeout_seconds:g}s"

        if request.shutdown_requested is not None and request.shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
                logger.info("Shutdown requested, giving agent %.0fs to finish", graceful_seconds)
            if now >= shutdown_deadline:
                _terminate_process(process, grace_seconds=graceful_seconds)
                return "Agent terminated by worker shutdown"

        time.sleep(POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(grace_seconds, 0.1))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=READER_JOIN_SECONDS)


def _start_reader(
    stream: IO[str] | None,
    sink: list[str],
    echo: TextIO | None,
    name: str,
) -> threading.Thread:
    thread = threading.Thread(
        target=_pump,
        args=(stream, sink, echo),
        name=name,
        daemon=True,
    )
    thread.start()
    return thread


def _pump(stream: IO[str] | None, sink: list[str], echo: TextIO | None) -> None:
    if stream is None:
        return
    with stream:
        for chunk in iter(stream.readline, ""):
            sink.append(chunk)
            if echo is not None:
                echo.write(chunk)
                echo.flush()


def _stderr_tail(stderr: str, *, limit: int = 500) -> str:
    compact = stderr.strip()
    if len(compact) <= limit:
        return compact
    return compact[-limit:]
