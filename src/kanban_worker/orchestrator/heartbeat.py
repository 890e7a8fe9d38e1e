"""Background liveness reporting to the board."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from kanban_worker.board.models import HeartbeatAck, WorkerStatus
from kanban_worker.errors import KanbanWorkerError

logger = logging.getLogger(__name__)


class HeartbeatSink(Protocol):
    def heartbeat(
        self,
        worker_name: str,
        status: WorkerStatus,
        current_task_id: str | None = None,
    ) -> HeartbeatAck: ...


class HeartbeatReporter:
    """Send `(worker, status, task)` on a fixed interval from a daemon thread.

    The interval is the operator's setting; the board's `next_heartbeat_in`
    hint is only shown by the `heartbeat` command.
    """

    def __init__(
        self,
        *,
        client: HeartbeatSink,
        worker_name: str,
        interval_seconds: float,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0.")
        self._client = client
        self.worker_name = worker_name
        self.interval_seconds = interval_seconds
        self._lock = threading.Lock()
        self._status = WorkerStatus.IDLE
        self._current_task_id: str | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._sent = 0
        self._failures = 0

    @property
    def status(self) -> WorkerStatus:
        with self._lock:
            return self._status

    @property
    def sent(self) -> int:
        with self._lock:
            return self._sent

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    @property
    def current_task_id(self) -> str | None:
        with self._lock:
            return self._current_task_id

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"heartbeat-{self.worker_name}",
        )
        self._thread.start()
        logger.debug("Heartbeat thread started (every %ss)", self.interval_seconds)

    def stop(self, *, final_beat: bool = True) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=max(self.interval_seconds, 5.0))
        self._thread = None
        if final_beat:
            with self._lock:
                self._status = WorkerStatus.IDLE
                self._current_task_id = None
            self.beat()

    def set_working(self, task_id: str) -> None:
        self._update(WorkerStatus.WORKING, task_id)

    def set_idle(self) -> None:
        self._update(WorkerStatus.IDLE, None)

    def beat(self) -> HeartbeatAck | None:
        """Send one heartbeat now; failures are logged and retried next tick."""

        with self._lock:
            status = self._status
            task_id = self._current_task_id
        try:
            ack = self._client.heartbeat(self.worker_name, status, task_id)
        except KanbanWorkerError as error:
            with self._lock:
                self._failures += 1
            logger.warning("Heartbeat failed for %s: %s", self.worker_name, error)
            return None
        with self._lock:
            self._sent += 1
        return ack

    def _update(self, status: WorkerStatus, task_id: str | None) -> None:
        with self._lock:
            changed = status != self._status or task_id != self._current_task_id
            self._status = status
            self._current_task_id = task_id
        if changed:
            self.beat()

    def _run(self) -> None:
        self.beat()
        while not self._stop.wait(timeout=self.interval_seconds):
            self.beat()
