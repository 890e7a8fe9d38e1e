"""Domain models for board tasks, comments, events and workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

HEARTBEAT_FRESHNESS_SECONDS = 120


class TaskStatus(str, Enum):
    """Board column states known to the worker."""

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class TaskPriority(str, Enum):
    """Task priority, most urgent first when the board orders work."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class WorkerStatus(str, Enum):
    """Worker liveness states."""

    IDLE = "idle"
    WORKING = "working"
    OFFLINE = "offline"
    ERROR = "error"


class AuthorType(str, Enum):
    BOT = "bot"
    USER = "user"


class CommentType(str, Enum):
    PROGRESS = "progress"
    QUESTION = "question"
    SUMMARY = "summary"
    ERROR = "error"


class EventType(str, Enum):
    """Event types accepted by the board's event feed."""

    TASK_CLAIMED = "task_claimed"
    TASK_PROGRESS = "task_progress"
    TASK_COMPLETED = "task_completed"
    STUCK = "stuck"
    NEEDS_INPUT = "needs_input"
    ERROR = "error"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    NOTIFICATION = "notification"


@dataclass(slots=True)
class Task:
    """Readable task view returned by the board."""

    id: str
    title: str
    status: str
    priority: str = TaskPriority.MEDIUM.value
    description: str | None = None
    assigned_to: str | None = None
    task_list_id: str | None = None
    labels: list[str] = field(default_factory=list)
    loop_count: int = 0
    error_count: int = 0
    files_changed: list[str] = field(default_factory=list)
    completion_notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Task:
        """Build a task from the board's JSON representation."""

        task_id = payload.get("id")
        if not isinstance(task_id, str) or not task_id:
            raise ValueError(f"Task payload has no id: {payload!r}")
        return cls(
            id=task_id,
            title=str(payload.get("title") or ""),
            status=str(payload.get("status") or TaskStatus.TODO.value),
            priority=str(payload.get("priority") or TaskPriority.MEDIUM.value),
            description=_optional_str(payload.get("description")),
            assigned_to=_optional_str(payload.get("assigned_to")) or None,
            task_list_id=_optional_str(payload.get("task_list_id")),
            labels=_str_list(payload.get("labels")),
            loop_count=_int_or_zero(payload.get("loop_count")),
            error_count=_int_or_zero(payload.get("error_count")),
            files_changed=_str_list(payload.get("files_changed")),
            completion_notes=_optional_str(payload.get("completion_notes")),
            created_at=parse_board_datetime(payload.get("created_at")),
            updated_at=parse_board_datetime(payload.get("updated_at")),
            started_at=parse_board_datetime(payload.get("started_at")),
            completed_at=parse_board_datetime(payload.get("completed_at")),
        )

    @property
    def is_assigned(self) -> bool:
        return bool(self.assigned_to)


@dataclass(slots=True)
class TaskFilter:
    """Narrowing options for `fetch_next`."""

    task_list_id: str | None = None

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.task_list_id:
            params["task_list_id"] = self.task_list_id
        return params


@dataclass(slots=True)
class TaskPatch:
    """Partial task update; unset fields are not sent."""

    status: TaskStatus | None = None
    completion_notes: str | None = None
    files_changed: list[str] | None = None
    error_count: int | None = None
    loop_count: int | None = None
    assigned_to: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {}
        if self.status is not None:
            payload["status"] = self.status.value
        if self.completion_notes is not None:
            payload["completion_notes"] = self.completion_notes
        if self.files_changed is not None:
            payload["files_changed"] = list(self.files_changed)
        if self.error_count is not None:
            payload["error_count"] = self.error_count
        if self.loop_count is not None:
            payload["loop_count"] = self.loop_count
        if self.assigned_to is not None:
            payload["assigned_to"] = self.assigned_to
        return payload


@dataclass(slots=True)
class TaskComment:
    """Comment posted on a task by the worker."""

    author: str
    content: str
    comment_type: CommentType = CommentType.PROGRESS
    author_type: AuthorType = AuthorType.BOT
    loop_number: int | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "author": self.author,
            "author_type": self.author_type.value,
            "content": self.content,
            "comment_type": self.comment_type.value,
        }
        if self.loop_number is not None:
            payload["loop_number"] = self.loop_number
        return payload


@dataclass(slots=True)
class BoardEvent:
    """Status event for the board's notification feed."""

    event_type: EventType
    message: str
    task_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "event_type": self.event_type.value,
            "message": self.message,
            "metadata": dict(self.metadata),
        }
        if self.task_id is not None:
            payload["task_id"] = self.task_id
        return payload


@dataclass(slots=True)
class FollowUpTask:
    """Input payload for creating follow-up work."""

    title: str
    task_list_id: str
    priority: TaskPriority | None = None
    description: str | None = None
    labels: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"title": self.title, "task_list_id": self.task_list_id}
        if self.priority is not None:
            payload["priority"] = self.priority.value
        if self.description is not None:
            payload["description"] = self.description
        if self.labels:
            payload["labels"] = list(self.labels)
        return payload


@dataclass(slots=True)
class TaskDependency:
    """Directed blocked-by edge: `task_id` depends on `depends_on_task_id`."""

    task_id: str
    depends_on_task_id: str
    id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TaskDependency:
        return cls(
            id=_optional_str(payload.get("id")),
            task_id=str(payload["task_id"]),
            depends_on_task_id=str(payload["depends_on_task_id"]),
        )


@dataclass(slots=True)
class Worker:
    """Worker row as reported by the board."""

    name: str
    status: WorkerStatus
    current_task_id: str | None = None
    last_heartbeat: datetime | None = None
    total_tasks_completed: int = 0
    id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Worker:
        raw_status = str(payload.get("status") or WorkerStatus.IDLE.value)
        try:
            status = WorkerStatus(raw_status)
        except ValueError:
            status = WorkerStatus.ERROR
        return cls(
            id=_optional_str(payload.get("id")),
            name=str(payload.get("name") or ""),
            status=status,
            current_task_id=_optional_str(payload.get("current_task_id")),
            last_heartbeat=parse_board_datetime(payload.get("last_heartbeat")),
            total_tasks_completed=_int_or_zero(payload.get("total_tasks_completed")),
        )


@dataclass(slots=True)
class HeartbeatAck:
    """Board answer to a heartbeat."""

    worker: Worker
    next_heartbeat_in: int | None = None


def effective_worker_status(
    worker: Worker,
    *,
    now: datetime | None = None,
    freshness_seconds: int = HEARTBEAT_FRESHNESS_SECONDS,
) -> WorkerStatus:
    """Return `offline` when the last heartbeat is stale, else the reported status."""

    if worker.last_heartbeat is None:
        return WorkerStatus.OFFLINE
    current = now or datetime.now(tz=UTC)
    last = worker.last_heartbeat
    if last.tzinfo is None:
        last = last.replace(tzinfo=UTC)
    if current - last > timedelta(seconds=freshness_seconds):
        return WorkerStatus.OFFLINE
    return worker.status


def parse_board_datetime(value: object) -> datetime | None:
    """Parse ISO-8601 or SQLite `YYYY-MM-DD HH:MM:SS` timestamps as UTC."""

    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _int_or_zero(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return 0


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]
