"""Client-side view of the shared task board."""

from kanban_worker.board.client import BoardClient
from kanban_worker.board.dependencies import DependencyGraph
from kanban_worker.board.models import (
    BoardEvent,
    CommentType,
    EventType,
    Task,
    TaskComment,
    TaskFilter,
    TaskPatch,
    TaskStatus,
    WorkerStatus,
)

__all__ = [
    "BoardClient",
    "BoardEvent",
    "CommentType",
    "DependencyGraph",
    "EventType",
    "Task",
    "TaskComment",
    "TaskFilter",
    "TaskPatch",
    "TaskStatus",
    "WorkerStatus",
]
