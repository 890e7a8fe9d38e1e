"""Blocked-by dependency graph with cycle detection ahead of inserts."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable

from kanban_worker.board.models import TaskDependency
from kanban_worker.errors import DependencyCycleRejected

NeighboursFn = Callable[[str], Iterable[str]]


class DependencyGraph:
    """Reachability over `task -> depends_on` edges.

    Edges come from a neighbour function so the same check runs against an
    in-memory edge list or a live board that is queried node by node.
    """

    def __init__(self, neighbours: NeighboursFn) -> None:
        self._neighbours = neighbours

    @classmethod
    def from_edges(cls, edges: Iterable[TaskDependency]) -> DependencyGraph:
        adjacency: dict[str, list[str]] = {}
        for edge in edges:
            adjacency.setdefault(edge.task_id, []).append(edge.depends_on_task_id)
        return cls(lambda task_id: adjacency.get(task_id, ()))

    def reachable(self, start: str, target: str) -> bool:
        """Return True when `target` can be reached from `start` by following edges."""

        if start == target:
            return True
        seen: set[str] = {start}
        queue: deque[str] = deque([start])
        while queue:
            node = queue.popleft()
            for neighbour in self._neighbours(node):
                if neighbour == target:
                    return True
                if neighbour in seen:
                    continue
                seen.add(neighbour)
                queue.append(neighbour)
        return False

    def would_create_cycle(self, task_id: str, depends_on_task_id: str) -> bool:
        return self.reachable(depends_on_task_id, task_id)

    def check_insert(self, task_id: str, depends_on_task_id: str) -> None:
        """Raise `DependencyCycleRejected` if the new edge would close a cycle."""

        if task_id == depends_on_task_id:
            raise DependencyCycleRejected(
                task_id,
                depends_on_task_id,
                "A task cannot depend on itself",
            )
        if self.would_create_cycle(task_id, depends_on_task_id):
            raise DependencyCycleRejected(task_id, depends_on_task_id)
