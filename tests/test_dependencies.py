from __future__ import annotations

import allure
import pytest

from kanban_worker.board.dependencies import DependencyGraph
from kanban_worker.board.models import TaskDependency
from kanban_worker.errors import DependencyCycleRejected, ErrorKind

pytestmark = [
    allure.epic("Board"),
    allure.feature("Task Dependencies"),
]


def _graph(*edges: tuple[str, str]) -> DependencyGraph:
    return DependencyGraph.from_edges(
        TaskDependency(task_id=task_id, depends_on_task_id=depends_on) for task_id, depends_on in edges
    )


def test_reachable_follows_transitive_edges() -> None:
    graph = _graph(("A", "B"), ("B", "C"))

    assert graph.reachable("A", "C")
    assert not graph.reachable("C", "A")


def test_insert_closing_a_cycle_is_rejected() -> None:
    graph = _graph(("A", "B"), ("B", "C"))

    with pytest.raises(DependencyCycleRejected) as exc_info:
        graph.check_insert("C", "A")

    assert exc_info.value.kind == ErrorKind.DEPENDENCY_CYCLE
    assert "circular dependency" in str(exc_info.value)


def test_self_dependency_is_rejected() -> None:
    with pytest.raises(DependencyCycleRejected, match="cannot depend on itself"):
        _graph().check_insert("A", "A")


def test_acyclic_insert_is_accepted_with_diamonds() -> None:
    graph = _graph(("A", "B"), ("A", "C"), ("B", "D"), ("C", "D"))

    graph.check_insert("A", "D")
    graph.check_insert("E", "A")
    assert not graph.would_create_cycle("B", "C")


def test_neighbour_function_is_queried_lazily() -> None:
    visited: list[str] = []
    edges = {"A": ["B"], "B": ["C"], "C": []}

    def _neighbours(node: str) -> list[str]:
        visited.append(node)
        return edges.get(node, [])

    graph = DependencyGraph(_neighbours)

    assert graph.would_create_cycle("C", "A")
    assert visited == ["A", "B"]
