import pytest

from brokerflow_api.errors import CycleDetected
from brokerflow_api.workflow_validation import cycle_blocked_tasks, topological_order, validate_task_graph


def test_validate_task_graph_accepts_dag() -> None:
    validate_task_graph({"a": [], "b": ["a"], "c": ["a", "b"]})


def test_validate_task_graph_rejects_self_dependency() -> None:
    with pytest.raises(ValueError, match="cannot depend on itself"):
        validate_task_graph({"a": ["a"]})


def test_validate_task_graph_rejects_unknown_edge() -> None:
    with pytest.raises(ValueError, match="not a known task id"):
        validate_task_graph({"a": ["missing"]})


def test_validate_task_graph_reports_cycle_members() -> None:
    with pytest.raises(CycleDetected) as exc_info:
        validate_task_graph({"a": [], "b": ["a", "d"], "c": ["b"], "d": ["c"]})

    assert exc_info.value.task_ids == ["b", "c", "d"]
    assert exc_info.value.code == "cycle_detected"


def test_topological_order_breaks_ties_by_task_id() -> None:
    order = topological_order({"t3": [], "t1": [], "t2": ["t1"], "t4": ["t2", "t3"]})

    assert order == ["t1", "t2", "t3", "t4"]


def test_cycle_blocked_tasks_keeps_acyclic_siblings() -> None:
    dependents_of = {
        "origin": ["loop-a", "sibling"],
        "loop-a": ["loop-b"],
        "loop-b": ["loop-a", "after-loop"],
        "sibling": [],
        "after-loop": [],
    }

    blocked = cycle_blocked_tasks("origin", dependents_of)

    assert blocked == {"loop-a", "loop-b", "after-loop"}


def test_cycle_blocked_tasks_is_empty_for_dag() -> None:
    assert cycle_blocked_tasks("a", {"a": ["b", "c"], "b": ["d"], "c": ["d"]}) == set()
