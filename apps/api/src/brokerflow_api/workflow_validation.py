from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping, Sequence

from brokerflow_api.errors import CycleDetected


def validate_task_graph(dependencies_by_task: Mapping[str, Sequence[str]]) -> None:
    """Reject self-dependencies, dangling edges and cycles in one company graph.

    ``dependencies_by_task`` maps every task ID to its already-resolved
    dependency task IDs.
    """
    for task_id, dependencies in dependencies_by_task.items():
        for dependency in dependencies:
            if dependency == task_id:
                raise ValueError(f"task {task_id} cannot depend on itself")
            if dependency not in dependencies_by_task:
                raise ValueError(f"task dependency '{dependency}' is not a known task id")

    order = topological_order(dependencies_by_task)
    if len(order) != len(dependencies_by_task):
        remaining = set(dependencies_by_task) - set(order)
        raise CycleDetected(sorted(remaining))


def topological_order(dependencies_by_task: Mapping[str, Sequence[str]]) -> list[str]:
    """Kahn's algorithm with ascending task ID as the tie-break.

    Tasks on (or downstream of) a cycle are left out of the result.
    """
    graph: dict[str, list[str]] = {task_id: [] for task_id in dependencies_by_task}
    indegree: dict[str, int] = {task_id: 0 for task_id in dependencies_by_task}

    for task_id, dependencies in dependencies_by_task.items():
        for dependency in dependencies:
            if dependency not in graph:
                continue
            graph[dependency].append(task_id)
            indegree[task_id] += 1

    queue = [task_id for task_id, degree in indegree.items() if degree == 0]
    heapq.heapify(queue)
    order: list[str] = []

    while queue:
        current = heapq.heappop(queue)
        order.append(current)
        for next_task in graph[current]:
            indegree[next_task] -= 1
            if indegree[next_task] == 0:
                heapq.heappush(queue, next_task)

    return order


def cycle_blocked_tasks(start_task_id: str, dependents_of: Mapping[str, Iterable[str]]) -> set[str]:
    """Return the tasks reachable from ``start_task_id`` that sit on or behind a cycle."""
    reachable: set[str] = set()
    stack = [start_task_id]
    while stack:
        current = stack.pop()
        if current in reachable:
            continue
        reachable.add(current)
        stack.extend(dependents_of.get(current, ()))

    subgraph: dict[str, list[str]] = {task_id: [] for task_id in reachable}
    for task_id in reachable:
        for dependent in dependents_of.get(task_id, ()):
            subgraph[dependent].append(task_id)

    drained = set(topological_order(subgraph))
    return reachable - drained
