from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from brokerflow_api.errors import UnknownDependency
from brokerflow_api.schemas import TaskStatus


class TaskLike(Protocol):
    id: str
    status: TaskStatus
    dependencies: list[str]


ACTIONABLE_STATUSES = (TaskStatus.AVAILABLE, TaskStatus.NEEDS_ATTENTION)


def resolve_status(task: TaskLike, dependency_statuses: Mapping[str, TaskStatus]) -> TaskStatus:
    # Completed tasks are only demoted through an explicit reset.
    if task.status == TaskStatus.COMPLETED:
        return TaskStatus.COMPLETED
    return resolve_gated_status(task, dependency_statuses)


def resolve_gated_status(task: TaskLike, dependency_statuses: Mapping[str, TaskStatus]) -> TaskStatus:
    if not task.dependencies:
        return TaskStatus.AVAILABLE

    satisfied = True
    for dependency_id in task.dependencies:
        status = dependency_statuses.get(dependency_id)
        if status is None:
            raise UnknownDependency(task.id, dependency_id)
        if status != TaskStatus.COMPLETED:
            satisfied = False

    return TaskStatus.NEEDS_ATTENTION if satisfied else TaskStatus.UPCOMING


def is_actionable(status: TaskStatus) -> bool:
    return status in ACTIONABLE_STATUSES
