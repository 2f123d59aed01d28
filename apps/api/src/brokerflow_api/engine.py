from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Mapping
from typing import Any, Callable

from brokerflow_api.errors import CycleDetected, EngineError, UnknownDependency
from brokerflow_api.interface_policy import derive_interface_type, effective_interface_type
from brokerflow_api.logging_config import get_logger
from brokerflow_api.schemas import (
    ArtifactRead,
    EngineIssue,
    InterfaceType,
    InterfaceTypeRead,
    InterfaceTypeRules,
    PropagationResult,
    ResolvedStatusRead,
    StatusTransition,
    SynthesisResult,
    TaskCreate,
    TaskDependenciesUpdate,
    TaskRead,
    TaskStatus,
)
from brokerflow_api.status_resolver import is_actionable, resolve_gated_status, resolve_status
from brokerflow_api.store import InMemoryStore, ValidationError
from brokerflow_api.submission_synthesizer import synthesize
from brokerflow_api.workflow_validation import cycle_blocked_tasks, topological_order

logger = get_logger(__name__)

UnlockHook = Callable[[TaskRead], Any]

AI_TASK_TAG = "ai"


class CompanyLocks:
    """One mutex per company graph; different companies never contend."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def for_company(self, company_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(company_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[company_id] = lock
            return lock


class TaskGraphEngine:
    """Status propagation and submission derivation over one store.

    Every mutating operation holds the company lock for its whole
    read-resolve-write sequence, so two completions in the same company are
    applied one after the other against fresh state. The unlock hook runs
    after the lock is released.
    """

    def __init__(
        self,
        store: InMemoryStore,
        rules: InterfaceTypeRules,
        *,
        on_task_unlocked: UnlockHook | None = None,
    ) -> None:
        self.store = store
        self.rules = rules
        self.on_task_unlocked = on_task_unlocked
        self._locks = CompanyLocks()

    def provision_task(self, payload: TaskCreate, *, preserve_status: bool = False) -> TaskRead:
        """Create a task with the status its dependencies allow.

        An explicit ``payload.status`` is kept only with ``preserve_status``,
        for in-process callers seeding a known status. HTTP never sets it.
        """
        if payload.status is not None and not preserve_status:
            raise ValidationError("task status is derived from dependencies and cannot be set on creation")
        with self._locks.for_company(payload.company_id):
            status = payload.status
            if status is None:
                tasks = self._company_tasks(payload.company_id)
                try:
                    status = resolve_gated_status(
                        _PendingTask(payload.id or "", payload.dependencies, TaskStatus.UPCOMING),
                        self._dependency_statuses(payload.dependencies, tasks, {}),
                    )
                except UnknownDependency:
                    # Dependencies may be provisioned after their dependents.
                    status = TaskStatus.UPCOMING
            task = self.store.create_task(payload, status=status)
            logger.info("task_provisioned", task_id=task.id, company_id=task.company_id, status=task.status.value)
            return task

    def resolve_status(self, task_id: str) -> ResolvedStatusRead:
        task = self.store.get_task(task_id)
        tasks = self._company_tasks(task.company_id)
        resolved = resolve_status(task, self._dependency_statuses(task.dependencies, tasks, {}))
        return ResolvedStatusRead(task_id=task.id, stored_status=task.status, resolved_status=resolved)

    def derive_interface_type(self, task_id: str) -> InterfaceTypeRead:
        task = self.store.get_task(task_id)
        if task.interface_type is not None:
            return InterfaceTypeRead(task_id=task.id, interface_type=task.interface_type, derived=False)
        return InterfaceTypeRead(task_id=task.id, interface_type=derive_interface_type(task, self.rules), derived=True)

    def propagate(self, task_id: str) -> PropagationResult:
        origin = self.store.get_task(task_id)
        with self._locks.for_company(origin.company_id):
            result, unlocked = self._propagate_locked(task_id, seed={})
        self._notify_unlocked(unlocked)
        return result

    def complete_task(self, task_id: str) -> PropagationResult:
        origin = self.store.get_task(task_id)
        with self._locks.for_company(origin.company_id):
            result, unlocked = self._propagate_locked(task_id, seed={task_id: TaskStatus.COMPLETED})
        self._notify_unlocked(unlocked)
        return result

    def reset_task(self, task_id: str) -> PropagationResult:
        """Explicitly move a task back to the status its dependencies allow.

        Dependents that are not completed are re-gated against the demoted
        task; completed dependents keep their status.
        """
        origin = self.store.get_task(task_id)
        with self._locks.for_company(origin.company_id):
            task = self.store.get_task(task_id)
            tasks = self._company_tasks(task.company_id)
            demoted = resolve_gated_status(task, self._dependency_statuses(task.dependencies, tasks, {}))
            logger.info("task_reset_requested", task_id=task_id, previous=task.status.value, status=demoted.value)
            result, unlocked = self._propagate_locked(
                task_id,
                seed={task_id: demoted},
                event_types={task_id: "task.reset"},
                resynthesize_origin=True,
            )
        self._notify_unlocked(unlocked)
        return result

    def rewire_dependencies(self, task_id: str, update: TaskDependenciesUpdate) -> PropagationResult:
        """Replace a task's dependencies and re-gate it against the new set.

        Dependencies and the re-gated status are written together. A completed
        task stays completed. An actionable email task has its submissions
        re-derived from the new dependencies.
        """
        origin = self.store.get_task(task_id)
        with self._locks.for_company(origin.company_id):
            task = self.store.get_task(task_id)
            tasks = self._company_tasks(task.company_id)
            try:
                status = resolve_status(
                    _PendingTask(task.id, update.dependencies, task.status),
                    self._dependency_statuses(update.dependencies, tasks, {}),
                )
            except UnknownDependency:
                status = TaskStatus.UPCOMING
            rewired = self.store.update_task_dependencies(task_id, update, status=status)
            result, unlocked = self._settle(
                task.company_id,
                origin_task_id=task_id,
                tasks=tasks,
                written=[rewired] if rewired.status != task.status else [],
                errors=[],
                resynthesize={task_id},
            )
            logger.info(
                "dependencies_rewired",
                task_id=task_id,
                company_id=task.company_id,
                dependencies=len(rewired.dependencies),
                status=rewired.status.value,
            )
        self._notify_unlocked(unlocked)
        return result

    def refresh_statuses(self, company_id: str) -> PropagationResult:
        with self._locks.for_company(company_id):
            started = time.perf_counter()
            tasks = self._company_tasks(company_id)
            edges = self.store.dependency_map(company_id)
            order = topological_order(edges)
            errors: list[EngineIssue] = []

            blocked = sorted(set(tasks) - set(order))
            if blocked:
                errors.extend(self._cycle_issues(blocked))

            pending: dict[str, TaskStatus] = {}
            for current_id in order:
                task = tasks[current_id]
                try:
                    resolved = resolve_status(
                        _PendingTask.view(task, pending),
                        self._dependency_statuses(task.dependencies, tasks, pending),
                    )
                except UnknownDependency as exc:
                    errors.append(_issue(current_id, exc))
                    continue
                if resolved != task.status:
                    pending[current_id] = resolved

            result, unlocked = self._apply(
                company_id,
                origin_task_id=None,
                tasks=tasks,
                changes=pending,
                errors=errors,
                event_types={},
                resynthesize=set(),
            )
            logger.info(
                "statuses_refreshed",
                company_id=company_id,
                updated=len(result.updated),
                errors=len(result.errors),
                duration_ms=_elapsed_ms(started),
            )
        self._notify_unlocked(unlocked)
        return result

    def synthesize_submissions(self, task_id: str) -> SynthesisResult:
        task = self.store.get_task(task_id)
        with self._locks.for_company(task.company_id):
            return self._synthesize_locked(self.store.get_task(task_id))

    def _propagate_locked(
        self,
        task_id: str,
        *,
        seed: Mapping[str, TaskStatus],
        event_types: Mapping[str, str] | None = None,
        resynthesize_origin: bool = False,
    ) -> tuple[PropagationResult, list[TaskRead]]:
        started = time.perf_counter()
        origin = self.store.get_task(task_id)
        tasks = self._company_tasks(origin.company_id)
        dependents_index = _dependents_index(self.store.dependency_map(origin.company_id))
        errors: list[EngineIssue] = []

        blocked = cycle_blocked_tasks(task_id, dependents_index)
        if blocked:
            errors.extend(self._cycle_issues(sorted(blocked)))

        pending: dict[str, TaskStatus] = {
            key: value for key, value in seed.items() if tasks[key].status != value
        }
        queue: deque[str] = deque([task_id])
        visited: set[str] = {task_id}

        while queue:
            current_id = queue.popleft()
            for dependent_id in sorted(dependents_index.get(current_id, ())):
                if dependent_id in blocked or dependent_id in visited:
                    continue
                visited.add(dependent_id)
                dependent = tasks[dependent_id]
                try:
                    resolved = resolve_status(
                        _PendingTask.view(dependent, pending),
                        self._dependency_statuses(dependent.dependencies, tasks, pending),
                    )
                except UnknownDependency as exc:
                    errors.append(_issue(dependent_id, exc))
                    continue
                if resolved == dependent.status:
                    continue
                pending[dependent_id] = resolved
                if resolved == TaskStatus.COMPLETED:
                    queue.append(dependent_id)

        resynthesize = {task_id} if resynthesize_origin else set()
        result, unlocked = self._apply(
            origin.company_id,
            origin_task_id=task_id,
            tasks=tasks,
            changes=pending,
            errors=errors,
            event_types=event_types or {},
            resynthesize=resynthesize,
        )
        logger.info(
            "propagation_completed",
            task_id=task_id,
            company_id=origin.company_id,
            visited=len(visited),
            updated=len(result.updated),
            synthesized=len(result.synthesized),
            errors=len(result.errors),
            duration_ms=_elapsed_ms(started),
        )
        return result, unlocked

    def _apply(
        self,
        company_id: str,
        *,
        origin_task_id: str | None,
        tasks: Mapping[str, TaskRead],
        changes: Mapping[str, TaskStatus],
        errors: list[EngineIssue],
        event_types: Mapping[str, str],
        resynthesize: set[str],
    ) -> tuple[PropagationResult, list[TaskRead]]:
        written: list[TaskRead] = []
        if changes:
            # StoreUnavailable propagates; the store has already rolled back.
            written = self.store.update_task_statuses(changes, event_types=event_types)
        return self._settle(
            company_id,
            origin_task_id=origin_task_id,
            tasks=tasks,
            written=written,
            errors=errors,
            resynthesize=resynthesize,
        )

    def _settle(
        self,
        company_id: str,
        *,
        origin_task_id: str | None,
        tasks: Mapping[str, TaskRead],
        written: list[TaskRead],
        errors: list[EngineIssue],
        resynthesize: set[str],
    ) -> tuple[PropagationResult, list[TaskRead]]:
        """Derive submissions for written tasks that became actionable.

        Returns the result and the newly actionable tasks, which the caller
        hands to the unlock hook once the company lock is released.
        """
        transitions = [
            StatusTransition(task_id=task.id, previous=tasks[task.id].status, current=task.status)
            for task in written
        ]
        unlocked = [task for task in written if is_actionable(task.status)]
        unlocked_ids = {task.id for task in unlocked}
        candidates = list(unlocked)
        for task_id in sorted(resynthesize - unlocked_ids):
            task = self.store.get_task(task_id)
            if is_actionable(task.status):
                candidates.append(task)

        synthesized: list[str] = []
        for task in candidates:
            if effective_interface_type(task, self.rules) != InterfaceType.EMAIL:
                continue
            try:
                self._synthesize_locked(task)
            except EngineError as exc:
                logger.warning("synthesis_failed", task_id=task.id, error=exc.code, message=str(exc))
                errors.append(_issue(task.id, exc))
                continue
            synthesized.append(task.id)

        result = PropagationResult(
            origin_task_id=origin_task_id,
            company_id=company_id,
            updated=[task.id for task in written],
            transitions=transitions,
            synthesized=synthesized,
            errors=errors,
        )
        return result, unlocked

    def _synthesize_locked(self, task: TaskRead) -> SynthesisResult:
        tasks = self._company_tasks(task.company_id)
        dependency_ids: list[str] = []
        for reference in task.dependencies:
            dependency_id = _resolve_reference(reference, tasks)
            if dependency_id is None:
                raise UnknownDependency(task.id, reference)
            if dependency_id not in dependency_ids:
                dependency_ids.append(dependency_id)

        primary_reference = task.primary_dependency_id or (task.dependencies[0] if task.dependencies else None)
        primary_task_id = _resolve_reference(primary_reference, tasks) if primary_reference else None

        artifacts: list[ArtifactRead] = []
        for dependency_id in dependency_ids:
            artifacts.extend(self.store.list_artifacts(dependency_id))

        outcome = synthesize(task, artifacts, primary_task_id=primary_task_id)
        stored = self.store.replace_submissions(task.id, outcome.submissions)
        return SynthesisResult(task_id=task.id, submissions=stored, warnings=outcome.warnings)

    def _notify_unlocked(self, tasks: list[TaskRead]) -> None:
        if self.on_task_unlocked is None:
            return
        for task in tasks:
            if (task.tag or "").lower() != AI_TASK_TAG:
                continue
            try:
                self.on_task_unlocked(task)
            except Exception as exc:  # noqa: BLE001
                logger.warning("unlock_hook_failed", task_id=task.id, error=str(exc))

    def _company_tasks(self, company_id: str) -> dict[str, TaskRead]:
        return {task.id: task for task in self.store.list_tasks(company_id=company_id)}

    @staticmethod
    def _dependency_statuses(
        references: list[str],
        tasks: Mapping[str, TaskRead],
        pending: Mapping[str, TaskStatus],
    ) -> dict[str, TaskStatus]:
        statuses: dict[str, TaskStatus] = {}
        for reference in references:
            dependency_id = _resolve_reference(reference, tasks)
            if dependency_id is None:
                continue
            statuses[reference] = pending.get(dependency_id, tasks[dependency_id].status)
        return statuses

    @staticmethod
    def _cycle_issues(task_ids: list[str]) -> list[EngineIssue]:
        error = CycleDetected(task_ids)
        logger.warning("dependency_cycle_detected", task_ids=error.task_ids)
        return [_issue(task_id, error) for task_id in error.task_ids]


class _PendingTask:
    """Status view of a task with the run's not-yet-written changes applied."""

    def __init__(self, task_id: str, dependencies: list[str], status: TaskStatus) -> None:
        self.id = task_id
        self.dependencies = dependencies
        self.status = status

    @classmethod
    def view(cls, task: TaskRead, pending: Mapping[str, TaskStatus]) -> "_PendingTask":
        return cls(task.id, task.dependencies, pending.get(task.id, task.status))


def _resolve_reference(reference: str, tasks: Mapping[str, TaskRead]) -> str | None:
    if reference in tasks:
        return reference
    for task_id in sorted(tasks):
        if tasks[task_id].template_id == reference:
            return task_id
    return None


def _dependents_index(edges: Mapping[str, list[str]]) -> dict[str, list[str]]:
    index: dict[str, list[str]] = {task_id: [] for task_id in edges}
    for task_id, dependencies in edges.items():
        for dependency_id in dependencies:
            index.setdefault(dependency_id, []).append(task_id)
    return index


def _issue(task_id: str, error: EngineError) -> EngineIssue:
    return EngineIssue(task_id=task_id, error=error.code, message=str(error))


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
