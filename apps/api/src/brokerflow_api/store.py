from __future__ import annotations

import copy
import json
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from brokerflow_api.errors import StoreUnavailable
from brokerflow_api.logging_config import get_logger
from brokerflow_api.schemas import (
    ArtifactCreate,
    ArtifactRead,
    EventRead,
    InterfaceType,
    SubmissionRead,
    TaskCreate,
    TaskDependenciesUpdate,
    TaskRead,
    TaskStatus,
    normalize_task_status,
)
from brokerflow_api.workflow_validation import validate_task_graph

logger = get_logger(__name__)


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


class ValidationError(Exception):
    pass


@dataclass
class _TaskRecord:
    id: str
    company_id: str
    name: str
    sort_order: int
    dependencies: list[str]
    status: str = TaskStatus.UPCOMING.value
    interface_type: str | None = None
    template_id: str | None = None
    primary_dependency_id: str | None = None
    tag: str | None = None
    completed_at: str | None = None
    updated_at: str | None = None


@dataclass
class _StoreState:
    tasks: dict[str, _TaskRecord] = field(default_factory=dict)
    artifacts: dict[str, list[ArtifactRead]] = field(default_factory=dict)
    submissions: dict[str, list[SubmissionRead]] = field(default_factory=dict)
    events: list[EventRead] = field(default_factory=list)
    task_seq: int = 1
    artifact_seq: int = 1
    event_seq: int = 1


class InMemoryStore:
    """Task graph, artifact and submission accessor.

    Every public write is one critical section under ``_lock``; multi-record
    writes (status batches, submission replacement) are therefore atomic for
    readers. When a state file is configured the whole snapshot is persisted
    after each write and a failed write rolls the in-memory state back.
    """

    def __init__(self, state_file: str | None = None) -> None:
        self._state_file = Path(state_file).expanduser() if state_file else None
        self._lock = threading.RLock()
        self._state = _StoreState()
        self._load_state()

    def create_task(self, task: TaskCreate, *, status: TaskStatus | None = None) -> TaskRead:
        with self._lock:
            task_id = task.id or self._next_task_id()
            if task_id in self._state.tasks:
                raise ConflictError(f"task {task_id} already exists")
            if task.id is None:
                self._state.task_seq += 1

            record = _TaskRecord(
                id=task_id,
                company_id=task.company_id,
                name=task.name,
                sort_order=task.sort_order,
                dependencies=list(task.dependencies),
                status=(status or task.status or TaskStatus.UPCOMING).value,
                interface_type=task.interface_type.value if task.interface_type is not None else None,
                template_id=task.template_id,
                primary_dependency_id=task.primary_dependency_id,
                tag=task.tag,
                updated_at=self._utc_now(),
            )
            self._validate_company_graph(record.company_id, candidate=record)

            def rollback(snapshot: _StoreState = self._checkpoint()) -> None:
                self._state = snapshot

            self._state.tasks[task_id] = record
            self._append_event(
                event_type="task.created",
                company_id=record.company_id,
                task_id=task_id,
                payload={"dependencies": record.dependencies, "status": record.status},
            )
            self._commit("create_task", rollback)
            return self._to_task_read(record)

    def get_task(self, task_id: str) -> TaskRead:
        with self._lock:
            record = self._state.tasks.get(task_id)
            if record is None:
                raise NotFoundError(f"task {task_id} not found")
            return self._to_task_read(record)

    def list_tasks(self, *, company_id: str | None = None) -> list[TaskRead]:
        with self._lock:
            records = [
                record
                for record in self._state.tasks.values()
                if company_id is None or record.company_id == company_id
            ]
            records.sort(key=lambda record: (record.sort_order, record.id))
            return [self._to_task_read(record) for record in records]

    def find_dependency(self, company_id: str, reference: str) -> TaskRead | None:
        with self._lock:
            record = self._find_dependency_record(company_id, reference)
            return self._to_task_read(record) if record is not None else None

    def list_dependents(self, task_id: str) -> list[TaskRead]:
        with self._lock:
            record = self._state.tasks.get(task_id)
            if record is None:
                raise NotFoundError(f"task {task_id} not found")
            dependents = [
                candidate
                for candidate in self._state.tasks.values()
                if candidate.company_id == record.company_id
                and candidate.id != record.id
                and self._references(candidate, record)
            ]
            dependents.sort(key=lambda candidate: candidate.id)
            return [self._to_task_read(candidate) for candidate in dependents]

    def dependency_map(self, company_id: str) -> dict[str, list[str]]:
        """Resolved dependency task IDs per task; dangling references are left out."""
        with self._lock:
            return self._resolved_edges(company_id)

    def update_task_dependencies(
        self,
        task_id: str,
        update: TaskDependenciesUpdate,
        *,
        status: TaskStatus | None = None,
    ) -> TaskRead:
        """Replace a task's dependencies, optionally re-gating its status in the same write."""
        with self._lock:
            record = self._state.tasks.get(task_id)
            if record is None:
                raise NotFoundError(f"task {task_id} not found")
            if task_id in update.dependencies:
                raise ValidationError(f"task {task_id} cannot depend on itself")

            candidate = copy.copy(record)
            candidate.dependencies = list(update.dependencies)
            candidate.primary_dependency_id = update.primary_dependency_id
            candidate.updated_at = self._utc_now()
            self._validate_company_graph(record.company_id, candidate=candidate)

            def rollback(snapshot: _StoreState = self._checkpoint()) -> None:
                self._state = snapshot

            self._state.tasks[task_id] = candidate
            self._append_event(
                event_type="task.dependencies_updated",
                company_id=record.company_id,
                task_id=task_id,
                payload={
                    "previous": record.dependencies,
                    "dependencies": candidate.dependencies,
                    "primary_dependency_id": candidate.primary_dependency_id,
                },
            )
            if status is not None and status.value != record.status:
                candidate.status = status.value
                candidate.completed_at = candidate.updated_at if status == TaskStatus.COMPLETED else None
                self._append_event(
                    event_type="task.status_changed",
                    company_id=record.company_id,
                    task_id=task_id,
                    payload={"previous": record.status, "status": status.value},
                )
            self._commit("update_task_dependencies", rollback)
            return self._to_task_read(candidate)

    def update_task_status(self, task_id: str, status: TaskStatus) -> TaskRead:
        return self.update_task_statuses({task_id: status})[0]

    def update_task_statuses(
        self,
        changes: Mapping[str, TaskStatus],
        *,
        event_types: Mapping[str, str] | None = None,
    ) -> list[TaskRead]:
        """Write a batch of status changes as one unit.

        ``event_types`` overrides the audit event type per task; the default is
        ``task.status_changed``.
        """
        with self._lock:
            for task_id in changes:
                if task_id not in self._state.tasks:
                    raise NotFoundError(f"task {task_id} not found")

            def rollback(snapshot: _StoreState = self._checkpoint()) -> None:
                self._state = snapshot

            now = self._utc_now()
            updated: list[TaskRead] = []
            for task_id, raw_status in changes.items():
                status = normalize_task_status(raw_status)
                record = self._state.tasks[task_id]
                previous = record.status
                replacement = copy.copy(record)
                replacement.status = status.value
                replacement.updated_at = now
                if status == TaskStatus.COMPLETED and previous != TaskStatus.COMPLETED.value:
                    replacement.completed_at = now
                elif status != TaskStatus.COMPLETED:
                    replacement.completed_at = None
                self._state.tasks[task_id] = replacement
                self._append_event(
                    event_type=(event_types or {}).get(task_id, "task.status_changed"),
                    company_id=record.company_id,
                    task_id=task_id,
                    payload={"previous": previous, "status": status.value},
                )
                updated.append(self._to_task_read(replacement))

            self._commit("update_task_statuses", rollback)
            return updated

    def record_artifacts(self, task_id: str, artifacts: Sequence[ArtifactCreate]) -> list[ArtifactRead]:
        """Store one completion pass of a task, superseding its previous pass."""
        with self._lock:
            task = self._state.tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"task {task_id} not found")
            if not artifacts:
                raise ValidationError("an artifact pass must contain at least one artifact")

            def rollback(snapshot: _StoreState = self._checkpoint()) -> None:
                self._state = snapshot

            now = self._utc_now()
            total = len(artifacts)
            created: list[ArtifactRead] = []
            for index, artifact in enumerate(artifacts):
                created.append(
                    ArtifactRead(
                        id=f"artifact-{self._state.artifact_seq:06d}",
                        company_id=task.company_id,
                        task_id=task_id,
                        name=artifact.name or (task.name if total == 1 else f"{task.name} ({index + 1} of {total})"),
                        content=artifact.content,
                        artifact_index=index,
                        total_artifacts=total,
                        tags=list(artifact.tags),
                        created_at=now,
                    )
                )
                self._state.artifact_seq += 1

            superseded = [item.id for item in self._state.artifacts.get(task_id, [])]
            self._state.artifacts[task_id] = created
            self._append_event(
                event_type="artifacts.recorded",
                company_id=task.company_id,
                task_id=task_id,
                payload={
                    "artifact_ids": [item.id for item in created],
                    "superseded_artifact_ids": superseded,
                },
            )
            self._commit("record_artifacts", rollback)
            return list(created)

    def list_artifacts(self, task_id: str) -> list[ArtifactRead]:
        with self._lock:
            if task_id not in self._state.tasks:
                raise NotFoundError(f"task {task_id} not found")
            return sorted(self._state.artifacts.get(task_id, []), key=lambda item: item.artifact_index)

    def replace_submissions(self, task_id: str, submissions: Sequence[SubmissionRead]) -> list[SubmissionRead]:
        with self._lock:
            task = self._state.tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"task {task_id} not found")
            for submission in submissions:
                if submission.task_id != task_id:
                    raise ValidationError(f"submission {submission.id} belongs to task {submission.task_id}")

            def rollback(snapshot: _StoreState = self._checkpoint()) -> None:
                self._state = snapshot

            previous = [item.id for item in self._state.submissions.get(task_id, [])]
            self._state.submissions[task_id] = [item.model_copy(deep=True) for item in submissions]
            self._append_event(
                event_type="submissions.replaced",
                company_id=task.company_id,
                task_id=task_id,
                payload={
                    "submission_ids": [item.id for item in submissions],
                    "replaced_submission_ids": previous,
                },
            )
            self._commit("replace_submissions", rollback)
            return list(self._state.submissions[task_id])

    def list_submissions(self, *, task_id: str | None = None, company_id: str | None = None) -> list[SubmissionRead]:
        with self._lock:
            if task_id is not None:
                if task_id not in self._state.tasks:
                    raise NotFoundError(f"task {task_id} not found")
                return list(self._state.submissions.get(task_id, []))
            collected: list[SubmissionRead] = []
            for items in self._state.submissions.values():
                collected.extend(item for item in items if company_id is None or item.company_id == company_id)
            return collected

    def list_events(
        self,
        *,
        company_id: str | None = None,
        task_id: str | None = None,
        event_type: str | None = None,
        limit: int = 200,
    ) -> list[EventRead]:
        if limit <= 0:
            return []

        with self._lock:
            filtered = [
                event
                for event in self._state.events
                if (company_id is None or event.company_id == company_id)
                and (task_id is None or event.task_id == task_id)
                and (event_type is None or event.event_type == event_type)
            ]
            return filtered[-limit:]

    def _find_dependency_record(self, company_id: str, reference: str) -> _TaskRecord | None:
        record = self._state.tasks.get(reference)
        if record is not None and record.company_id == company_id:
            return record
        for candidate in sorted(self._state.tasks.values(), key=lambda item: item.id):
            if candidate.company_id == company_id and candidate.template_id == reference:
                return candidate
        return None

    @staticmethod
    def _references(candidate: _TaskRecord, target: _TaskRecord) -> bool:
        if target.id in candidate.dependencies:
            return True
        return target.template_id is not None and target.template_id in candidate.dependencies

    def _resolved_edges(self, company_id: str, candidate: _TaskRecord | None = None) -> dict[str, list[str]]:
        records = {
            record.id: record
            for record in self._state.tasks.values()
            if record.company_id == company_id
        }
        if candidate is not None:
            records[candidate.id] = candidate

        def resolve(reference: str) -> str | None:
            if reference in records:
                return reference
            for record_id in sorted(records):
                if records[record_id].template_id == reference:
                    return record_id
            return None

        edges: dict[str, list[str]] = {}
        for record_id, record in records.items():
            resolved: list[str] = []
            for reference in record.dependencies:
                dependency_id = resolve(reference)
                if dependency_id is not None and dependency_id not in resolved:
                    resolved.append(dependency_id)
            edges[record_id] = resolved
        return edges

    def _validate_company_graph(self, company_id: str, *, candidate: _TaskRecord) -> None:
        edges = self._resolved_edges(company_id, candidate)
        try:
            validate_task_graph(edges)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    def _next_task_id(self) -> str:
        while f"task-{self._state.task_seq:06d}" in self._state.tasks:
            self._state.task_seq += 1
        return f"task-{self._state.task_seq:06d}"

    def _checkpoint(self) -> _StoreState:
        return _StoreState(
            tasks=dict(self._state.tasks),
            artifacts={key: list(value) for key, value in self._state.artifacts.items()},
            submissions={key: list(value) for key, value in self._state.submissions.items()},
            events=list(self._state.events),
            task_seq=self._state.task_seq,
            artifact_seq=self._state.artifact_seq,
            event_seq=self._state.event_seq,
        )

    def _commit(self, operation: str, rollback: Callable[[], None]) -> None:
        try:
            self._persist_state()
        except OSError as exc:
            rollback()
            logger.error("store_persist_failed", operation=operation, error=str(exc))
            raise StoreUnavailable(operation, str(exc)) from exc

    def _append_event(
        self,
        *,
        event_type: str,
        company_id: str | None = None,
        task_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> EventRead:
        event = EventRead(
            id=self._state.event_seq,
            event_type=event_type,
            company_id=company_id,
            task_id=task_id,
            payload=payload or {},
            created_at=self._utc_now(),
        )
        self._state.event_seq += 1
        self._state.events.append(event)
        return event

    def _persist_state(self) -> None:
        if self._state_file is None:
            return

        snapshot = self._snapshot()
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self._state_file.with_name(f"{self._state_file.name}.tmp")
        tmp_file.write_text(json.dumps(snapshot, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        tmp_file.replace(self._state_file)

    def _load_state(self) -> None:
        if self._state_file is None or not self._state_file.exists():
            return

        try:
            raw = self._state_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise StoreUnavailable("load_state", str(exc)) from exc
        data = json.loads(raw)

        tasks: dict[str, _TaskRecord] = {}
        for key, value in data.get("tasks", {}).items():
            record = _TaskRecord(**value)
            # Older snapshots carry the legacy status spellings.
            record.status = normalize_task_status(record.status).value
            tasks[str(key)] = record

        sequences = data.get("sequences", {})
        self._state = _StoreState(
            tasks=tasks,
            artifacts={
                str(key): [ArtifactRead(**item) for item in value]
                for key, value in data.get("artifacts", {}).items()
            },
            submissions={
                str(key): [SubmissionRead(**item) for item in value]
                for key, value in data.get("submissions", {}).items()
            },
            events=[EventRead(**event) for event in data.get("events", [])],
            task_seq=int(sequences.get("task_seq", 1)),
            artifact_seq=int(sequences.get("artifact_seq", 1)),
            event_seq=int(sequences.get("event_seq", 1)),
        )

    def _snapshot(self) -> dict[str, Any]:
        return {
            "tasks": {key: value.__dict__ for key, value in self._state.tasks.items()},
            "artifacts": {
                key: [item.model_dump(mode="json") for item in value]
                for key, value in self._state.artifacts.items()
            },
            "submissions": {
                key: [item.model_dump(mode="json") for item in value]
                for key, value in self._state.submissions.items()
            },
            "events": [event.model_dump(mode="json") for event in self._state.events],
            "sequences": {
                "task_seq": self._state.task_seq,
                "artifact_seq": self._state.artifact_seq,
                "event_seq": self._state.event_seq,
            },
        }

    @staticmethod
    def _to_task_read(record: _TaskRecord) -> TaskRead:
        return TaskRead(
            id=record.id,
            company_id=record.company_id,
            name=record.name,
            sort_order=record.sort_order,
            dependencies=list(record.dependencies),
            status=record.status,
            interface_type=InterfaceType(record.interface_type) if record.interface_type is not None else None,
            template_id=record.template_id,
            primary_dependency_id=record.primary_dependency_id,
            tag=record.tag,
            completed_at=record.completed_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def _utc_now() -> str:
        return datetime.now(timezone.utc).isoformat()
