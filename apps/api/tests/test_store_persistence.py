import json
from pathlib import Path

import pytest

from brokerflow_api.errors import CycleDetected, StoreUnavailable
from brokerflow_api.schemas import (
    ArtifactCreate,
    SubmissionRead,
    SubmissionStatus,
    TaskCreate,
    TaskDependenciesUpdate,
    TaskStatus,
)
from brokerflow_api.store import ConflictError, InMemoryStore, NotFoundError, ValidationError


def _submission(task_id: str, recipient: str) -> SubmissionRead:
    return SubmissionRead(
        id=f"sub-{recipient.lower()}",
        company_id="c1",
        task_id=task_id,
        recipient_name=recipient,
        recipient_address=f"underwriter@{recipient.lower()}.com",
        subject=f"Submission - {recipient}",
        body=f"Hello {recipient}",
        status=SubmissionStatus.READY,
        source_task_ids=["draft"],
    )


def test_store_restores_snapshot_from_state_file(tmp_path: Path) -> None:
    state_file = tmp_path / "brokerflow-state.json"
    first = InMemoryStore(state_file=str(state_file))

    first.create_task(TaskCreate(id="draft", company_id="c1", name="Draft submission", template_id="tmpl-draft"))
    first.create_task(
        TaskCreate(company_id="c1", name="Send submission", sort_order=12, dependencies=["tmpl-draft"], tag="ai")
    )
    first.update_task_status("draft", TaskStatus.COMPLETED)
    first.record_artifacts("draft", [ArtifactCreate(content="part one"), ArtifactCreate(content="part two")])
    first.replace_submissions("task-000001", [_submission("task-000001", "Acme")])

    second = InMemoryStore(state_file=str(state_file))

    draft = second.get_task("draft")
    assert draft.status == TaskStatus.COMPLETED
    assert draft.completed_at is not None
    send = second.get_task("task-000001")
    assert send.dependencies == ["tmpl-draft"]
    assert send.tag == "ai"
    assert second.find_dependency("c1", "tmpl-draft").id == "draft"
    assert [item.artifact_index for item in second.list_artifacts("draft")] == [0, 1]
    assert second.list_submissions(task_id="task-000001")[0].recipient_name == "Acme"
    assert [event.event_type for event in second.list_events()] == [
        "task.created",
        "task.created",
        "task.status_changed",
        "artifacts.recorded",
        "submissions.replaced",
    ]

    third = second.create_task(TaskCreate(company_id="c1", name="Follow-up"))
    assert third.id == "task-000002"


def test_legacy_status_spellings_are_normalized_on_load(tmp_path: Path) -> None:
    state_file = tmp_path / "legacy.json"
    state_file.write_text(
        json.dumps(
            {
                "tasks": {
                    "a": {"id": "a", "company_id": "c1", "name": "A", "sort_order": 1, "dependencies": [], "status": "Complete"},
                    "b": {"id": "b", "company_id": "c1", "name": "B", "sort_order": 2, "dependencies": ["a"], "status": "pending"},
                }
            }
        ),
        encoding="utf-8",
    )

    store = InMemoryStore(state_file=str(state_file))

    assert store.get_task("a").status == TaskStatus.COMPLETED
    assert store.get_task("b").status == TaskStatus.NEEDS_ATTENTION


def test_create_task_rejects_duplicates_and_cycles() -> None:
    store = InMemoryStore()
    store.create_task(TaskCreate(id="a", company_id="c1", name="A", dependencies=["c"]))
    store.create_task(TaskCreate(id="b", company_id="c1", name="B", dependencies=["a"]))

    with pytest.raises(ConflictError):
        store.create_task(TaskCreate(id="a", company_id="c1", name="A again"))
    with pytest.raises(CycleDetected):
        store.create_task(TaskCreate(id="c", company_id="c1", name="C", dependencies=["b"]))

    # Tasks of c1 are invisible to the c2 graph.
    assert store.create_task(TaskCreate(id="c-other", company_id="c2", name="C", dependencies=["b"])).id == "c-other"


def test_update_dependencies_validates_graph() -> None:
    store = InMemoryStore()
    store.create_task(TaskCreate(id="a", company_id="c1", name="A"))
    store.create_task(TaskCreate(id="b", company_id="c1", name="B", dependencies=["a"]))

    with pytest.raises(CycleDetected):
        store.update_task_dependencies("a", TaskDependenciesUpdate(dependencies=["b"]))
    with pytest.raises(ValidationError):
        store.update_task_dependencies("a", TaskDependenciesUpdate(dependencies=["a"]))
    with pytest.raises(NotFoundError):
        store.update_task_dependencies("missing", TaskDependenciesUpdate())

    updated = store.update_task_dependencies("b", TaskDependenciesUpdate(dependencies=[]))
    assert updated.dependencies == []
    assert store.get_task("a").dependencies == []


def test_list_dependents_follows_ids_and_template_aliases() -> None:
    store = InMemoryStore()
    store.create_task(TaskCreate(id="root", company_id="c1", name="Root", template_id="tmpl-root"))
    store.create_task(TaskCreate(id="by-id", company_id="c1", name="By id", dependencies=["root"]))
    store.create_task(TaskCreate(id="by-template", company_id="c1", name="By template", dependencies=["tmpl-root"]))
    store.create_task(TaskCreate(id="foreign", company_id="c2", name="Foreign", dependencies=["tmpl-root"]))

    assert [task.id for task in store.list_dependents("root")] == ["by-id", "by-template"]
    assert store.dependency_map("c1") == {"root": [], "by-id": ["root"], "by-template": ["root"]}
    assert store.dependency_map("c2") == {"foreign": []}


def test_new_artifact_pass_supersedes_previous_pass() -> None:
    store = InMemoryStore()
    store.create_task(TaskCreate(id="draft", company_id="c1", name="Draft"))

    store.record_artifacts("draft", [ArtifactCreate(content="a"), ArtifactCreate(content="b"), ArtifactCreate(content="c")])
    latest = store.record_artifacts("draft", [ArtifactCreate(name="Only", content="d")])

    listed = store.list_artifacts("draft")
    assert listed == latest
    assert [(item.artifact_index, item.total_artifacts, item.name) for item in listed] == [(0, 1, "Only")]
    with pytest.raises(ValidationError):
        store.record_artifacts("draft", [])


def test_multi_part_artifacts_share_total() -> None:
    store = InMemoryStore()
    store.create_task(TaskCreate(id="draft", company_id="c1", name="Draft"))

    created = store.record_artifacts("draft", [ArtifactCreate(content=str(index)) for index in range(3)])

    assert [item.artifact_index for item in created] == [0, 1, 2]
    assert {item.total_artifacts for item in created} == {3}
    assert created[1].name == "Draft (2 of 3)"


def test_failed_persist_rolls_back_submission_replacement(tmp_path: Path, monkeypatch) -> None:
    store = InMemoryStore(state_file=str(tmp_path / "state.json"))
    store.create_task(TaskCreate(id="send", company_id="c1", name="Send"))
    store.replace_submissions("send", [_submission("send", "Acme")])

    def fail_persist() -> None:
        raise OSError("read-only file system")

    monkeypatch.setattr(store, "_persist_state", fail_persist)

    with pytest.raises(StoreUnavailable) as exc_info:
        store.replace_submissions("send", [_submission("send", "Beta")])

    assert exc_info.value.operation == "replace_submissions"
    assert [item.recipient_name for item in store.list_submissions(task_id="send")] == ["Acme"]


def test_replace_submissions_rejects_foreign_task() -> None:
    store = InMemoryStore()
    store.create_task(TaskCreate(id="send", company_id="c1", name="Send"))

    with pytest.raises(ValidationError):
        store.replace_submissions("send", [_submission("other", "Acme")])


def test_list_events_filters_and_limits() -> None:
    store = InMemoryStore()
    store.create_task(TaskCreate(id="a", company_id="c1", name="A"))
    store.create_task(TaskCreate(id="b", company_id="c2", name="B"))
    store.update_task_status("a", TaskStatus.COMPLETED)

    assert [event.task_id for event in store.list_events(company_id="c1")] == ["a", "a"]
    assert len(store.list_events(event_type="task.created")) == 2
    assert len(store.list_events(limit=1)) == 1
    assert store.list_events(limit=0) == []
