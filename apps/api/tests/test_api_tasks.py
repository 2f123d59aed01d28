from fastapi.testclient import TestClient

from brokerflow_api.main import app, store
from brokerflow_api.schemas import TaskStatus


client = TestClient(app)


def _create_task(task_id: str, company_id: str, *dependencies: str, **extra) -> dict:
    payload = {"id": task_id, "company_id": company_id, "name": extra.pop("name", task_id), "dependencies": list(dependencies)}
    payload.update(extra)
    response = client.post("/tasks", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


def test_health() -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_and_list_tasks_by_company() -> None:
    root = _create_task("api-list-root", "api-list-co")
    child = _create_task("api-list-child", "api-list-co", "api-list-root", sort_order=2)

    assert root["status"] == "available"
    assert child["status"] == "upcoming"

    listed = client.get("/tasks", params={"company_id": "api-list-co"})
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == ["api-list-root", "api-list-child"]

    fetched = client.get("/tasks/api-list-child")
    assert fetched.status_code == 200
    assert fetched.json()["dependencies"] == ["api-list-root"]


def test_create_task_error_mapping() -> None:
    _create_task("api-err-a", "api-err-co")
    _create_task("api-err-b", "api-err-co", "api-err-a")

    duplicate = client.post("/tasks", json={"id": "api-err-a", "company_id": "api-err-co", "name": "dup"})
    assert duplicate.status_code == 409

    self_dependency = client.post(
        "/tasks", json={"id": "api-err-self", "company_id": "api-err-co", "name": "self", "dependencies": ["api-err-self"]}
    )
    assert self_dependency.status_code == 422

    bad_status = client.post("/tasks", json={"company_id": "api-err-co", "name": "x", "status": "archived"})
    assert bad_status.status_code == 422

    preset_status = client.post("/tasks", json={"company_id": "api-err-co", "name": "x", "status": "completed"})
    assert preset_status.status_code == 422
    assert "derived" in preset_status.json()["detail"]

    cycle = client.put("/tasks/api-err-a/dependencies", json={"dependencies": ["api-err-b"]})
    assert cycle.status_code == 409

    missing = client.get("/tasks/api-err-missing")
    assert missing.status_code == 404


def test_complete_propagates_and_reset_demotes() -> None:
    _create_task("api-flow-1", "api-flow-co")
    _create_task("api-flow-2", "api-flow-co", "api-flow-1")

    completed = client.post("/tasks/api-flow-1/complete")
    assert completed.status_code == 200
    body = completed.json()
    assert body["updated"] == ["api-flow-1", "api-flow-2"]
    assert body["errors"] == []
    assert client.get("/tasks/api-flow-2").json()["status"] == "needs_attention"

    resolved = client.get("/tasks/api-flow-2/resolved-status")
    assert resolved.status_code == 200
    assert resolved.json()["resolved_status"] == "needs_attention"

    reset = client.post("/tasks/api-flow-1/reset")
    assert reset.status_code == 200
    assert client.get("/tasks/api-flow-1").json()["status"] == "available"
    assert client.get("/tasks/api-flow-2").json()["status"] == "upcoming"

    propagated = client.post("/tasks/api-flow-1/propagate")
    assert propagated.status_code == 200
    assert propagated.json()["updated"] == []

    events = client.get("/events", params={"task_id": "api-flow-1", "event_type": "task.reset"})
    assert events.status_code == 200
    assert len(events.json()) == 1


def test_unknown_dependency_is_reported_per_task() -> None:
    _create_task("api-unknown-root", "api-unknown-co")
    _create_task("api-unknown-child", "api-unknown-co", "api-unknown-root", "api-unknown-ghost")

    result = client.post("/tasks/api-unknown-root/complete")
    assert result.status_code == 200
    assert result.json()["errors"][0]["task_id"] == "api-unknown-child"
    assert result.json()["errors"][0]["error"] == "unknown_dependency"

    resolved = client.get("/tasks/api-unknown-child/resolved-status")
    assert resolved.status_code == 422


def test_interface_type_route() -> None:
    _create_task("api-iface-root", "api-iface-co")
    _create_task("api-iface-send", "api-iface-co", "api-iface-root", name="Send submission")

    derived = client.get("/tasks/api-iface-send/interface-type")
    assert derived.status_code == 200
    assert derived.json() == {"task_id": "api-iface-send", "interface_type": "email", "derived": True}
    assert client.get("/tasks/api-iface-root/interface-type").json()["interface_type"] == "chat"
    assert client.get("/tasks/api-iface-missing/interface-type").status_code == 404


def test_refresh_statuses_route() -> None:
    _create_task("api-refresh-1", "api-refresh-co")
    _create_task("api-refresh-2", "api-refresh-co", "api-refresh-1")
    # Written straight to the store, so api-refresh-2 is left stale.
    store.update_task_status("api-refresh-1", TaskStatus.COMPLETED)

    response = client.post("/companies/api-refresh-co/refresh-statuses")

    assert response.status_code == 200
    assert response.json()["updated"] == ["api-refresh-2"]
    assert client.get("/tasks/api-refresh-2").json()["status"] == "needs_attention"


def test_rewiring_dependencies_regates_status() -> None:
    _create_task("api-rewire-a", "api-rewire-co")
    _create_task("api-rewire-b", "api-rewire-co", "api-rewire-a")
    _create_task("api-rewire-c", "api-rewire-co")
    client.post("/tasks/api-rewire-a/complete")
    assert client.get("/tasks/api-rewire-b").json()["status"] == "needs_attention"

    response = client.put("/tasks/api-rewire-b/dependencies", json={"dependencies": ["api-rewire-c"]})

    assert response.status_code == 200
    assert response.json()["updated"] == ["api-rewire-b"]
    assert response.json()["transitions"] == [
        {"task_id": "api-rewire-b", "previous": "needs_attention", "current": "upcoming"}
    ]
    task = client.get("/tasks/api-rewire-b").json()
    assert task["dependencies"] == ["api-rewire-c"]
    assert task["status"] == "upcoming"
    assert client.get("/tasks/api-rewire-b/resolved-status").json()["resolved_status"] == "upcoming"
