from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from team_runner.api.main import create_app
from team_runner.config.settings import Settings
from team_runner.storage.memory import InMemoryStatusStore
from team_runner.storage.models import WorkItemRef, WorkStatus


@pytest.fixture
def api_store() -> InMemoryStatusStore:
    return InMemoryStatusStore()


@pytest.fixture
def client(api_store) -> TestClient:
    app = create_app(
        storage=api_store,
        settings_override=Settings(storage_backend="memory", executor_mode="deterministic"),
    )
    return TestClient(app)


def _create_task(client: TestClient, **overrides) -> dict:
    payload = {
        "workspace_id": "ws-1",
        "title": "Weekly digest",
        "description": "Summarize this week's merged pull requests.",
        "assigned_agent_id": "agent-a",
        "created_by": "user-1",
    }
    payload.update(overrides)
    response = client.post("/tasks", json=payload)
    assert response.status_code == 200
    return response.json()


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "team-runner"}


def test_task_dispatch_and_get(client) -> None:
    task = _create_task(client)
    assert task["status"] == "pending"

    dispatched = client.post(f"/tasks/{task['task_id']}/dispatch")
    assert dispatched.status_code == 200
    assert dispatched.json()["status"] == "dispatched"

    again = client.post(f"/tasks/{task['task_id']}/dispatch")
    assert again.status_code == 409

    fetched = client.get(f"/tasks/{task['task_id']}")
    assert fetched.json()["status"] == "dispatched"


def test_unknown_task_is_404(client) -> None:
    assert client.get("/tasks/missing").status_code == 404
    assert client.post("/tasks/missing/rerun").status_code == 404
    assert client.post("/tasks/missing/cancel").status_code == 404


def test_rerun_running_task_is_409(client, api_store) -> None:
    task = _create_task(client, dispatch=True)
    ref = WorkItemRef.model_validate({"kind": "task", "item_id": task["task_id"]})
    api_store.conditional_update_status(ref, WorkStatus.DISPATCHED, WorkStatus.RUNNING)

    response = client.post(f"/tasks/{task['task_id']}/rerun")

    assert response.status_code == 409
    assert "running" in response.json()["detail"]


def test_cancel_dispatched_task(client) -> None:
    task = _create_task(client, dispatch=True)

    response = client.post(f"/tasks/{task['task_id']}/cancel", params={"actor_id": "user-9"})

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    client.app.state.audit.flush()
    audit = client.get("/audit", params={"workspace_id": "ws-1"}).json()
    assert audit[-1]["action"] == "task_cancelled"
    assert audit[-1]["actor_id"] == "user-9"


def test_team_edit_does_not_change_existing_run(client) -> None:
    team = client.post(
        "/teams",
        json={
            "workspace_id": "ws-1",
            "name": "content",
            "created_by": "user-1",
            "steps": [
                {"agent_id": "a", "step_name": "research", "on_failure": "skip"},
                {"agent_id": "b", "step_name": "write", "on_failure": "retry", "max_retries": 2},
            ],
        },
    ).json()
    run = client.post(
        f"/teams/{team['team_id']}/runs",
        json={"input_task": "Write about caching", "created_by": "user-1"},
    ).json()

    edited = client.put(
        f"/teams/{team['team_id']}/steps",
        json={"steps": [{"agent_id": "z", "step_name": "solo"}]},
    )
    assert edited.status_code == 200
    assert [step["step_name"] for step in edited.json()["steps"]] == ["solo"]

    fetched = client.get(f"/runs/{run['run_id']}").json()
    assert [step["step_name"] for step in fetched["steps"]] == ["research", "write"]
    assert fetched["status"] == "pending"
    assert fetched["generation"] == 1


def test_team_step_validation_is_422(client) -> None:
    response = client.post(
        "/teams",
        json={
            "workspace_id": "ws-1",
            "name": "content",
            "created_by": "user-1",
            "steps": [{"agent_id": "a", "step_name": "x", "on_failure": "explode"}],
        },
    )

    assert response.status_code == 422


def test_run_for_unknown_team_is_404(client) -> None:
    response = client.post(
        "/teams/missing/runs", json={"input_task": "anything", "created_by": "user-1"}
    )

    assert response.status_code == 404


def test_cancel_and_rerun_team_run(client) -> None:
    team = client.post(
        "/teams",
        json={
            "workspace_id": "ws-1",
            "name": "content",
            "created_by": "user-1",
            "steps": [{"agent_id": "a", "step_name": "only"}],
        },
    ).json()
    run = client.post(
        f"/teams/{team['team_id']}/runs",
        json={"input_task": "Write about caching", "created_by": "user-1"},
    ).json()

    cancelled = client.post(f"/runs/{run['run_id']}/cancel")
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"/runs/{run['run_id']}/cancel").status_code == 409

    rerun = client.post(f"/runs/{run['run_id']}/rerun")
    assert rerun.status_code == 200
    assert rerun.json()["status"] == "pending"
    assert rerun.json()["generation"] == 2

    steps = client.get(f"/runs/{run['run_id']}/steps")
    assert steps.status_code == 200
    assert steps.json() == []
