from __future__ import annotations

import os
import threading
from collections.abc import Callable
from typing import Any

import pytest

from team_runner.agents.base import AgentInput, AgentOutput
from team_runner.errors import AgentExecutionError
from team_runner.runner.coordinator import ExecutionCoordinator
from team_runner.runner.retry import StoreRetryPolicy
from team_runner.storage.memory import InMemoryStatusStore
from team_runner.storage.models import PipelineStep, TeamRunRecord, WorkStatus


class ScriptedExecutor:
    """Test double that replays a scripted outcome per agent call.

    Each entry in an agent's script is either an output string or an
    exception instance to raise. Once a script is exhausted the agent
    echoes ``"<agent_id>:ok"``.
    """

    def __init__(self, scripts: dict[str, list[Any]] | None = None) -> None:
        self.scripts = {agent_id: list(items) for agent_id, items in (scripts or {}).items()}
        self.calls: list[tuple[str, AgentInput]] = []
        self.on_call: Callable[[str, AgentInput], None] | None = None
        self._lock = threading.Lock()

    def invoke(self, agent_id: str, payload: AgentInput) -> AgentOutput:
        with self._lock:
            self.calls.append((agent_id, payload))
            script = self.scripts.get(agent_id, [])
            outcome = script.pop(0) if script else f"{agent_id}:ok"
        if self.on_call is not None:
            self.on_call(agent_id, payload)
        if isinstance(outcome, BaseException):
            raise outcome
        return AgentOutput(output=outcome, usage={"total_tokens": 10})

    def agents_called(self) -> list[str]:
        return [agent_id for agent_id, _ in self.calls]


class RecordingAuditSink:
    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def append(
        self,
        workspace_id: str,
        actor_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        self.entries.append(
            {
                "workspace_id": workspace_id,
                "actor_id": actor_id,
                "action": action,
                "details": details,
            }
        )

    def actions(self) -> list[str]:
        return [entry["action"] for entry in self.entries]


class ExplodingAuditSink:
    def append(self, *args: Any, **kwargs: Any) -> None:
        raise RuntimeError("audit backend is down")


def agent_failure(message: str = "agent failed") -> AgentExecutionError:
    return AgentExecutionError(message)


@pytest.fixture
def store() -> InMemoryStatusStore:
    return InMemoryStatusStore()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def make_coordinator(
    store: InMemoryStatusStore, audit: RecordingAuditSink
) -> Callable[..., ExecutionCoordinator]:
    def _make(executor: Any, **kwargs: Any) -> ExecutionCoordinator:
        kwargs.setdefault("store_retry", StoreRetryPolicy(retries=0, backoff_s=0.0))
        kwargs.setdefault("audit", audit)
        sink = kwargs.pop("audit")
        return ExecutionCoordinator(store, executor, sink, runner_id="runner-test", **kwargs)

    return _make


@pytest.fixture
def make_team_run(store: InMemoryStatusStore) -> Callable[..., TeamRunRecord]:
    def _make(steps: list[PipelineStep], input_task: str = "Write a launch note") -> TeamRunRecord:
        team = store.create_team(
            workspace_id="ws-1", name="writers", steps=steps, created_by="user-1"
        )
        return store.create_team_run(team=team, input_task=input_task, created_by="user-1")

    return _make


@pytest.fixture
def make_dispatched_task(store: InMemoryStatusStore) -> Callable[..., Any]:
    def _make(agent_id: str | None = "agent-a", priority: str = "medium") -> Any:
        return store.create_task(
            workspace_id="ws-1",
            title="Summarize release notes",
            description="Summarize the attached release notes in three bullets.",
            assigned_agent_id=agent_id,
            created_by="user-1",
            priority=priority,
            status=WorkStatus.DISPATCHED,
        )

    return _make


@pytest.fixture
def pg_store() -> Any:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and TEAM_RUNNER_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("TEAM_RUNNER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("TEAM_RUNNER_DATABASE_URL is required for integration tests.")

    from team_runner.storage.postgres import PostgresStatusStore

    store = PostgresStatusStore(database_url)
    store.migrate()
    return store
