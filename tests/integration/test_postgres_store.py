from __future__ import annotations

import threading
import uuid

from conftest import RecordingAuditSink, ScriptedExecutor, agent_failure

from team_runner.runner.controller import RerunCancelController
from team_runner.runner.coordinator import ClaimResult, ExecutionCoordinator
from team_runner.runner.retry import StoreRetryPolicy
from team_runner.storage.models import PipelineStep, StepOutcome, WorkItemKind, WorkStatus


def _workspace() -> str:
    return f"it-{uuid.uuid4().hex[:8]}"


def _coordinator(pg_store, executor, audit=None) -> ExecutionCoordinator:
    return ExecutionCoordinator(
        pg_store,
        executor,
        audit or RecordingAuditSink(),
        runner_id="runner-it",
        store_retry=StoreRetryPolicy(retries=0, backoff_s=0),
    )


def test_postgres_claim_has_a_single_winner(pg_store) -> None:
    task = pg_store.create_task(
        workspace_id=_workspace(),
        title="Claim race",
        description="Only one runner may win.",
        assigned_agent_id="agent-a",
        created_by="it",
        status=WorkStatus.DISPATCHED,
    )
    coordinators = [_coordinator(pg_store, ScriptedExecutor()) for _ in range(6)]
    barrier = threading.Barrier(len(coordinators))
    results: list[ClaimResult] = []
    lock = threading.Lock()

    def _claim(coordinator) -> None:
        barrier.wait()
        outcome = coordinator.claim(task.ref)
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_claim, args=(c,)) for c in coordinators]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(ClaimResult.CLAIMED) == 1
    assert pg_store.get_task(task.task_id).claimed_by_runner == "runner-it"


def test_postgres_pipeline_run_and_rerun(pg_store) -> None:
    workspace_id = _workspace()
    team = pg_store.create_team(
        workspace_id=workspace_id,
        name="writers",
        steps=[
            PipelineStep(agent_id="a", step_name="draft", on_failure="retry", max_retries=1),
            PipelineStep(agent_id="b", step_name="edit"),
        ],
        created_by="it",
    )
    run = pg_store.create_team_run(team=team, input_task="Write a post", created_by="it")
    audit = RecordingAuditSink()
    executor = ScriptedExecutor({"a": [agent_failure(), "draft"], "b": ["edited"]})

    outcome = _coordinator(pg_store, executor, audit).process(run.ref)

    assert outcome.status is WorkStatus.COMPLETED
    finished = pg_store.get_team_run(run.run_id)
    assert finished.output == "edited"
    assert [entry["outcome"] for entry in finished.step_summary] == ["succeeded", "succeeded"]
    rows = pg_store.list_step_executions(run.run_id, generation=1)
    assert [(row.step_index, row.attempt, row.outcome) for row in rows] == [
        (0, 1, StepOutcome.FAILED),
        (0, 2, StepOutcome.SUCCEEDED),
        (1, 1, StepOutcome.SUCCEEDED),
    ]

    rerun = RerunCancelController(pg_store, audit).rerun_team_run(run.run_id)

    assert rerun.status is WorkStatus.PENDING
    assert rerun.generation == 2
    assert run.run_id in pg_store.list_ready_items(WorkItemKind.TEAM_RUN, WorkStatus.PENDING, 500)
    assert len(pg_store.list_step_executions(run.run_id)) == 3


def test_postgres_audit_and_runner_registry(pg_store) -> None:
    workspace_id = _workspace()
    pg_store.append_audit(
        workspace_id=workspace_id, actor_id="it", action="task_started", details={"n": 1}
    )

    entries = pg_store.list_audit(workspace_id)
    assert [entry.action for entry in entries] == ["task_started"]
    assert entries[0].details == {"n": 1}

    runner = pg_store.register_runner(instance_name="it-host-1", max_concurrency=2)
    pg_store.heartbeat_runner(runner.runner_id)
    pg_store.deregister_runner(runner.runner_id)


def test_postgres_claim_fence_rejects_a_superseded_claim(pg_store) -> None:
    task = pg_store.create_task(
        workspace_id=_workspace(),
        title="Fence",
        description="Writes must carry the live claim id.",
        assigned_agent_id="agent-a",
        created_by="it",
        status=WorkStatus.DISPATCHED,
    )
    assert _coordinator(pg_store, ScriptedExecutor()).claim(task.ref) is ClaimResult.CLAIMED
    live_claim = pg_store.get_task(task.task_id).claim_id

    assert not pg_store.conditional_update_status(
        task.ref,
        WorkStatus.RUNNING,
        WorkStatus.COMPLETED,
        expected_claim="superseded",
        result="stale",
    )
    assert pg_store.conditional_update_status(
        task.ref,
        WorkStatus.RUNNING,
        WorkStatus.COMPLETED,
        expected_claim=live_claim,
        result="fresh",
    )
    assert pg_store.get_task(task.task_id).result == "fresh"
