from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

from conftest import ExplodingAuditSink, ScriptedExecutor, agent_failure

from team_runner.errors import StoreUnavailableError
from team_runner.runner.controller import RerunCancelController
from team_runner.runner.coordinator import ClaimResult
from team_runner.runner.reaper import StaleRunReaper
from team_runner.storage.models import PipelineStep, WorkItemKind, WorkItemRef, WorkStatus


def test_concurrent_claims_have_exactly_one_winner(
    store, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task()
    coordinators = [make_coordinator(ScriptedExecutor()) for _ in range(8)]
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
    assert results.count(ClaimResult.ALREADY_CLAIMED) == 7
    claimed = store.get_task(task.task_id)
    assert claimed.status is WorkStatus.RUNNING
    assert claimed.claimed_by_runner == "runner-test"


def test_claim_reports_unknown_items(make_coordinator) -> None:
    coordinator = make_coordinator(ScriptedExecutor())

    result = coordinator.claim(WorkItemRef(kind=WorkItemKind.TASK, item_id="missing"))

    assert result is ClaimResult.NOT_FOUND


def test_claim_ignores_tasks_that_were_never_dispatched(store, make_coordinator) -> None:
    task = store.create_task(
        workspace_id="ws-1",
        title="Draft",
        description="Draft it",
        assigned_agent_id="agent-a",
        created_by="user-1",
    )

    assert make_coordinator(ScriptedExecutor()).claim(task.ref) is ClaimResult.ALREADY_CLAIMED
    assert store.get_task(task.task_id).status is WorkStatus.PENDING


def test_task_success_is_completed_with_result(
    store, audit, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task()
    executor = ScriptedExecutor({"agent-a": ["three bullets"]})

    outcome = make_coordinator(executor).process(task.ref)

    assert outcome.status is WorkStatus.COMPLETED
    stored = store.get_task(task.task_id)
    assert stored.status is WorkStatus.COMPLETED
    assert stored.result == "three bullets"
    assert stored.metadata["usage"] == {"total_tokens": 10}
    assert stored.finished_at is not None
    _, payload = executor.calls[0]
    assert payload.prompt == task.description
    assert payload.context["title"] == task.title
    assert audit.actions() == ["task_started", "task_completed"]


def test_task_agent_failure_is_a_failed_status(
    store, audit, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task()
    executor = ScriptedExecutor({"agent-a": [agent_failure("context window exceeded")]})

    outcome = make_coordinator(executor).process(task.ref)

    assert outcome.status is WorkStatus.FAILED
    stored = store.get_task(task.task_id)
    assert stored.error == "context window exceeded"
    assert stored.result is None
    assert audit.actions() == ["task_started", "task_failed"]


def test_task_without_agent_fails_without_invoking(
    store, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task(agent_id=None)
    executor = ScriptedExecutor()

    make_coordinator(executor).process(task.ref)

    assert store.get_task(task.task_id).status is WorkStatus.FAILED
    assert executor.calls == []


def test_task_cancelled_while_agent_runs(store, make_coordinator, make_dispatched_task) -> None:
    task = make_dispatched_task()
    executor = ScriptedExecutor()
    executor.on_call = lambda *_: store.update_fields(task.ref, cancel_requested=True)

    outcome = make_coordinator(executor).process(task.ref)

    assert outcome.status is WorkStatus.CANCELLED
    assert store.get_task(task.task_id).status is WorkStatus.CANCELLED


def test_failing_audit_sink_never_changes_the_outcome(
    store, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task()

    outcome = make_coordinator(ScriptedExecutor(), audit=ExplodingAuditSink()).process(task.ref)

    assert outcome.status is WorkStatus.COMPLETED
    assert store.get_task(task.task_id).status is WorkStatus.COMPLETED


def test_team_run_adopts_pipeline_verdict(store, audit, make_coordinator, make_team_run) -> None:
    run = make_team_run(
        [
            PipelineStep(agent_id="a", step_name="research"),
            PipelineStep(agent_id="b", step_name="write"),
        ]
    )
    executor = ScriptedExecutor({"a": ["notes"], "b": ["article"]})

    outcome = make_coordinator(executor).process(run.ref)

    assert outcome.status is WorkStatus.COMPLETED
    stored = store.get_team_run(run.run_id)
    assert stored.status is WorkStatus.COMPLETED
    assert stored.output == "article"
    assert stored.tokens_total == 20
    assert stored.current_step_idx == 1
    assert [entry["outcome"] for entry in stored.step_summary] == ["succeeded", "succeeded"]
    assert audit.actions() == ["team_run_started", "team_run_completed"]
    assert audit.entries[0]["details"]["team_id"] == run.team_id


class FlakyStore:
    """Delegate to a real store but fail step inserts ``failures`` times."""

    def __init__(self, inner, failures: int, before_failure=None) -> None:
        self._inner = inner
        self.failures = failures
        self.before_failure = before_failure

    def insert_step_execution(self, **kwargs):
        if self.failures > 0:
            self.failures -= 1
            if self.before_failure is not None:
                self.before_failure()
            raise StoreUnavailableError("connection reset by peer")
        return self._inner.insert_step_execution(**kwargs)

    def __getattr__(self, name):
        return getattr(self._inner, name)


def test_infrastructure_fault_requeues_with_fresh_generation(
    store, audit, make_coordinator, make_team_run
) -> None:
    run = make_team_run([PipelineStep(agent_id="a", step_name="only")])
    flaky = FlakyStore(store, failures=1)
    coordinator = make_coordinator(ScriptedExecutor(), fault_retry_budget=3)
    coordinator.store = flaky
    coordinator.pipeline.store = flaky

    first = coordinator.process(run.ref)

    assert first.requeued is True
    requeued = store.get_team_run(run.run_id)
    assert requeued.status is WorkStatus.PENDING
    assert requeued.fault_count == 1
    assert requeued.generation == 2
    assert requeued.claimed_by_runner is None
    assert "team_run_requeued" in audit.actions()

    second = coordinator.process(run.ref)

    assert second.status is WorkStatus.COMPLETED
    rows = store.list_step_executions(run.run_id)
    assert [row.generation for row in rows] == [2]


def test_infrastructure_faults_fail_once_budget_is_spent(
    store, make_coordinator, make_team_run
) -> None:
    run = make_team_run([PipelineStep(agent_id="a", step_name="only")])
    flaky = FlakyStore(store, failures=100)
    coordinator = make_coordinator(ScriptedExecutor(), fault_retry_budget=2)
    coordinator.store = flaky
    coordinator.pipeline.store = flaky

    statuses = [coordinator.process(run.ref).status for _ in range(3)]

    assert statuses == [WorkStatus.PENDING, WorkStatus.PENDING, WorkStatus.FAILED]
    failed = store.get_team_run(run.run_id)
    assert failed.status is WorkStatus.FAILED
    assert failed.fault_count == 3
    assert "fault budget exhausted" in (failed.error_message or "")


def test_unexpected_executor_crash_fails_the_task(
    store, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task()
    executor = ScriptedExecutor({"agent-a": [ZeroDivisionError("division by zero")]})

    outcome = make_coordinator(executor).process(task.ref)

    assert outcome.status is WorkStatus.FAILED
    assert "Unexpected execution error" in (store.get_task(task.task_id).error or "")


def test_finalize_does_not_overwrite_a_rerun_item(
    store, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task()
    executor = ScriptedExecutor()
    # Simulate a rerun landing while the agent call is in flight.
    executor.on_call = lambda *_: store.conditional_update_status(
        task.ref, WorkStatus.RUNNING, WorkStatus.DISPATCHED
    )

    make_coordinator(executor).process(task.ref)

    assert store.get_task(task.task_id).status is WorkStatus.DISPATCHED


def _hand_claim_to_another_runner(store, audit, make_coordinator, ref):
    """Reap ``ref`` as stale, rerun it, and let a second coordinator claim it."""
    StaleRunReaper(store, audit, timeout_s=1).reap_once(
        now=datetime.now(UTC) + timedelta(hours=1)
    )
    controller = RerunCancelController(store, audit)
    if ref.kind is WorkItemKind.TASK:
        controller.rerun_task(ref.item_id)
    else:
        controller.rerun_team_run(ref.item_id)
    assert make_coordinator(ScriptedExecutor()).claim(ref) is ClaimResult.CLAIMED


def test_stale_coordinator_cannot_finalize_over_a_newer_claim(
    store, audit, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task()
    executor = ScriptedExecutor({"agent-a": ["stale"]})
    executor.on_call = lambda *_: _hand_claim_to_another_runner(
        store, audit, make_coordinator, task.ref
    )

    outcome = make_coordinator(executor).process(task.ref)

    assert outcome.status is None
    stored = store.get_task(task.task_id)
    assert stored.status is WorkStatus.RUNNING
    assert stored.result is None
    assert stored.claim_id is not None
    assert "task_completed" not in audit.actions()


def test_stale_coordinator_cannot_release_a_newer_claim(
    store, audit, make_coordinator, make_team_run
) -> None:
    run = make_team_run([PipelineStep(agent_id="a", step_name="only")])
    coordinator = make_coordinator(ScriptedExecutor(), fault_retry_budget=3)
    flaky = FlakyStore(
        store,
        failures=1,
        before_failure=lambda: _hand_claim_to_another_runner(
            store, audit, make_coordinator, run.ref
        ),
    )
    coordinator.store = flaky
    coordinator.pipeline.store = flaky

    outcome = coordinator.process(run.ref)

    assert outcome.requeued is False
    stored = store.get_team_run(run.run_id)
    assert stored.status is WorkStatus.RUNNING
    assert stored.generation == 2
    assert stored.fault_count == 0
    assert "team_run_requeued" not in audit.actions()
