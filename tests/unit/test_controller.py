from __future__ import annotations

import pytest
from conftest import ScriptedExecutor, agent_failure

from team_runner.errors import StateConflictError, WorkItemNotFoundError
from team_runner.runner.controller import RerunCancelController
from team_runner.storage.models import PipelineStep, WorkStatus


@pytest.fixture
def controller(store, audit) -> RerunCancelController:
    return RerunCancelController(store, audit)


def test_rerun_running_task_is_a_conflict(store, controller, make_dispatched_task) -> None:
    task = make_dispatched_task()
    store.conditional_update_status(task.ref, WorkStatus.DISPATCHED, WorkStatus.RUNNING)

    with pytest.raises(StateConflictError):
        controller.rerun_task(task.task_id)

    assert store.get_task(task.task_id).status is WorkStatus.RUNNING


def test_rerun_failed_task_resets_to_dispatched(
    store, audit, controller, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task()
    make_coordinator(ScriptedExecutor({"agent-a": [agent_failure("boom")]})).process(task.ref)
    assert store.get_task(task.task_id).status is WorkStatus.FAILED

    rerun = controller.rerun_task(task.task_id, actor_id="user-2")

    assert rerun.status is WorkStatus.DISPATCHED
    assert rerun.error is None
    assert rerun.claimed_by_runner is None
    assert rerun.fault_count == 0
    assert audit.entries[-1]["action"] == "task_rerun"
    assert audit.entries[-1]["actor_id"] == "user-2"


def test_rerun_unknown_task_is_not_found(controller) -> None:
    with pytest.raises(WorkItemNotFoundError):
        controller.rerun_task("nope")


def test_rerun_team_run_bumps_generation_and_keeps_history(
    store, controller, make_coordinator, make_team_run
) -> None:
    run = make_team_run([PipelineStep(agent_id="a", step_name="only")])
    make_coordinator(ScriptedExecutor()).process(run.ref)

    rerun = controller.rerun_team_run(run.run_id)

    assert rerun.status is WorkStatus.PENDING
    assert rerun.generation == 2
    assert rerun.output is None
    assert rerun.step_summary == []
    assert len(store.list_step_executions(run.run_id, generation=1)) == 1
    assert store.list_step_executions(run.run_id, generation=2) == []


def test_cancel_pending_run_is_immediate(store, controller, make_team_run) -> None:
    run = make_team_run([PipelineStep(agent_id="a", step_name="only")])

    cancelled = controller.cancel_team_run(run.run_id)

    assert cancelled.status is WorkStatus.CANCELLED
    assert cancelled.cancel_requested is True


def test_cancel_running_item_sets_flag_only(store, controller, make_dispatched_task) -> None:
    task = make_dispatched_task()
    store.conditional_update_status(task.ref, WorkStatus.DISPATCHED, WorkStatus.RUNNING)

    result = controller.cancel_task(task.task_id)

    assert result.status is WorkStatus.RUNNING
    assert result.cancel_requested is True


def test_cancel_terminal_item_is_a_conflict(store, controller, make_dispatched_task) -> None:
    task = make_dispatched_task()
    store.conditional_update_status(task.ref, WorkStatus.DISPATCHED, WorkStatus.COMPLETED)

    with pytest.raises(StateConflictError):
        controller.cancel_task(task.task_id)


def test_cancel_racing_a_finishing_item_leaves_no_flag(
    store, controller, make_dispatched_task
) -> None:
    task = make_dispatched_task()
    store.conditional_update_status(task.ref, WorkStatus.DISPATCHED, WorkStatus.RUNNING)
    # The item completes right after the controller reads it as running.
    original_get_task = store.get_task
    reads = []

    def _get_task_then_complete(task_id):
        record = original_get_task(task_id)
        if not reads:
            store.conditional_update_status(task.ref, WorkStatus.RUNNING, WorkStatus.COMPLETED)
        reads.append(task_id)
        return record

    store.get_task = _get_task_then_complete

    with pytest.raises(StateConflictError):
        controller.cancel_task(task.task_id)

    assert store.read_status(task.ref) is WorkStatus.COMPLETED
    assert original_get_task(task.task_id).cancel_requested is False


def test_cancelled_dispatched_task_is_never_claimed(
    store, controller, make_coordinator, make_dispatched_task
) -> None:
    task = make_dispatched_task()
    controller.cancel_task(task.task_id)
    executor = ScriptedExecutor()

    outcome = make_coordinator(executor).process(task.ref)

    assert outcome.status is None
    assert executor.calls == []
    assert store.get_task(task.task_id).status is WorkStatus.CANCELLED


def test_cancel_during_step_two_of_three_finalizes_cancelled(
    store, controller, make_coordinator, make_team_run
) -> None:
    run = make_team_run(
        [
            PipelineStep(agent_id="a", step_name="one"),
            PipelineStep(agent_id="b", step_name="two"),
            PipelineStep(agent_id="c", step_name="three"),
        ]
    )
    executor = ScriptedExecutor()

    def _cancel_during_b(agent_id, _payload) -> None:
        if agent_id == "b":
            controller.cancel_team_run(run.run_id)

    executor.on_call = _cancel_during_b

    outcome = make_coordinator(executor).process(run.ref)

    assert outcome.status is WorkStatus.CANCELLED
    assert executor.agents_called() == ["a", "b"]
    stored = store.get_team_run(run.run_id)
    assert stored.status is WorkStatus.CANCELLED
    assert [row.step_index for row in store.list_step_executions(run.run_id)] == [0, 1]


def test_dispatch_moves_pending_task_once(store, controller) -> None:
    task = store.create_task(
        workspace_id="ws-1",
        title="Draft",
        description="Draft it",
        assigned_agent_id="agent-a",
        created_by="user-1",
    )

    assert controller.dispatch_task(task.task_id).status is WorkStatus.DISPATCHED
    with pytest.raises(StateConflictError):
        controller.dispatch_task(task.task_id)
