"""Storage interface for work item lifecycle and audit records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from team_runner.storage.models import (
    AgentRecord,
    AuditLogEntry,
    PipelineStep,
    RunnerRecord,
    StepExecutionRecord,
    StepOutcome,
    TaskRecord,
    TeamRecord,
    TeamRunRecord,
    WorkItemKind,
    WorkItemRef,
    WorkStatus,
)


class StatusStore(Protocol):
    """Single source of truth for status fields.

    ``conditional_update_status`` is the only synchronization primitive the
    runner relies on: it must apply ``changes`` and the new status in one
    atomic write, and only when the current status is one of ``expected``.
    With ``expected_claim`` the row must also still carry that ``claim_id``,
    which fences writes from a coordinator whose claim was superseded.
    Backends raise ``StoreUnavailableError`` for connectivity faults.
    """

    def migrate(self) -> None: ...

    # Work item status
    def conditional_update_status(
        self,
        item: WorkItemRef,
        expected: WorkStatus | tuple[WorkStatus, ...],
        new: WorkStatus,
        *,
        expected_claim: str | None = None,
        **changes: Any,
    ) -> bool: ...

    def update_fields(self, item: WorkItemRef, **changes: Any) -> bool: ...

    def read_status(self, item: WorkItemRef) -> WorkStatus | None: ...

    def is_cancel_requested(self, item: WorkItemRef) -> bool: ...

    def list_ready_items(
        self, kind: WorkItemKind, ready_status: WorkStatus, limit: int = 50
    ) -> list[str]: ...

    def list_stale_items(
        self, kind: WorkItemKind, status: WorkStatus, updated_before: datetime
    ) -> list[str]: ...

    # Agents
    def create_agent(
        self,
        *,
        workspace_id: str,
        name: str,
        provider: str,
        model: str,
        system_prompt: str,
        temperature: float,
    ) -> AgentRecord: ...

    def get_agent(self, agent_id: str) -> AgentRecord | None: ...

    # Tasks
    def create_task(
        self,
        *,
        workspace_id: str,
        title: str,
        description: str,
        assigned_agent_id: str | None,
        created_by: str,
        priority: str = "medium",
        status: WorkStatus = WorkStatus.PENDING,
    ) -> TaskRecord: ...

    def get_task(self, task_id: str) -> TaskRecord | None: ...

    # Teams and runs
    def create_team(
        self,
        *,
        workspace_id: str,
        name: str,
        steps: list[PipelineStep],
        created_by: str,
    ) -> TeamRecord: ...

    def get_team(self, team_id: str) -> TeamRecord | None: ...

    def update_team_steps(self, team_id: str, steps: list[PipelineStep]) -> TeamRecord: ...

    def create_team_run(
        self,
        *,
        team: TeamRecord,
        input_task: str,
        created_by: str,
    ) -> TeamRunRecord: ...

    def get_team_run(self, run_id: str) -> TeamRunRecord | None: ...

    # Step executions
    def insert_step_execution(
        self,
        *,
        run_id: str,
        generation: int,
        step_index: int,
        step_name: str,
        agent_id: str,
        attempt: int,
    ) -> StepExecutionRecord: ...

    def complete_step_execution(
        self,
        execution_id: int,
        *,
        outcome: StepOutcome,
        output: str | None = None,
        error: str | None = None,
        usage: dict[str, Any] | None = None,
    ) -> StepExecutionRecord: ...

    def list_step_executions(
        self, run_id: str, generation: int | None = None
    ) -> list[StepExecutionRecord]: ...

    # Audit log
    def append_audit(
        self,
        *,
        workspace_id: str,
        actor_id: str,
        action: str,
        details: dict[str, Any],
    ) -> AuditLogEntry: ...

    def list_audit(self, workspace_id: str, limit: int = 100) -> list[AuditLogEntry]: ...

    # Runner registry
    def register_runner(self, *, instance_name: str, max_concurrency: int) -> RunnerRecord: ...

    def heartbeat_runner(self, runner_id: str) -> None: ...

    def deregister_runner(self, runner_id: str) -> None: ...
