"""In-memory storage backend for tests and single-process runs."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from team_runner.errors import WorkItemNotFoundError
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

PRIORITY_RANK = {"urgent": 0, "high": 1, "medium": 2, "low": 3}


class InMemoryStatusStore:
    """Dict-backed store; one lock makes every operation atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._agents: dict[str, AgentRecord] = {}
        self._tasks: dict[str, TaskRecord] = {}
        self._teams: dict[str, TeamRecord] = {}
        self._team_runs: dict[str, TeamRunRecord] = {}
        self._step_executions: list[StepExecutionRecord] = []
        self._audit: list[AuditLogEntry] = []
        self._runners: dict[str, RunnerRecord] = {}
        self._next_execution_id = 1
        self._next_audit_id = 1

    def migrate(self) -> None:
        return None

    def conditional_update_status(
        self,
        item: WorkItemRef,
        expected: WorkStatus | tuple[WorkStatus, ...],
        new: WorkStatus,
        *,
        expected_claim: str | None = None,
        **changes: Any,
    ) -> bool:
        allowed = expected if isinstance(expected, tuple) else (expected,)
        with self._lock:
            table = self._table(item.kind)
            current = table.get(item.item_id)
            if current is None or current.status not in allowed:
                return False
            if expected_claim is not None and current.claim_id != expected_claim:
                return False
            table[item.item_id] = current.model_copy(
                update={**changes, "status": new, "updated_at": datetime.now(UTC)}
            )
            return True

    def update_fields(self, item: WorkItemRef, **changes: Any) -> bool:
        with self._lock:
            table = self._table(item.kind)
            current = table.get(item.item_id)
            if current is None:
                return False
            table[item.item_id] = current.model_copy(
                update={**changes, "updated_at": datetime.now(UTC)}
            )
            return True

    def read_status(self, item: WorkItemRef) -> WorkStatus | None:
        with self._lock:
            current = self._table(item.kind).get(item.item_id)
            return current.status if current is not None else None

    def is_cancel_requested(self, item: WorkItemRef) -> bool:
        with self._lock:
            current = self._table(item.kind).get(item.item_id)
            if current is None:
                return False
            return current.cancel_requested or current.status is WorkStatus.CANCELLED

    def list_ready_items(
        self, kind: WorkItemKind, ready_status: WorkStatus, limit: int = 50
    ) -> list[str]:
        with self._lock:
            records = [r for r in self._table(kind).values() if r.status is ready_status]
        if kind is WorkItemKind.TASK:
            records.sort(key=lambda r: (PRIORITY_RANK.get(r.priority, 2), r.updated_at))
            return [r.task_id for r in records[:limit]]
        records.sort(key=lambda r: r.updated_at)
        return [r.run_id for r in records[:limit]]

    def list_stale_items(
        self, kind: WorkItemKind, status: WorkStatus, updated_before: datetime
    ) -> list[str]:
        with self._lock:
            stale = [
                item_id
                for item_id, record in self._table(kind).items()
                if record.status is status and record.updated_at < updated_before
            ]
        return stale

    def create_agent(
        self,
        *,
        workspace_id: str,
        name: str,
        provider: str = "openai",
        model: str = "gpt-4o-mini",
        system_prompt: str = "",
        temperature: float = 0.7,
    ) -> AgentRecord:
        record = AgentRecord(
            agent_id=str(uuid4()),
            workspace_id=workspace_id,
            name=name,
            provider=provider,
            model=model,
            system_prompt=system_prompt,
            temperature=temperature,
            created_at=datetime.now(UTC),
        )
        with self._lock:
            self._agents[record.agent_id] = record
        return record

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        with self._lock:
            return self._agents.get(agent_id)

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
    ) -> TaskRecord:
        now = datetime.now(UTC)
        record = TaskRecord(
            task_id=str(uuid4()),
            workspace_id=workspace_id,
            title=title,
            description=description,
            assigned_agent_id=assigned_agent_id,
            priority=priority,
            status=status,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._tasks[record.task_id] = record
        return record.model_copy(deep=True)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def create_team(
        self,
        *,
        workspace_id: str,
        name: str,
        steps: list[PipelineStep],
        created_by: str,
    ) -> TeamRecord:
        now = datetime.now(UTC)
        record = TeamRecord(
            team_id=str(uuid4()),
            workspace_id=workspace_id,
            name=name,
            steps=[step.model_copy() for step in steps],
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._teams[record.team_id] = record
        return record.model_copy(deep=True)

    def get_team(self, team_id: str) -> TeamRecord | None:
        with self._lock:
            team = self._teams.get(team_id)
            return team.model_copy(deep=True) if team else None

    def update_team_steps(self, team_id: str, steps: list[PipelineStep]) -> TeamRecord:
        with self._lock:
            current = self._teams.get(team_id)
            if current is None:
                raise WorkItemNotFoundError("team", team_id)
            updated = current.model_copy(
                update={
                    "steps": [step.model_copy() for step in steps],
                    "updated_at": datetime.now(UTC),
                }
            )
            self._teams[team_id] = updated
            return updated.model_copy(deep=True)

    def create_team_run(
        self,
        *,
        team: TeamRecord,
        input_task: str,
        created_by: str,
    ) -> TeamRunRecord:
        now = datetime.now(UTC)
        record = TeamRunRecord(
            run_id=str(uuid4()),
            team_id=team.team_id,
            workspace_id=team.workspace_id,
            input_task=input_task,
            created_by=created_by,
            steps=[step.model_copy() for step in team.steps],
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._team_runs[record.run_id] = record
        return record.model_copy(deep=True)

    def get_team_run(self, run_id: str) -> TeamRunRecord | None:
        with self._lock:
            run = self._team_runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    def insert_step_execution(
        self,
        *,
        run_id: str,
        generation: int,
        step_index: int,
        step_name: str,
        agent_id: str,
        attempt: int,
    ) -> StepExecutionRecord:
        with self._lock:
            record = StepExecutionRecord(
                execution_id=self._next_execution_id,
                run_id=run_id,
                generation=generation,
                step_index=step_index,
                step_name=step_name,
                agent_id=agent_id,
                attempt=attempt,
                started_at=datetime.now(UTC),
            )
            self._next_execution_id += 1
            self._step_executions.append(record)
            return record.model_copy(deep=True)

    def complete_step_execution(
        self,
        execution_id: int,
        *,
        outcome: StepOutcome,
        output: str | None = None,
        error: str | None = None,
        usage: dict[str, Any] | None = None,
    ) -> StepExecutionRecord:
        with self._lock:
            for index, record in enumerate(self._step_executions):
                if record.execution_id != execution_id:
                    continue
                updated = record.model_copy(
                    update={
                        "outcome": outcome,
                        "output": output,
                        "error": error,
                        "usage": dict(usage or {}),
                        "finished_at": datetime.now(UTC),
                    }
                )
                self._step_executions[index] = updated
                return updated.model_copy(deep=True)
        raise WorkItemNotFoundError("step_execution", str(execution_id))

    def list_step_executions(
        self, run_id: str, generation: int | None = None
    ) -> list[StepExecutionRecord]:
        with self._lock:
            return [
                record.model_copy(deep=True)
                for record in self._step_executions
                if record.run_id == run_id
                and (generation is None or record.generation == generation)
            ]

    def append_audit(
        self,
        *,
        workspace_id: str,
        actor_id: str,
        action: str,
        details: dict[str, Any],
    ) -> AuditLogEntry:
        with self._lock:
            entry = AuditLogEntry(
                entry_id=self._next_audit_id,
                workspace_id=workspace_id,
                actor_id=actor_id,
                action=action,
                details=dict(details),
                created_at=datetime.now(UTC),
            )
            self._next_audit_id += 1
            self._audit.append(entry)
            return entry

    def list_audit(self, workspace_id: str, limit: int = 100) -> list[AuditLogEntry]:
        with self._lock:
            entries = [entry for entry in self._audit if entry.workspace_id == workspace_id]
        return entries[-limit:]

    def register_runner(self, *, instance_name: str, max_concurrency: int) -> RunnerRecord:
        now = datetime.now(UTC)
        record = RunnerRecord(
            runner_id=str(uuid4()),
            instance_name=instance_name,
            max_concurrency=max_concurrency,
            last_heartbeat=now,
            created_at=now,
        )
        with self._lock:
            self._runners[record.runner_id] = record
        return record

    def heartbeat_runner(self, runner_id: str) -> None:
        with self._lock:
            current = self._runners.get(runner_id)
            if current is not None:
                self._runners[runner_id] = current.model_copy(
                    update={"last_heartbeat": datetime.now(UTC)}
                )

    def deregister_runner(self, runner_id: str) -> None:
        with self._lock:
            self._runners.pop(runner_id, None)

    def get_runner(self, runner_id: str) -> RunnerRecord | None:
        with self._lock:
            return self._runners.get(runner_id)

    def _table(self, kind: WorkItemKind) -> dict[str, Any]:
        if kind is WorkItemKind.TASK:
            return self._tasks
        return self._team_runs
