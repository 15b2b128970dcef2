"""Storage models shared by the runner, the API, and persistence backends."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

TaskPriority = Literal["low", "medium", "high", "urgent"]
TeamMode = Literal["pipeline"]


class WorkStatus(str, Enum):
    """Lifecycle states shared by Tasks and Team Runs."""

    PENDING = "pending"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({WorkStatus.COMPLETED, WorkStatus.FAILED, WorkStatus.CANCELLED})


class WorkItemKind(str, Enum):
    TASK = "task"
    TEAM_RUN = "team_run"

    @property
    def ready_status(self) -> WorkStatus:
        """Status that makes an item of this kind visible to the dispatch watcher."""
        if self is WorkItemKind.TASK:
            return WorkStatus.DISPATCHED
        return WorkStatus.PENDING


class FailurePolicy(str, Enum):
    """Per-step directive applied when the step's agent invocation fails."""

    RETRY = "retry"
    STOP = "stop"
    SKIP = "skip"


class StepOutcome(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # Reported in a run's step summary for steps the pipeline never reached.
    SKIPPED = "skipped"


class WorkItemRef(BaseModel):
    """Identity of one dispatchable work item."""

    model_config = {"frozen": True}

    kind: WorkItemKind
    item_id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.item_id}"


class AgentRecord(BaseModel):
    agent_id: str
    workspace_id: str
    name: str
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    system_prompt: str = ""
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    created_at: datetime


class TaskRecord(BaseModel):
    """Persisted task record."""

    task_id: str
    workspace_id: str
    title: str
    description: str
    assigned_agent_id: str | None = None
    priority: TaskPriority = "medium"
    status: WorkStatus = WorkStatus.PENDING
    created_by: str
    result: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    cancel_requested: bool = False
    fault_count: int = 0
    claimed_by_runner: str | None = None
    claim_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def ref(self) -> WorkItemRef:
        return WorkItemRef(kind=WorkItemKind.TASK, item_id=self.task_id)


class PipelineStep(BaseModel):
    """One step of a team's pipeline definition."""

    agent_id: str = Field(min_length=1)
    step_name: str = Field(min_length=1)
    instructions: str = ""
    expected_output: str = ""
    on_failure: FailurePolicy = FailurePolicy.STOP
    max_retries: int = Field(default=0, ge=0)

    @property
    def max_attempts(self) -> int:
        if self.on_failure is FailurePolicy.RETRY:
            return self.max_retries + 1
        return 1


class TeamRecord(BaseModel):
    team_id: str
    workspace_id: str
    name: str
    mode: TeamMode = "pipeline"
    steps: list[PipelineStep] = Field(default_factory=list)
    created_by: str
    created_at: datetime
    updated_at: datetime


class TeamRunRecord(BaseModel):
    """One execution instance of a team's pipeline."""

    run_id: str
    team_id: str
    workspace_id: str
    input_task: str
    status: WorkStatus = WorkStatus.PENDING
    created_by: str
    # Snapshot of the pipeline taken when the run was created.
    steps: list[PipelineStep] = Field(default_factory=list)
    generation: int = 1
    current_step_idx: int | None = None
    output: str | None = None
    error_message: str | None = None
    tokens_total: int = 0
    step_summary: list[dict[str, Any]] = Field(default_factory=list)
    cancel_requested: bool = False
    fault_count: int = 0
    claimed_by_runner: str | None = None
    claim_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def ref(self) -> WorkItemRef:
        return WorkItemRef(kind=WorkItemKind.TEAM_RUN, item_id=self.run_id)


class StepExecutionRecord(BaseModel):
    """One attempt of one pipeline step within a team run generation."""

    execution_id: int
    run_id: str
    generation: int
    step_index: int
    step_name: str
    agent_id: str
    attempt: int = Field(ge=1)
    outcome: StepOutcome = StepOutcome.RUNNING
    output: str | None = None
    error: str | None = None
    usage: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    finished_at: datetime | None = None


class AuditLogEntry(BaseModel):
    entry_id: int
    workspace_id: str
    actor_id: str
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class RunnerRecord(BaseModel):
    runner_id: str
    instance_name: str
    status: str = "active"
    max_concurrency: int = 1
    last_heartbeat: datetime
    created_at: datetime
