"""Storage backends and models."""

from team_runner.storage.base import StatusStore
from team_runner.storage.memory import InMemoryStatusStore
from team_runner.storage.models import (
    AgentRecord,
    AuditLogEntry,
    FailurePolicy,
    PipelineStep,
    StepExecutionRecord,
    StepOutcome,
    TaskRecord,
    TeamRecord,
    TeamRunRecord,
    WorkItemKind,
    WorkItemRef,
    WorkStatus,
)
from team_runner.storage.postgres import PostgresStatusStore

__all__ = [
    "AgentRecord",
    "AuditLogEntry",
    "FailurePolicy",
    "InMemoryStatusStore",
    "PipelineStep",
    "PostgresStatusStore",
    "StatusStore",
    "StepExecutionRecord",
    "StepOutcome",
    "TaskRecord",
    "TeamRecord",
    "TeamRunRecord",
    "WorkItemKind",
    "WorkItemRef",
    "WorkStatus",
]
