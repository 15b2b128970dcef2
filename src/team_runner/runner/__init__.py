"""Dispatch, execution and supervision of work items."""

from team_runner.runner.audit import AuditSink, BackgroundAuditWriter, StoreAuditSink
from team_runner.runner.cancellation import CancellationToken
from team_runner.runner.controller import RerunCancelController
from team_runner.runner.coordinator import (
    ClaimResult,
    ExecutionCoordinator,
    ExecutionResult,
    ProcessOutcome,
)
from team_runner.runner.pipeline import FAILURE_HANDLERS, PipelineStepEngine, PipelineVerdict
from team_runner.runner.reaper import StaleRunReaper
from team_runner.runner.registry import RunnerRegistry
from team_runner.runner.retry import StoreRetryPolicy
from team_runner.runner.watcher import DispatchWatcher

__all__ = [
    "FAILURE_HANDLERS",
    "AuditSink",
    "BackgroundAuditWriter",
    "CancellationToken",
    "ClaimResult",
    "DispatchWatcher",
    "ExecutionCoordinator",
    "ExecutionResult",
    "PipelineStepEngine",
    "PipelineVerdict",
    "ProcessOutcome",
    "RerunCancelController",
    "RunnerRegistry",
    "StaleRunReaper",
    "StoreRetryPolicy",
]
