"""Execution coordinator: claim, execute, and finalize one work item."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, cast

from team_runner.agents.base import AgentExecutor
from team_runner.agents.prompts import build_task_input
from team_runner.errors import AgentExecutionError, InfrastructureError, WorkItemNotFoundError
from team_runner.runner.audit import AuditSink
from team_runner.runner.cancellation import CancellationToken
from team_runner.runner.pipeline import PipelineStepEngine
from team_runner.runner.retry import StoreRetryPolicy
from team_runner.storage.base import StatusStore
from team_runner.storage.models import (
    TaskRecord,
    TeamRunRecord,
    WorkItemKind,
    WorkItemRef,
    WorkStatus,
)

logger = logging.getLogger(__name__)

WorkRecord = TaskRecord | TeamRunRecord

# Statuses finalize may overwrite. A ready state means the item was reset
# (rerun) after this claim was lost, so it is left alone.
_FINALIZABLE = (
    WorkStatus.RUNNING,
    WorkStatus.COMPLETED,
    WorkStatus.FAILED,
    WorkStatus.CANCELLED,
)


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"


@dataclass
class ClaimedItem:
    """A work item this coordinator holds the claim on."""

    ref: WorkItemRef
    record: WorkRecord
    token: CancellationToken
    claim_id: str | None = None

    def __post_init__(self) -> None:
        if self.claim_id is None:
            self.claim_id = self.record.claim_id


@dataclass
class ExecutionResult:
    status: WorkStatus
    output: str | None = None
    error: str | None = None
    tokens_total: int = 0
    usage: dict[str, Any] = field(default_factory=dict)
    step_summary: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ProcessOutcome:
    item: WorkItemRef
    claim: ClaimResult
    status: WorkStatus | None = None
    requeued: bool = False


class ExecutionCoordinator:
    """Own the lifecycle of a single Task or Team Run.

    Exclusivity comes from ``claim``: one conditional write from the ready
    state to ``running``. Agent failures become ``failed`` statuses;
    infrastructure faults release the claim back to the ready state until the
    item's fault budget is spent. Finalize and release are conditioned on the
    claim id stamped by ``claim``, so a coordinator whose claim was reaped and
    handed to someone else never writes over the newer claim.
    """

    def __init__(
        self,
        store: StatusStore,
        executor: AgentExecutor,
        audit: AuditSink,
        *,
        runner_id: str | None = None,
        fault_retry_budget: int = 3,
        store_retry: StoreRetryPolicy | None = None,
        pipeline: PipelineStepEngine | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.audit = audit
        self.runner_id = runner_id
        self.fault_retry_budget = fault_retry_budget
        self.store_retry = store_retry or StoreRetryPolicy()
        self.pipeline = pipeline or PipelineStepEngine(
            store, executor, store_retry=self.store_retry
        )

    def claim(self, item: WorkItemRef, claim_id: str | None = None) -> ClaimResult:
        changes: dict[str, Any] = {
            "claimed_by_runner": self.runner_id,
            "claim_id": claim_id or uuid.uuid4().hex,
            "started_at": datetime.now(UTC),
            "finished_at": None,
        }
        won = self.store_retry.call(
            self.store.conditional_update_status,
            item,
            item.kind.ready_status,
            WorkStatus.RUNNING,
            **changes,
        )
        if won:
            logger.info("work_item event=claimed item=%s runner=%s", item, self.runner_id)
            return ClaimResult.CLAIMED
        if self.store_retry.call(self.store.read_status, item) is None:
            return ClaimResult.NOT_FOUND
        logger.debug("work_item event=claim_lost item=%s", item)
        return ClaimResult.ALREADY_CLAIMED

    def execute(self, claimed: ClaimedItem) -> ExecutionResult:
        if claimed.ref.kind is WorkItemKind.TASK:
            return self._execute_task(claimed)
        return self._execute_team_run(claimed)

    def finalize(self, claimed: ClaimedItem, result: ExecutionResult) -> bool:
        """Write the terminal status and emit the end-of-run audit entry."""
        now = datetime.now(UTC)
        if claimed.ref.kind is WorkItemKind.TASK:
            changes: dict[str, Any] = {
                "result": result.output,
                "error": result.error,
                "metadata": {**claimed.record.metadata, "usage": result.usage},
                "finished_at": now,
            }
        else:
            changes = {
                "output": result.output,
                "error_message": result.error,
                "tokens_total": result.tokens_total,
                "step_summary": result.step_summary,
                "finished_at": now,
            }
        written = self.store_retry.call(
            self.store.conditional_update_status,
            claimed.ref,
            _FINALIZABLE,
            result.status,
            expected_claim=claimed.claim_id,
            **changes,
        )
        if not written:
            logger.warning(
                "work_item event=finalize_skipped item=%s status=%s reason=claim_superseded",
                claimed.ref,
                result.status.value,
            )
            return False
        logger.info(
            "work_item event=finalized item=%s status=%s error=%s",
            claimed.ref,
            result.status.value,
            result.error,
        )
        self._audit(
            claimed,
            result.status.value,
            {"status": result.status.value, "error": result.error},
        )
        return True

    def process(self, item: WorkItemRef) -> ProcessOutcome:
        """Claim, execute, and finalize ``item``; never raises business failures."""
        claim_id = uuid.uuid4().hex
        claim = self.claim(item, claim_id=claim_id)
        if claim is not ClaimResult.CLAIMED:
            return ProcessOutcome(item=item, claim=claim)

        record = self._load(item)
        if record is None:
            return ProcessOutcome(item=item, claim=ClaimResult.NOT_FOUND)
        claimed = ClaimedItem(
            ref=item,
            record=record,
            token=CancellationToken(self.store, item),
            claim_id=claim_id,
        )
        self._audit(claimed, "started", {"status": WorkStatus.RUNNING.value})

        try:
            result = self.execute(claimed)
        except InfrastructureError as exc:
            return self._handle_fault(claimed, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("work_item event=execute_crashed item=%s", item)
            result = ExecutionResult(
                status=WorkStatus.FAILED, error=f"Unexpected execution error: {exc}"
            )

        try:
            written = self.finalize(claimed, result)
        except InfrastructureError:
            # Left in running; the stale run reaper reclaims it.
            logger.exception("work_item event=finalize_failed item=%s", item)
            return ProcessOutcome(item=item, claim=claim, status=WorkStatus.RUNNING)
        return ProcessOutcome(item=item, claim=claim, status=result.status if written else None)

    def _execute_task(self, claimed: ClaimedItem) -> ExecutionResult:
        task = cast(TaskRecord, claimed.record)
        if claimed.token.is_cancelled():
            return ExecutionResult(status=WorkStatus.CANCELLED)
        if not task.assigned_agent_id:
            return ExecutionResult(status=WorkStatus.FAILED, error="Task has no assigned agent.")

        try:
            response = self.executor.invoke(task.assigned_agent_id, build_task_input(task))
        except AgentExecutionError as exc:
            logger.warning("task_run event=agent_failed task_id=%s reason=%s", task.task_id, exc)
            result = ExecutionResult(status=WorkStatus.FAILED, error=str(exc))
        else:
            result = ExecutionResult(
                status=WorkStatus.COMPLETED,
                output=response.output,
                tokens_total=response.total_tokens,
                usage=response.usage,
            )

        # The agent call is never interrupted; a cancel that arrived meanwhile wins now.
        if claimed.token.is_cancelled():
            result.status = WorkStatus.CANCELLED
        return result

    def _execute_team_run(self, claimed: ClaimedItem) -> ExecutionResult:
        run = cast(TeamRunRecord, claimed.record)
        verdict = self.pipeline.run(run, claimed.token)
        return ExecutionResult(
            status=verdict.status,
            output=verdict.output,
            error=verdict.error,
            tokens_total=verdict.tokens_total,
            step_summary=verdict.step_summary,
        )

    def _handle_fault(self, claimed: ClaimedItem, exc: InfrastructureError) -> ProcessOutcome:
        fault_count = claimed.record.fault_count + 1
        item = claimed.ref
        if fault_count > self.fault_retry_budget:
            logger.error(
                "work_item event=fault_budget_exhausted item=%s faults=%d reason=%s",
                item,
                fault_count,
                exc,
            )
            result = ExecutionResult(
                status=WorkStatus.FAILED,
                error=f"Infrastructure fault budget exhausted after {fault_count} fault(s): {exc}",
            )
            try:
                self.store_retry.call(
                    self.store.conditional_update_status,
                    item,
                    WorkStatus.RUNNING,
                    WorkStatus.RUNNING,
                    expected_claim=claimed.claim_id,
                    fault_count=fault_count,
                )
                self.finalize(claimed, result)
            except InfrastructureError:
                logger.exception("work_item event=finalize_failed item=%s", item)
                return ProcessOutcome(item=item, claim=ClaimResult.CLAIMED, status=WorkStatus.RUNNING)
            return ProcessOutcome(item=item, claim=ClaimResult.CLAIMED, status=WorkStatus.FAILED)

        changes: dict[str, Any] = {
            "fault_count": fault_count,
            "claimed_by_runner": None,
            "claim_id": None,
        }
        if item.kind is WorkItemKind.TEAM_RUN:
            # The retry records its step executions under a fresh generation.
            changes["generation"] = cast(TeamRunRecord, claimed.record).generation + 1
            changes["current_step_idx"] = None
        try:
            released = self.store_retry.call(
                self.store.conditional_update_status,
                item,
                WorkStatus.RUNNING,
                item.kind.ready_status,
                expected_claim=claimed.claim_id,
                **changes,
            )
        except InfrastructureError:
            logger.exception("work_item event=release_failed item=%s", item)
            return ProcessOutcome(item=item, claim=ClaimResult.CLAIMED, status=WorkStatus.RUNNING)

        if not released:
            logger.warning(
                "work_item event=release_skipped item=%s reason=claim_superseded fault=%s",
                item,
                exc,
            )
            return ProcessOutcome(item=item, claim=ClaimResult.CLAIMED)

        logger.warning(
            "work_item event=requeued item=%s faults=%d/%d reason=%s",
            item,
            fault_count,
            self.fault_retry_budget,
            exc,
        )
        self._audit(claimed, "requeued", {"fault_count": fault_count, "error": str(exc)})
        return ProcessOutcome(
            item=item,
            claim=ClaimResult.CLAIMED,
            status=item.kind.ready_status,
            requeued=True,
        )

    def _load(self, item: WorkItemRef) -> WorkRecord | None:
        if item.kind is WorkItemKind.TASK:
            return self.store_retry.call(self.store.get_task, item.item_id)
        return self.store_retry.call(self.store.get_team_run, item.item_id)

    def _audit(self, claimed: ClaimedItem, event: str, details: dict[str, Any]) -> None:
        record = claimed.record
        payload = {
            f"{claimed.ref.kind.value}_id": claimed.ref.item_id,
            "runner_id": self.runner_id,
            **details,
        }
        if isinstance(record, TeamRunRecord):
            payload["team_id"] = record.team_id
            payload["generation"] = record.generation
        try:
            self.audit.append(
                record.workspace_id,
                record.created_by,
                f"{claimed.ref.kind.value}_{event}",
                payload,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("audit append failed item=%s event=%s reason=%s", claimed.ref, event, exc)


def require_record(store: StatusStore, item: WorkItemRef) -> WorkRecord:
    record: WorkRecord | None
    if item.kind is WorkItemKind.TASK:
        record = store.get_task(item.item_id)
    else:
        record = store.get_team_run(item.item_id)
    if record is None:
        raise WorkItemNotFoundError(item.kind.value, item.item_id)
    return record
