"""Rerun and cancel operations driven by user actions."""

from __future__ import annotations

import logging
from typing import Any, cast

from team_runner.errors import StateConflictError, WorkItemNotFoundError
from team_runner.runner.audit import AuditSink
from team_runner.runner.coordinator import WorkRecord, require_record
from team_runner.storage.base import StatusStore
from team_runner.storage.models import (
    TaskRecord,
    TeamRunRecord,
    WorkItemKind,
    WorkItemRef,
    WorkStatus,
)

logger = logging.getLogger(__name__)

RERUNNABLE = (WorkStatus.COMPLETED, WorkStatus.FAILED, WorkStatus.CANCELLED)

# A status can change between our read and our conditional write at most a
# few times (ready -> running -> terminal) before the answer is stable.
_MAX_RACE_ROUNDS = 5


class RerunCancelController:
    """Reset terminal work items or cancel in-flight ones.

    Every transition is a conditional write, so a coordinator moving the same
    item concurrently is never overwritten. A lost race is re-evaluated
    against the status the item actually has now.
    """

    def __init__(self, store: StatusStore, audit: AuditSink) -> None:
        self.store = store
        self.audit = audit

    def dispatch_task(self, task_id: str, *, actor_id: str | None = None) -> TaskRecord:
        """Hand a pending task to the dispatch watcher."""
        ref = WorkItemRef(kind=WorkItemKind.TASK, item_id=task_id)
        current = require_record(self.store, ref)
        if not self.store.conditional_update_status(
            ref, WorkStatus.PENDING, WorkStatus.DISPATCHED
        ):
            status = self.store.read_status(ref) or current.status
            raise StateConflictError(ref.kind.value, task_id, status.value, "dispatch")
        self._audit(current, "dispatched", actor_id, {})
        logger.info("task_run event=dispatched task_id=%s", task_id)
        return cast(TaskRecord, require_record(self.store, ref))

    def rerun_task(self, task_id: str, *, actor_id: str | None = None) -> TaskRecord:
        ref = WorkItemRef(kind=WorkItemKind.TASK, item_id=task_id)
        changes: dict[str, Any] = {
            "result": None,
            "error": None,
            "claimed_by_runner": None,
            "claim_id": None,
            "fault_count": 0,
            "cancel_requested": False,
            "started_at": None,
            "finished_at": None,
        }
        return cast(TaskRecord, self._rerun(ref, WorkStatus.DISPATCHED, changes, actor_id))

    def rerun_team_run(self, run_id: str, *, actor_id: str | None = None) -> TeamRunRecord:
        ref = WorkItemRef(kind=WorkItemKind.TEAM_RUN, item_id=run_id)
        for _ in range(_MAX_RACE_ROUNDS):
            current = cast(TeamRunRecord, require_record(self.store, ref))
            if current.status not in RERUNNABLE:
                raise StateConflictError(ref.kind.value, run_id, current.status.value, "rerun")
            changes: dict[str, Any] = {
                "generation": current.generation + 1,
                "current_step_idx": None,
                "output": None,
                "error_message": None,
                "tokens_total": 0,
                "step_summary": [],
                "claimed_by_runner": None,
                "claim_id": None,
            "claim_id": None,
                "fault_count": 0,
                "cancel_requested": False,
                "started_at": None,
                "finished_at": None,
            }
            # Expect the exact status just read so the generation bump is not lost.
            if self.store.conditional_update_status(
                ref, current.status, WorkStatus.PENDING, **changes
            ):
                self._audit(current, "rerun", actor_id, {"generation": current.generation + 1})
                logger.info(
                    "team_run event=rerun run_id=%s generation=%d",
                    run_id,
                    current.generation + 1,
                )
                return cast(TeamRunRecord, require_record(self.store, ref))
        raise StateConflictError(ref.kind.value, run_id, "changing", "rerun")

    def cancel(self, item: WorkItemRef, *, actor_id: str | None = None) -> WorkRecord:
        for _ in range(_MAX_RACE_ROUNDS):
            current = require_record(self.store, item)
            status = current.status
            if status.is_terminal:
                raise StateConflictError(item.kind.value, item.item_id, status.value, "cancel")

            if status is WorkStatus.RUNNING:
                # The owning coordinator observes the flag at its next check.
                if not self.store.conditional_update_status(
                    item, WorkStatus.RUNNING, WorkStatus.RUNNING, cancel_requested=True
                ):
                    # Finished or reset in between; decide again on the new status.
                    continue
                self._audit(current, "cancel_requested", actor_id, {"status": status.value})
                logger.info("work_item event=cancel_requested item=%s", item)
                return require_record(self.store, item)

            if self.store.conditional_update_status(
                item,
                status,
                WorkStatus.CANCELLED,
                cancel_requested=True,
            ):
                self._audit(current, "cancelled", actor_id, {"status": status.value})
                logger.info("work_item event=cancelled item=%s from=%s", item, status.value)
                return require_record(self.store, item)
            logger.debug("work_item event=cancel_race item=%s from=%s", item, status.value)

        raise StateConflictError(item.kind.value, item.item_id, "changing", "cancel")

    def cancel_task(self, task_id: str, *, actor_id: str | None = None) -> TaskRecord:
        record = self.cancel(WorkItemRef(kind=WorkItemKind.TASK, item_id=task_id), actor_id=actor_id)
        return cast(TaskRecord, record)

    def cancel_team_run(self, run_id: str, *, actor_id: str | None = None) -> TeamRunRecord:
        record = self.cancel(
            WorkItemRef(kind=WorkItemKind.TEAM_RUN, item_id=run_id), actor_id=actor_id
        )
        return cast(TeamRunRecord, record)

    def _rerun(
        self,
        ref: WorkItemRef,
        target: WorkStatus,
        changes: dict[str, Any],
        actor_id: str | None,
    ) -> WorkRecord:
        current = require_record(self.store, ref)
        if current.status not in RERUNNABLE:
            raise StateConflictError(ref.kind.value, ref.item_id, current.status.value, "rerun")
        if not self.store.conditional_update_status(ref, RERUNNABLE, target, **changes):
            status = self.store.read_status(ref)
            if status is None:
                raise WorkItemNotFoundError(ref.kind.value, ref.item_id)
            raise StateConflictError(ref.kind.value, ref.item_id, status.value, "rerun")
        self._audit(current, "rerun", actor_id, {"previous_status": current.status.value})
        logger.info("work_item event=rerun item=%s previous=%s", ref, current.status.value)
        return require_record(self.store, ref)

    def _audit(
        self,
        record: WorkRecord,
        event: str,
        actor_id: str | None,
        details: dict[str, Any],
    ) -> None:
        kind = record.ref.kind.value
        try:
            self.audit.append(
                record.workspace_id,
                actor_id or record.created_by,
                f"{kind}_{event}",
                {f"{kind}_id": record.ref.item_id, **details},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("audit append failed item=%s event=%s reason=%s", record.ref, event, exc)
