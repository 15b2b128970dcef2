"""Stale run reaper: fail work items stuck in ``running``."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from team_runner.errors import InfrastructureError
from team_runner.runner.audit import AuditSink
from team_runner.storage.base import StatusStore
from team_runner.storage.models import WorkItemKind, WorkItemRef, WorkStatus

logger = logging.getLogger(__name__)

STALE_CLAIM_ERROR = "stale claim reclaimed"


class StaleRunReaper:
    def __init__(self, store: StatusStore, audit: AuditSink, *, timeout_s: float) -> None:
        self.store = store
        self.audit = audit
        self.timeout_s = timeout_s

    @property
    def enabled(self) -> bool:
        return self.timeout_s > 0

    def reap_once(self, now: datetime | None = None) -> list[WorkItemRef]:
        """Move every ``running`` item idle for longer than the timeout to ``failed``."""
        if not self.enabled:
            return []
        cutoff = (now or datetime.now(UTC)) - timedelta(seconds=self.timeout_s)
        reaped: list[WorkItemRef] = []
        for kind in (WorkItemKind.TASK, WorkItemKind.TEAM_RUN):
            try:
                stale_ids = self.store.list_stale_items(kind, WorkStatus.RUNNING, cutoff)
            except InfrastructureError as exc:
                logger.warning("reaper event=list_failed kind=%s reason=%s", kind.value, exc)
                continue
            for item_id in stale_ids:
                item = WorkItemRef(kind=kind, item_id=item_id)
                if self._reap(item):
                    reaped.append(item)
        return reaped

    def _reap(self, item: WorkItemRef) -> bool:
        error_field = "error" if item.kind is WorkItemKind.TASK else "error_message"
        changes = {error_field: STALE_CLAIM_ERROR, "finished_at": datetime.now(UTC)}
        try:
            won = self.store.conditional_update_status(
                item, WorkStatus.RUNNING, WorkStatus.FAILED, **changes
            )
        except InfrastructureError as exc:
            logger.warning("reaper event=reap_failed item=%s reason=%s", item, exc)
            return False
        if not won:
            return False

        logger.warning("reaper event=reclaimed item=%s timeout_s=%s", item, self.timeout_s)
        record = (
            self.store.get_task(item.item_id)
            if item.kind is WorkItemKind.TASK
            else self.store.get_team_run(item.item_id)
        )
        if record is not None:
            try:
                self.audit.append(
                    record.workspace_id,
                    record.created_by,
                    f"{item.kind.value}_reaped",
                    {
                        f"{item.kind.value}_id": item.item_id,
                        "claimed_by_runner": record.claimed_by_runner,
                        "error": STALE_CLAIM_ERROR,
                    },
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("audit append failed item=%s event=reaped reason=%s", item, exc)
        return True
