"""Dispatch watcher: discover ready work and hand it to the coordinator."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from itertools import chain, zip_longest

from team_runner.errors import InfrastructureError
from team_runner.runner.coordinator import ExecutionCoordinator, ProcessOutcome
from team_runner.storage.base import StatusStore
from team_runner.storage.models import WorkItemKind, WorkItemRef

logger = logging.getLogger(__name__)


class DispatchWatcher:
    """Poll the store for dispatched Tasks and pending Team Runs.

    Discovery never writes, so several watchers may poll the same store;
    the coordinator's claim decides who runs an item.
    """

    def __init__(
        self,
        store: StatusStore,
        coordinator: ExecutionCoordinator,
        *,
        poll_interval_s: float = 5.0,
        batch_size: int = 25,
        max_concurrency: int = 3,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.poll_interval_s = poll_interval_s
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self._pool = ThreadPoolExecutor(
            max_workers=max_concurrency, thread_name_prefix="team-runner"
        )
        self._in_flight: dict[WorkItemRef, Future[ProcessOutcome | None]] = {}
        self._kind_order = (WorkItemKind.TASK, WorkItemKind.TEAM_RUN)
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)

    def discover(self) -> list[WorkItemRef]:
        """List ready Tasks and Team Runs interleaved one by one.

        The kind that leads alternates between passes, so a backlog of one
        kind never keeps the other out of a saturated pool.
        """
        by_kind: dict[WorkItemKind, list[WorkItemRef]] = {}
        for kind in (WorkItemKind.TASK, WorkItemKind.TEAM_RUN):
            ids = self.store.list_ready_items(kind, kind.ready_status, limit=self.batch_size)
            by_kind[kind] = [WorkItemRef(kind=kind, item_id=item_id) for item_id in ids]

        with self._lock:
            lead, trail = self._kind_order
            self._kind_order = (trail, lead)
        pairs = zip_longest(by_kind[lead], by_kind[trail])
        return [item for item in chain.from_iterable(pairs) if item is not None]

    def poll_once(self) -> list[WorkItemRef]:
        """Run one discovery pass and submit new items to the worker pool."""
        try:
            candidates = self.discover()
        except InfrastructureError as exc:
            logger.warning("dispatch_poll event=discover_failed reason=%s", exc)
            return []

        submitted: list[WorkItemRef] = []
        with self._lock:
            for item in candidates:
                if len(self._in_flight) >= self.max_concurrency:
                    break
                if item in self._in_flight:
                    continue
                future = self._pool.submit(self._process, item)
                self._in_flight[item] = future
                future.add_done_callback(lambda _f, ref=item: self._release(ref))
                submitted.append(item)
        if submitted:
            logger.info(
                "dispatch_poll event=submitted count=%d found=%d", len(submitted), len(candidates)
            )
        return submitted

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(
            "dispatch_watcher event=started poll_interval_s=%s max_concurrency=%d",
            self.poll_interval_s,
            self.max_concurrency,
        )
        while not stop_event.is_set():
            self.poll_once()
            stop_event.wait(self.poll_interval_s)
        logger.info("dispatch_watcher event=stopping")

    def wait_idle(self, timeout_s: float | None = None) -> bool:
        """Block until every submitted item has finished and been released."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout=timeout_s)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _process(self, item: WorkItemRef) -> ProcessOutcome | None:
        try:
            return self.coordinator.process(item)
        except Exception:  # noqa: BLE001
            logger.exception("dispatch_worker event=crashed item=%s", item)
            return None

    def _release(self, item: WorkItemRef) -> None:
        with self._idle:
            self._in_flight.pop(item, None)
            self._idle.notify_all()
