"""Cooperative cancellation token polled between pipeline steps."""

from __future__ import annotations

import threading

from team_runner.storage.base import StatusStore
from team_runner.storage.models import WorkItemRef


class CancellationToken:
    """Reports whether a cancel was requested for one work item.

    The store is consulted on every check so a cancel issued by another
    process is observed. Once observed, the token stays cancelled.
    """

    def __init__(self, store: StatusStore, item: WorkItemRef) -> None:
        self.store = store
        self.item = item
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        if self.store.is_cancel_requested(self.item):
            self._cancelled.set()
            return True
        return False
