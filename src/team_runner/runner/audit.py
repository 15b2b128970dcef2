"""Audit sinks: a store-backed sink and a fire-and-forget background writer."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Protocol

from team_runner.storage.base import StatusStore

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def append(
        self,
        workspace_id: str,
        actor_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None: ...


class StoreAuditSink:
    """Append audit entries to the status store's audit log."""

    def __init__(self, store: StatusStore) -> None:
        self.store = store

    def append(
        self,
        workspace_id: str,
        actor_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        self.store.append_audit(
            workspace_id=workspace_id,
            actor_id=actor_id,
            action=action,
            details=details,
        )


class BackgroundAuditWriter:
    """Queue audit entries and deliver them to ``sink`` on a daemon thread.

    ``append`` only enqueues. Delivery failures and a full queue are logged
    and dropped; nothing raised by the sink can reach the caller.
    """

    _STOP = object()

    def __init__(self, sink: AuditSink, *, queue_size: int = 1000) -> None:
        self.sink = sink
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=queue_size)
        self._thread = threading.Thread(
            target=self._drain, name="audit-writer", daemon=True
        )
        self._thread.start()

    def append(
        self,
        workspace_id: str,
        actor_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        entry = (workspace_id, actor_id, action, dict(details))
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            logger.warning("audit dropped reason=queue_full action=%s", action)

    def flush(self) -> None:
        """Block until every queued entry has been attempted."""
        self._queue.join()

    def close(self, timeout_s: float = 5.0) -> None:
        self._queue.put(self._STOP)
        self._thread.join(timeout=timeout_s)

    def _drain(self) -> None:
        while True:
            entry = self._queue.get()
            try:
                if entry is self._STOP:
                    return
                workspace_id, actor_id, action, details = entry
                try:
                    self.sink.append(workspace_id, actor_id, action, details)
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "audit write failed action=%s workspace_id=%s reason=%s",
                        action,
                        workspace_id,
                        exc,
                    )
            finally:
                self._queue.task_done()
