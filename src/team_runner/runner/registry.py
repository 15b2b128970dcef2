"""Runner instance registration and heartbeat."""

from __future__ import annotations

import logging
import os
import socket
import threading

from team_runner.storage.base import StatusStore

logger = logging.getLogger(__name__)


def default_instance_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class RunnerRegistry:
    """Keeps one runner row alive for the lifetime of a worker process."""

    def __init__(
        self,
        store: StatusStore,
        *,
        max_concurrency: int,
        heartbeat_interval_s: float = 10.0,
        instance_name: str | None = None,
    ) -> None:
        self.store = store
        self.max_concurrency = max_concurrency
        self.heartbeat_interval_s = heartbeat_interval_s
        self.instance_name = instance_name or default_instance_name()
        self.runner_id: str | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def register(self) -> str:
        record = self.store.register_runner(
            instance_name=self.instance_name, max_concurrency=self.max_concurrency
        )
        self.runner_id = record.runner_id
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._heartbeat_loop, name="runner-heartbeat", daemon=True
        )
        self._thread.start()
        logger.info(
            "runner event=registered runner_id=%s instance=%s", self.runner_id, self.instance_name
        )
        return record.runner_id

    def heartbeat(self) -> None:
        if self.runner_id is None:
            return
        try:
            self.store.heartbeat_runner(self.runner_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("runner event=heartbeat_failed runner_id=%s reason=%s", self.runner_id, exc)

    def deregister(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.heartbeat_interval_s)
            self._thread = None
        if self.runner_id is None:
            return
        try:
            self.store.deregister_runner(self.runner_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "runner event=deregister_failed runner_id=%s reason=%s", self.runner_id, exc
            )
        logger.info("runner event=deregistered runner_id=%s", self.runner_id)
        self.runner_id = None

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_interval_s):
            self.heartbeat()
