"""Worker process: dispatch watcher, stale run reaper and runner heartbeat."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
import time
from typing import Any

from team_runner.config.settings import Settings, get_settings
from team_runner.runner.registry import RunnerRegistry
from team_runner.runtime import Runtime, build_runtime, build_store

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the team-runner dispatch loop until interrupted."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll and reap pass, wait for submitted work, then exit.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override TEAM_RUNNER_LOG_LEVEL.",
    )
    return parser.parse_args(argv)


def run_loop(runtime: Runtime, stop_event: threading.Event) -> None:
    settings = runtime.settings
    next_reap = 0.0
    while not stop_event.is_set():
        runtime.watcher.poll_once()
        if runtime.reaper.enabled and time.monotonic() >= next_reap:
            runtime.reaper.reap_once()
            next_reap = time.monotonic() + max(
                settings.poll_interval_s, settings.reaper_timeout_s / 4
            )
        stop_event.wait(settings.poll_interval_s)


def main(argv: list[str] | None = None, *, settings: Settings | None = None) -> int:
    args = _parse_args(argv)
    settings = settings or get_settings()
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    store = build_store(settings)
    store.migrate()
    registry = RunnerRegistry(
        store,
        max_concurrency=settings.max_concurrency,
        heartbeat_interval_s=settings.heartbeat_interval_s,
    )
    runner_id = registry.register()
    runtime = build_runtime(settings, store=store, runner_id=runner_id)

    stop_event = threading.Event()

    def _request_stop(signum: int, _frame: Any) -> None:
        logger.info("worker event=signal signum=%d", signum)
        stop_event.set()

    previous_handlers = {
        signum: signal.signal(signum, _request_stop) for signum in (signal.SIGINT, signal.SIGTERM)
    }

    logger.info(
        "worker event=started runner_id=%s storage=%s executor=%s",
        runner_id,
        settings.storage_backend,
        settings.executor_mode,
    )
    try:
        if args.once:
            runtime.watcher.poll_once()
            runtime.reaper.reap_once()
            runtime.watcher.wait_idle()
        else:
            run_loop(runtime, stop_event)
    finally:
        runtime.close()
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
        registry.deregister()
        logger.info("worker event=stopped runner_id=%s", runner_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
