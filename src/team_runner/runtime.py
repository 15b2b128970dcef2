"""Build runtime components from settings."""

from __future__ import annotations

from dataclasses import dataclass

from team_runner.agents.base import AgentExecutor
from team_runner.agents.deterministic import DeterministicAgentExecutor
from team_runner.agents.gateway import AgentGateway
from team_runner.agents.openai import OpenAIAgentExecutor
from team_runner.config.settings import Settings
from team_runner.errors import ConfigurationError
from team_runner.runner.audit import BackgroundAuditWriter, StoreAuditSink
from team_runner.runner.controller import RerunCancelController
from team_runner.runner.coordinator import ExecutionCoordinator
from team_runner.runner.reaper import StaleRunReaper
from team_runner.runner.retry import StoreRetryPolicy
from team_runner.runner.watcher import DispatchWatcher
from team_runner.storage.base import StatusStore
from team_runner.storage.memory import InMemoryStatusStore
from team_runner.storage.postgres import PostgresStatusStore


def build_store(settings: Settings) -> StatusStore:
    if settings.storage_backend == "memory":
        return InMemoryStatusStore()
    database_url = settings.resolved_database_url()
    if not database_url:
        raise ConfigurationError(
            "Missing database URL. Set TEAM_RUNNER_DATABASE_URL or DATABASE_URL, "
            "or use TEAM_RUNNER_STORAGE_BACKEND=memory."
        )
    return PostgresStatusStore(database_url)


def build_agent_executor(settings: Settings, store: StatusStore) -> AgentExecutor:
    executor: AgentExecutor
    if settings.executor_mode == "openai":
        api_key = settings.resolved_openai_api_key()
        if not api_key:
            raise ConfigurationError(
                "executor_mode=openai requires TEAM_RUNNER_OPENAI_API_KEY or OPENAI_API_KEY."
            )
        executor = OpenAIAgentExecutor(
            agent_lookup=store.get_agent,
            api_key=api_key,
            base_url=settings.llm_base_url,
            default_model=settings.llm_default_model,
            request_timeout_s=settings.agent_timeout_s,
        )
    else:
        executor = DeterministicAgentExecutor()
    return AgentGateway(
        executor,
        timeout_s=settings.agent_timeout_s,
        max_retries=settings.agent_max_retries,
        backoff_s=settings.agent_backoff_s,
    )


@dataclass
class Runtime:
    """Everything a worker process needs, wired to one store."""

    settings: Settings
    store: StatusStore
    audit: BackgroundAuditWriter
    coordinator: ExecutionCoordinator
    watcher: DispatchWatcher
    reaper: StaleRunReaper
    controller: RerunCancelController

    def close(self) -> None:
        self.watcher.shutdown(wait=True)
        self.audit.close()


def build_runtime(
    settings: Settings,
    *,
    store: StatusStore | None = None,
    executor: AgentExecutor | None = None,
    runner_id: str | None = None,
) -> Runtime:
    store = store or build_store(settings)
    audit = BackgroundAuditWriter(StoreAuditSink(store), queue_size=settings.audit_queue_size)
    coordinator = ExecutionCoordinator(
        store,
        executor or build_agent_executor(settings, store),
        audit,
        runner_id=runner_id,
        fault_retry_budget=settings.fault_retry_budget,
        store_retry=StoreRetryPolicy(
            retries=settings.store_write_retries,
            backoff_s=settings.store_retry_backoff_s,
        ),
    )
    watcher = DispatchWatcher(
        store,
        coordinator,
        poll_interval_s=settings.poll_interval_s,
        batch_size=settings.poll_batch_size,
        max_concurrency=settings.max_concurrency,
    )
    return Runtime(
        settings=settings,
        store=store,
        audit=audit,
        coordinator=coordinator,
        watcher=watcher,
        reaper=StaleRunReaper(store, audit, timeout_s=settings.reaper_timeout_s),
        controller=RerunCancelController(store, audit),
    )
