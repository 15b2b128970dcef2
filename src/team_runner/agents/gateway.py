"""Agent invocation gateway with timeout and transient-fault retry."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError

from team_runner.agents.base import AgentExecutor, AgentInput, AgentOutput
from team_runner.errors import AgentExecutionError, InfrastructureError

logger = logging.getLogger(__name__)


class AgentGateway:
    """Wrap an ``AgentExecutor`` with a per-call timeout and local retries.

    Only errors the executor marks ``retryable`` (and timeouts) are retried
    here. Policy-driven step retries belong to the pipeline engine and see a
    single failure once this gateway gives up.
    """

    def __init__(
        self,
        executor: AgentExecutor,
        *,
        timeout_s: float = 120.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        self.executor = executor
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def invoke(self, agent_id: str, payload: AgentInput) -> AgentOutput:
        last_error: AgentExecutionError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._invoke_once(agent_id, payload)
            except AgentExecutionError as exc:
                last_error = exc
                if not exc.retryable:
                    raise
                logger.warning(
                    "agent_invoke transient failure attempt=%d/%d agent_id=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    agent_id,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s * (attempt + 1))
        if last_error is None:
            raise AgentExecutionError("Agent invocation failed with unknown error")
        raise last_error

    def _invoke_once(self, agent_id: str, payload: AgentInput) -> AgentOutput:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="agent-invoke")
        try:
            future = pool.submit(self.executor.invoke, agent_id, payload)
            try:
                result = future.result(timeout=self.timeout_s)
            except TimeoutError as exc:
                raise AgentExecutionError(
                    f"Agent '{agent_id}' timed out after {self.timeout_s:.2f}s",
                    retryable=True,
                ) from exc
            except (AgentExecutionError, InfrastructureError):
                raise
            except Exception as exc:  # noqa: BLE001
                raise AgentExecutionError(f"Agent '{agent_id}' failed: {exc}") from exc
        finally:
            # A timed-out call keeps running in its worker thread; do not wait for it.
            pool.shutdown(wait=False)
        return AgentOutput.model_validate(result)
