"""Pipeline step engine: sequential step execution with per-step failure policy.

Each step of a team run's snapshot runs in index order. A failed attempt is
handed to the handler registered for the step's ``on_failure`` policy, which
decides whether to retry the step, continue with the next one, or abort the
run. Every attempt is recorded as its own step execution row.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from team_runner.agents.base import AgentExecutor
from team_runner.agents.prompts import build_handoff_context, build_step_input
from team_runner.errors import AgentExecutionError, InfrastructureError
from team_runner.runner.cancellation import CancellationToken
from team_runner.runner.retry import StoreRetryPolicy
from team_runner.storage.base import StatusStore
from team_runner.storage.models import (
    FailurePolicy,
    PipelineStep,
    StepOutcome,
    TeamRunRecord,
    WorkStatus,
)

logger = logging.getLogger(__name__)


class StepDecision(str, Enum):
    RETRY = "retry"
    CONTINUE = "continue"
    ABORT = "abort"


def _on_stop(step: PipelineStep, attempt: int) -> StepDecision:
    return StepDecision.ABORT


def _on_skip(step: PipelineStep, attempt: int) -> StepDecision:
    return StepDecision.CONTINUE


def _on_retry(step: PipelineStep, attempt: int) -> StepDecision:
    # Exhausted retries abort the run; retry never degrades to skip.
    if attempt < step.max_retries + 1:
        return StepDecision.RETRY
    return StepDecision.ABORT


FAILURE_HANDLERS: dict[FailurePolicy, Callable[[PipelineStep, int], StepDecision]] = {
    FailurePolicy.STOP: _on_stop,
    FailurePolicy.SKIP: _on_skip,
    FailurePolicy.RETRY: _on_retry,
}


@dataclass
class StepResult:
    outcome: StepOutcome
    attempts: int
    output: str | None = None
    error: str | None = None
    tokens: int = 0
    abort: bool = False
    cancelled: bool = False


@dataclass
class PipelineVerdict:
    """Terminal result of one pipeline execution."""

    status: WorkStatus
    output: str | None = None
    error: str | None = None
    tokens_total: int = 0
    step_summary: list[dict[str, Any]] = field(default_factory=list)


class PipelineStepEngine:
    def __init__(
        self,
        store: StatusStore,
        executor: AgentExecutor,
        *,
        store_retry: StoreRetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.store_retry = store_retry or StoreRetryPolicy()

    def run(self, run: TeamRunRecord, token: CancellationToken) -> PipelineVerdict:
        steps = run.steps
        if not steps:
            return PipelineVerdict(
                status=WorkStatus.FAILED, error="Pipeline has no steps configured."
            )

        accumulated_outputs: list[str] = []
        previous_output: str | None = None
        summary: list[dict[str, Any]] = []
        tokens_total = 0
        status = WorkStatus.COMPLETED
        error: str | None = None

        for index, step in enumerate(steps):
            if token.is_cancelled():
                status = WorkStatus.CANCELLED
                break

            self.store_retry.call(self.store.update_fields, run.ref, current_step_idx=index)
            context = build_handoff_context(
                input_task=run.input_task,
                previous_output=previous_output,
                step_index=index,
                step_name=step.step_name,
                accumulated_outputs=accumulated_outputs,
            )
            result = self._run_step(run, index, step, context, token)
            tokens_total += result.tokens
            summary.append(_summary_entry(index, step, result))

            if result.outcome is StepOutcome.SUCCEEDED and result.output is not None:
                accumulated_outputs.append(result.output)
                previous_output = result.output
            # A cancel observed once the call returns wins over the step outcome.
            if result.cancelled or (result.abort and token.is_cancelled()):
                status = WorkStatus.CANCELLED
                break
            if result.abort:
                status = WorkStatus.FAILED
                error = (
                    f'Step "{step.step_name}" failed after {result.attempts} '
                    f"attempt(s): {result.error}"
                )
                break
        else:
            # A cancel that arrived while the last step was in flight.
            if token.is_cancelled():
                status = WorkStatus.CANCELLED

        for index in range(len(summary), len(steps)):
            summary.append(
                {
                    "step_index": index,
                    "step_name": steps[index].step_name,
                    "agent_id": steps[index].agent_id,
                    "outcome": StepOutcome.SKIPPED.value,
                    "attempts": 0,
                    "error": None,
                }
            )

        logger.info(
            "pipeline_run event=finished run_id=%s generation=%s status=%s steps=%d tokens=%d",
            run.run_id,
            run.generation,
            status.value,
            len(steps),
            tokens_total,
        )
        return PipelineVerdict(
            status=status,
            output=previous_output,
            error=error,
            tokens_total=tokens_total,
            step_summary=summary,
        )

    def _run_step(
        self,
        run: TeamRunRecord,
        index: int,
        step: PipelineStep,
        context: dict[str, Any],
        token: CancellationToken,
    ) -> StepResult:
        handler = FAILURE_HANDLERS[step.on_failure]
        payload = build_step_input(step, context)
        attempt = 0
        while True:
            attempt += 1
            execution = self.store_retry.call(
                self.store.insert_step_execution,
                run_id=run.run_id,
                generation=run.generation,
                step_index=index,
                step_name=step.step_name,
                agent_id=step.agent_id,
                attempt=attempt,
            )
            logger.info(
                "pipeline_step event=start run_id=%s step=%d/%d name=%s attempt=%d/%d",
                run.run_id,
                index + 1,
                len(run.steps),
                step.step_name,
                attempt,
                step.max_attempts,
            )
            try:
                response = self.executor.invoke(step.agent_id, payload)
            except AgentExecutionError as exc:
                self.store_retry.call(
                    self.store.complete_step_execution,
                    execution.execution_id,
                    outcome=StepOutcome.FAILED,
                    error=str(exc),
                )
                decision = handler(step, attempt)
                logger.warning(
                    "pipeline_step event=failed run_id=%s step=%d name=%s attempt=%d "
                    "policy=%s decision=%s reason=%s",
                    run.run_id,
                    index + 1,
                    step.step_name,
                    attempt,
                    step.on_failure.value,
                    decision.value,
                    exc,
                )
                if decision is StepDecision.RETRY:
                    if token.is_cancelled():
                        return StepResult(
                            outcome=StepOutcome.FAILED,
                            attempts=attempt,
                            error=str(exc),
                            cancelled=True,
                        )
                    continue
                return StepResult(
                    outcome=StepOutcome.FAILED,
                    attempts=attempt,
                    error=str(exc),
                    abort=decision is StepDecision.ABORT,
                )
            except InfrastructureError as exc:
                self._mark_failed_quietly(execution.execution_id, exc)
                raise

            self.store_retry.call(
                self.store.complete_step_execution,
                execution.execution_id,
                outcome=StepOutcome.SUCCEEDED,
                output=response.output,
                usage=response.usage,
            )
            return StepResult(
                outcome=StepOutcome.SUCCEEDED,
                attempts=attempt,
                output=response.output,
                tokens=response.total_tokens,
            )

    def _mark_failed_quietly(self, execution_id: int, exc: Exception) -> None:
        try:
            self.store.complete_step_execution(
                execution_id,
                outcome=StepOutcome.FAILED,
                error=f"Infrastructure fault: {exc}",
            )
        except InfrastructureError:
            logger.warning(
                "pipeline_step could not close execution_id=%s after fault", execution_id
            )


def _summary_entry(index: int, step: PipelineStep, result: StepResult) -> dict[str, Any]:
    return {
        "step_index": index,
        "step_name": step.step_name,
        "agent_id": step.agent_id,
        "outcome": result.outcome.value,
        "attempts": result.attempts,
        "error": result.error,
    }
