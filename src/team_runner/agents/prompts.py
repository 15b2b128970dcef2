"""Prompt and handoff-context builders for task and pipeline invocations."""

from __future__ import annotations

from typing import Any

from team_runner.agents.base import AgentInput
from team_runner.storage.models import PipelineStep, TaskRecord


def build_handoff_context(
    *,
    input_task: str,
    previous_output: str | None,
    step_index: int,
    step_name: str,
    accumulated_outputs: list[str],
) -> dict[str, Any]:
    return {
        "input": input_task,
        "previous_output": previous_output,
        "step_index": step_index,
        "step_name": step_name,
        "accumulated_outputs": list(accumulated_outputs),
    }


def build_step_prompt(step: PipelineStep, context: dict[str, Any]) -> str:
    parts = [f"## Task\n{context.get('input', '')}"]

    previous_output = context.get("previous_output")
    if previous_output:
        parts.append(
            "## Previous Step Output\n"
            "The previous step in this pipeline produced the following output:\n\n"
            f"{previous_output}"
        )
    if step.instructions:
        parts.append(f"## Your Instructions\n{step.instructions}")
    if step.expected_output:
        parts.append(f"## Expected Output Format\n{step.expected_output}")

    accumulated = context.get("accumulated_outputs") or []
    if len(accumulated) > 1:
        step_number = int(context.get("step_index", 0)) + 1
        parts.append(
            "## Pipeline Context\n"
            f"This is step {step_number} in a multi-step pipeline. "
            f"{len(accumulated)} previous steps have completed."
        )
    return "\n\n".join(parts)


def build_step_input(step: PipelineStep, context: dict[str, Any]) -> AgentInput:
    return AgentInput(
        prompt=build_step_prompt(step, context),
        context={
            **context,
            "instructions": step.instructions,
            "expected_output": step.expected_output,
        },
    )


def build_task_input(task: TaskRecord) -> AgentInput:
    """Tasks run with their description as the prompt; the title travels as context."""
    return AgentInput(
        prompt=task.description,
        context={
            "task_id": task.task_id,
            "title": task.title,
            "priority": task.priority,
            "workspace_id": task.workspace_id,
        },
    )
