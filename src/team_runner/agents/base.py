"""Agent executor contract consumed by the coordinator and the pipeline engine."""

from __future__ import annotations

from typing import Any, Protocol

from pydantic import BaseModel, Field


class AgentInput(BaseModel):
    """Payload handed to an agent invocation."""

    prompt: str
    context: dict[str, Any] = Field(default_factory=dict)


class AgentOutput(BaseModel):
    output: str
    usage: dict[str, Any] = Field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        value = self.usage.get("total_tokens", 0)
        return int(value) if isinstance(value, (int, float)) else 0


class AgentExecutor(Protocol):
    """Produce an output for ``agent_id`` or raise ``AgentExecutionError``."""

    def invoke(self, agent_id: str, payload: AgentInput) -> AgentOutput: ...
