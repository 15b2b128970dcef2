"""Agent executor adapters."""

from team_runner.agents.base import AgentExecutor, AgentInput, AgentOutput
from team_runner.agents.deterministic import DeterministicAgentExecutor
from team_runner.agents.gateway import AgentGateway
from team_runner.agents.openai import OpenAIAgentExecutor

__all__ = [
    "AgentExecutor",
    "AgentGateway",
    "AgentInput",
    "AgentOutput",
    "DeterministicAgentExecutor",
    "OpenAIAgentExecutor",
]
