"""Offline agent executor used for local runs and tests."""

from __future__ import annotations

from team_runner.agents.base import AgentInput, AgentOutput


class DeterministicAgentExecutor:
    """Echo the leading words of the prompt as the agent's output.

    Token usage is approximated by whitespace-separated word counts so usage
    totals are still populated without a model provider.
    """

    def __init__(self, *, max_words: int = 50) -> None:
        self.max_words = max_words

    def invoke(self, agent_id: str, payload: AgentInput) -> AgentOutput:
        words = payload.prompt.split()
        summary = " ".join(words[: self.max_words]).strip()
        output_words = len(summary.split())
        return AgentOutput(
            output=summary,
            usage={
                "prompt_tokens": len(words),
                "completion_tokens": output_words,
                "total_tokens": len(words) + output_words,
                "agent_id": agent_id,
                "implementation": "deterministic",
            },
        )
