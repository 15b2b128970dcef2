"""Agent executor backed by OpenAI-compatible chat completions."""

from __future__ import annotations

import json
import logging
import socket
from collections.abc import Callable
from typing import Any
from urllib import error, request

from team_runner.agents.base import AgentInput, AgentOutput
from team_runner.errors import AgentExecutionError
from team_runner.storage.models import AgentRecord

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

# Providers that speak the OpenAI chat completions protocol.
PROVIDER_BASE_URLS = {
    "openrouter": "https://openrouter.ai/api/v1",
    "groq": "https://api.groq.com/openai/v1",
    "mistral": "https://api.mistral.ai/v1",
    "together": "https://api.together.xyz/v1",
    "perplexity": "https://api.perplexity.ai",
}

RETRYABLE_HTTP_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class OpenAIAgentExecutor:
    """Resolve the agent's provider/model/system prompt and call chat completions."""

    def __init__(
        self,
        *,
        agent_lookup: Callable[[str], AgentRecord | None],
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        default_model: str = "gpt-4o-mini",
        request_timeout_s: float = 120.0,
    ) -> None:
        self.agent_lookup = agent_lookup
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.request_timeout_s = request_timeout_s

    def invoke(self, agent_id: str, payload: AgentInput) -> AgentOutput:
        agent = self.agent_lookup(agent_id)
        if agent is None:
            raise AgentExecutionError(f"Agent {agent_id} not found")

        provider = agent.provider.lower()
        base_url = self._base_url_for(provider)
        model = _strip_provider_prefix(agent.model or self.default_model, provider)
        body = {
            "model": model,
            "temperature": agent.temperature,
            "messages": [
                {"role": "system", "content": agent.system_prompt or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": payload.prompt},
            ],
        }
        logger.debug(
            "agent_invoke provider=%s model=%s agent_id=%s", provider, model, agent_id
        )
        response_json = self._request(base_url, body)
        content = self._extract_content(response_json)
        usage = response_json.get("usage")
        usage_payload = dict(usage) if isinstance(usage, dict) else {}
        usage_payload.update({"provider": provider, "model": model})
        return AgentOutput(output=content, usage=usage_payload)

    def _base_url_for(self, provider: str) -> str:
        if provider == "openai":
            return self.base_url
        base_url = PROVIDER_BASE_URLS.get(provider)
        if base_url is None:
            raise AgentExecutionError(f'Provider "{provider}" is not supported.')
        return base_url

    def _request(self, base_url: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise AgentExecutionError("No API key configured for agent execution")
        req = request.Request(
            url=f"{base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.request_timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise AgentExecutionError(
                f"Chat completions request failed status={exc.code}: {raw_error}",
                retryable=exc.code in RETRYABLE_HTTP_STATUSES,
            ) from exc
        except (error.URLError, TimeoutError, socket.timeout) as exc:
            raise AgentExecutionError(
                f"Chat completions request failed: {exc}", retryable=True
            ) from exc
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise AgentExecutionError("Chat completions response was not valid JSON") from exc

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise AgentExecutionError("Chat completions response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise AgentExecutionError("Chat completions content could not be parsed as text")


def _strip_provider_prefix(model: str, provider: str) -> str:
    prefix = f"{provider}/"
    if provider in {"openrouter", "groq"} and model.startswith(prefix):
        return model[len(prefix) :]
    return model
