"""Agent dispatch backends for agent_task steps."""

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlparse, urlunparse

import openai
from openai import OpenAI

from conductor.core.utils.logger import setup_logger
from conductor.settings import AgentSettings, get_agent_settings

_global_client: Optional[OpenAI] = None
_client_lock = threading.Lock()

logger = setup_logger("agent_client")


@dataclass
class AgentOutcome:
    """Result of a single agent dispatch."""

    success: bool
    output: Any = None
    error: Optional[str] = None
    retryable: bool = True


class AgentDispatcher(Protocol):
    """Backend that hands a prompt to an agent and reports the outcome."""

    def dispatch(self, prompt: str, config: Dict[str, Any]) -> AgentOutcome: ...


def normalize_base_url(base_url: str) -> str:
    """Normalize API base URL by ensuring /v1 suffix when needed."""
    url = base_url.strip()
    parsed = urlparse(url)
    path = parsed.path.rstrip("/")

    if not path:
        path = "/v1"

    return urlunparse(
        (parsed.scheme, parsed.netloc, path, parsed.params, parsed.query, parsed.fragment)
    )


def get_agent_client(settings: Optional[AgentSettings] = None) -> OpenAI:
    """Get global OpenAI-compatible client instance (thread-safe singleton)."""
    global _global_client

    if _global_client is None:
        with _client_lock:
            if _global_client is None:
                settings = settings or get_agent_settings()
                base_url = (settings.base_url or "").strip()
                api_key = (settings.api_key or "").strip()

                if not base_url or not api_key:
                    raise ValueError(
                        "AGENT_BASE_URL/OPENAI_BASE_URL and AGENT_API_KEY/OPENAI_API_KEY must be set"
                    )

                _global_client = OpenAI(base_url=normalize_base_url(base_url), api_key=api_key)

    return _global_client


class OpenAIAgentDispatcher:
    """Dispatches agent_task prompts to an OpenAI-compatible chat completion endpoint."""

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        client: Optional[OpenAI] = None,
    ):
        self.settings = settings or get_agent_settings()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_agent_client(self.settings)
        return self._client

    def dispatch(self, prompt: str, config: Dict[str, Any]) -> AgentOutcome:
        messages: List[dict] = []
        if config.get("systemPrompt"):
            messages.append({"role": "system", "content": config["systemPrompt"]})
        messages.append({"role": "user", "content": prompt})

        kwargs: Dict[str, Any] = {}
        if config.get("maxTokens"):
            kwargs["max_tokens"] = config["maxTokens"]
        if config.get("timeout"):
            kwargs["timeout"] = config["timeout"] / 1000

        try:
            client = self.client
        except ValueError as e:
            logger.error(f"Agent backend not configured: {e}")
            return AgentOutcome(success=False, error=str(e), retryable=False)

        try:
            response = client.chat.completions.create(
                model=self.settings.model,
                messages=messages,  # pyright: ignore[reportArgumentType]
                temperature=self.settings.temperature,
                **kwargs,
            )
        except (openai.AuthenticationError, openai.BadRequestError, openai.NotFoundError) as e:
            logger.error(f"Agent dispatch rejected: {e}")
            return AgentOutcome(success=False, error=str(e), retryable=False)
        except openai.OpenAIError as e:
            logger.warning(f"Agent dispatch failed: {e}")
            return AgentOutcome(success=False, error=str(e))

        if not response.choices or not response.choices[0].message.content:
            return AgentOutcome(success=False, error="Empty agent response")

        usage = response.usage.model_dump() if response.usage else None
        return AgentOutcome(
            success=True,
            output={
                "content": response.choices[0].message.content,
                "model": response.model,
                "usage": usage,
            },
        )
