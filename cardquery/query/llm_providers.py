"""
Language model providers used as the intent classifier's fallback.

Each provider sends one system + user prompt and returns the raw text
answer; the classifier parses and validates it.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from cardquery.core.log import get_logger

from .config import LLMProviderConfig, llm_config
from .errors import ExternalServiceFailure

LOGGER = get_logger(__name__)

JSON_ONLY_SUFFIX = "\n\nRespond with a single JSON object and nothing else."


class LLMProvider(ABC):
    """Base class for LLM providers"""

    name: str = "llm"

    @abstractmethod
    async def query(
        self,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool = True
    ) -> Dict[str, Any]:
        """Return ``{"content": <text>, "model": ..., "provider": ...}``."""
        raise NotImplementedError


class HTTPProvider(LLMProvider):
    """Shared request handling for hosted chat APIs."""

    endpoint: str = ""
    key_variable: str = ""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int,
        config: LLMProviderConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError(f"{self.name} API key not configured. Set {self.key_variable}.")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = config.request_timeout_s
        self.transport = transport

    @abstractmethod
    def headers(self) -> Dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    def payload(self, system_prompt: str, user_prompt: str, json_mode: bool) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def content_of(self, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def query(
        self,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool = True
    ) -> Dict[str, Any]:
        body = self.payload(system_prompt, user_prompt, json_mode)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.endpoint, headers=self.headers(), json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            LOGGER.error("%s request failed: %s", self.name, exc)
            raise ExternalServiceFailure(self.name, str(exc)) from exc
        except ValueError as exc:
            raise ExternalServiceFailure(self.name, f"Unreadable response body: {exc}") from exc

        return {
            "content": self.content_of(data),
            "model": self.model,
            "provider": self.name,
            "usage": data.get("usage", {}),
        }


class ClaudeProvider(HTTPProvider):
    """Anthropic Messages API."""

    name = "claude"
    endpoint = "https://api.anthropic.com/v1/messages"
    key_variable = "CLAUDE_API_KEY"

    def __init__(
        self,
        model: Optional[str] = None,
        config: Optional[LLMProviderConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or llm_config
        super().__init__(
            config.claude_api_key,
            model or config.claude_model,
            config.claude_max_tokens,
            config,
            transport,
        )

    def headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

    def payload(self, system_prompt: str, user_prompt: str, json_mode: bool) -> Dict[str, Any]:
        content = user_prompt + JSON_ONLY_SUFFIX if json_mode else user_prompt
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": content}],
        }

    def content_of(self, data: Dict[str, Any]) -> str:
        blocks = data.get("content") or []
        return "".join(block.get("text", "") for block in blocks if block.get("type", "text") == "text")


class ChatGPTProvider(HTTPProvider):
    """OpenAI Chat Completions API."""

    name = "chatgpt"
    endpoint = "https://api.openai.com/v1/chat/completions"
    key_variable = "OPENAI_API_KEY"

    def __init__(
        self,
        model: Optional[str] = None,
        config: Optional[LLMProviderConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or llm_config
        super().__init__(
            config.openai_api_key,
            model or config.openai_model,
            config.openai_max_tokens,
            config,
            transport,
        )

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def payload(self, system_prompt: str, user_prompt: str, json_mode: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    def content_of(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or [{}]
        return choices[0].get("message", {}).get("content") or ""


class LLMProviderFactory:
    """Factory to create appropriate LLM provider"""

    # Friendly name -> (provider class, model override or None for the configured default)
    ALIASES: Dict[str, tuple[type[HTTPProvider], Optional[str]]] = {
        "claude": (ClaudeProvider, None),
        "claude-haiku-4.5": (ClaudeProvider, None),
        "chatgpt": (ChatGPTProvider, None),
        "openai": (ChatGPTProvider, None),
        "gpt-4o-mini": (ChatGPTProvider, "gpt-4o-mini"),
    }

    @staticmethod
    def create(provider_name: str, config: Optional[LLMProviderConfig] = None) -> LLMProvider:
        """
        Create LLM provider instance

        Args:
            provider_name: Friendly alias or a full ``claude-*`` / ``gpt-*`` model id
            config: Keys and limits (defaults to the environment)

        Raises:
            ValueError: unknown provider or missing API key
        """
        normalized = (provider_name or "").strip().lower()
        alias = LLMProviderFactory.ALIASES.get(normalized)
        if alias is not None:
            provider_class, model = alias
            return provider_class(model=model, config=config)
        if normalized.startswith("claude"):
            return ClaudeProvider(model=provider_name.strip(), config=config)
        if normalized.startswith("gpt"):
            return ChatGPTProvider(model=provider_name.strip(), config=config)
        raise ValueError(f"Unknown LLM provider: {provider_name!r}")


__all__ = [
    "ChatGPTProvider",
    "ClaudeProvider",
    "HTTPProvider",
    "LLMProvider",
    "LLMProviderFactory",
]
