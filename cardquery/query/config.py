"""
Keys, model names and limits for the hosted services the intent classifier
can call. Values come from the environment when the module is imported.
"""
import os

from pydantic import BaseModel, Field


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


class LLMProviderConfig(BaseModel):
    """Configuration for the intent fallback language models"""

    claude_api_key: str = Field(default_factory=lambda: _env("CLAUDE_API_KEY"))
    claude_model: str = Field(
        default_factory=lambda: _env("CARDQUERY_CLAUDE_MODEL", "claude-haiku-4-5-20251001")
    )
    openai_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    openai_model: str = Field(default_factory=lambda: _env("CARDQUERY_OPENAI_MODEL", "gpt-4o-mini"))

    # A label and a confidence fit comfortably in this budget.
    claude_max_tokens: int = 200
    openai_max_tokens: int = 200
    request_timeout_s: float = 30.0


class EmbeddingConfig(BaseModel):
    """Configuration for the embedding backend"""

    openai_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    openai_model: str = Field(
        default_factory=lambda: _env("CARDQUERY_EMBEDDING_MODEL", "text-embedding-3-small")
    )
    hashing_dimensions: int = 256
    request_timeout_s: float = 30.0


llm_config = LLMProviderConfig()
embedding_config = EmbeddingConfig()
