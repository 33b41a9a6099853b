import asyncio
import json

import httpx
import pytest

from cardquery.query.config import EmbeddingConfig, LLMProviderConfig
from cardquery.query.embeddings import OpenAIEmbeddingProvider
from cardquery.query.errors import ExternalServiceFailure
from cardquery.query.intent_classifier import LLMFallbackClassifier
from cardquery.query.llm_providers import ChatGPTProvider, ClaudeProvider, HTTPProvider, LLMProviderFactory

CONFIG = LLMProviderConfig(claude_api_key="claude-key", openai_api_key="openai-key")


def _transport(status=200, body=None, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=body or {})

    return httpx.MockTransport(handler)


def test_claude_returns_text_content():
    seen = []
    body = {"content": [{"type": "text", "text": '{"label": "rank", "confidence": 0.9}'}]}
    provider = ClaudeProvider(config=CONFIG, transport=_transport(body=body, seen=seen))

    answer = asyncio.run(provider.query("system", "Question: top cards"))

    assert answer["content"] == '{"label": "rank", "confidence": 0.9}'
    assert answer["provider"] == "claude"
    sent = json.loads(seen[0].content)
    assert sent["system"] == "system"
    assert sent["messages"][0]["content"].startswith("Question: top cards")
    assert seen[0].headers["x-api-key"] == "claude-key"


def test_chatgpt_requests_json_object():
    seen = []
    body = {"choices": [{"message": {"content": '{"label": "filter", "confidence": 0.8}'}}]}
    provider = ChatGPTProvider(config=CONFIG, transport=_transport(body=body, seen=seen))

    answer = asyncio.run(provider.query("system", "Question: cards over 5000"))

    assert answer["content"] == '{"label": "filter", "confidence": 0.8}'
    assert json.loads(seen[0].content)["response_format"] == {"type": "json_object"}


def test_http_errors_become_service_failures():
    provider = ClaudeProvider(config=CONFIG, transport=_transport(status=503))

    with pytest.raises(ExternalServiceFailure) as excinfo:
        asyncio.run(provider.query("system", "user"))

    assert excinfo.value.service == "claude"


def test_fallback_classifier_parses_provider_answer():
    body = {"content": [{"type": "text", "text": 'Sure: {"label": "Aggregate", "confidence": 1.4}'}]}
    fallback = LLMFallbackClassifier(ClaudeProvider(config=CONFIG, transport=_transport(body=body)))

    answer = asyncio.run(fallback.classify("what do I owe", ["aggregate", "filter"]))

    assert (answer.label, answer.confidence) == ("aggregate", 1.0)


def test_factory_resolves_aliases_and_model_ids():
    assert isinstance(LLMProviderFactory.create("claude-haiku-4.5", CONFIG), ClaudeProvider)
    assert isinstance(LLMProviderFactory.create("openai", CONFIG), ChatGPTProvider)
    provider = LLMProviderFactory.create("gpt-4.1", CONFIG)
    assert provider.model == "gpt-4.1"


def test_factory_rejects_unknown_or_unkeyed_providers():
    with pytest.raises(ValueError):
        LLMProviderFactory.create("none", CONFIG)
    with pytest.raises(ValueError):
        LLMProviderFactory.create("claude", LLMProviderConfig(claude_api_key=""))


def test_openai_embeddings():
    body = {"data": [{"embedding": [0.1, 0.2, 0.3]}]}
    provider = OpenAIEmbeddingProvider(
        config=EmbeddingConfig(openai_api_key="openai-key"), transport=_transport(body=body)
    )

    assert asyncio.run(provider.embed("hello")) == [0.1, 0.2, 0.3]


def test_malformed_embeddings_response():
    provider = OpenAIEmbeddingProvider(
        config=EmbeddingConfig(openai_api_key="openai-key"), transport=_transport(body={"data": []})
    )

    with pytest.raises(ExternalServiceFailure):
        asyncio.run(provider.embed("hello"))


def test_provider_without_request_hooks_cannot_be_built():
    class HeadersOnly(HTTPProvider):
        name = "partial"

        def headers(self):
            return {}

    with pytest.raises(TypeError):
        HeadersOnly("key", "model", 10, CONFIG)
