"""
Embedding providers and vector stores used by the intent classifier.

``HashingEmbeddingProvider`` is deterministic and needs no network, which
makes it the default for local runs and tests. ``OpenAIEmbeddingProvider``
calls the OpenAI embeddings endpoint over httpx.
"""
from __future__ import annotations

import hashlib
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Optional, Sequence

import httpx

from cardquery.core.log import get_logger

from .config import EmbeddingConfig, embedding_config
from .errors import ExternalServiceFailure

LOGGER = get_logger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class VectorHit:
    label: str
    text: str
    score: float


class EmbeddingProvider(ABC):
    """Turns text into a dense vector."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        raise NotImplementedError


class VectorStore(ABC):
    """Nearest-neighbour search over labeled example vectors."""

    @abstractmethod
    async def add(self, label: str, text: str, vector: Sequence[float]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def search(self, vector: Sequence[float], top_k: int = 3) -> list[VectorHit]:
        raise NotImplementedError


def _normalize(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return vector
    return [value / norm for value in vector]


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) != len(right):
        raise ValueError(f"Vector dimensions differ: {len(left)} != {len(right)}")
    dot = sum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return dot / (left_norm * right_norm)


class HashingEmbeddingProvider(EmbeddingProvider):
    """Bag of hashed unigrams and bigrams, L2 normalised.

    Weights are non-negative so cosine similarity stays within [0, 1].
    """

    def __init__(self, dimensions: Optional[int] = None, bigram_weight: float = 0.5):
        self.dimensions = dimensions or embedding_config.hashing_dimensions
        self.bigram_weight = bigram_weight

    def _bucket(self, feature: str) -> int:
        digest = hashlib.md5(feature.encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "big") % self.dimensions

    def embed_sync(self, text: str) -> list[float]:
        tokens = _WORD_RE.findall((text or "").lower())
        vector = [0.0] * self.dimensions
        for token in tokens:
            vector[self._bucket(token)] += 1.0
        for first, second in zip(tokens, tokens[1:]):
            vector[self._bucket(f"{first} {second}")] += self.bigram_weight
        return _normalize(vector)

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings API provider"""

    endpoint = "https://api.openai.com/v1/embeddings"

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or embedding_config
        self.api_key = self.config.openai_api_key
        self.model = model or self.config.openai_model
        self.transport = transport

        if not self.api_key:
            raise ValueError("OpenAI API key not configured. Set OPENAI_API_KEY environment variable.")

    async def embed(self, text: str) -> list[float]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {"model": self.model, "input": text}

        try:
            async with httpx.AsyncClient(
                timeout=self.config.request_timeout_s, transport=self.transport
            ) as client:
                response = await client.post(self.endpoint, headers=headers, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            LOGGER.error("OpenAI embeddings error: %s", exc)
            raise ExternalServiceFailure("embeddings", str(exc)) from exc

        try:
            return list(data["data"][0]["embedding"])
        except (KeyError, IndexError, TypeError) as exc:
            raise ExternalServiceFailure("embeddings", "Malformed embeddings response") from exc


class InMemoryVectorStore(VectorStore):
    """Brute-force cosine search, adequate for a few hundred seed examples."""

    def __init__(self) -> None:
        self._entries: list[tuple[str, str, list[float]]] = []
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def add(self, label: str, text: str, vector: Sequence[float]) -> None:
        with self._lock:
            self._entries = [*self._entries, (label, text, list(vector))]

    async def search(self, vector: Sequence[float], top_k: int = 3) -> list[VectorHit]:
        entries = self._entries
        hits = [
            VectorHit(label=label, text=text, score=cosine_similarity(vector, stored))
            for label, text, stored in entries
        ]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[: max(top_k, 0)]


def build_embedding_provider(backend: str) -> EmbeddingProvider:
    """Create the embedding provider named by ``backend`` (``hashing`` or ``openai``)."""

    normalized = (backend or "").strip().lower()
    if normalized in {"", "hashing", "local"}:
        return HashingEmbeddingProvider()
    if normalized == "openai":
        return OpenAIEmbeddingProvider()
    raise ValueError(f"Unknown embedding backend: {backend}")


__all__ = [
    "EmbeddingProvider",
    "HashingEmbeddingProvider",
    "InMemoryVectorStore",
    "OpenAIEmbeddingProvider",
    "VectorHit",
    "VectorStore",
    "build_embedding_provider",
    "cosine_similarity",
]
