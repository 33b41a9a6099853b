"""
Intent classification with confidence-tiered routing.

The utterance is embedded and compared against labeled examples. The best
similarity score lands in a confidence tier and the routing table decides
what happens next: accept, accept but ask for confirmation, or escalate to
a language model fallback. Every external call is bounded by a timeout and
failures degrade to entity heuristics instead of raising.
"""
from __future__ import annotations

import asyncio
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Sequence

from cardquery.core.config import PipelineOptions
from cardquery.core.log import get_logger

from .embeddings import EmbeddingProvider, VectorHit, VectorStore
from .errors import ExternalServiceFailure
from .intent_examples import INTENT_EXAMPLES
from .llm_providers import LLMProvider
from .types import INTENT_LABELS, ExtractedEntity, IntentMatch

LOGGER = get_logger(__name__)

HEURISTIC_CONFIDENCE = 0.6
FALLBACK_CONFIDENCE = 0.2


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Route(str, Enum):
    ACCEPT = "accept"
    CONFIRM = "confirm"
    ESCALATE = "escalate"


ROUTING_TABLE: Mapping[ConfidenceTier, Route] = {
    ConfidenceTier.HIGH: Route.ACCEPT,
    ConfidenceTier.MEDIUM: Route.CONFIRM,
    ConfidenceTier.LOW: Route.ESCALATE,
}


@dataclass(frozen=True)
class FallbackAnswer:
    label: str
    confidence: float


class FallbackClassifier(ABC):
    """Second opinion consulted when vector similarity is not conclusive."""

    @abstractmethod
    async def classify(self, text: str, candidate_labels: Sequence[str]) -> FallbackAnswer:
        raise NotImplementedError


_FALLBACK_SYSTEM_PROMPT = (
    "You classify questions a user asks about their own credit cards. "
    "Answer with JSON of the form {\"label\": <one of the allowed labels>, "
    "\"confidence\": <number between 0 and 1>}. Allowed labels: %s. "
    "Use \"conversational\" for greetings and anything not about card data."
)

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class LLMFallbackClassifier(FallbackClassifier):
    """Ask a language model to pick one of the candidate labels."""

    def __init__(self, provider: LLMProvider):
        self.provider = provider

    async def classify(self, text: str, candidate_labels: Sequence[str]) -> FallbackAnswer:
        system_prompt = _FALLBACK_SYSTEM_PROMPT % ", ".join(candidate_labels)
        response = await self.provider.query(system_prompt, f"Question: {text}", json_mode=True)
        content = str(response.get("content") or "")

        match = _JSON_OBJECT_RE.search(content)
        if match is None:
            raise ExternalServiceFailure(self.provider.name, "Fallback answer was not JSON")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ExternalServiceFailure(self.provider.name, f"Invalid JSON: {exc}") from exc

        label = str(parsed.get("label", "")).strip().lower()
        try:
            confidence = float(parsed.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return FallbackAnswer(label=label, confidence=min(max(confidence, 0.0), 1.0))


def label_from_entities(entities: Sequence[ExtractedEntity]) -> Optional[str]:
    """Best-effort intent implied by the entity kinds alone."""
    kinds = {entity.kind for entity in entities}
    if not kinds:
        return None
    if "aggregation" in kinds:
        return "aggregate"
    if "group" in kinds:
        return "distinct"
    if "modifier" in kinds:
        return "rank"
    if any(entity.kind == "mention" and entity.modifier != "none" for entity in entities):
        return "compare"
    return "filter"


class IntentClassifier:
    """Embed, search, tier, route."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: VectorStore,
        fallback: Optional[FallbackClassifier] = None,
        options: Optional[PipelineOptions] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.fallback = fallback
        self.options = options or PipelineOptions()
        self._seeded = False
        self._seed_lock = asyncio.Lock()

    @property
    def seeded(self) -> bool:
        return self._seeded

    async def seed(self, examples: Optional[Mapping[str, Sequence[str]]] = None) -> int:
        """Embed and store the labeled examples. Returns the number stored.

        Every example is embedded before any is stored, so a failed seed
        leaves the store untouched and can simply be retried.

        Raises:
            ExternalServiceFailure: an embedding call failed or timed out
        """
        async with self._seed_lock:
            if self._seeded:
                return 0
            timeout = self.options.service_timeout_s
            pending = []
            for label, utterances in (examples or INTENT_EXAMPLES).items():
                if label not in INTENT_LABELS:
                    raise ValueError(f"Unknown intent label in examples: {label}")
                for utterance in utterances:
                    try:
                        vector = await asyncio.wait_for(self.embedder.embed(utterance), timeout)
                    except asyncio.TimeoutError:
                        raise ExternalServiceFailure(
                            "embeddings", f"seeding timed out after {timeout:.1f}s"
                        ) from None
                    pending.append((label, utterance, vector))
            for label, utterance, vector in pending:
                await self.store.add(label, utterance, vector)
            self._seeded = True
        LOGGER.info("Seeded intent store with %d examples", len(pending))
        return len(pending)

    def tier_for(self, confidence: float) -> ConfidenceTier:
        if confidence >= self.options.high_confidence:
            return ConfidenceTier.HIGH
        if confidence >= self.options.medium_confidence:
            return ConfidenceTier.MEDIUM
        return ConfidenceTier.LOW

    async def classify(
        self, utterance: str, entities: Optional[Sequence[ExtractedEntity]] = None
    ) -> IntentMatch:
        if not self._seeded:
            try:
                await self.seed()
            except ExternalServiceFailure as exc:
                LOGGER.warning("Could not seed intent examples: %s", exc)
                return await self._escalate(utterance, entities)

        hit = await self._nearest_example(utterance)
        confidence = min(max(hit.score, 0.0), 1.0) if hit else 0.0
        tier = self.tier_for(confidence)
        route = ROUTING_TABLE[tier]
        LOGGER.debug(
            "Vector match label=%s confidence=%.3f tier=%s route=%s",
            hit.label if hit else None,
            confidence,
            tier.value,
            route.value,
        )

        if hit is not None and route is Route.ACCEPT:
            return IntentMatch(label=hit.label, confidence=confidence, method="vector", tier=tier.value)
        if hit is not None and route is Route.CONFIRM:
            return IntentMatch(
                label=hit.label,
                confidence=confidence,
                method="vector",
                tier=tier.value,
                needs_confirmation=True,
            )
        return await self._escalate(utterance, entities)

    async def _nearest_example(self, utterance: str) -> Optional[VectorHit]:
        timeout = self.options.service_timeout_s
        try:
            vector = await asyncio.wait_for(self.embedder.embed(utterance), timeout)
            hits = await asyncio.wait_for(self.store.search(vector, self.options.vector_top_k), timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Embedding lookup timed out after %.1fs", timeout)
            return None
        except ExternalServiceFailure as exc:
            LOGGER.warning("Embedding lookup failed: %s", exc)
            return None
        return hits[0] if hits else None

    async def _escalate(
        self, utterance: str, entities: Optional[Sequence[ExtractedEntity]]
    ) -> IntentMatch:
        if self.fallback is not None:
            answer = await self._ask_fallback(utterance)
            if answer is not None:
                tier = self.tier_for(answer.confidence)
                return IntentMatch(
                    label=answer.label,
                    confidence=answer.confidence,
                    method="language_model",
                    tier=tier.value,
                    needs_confirmation=tier is not ConfidenceTier.HIGH,
                )

        label = label_from_entities(entities or ())
        if label is not None:
            return IntentMatch(
                label=label,
                confidence=HEURISTIC_CONFIDENCE,
                method="pattern",
                tier=self.tier_for(HEURISTIC_CONFIDENCE).value,
            )

        return IntentMatch(
            label="conversational",
            confidence=FALLBACK_CONFIDENCE,
            method="fallback",
            tier=ConfidenceTier.LOW.value,
        )

    async def _ask_fallback(self, utterance: str) -> Optional[FallbackAnswer]:
        assert self.fallback is not None
        timeout = self.options.service_timeout_s
        try:
            answer = await asyncio.wait_for(self.fallback.classify(utterance, INTENT_LABELS), timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Fallback classifier timed out after %.1fs", timeout)
            return None
        except ExternalServiceFailure as exc:
            LOGGER.warning("Fallback classifier failed: %s", exc)
            return None

        if answer.label not in INTENT_LABELS:
            LOGGER.warning("Fallback classifier answered outside the label set: %r", answer.label)
            return None
        return answer


__all__ = [
    "ROUTING_TABLE",
    "ConfidenceTier",
    "FallbackAnswer",
    "FallbackClassifier",
    "IntentClassifier",
    "LLMFallbackClassifier",
    "Route",
    "label_from_entities",
]
