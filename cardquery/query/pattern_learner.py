"""
Learned query patterns.

A pattern maps the *shape* of a set of entities (kinds, fields, operators,
modifiers and value types, never the literal values) to a plan template
whose literals were replaced by ``Slot`` placeholders. When a later
utterance produces the same shape the template is bound to the new
literals and reused.

State is an immutable mapping swapped under a lock, so readers never see a
partially updated pattern.
"""
from __future__ import annotations

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Optional, Sequence

from cardquery.core.config import PipelineOptions
from cardquery.core.log import get_logger

from .types import (
    Aggregation,
    ExtractedEntity,
    FilterClause,
    IntentMatch,
    PatternMatch,
    QueryPattern,
    Slot,
    SortClause,
    StructuredQuery,
)

if TYPE_CHECKING:
    from .analytics import QueryAnalytics

LOGGER = get_logger(__name__)

RECALIBRATION_MIN_USES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------------
# Signatures
# ----------------------------------------------------------------------------

def entity_shape(entity: ExtractedEntity) -> dict[str, Any]:
    """Everything about an entity except its literal value."""
    return {
        "kind": entity.kind,
        "attribute": entity.attribute,
        "operator": entity.operator,
        "modifier": entity.modifier,
        "aggregation": entity.aggregation,
        "category": entity.category,
        "value_type": entity.value_type,
    }


def shape_key(entity: ExtractedEntity) -> str:
    return json.dumps(entity_shape(entity), separators=(",", ":"), sort_keys=True)


def _digest(intent_label: str, shapes: Sequence[str]) -> str:
    payload = json.dumps({"intent": intent_label, "shapes": list(shapes)}, separators=(",", ":"))
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def signatures(entities: Sequence[ExtractedEntity], intent_label: str) -> tuple[str, str]:
    """Return the ``(exact, near)`` trigger signatures.

    ``exact`` keeps entity order; ``near`` ignores it.
    """
    shapes = [shape_key(entity) for entity in entities]
    return _digest(intent_label, shapes), _digest(intent_label, sorted(shapes))


# ----------------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------------

def _indexed(entities: Sequence[ExtractedEntity]) -> list[tuple[Slot, ExtractedEntity]]:
    """Pair every entity with the slot that addresses it."""
    seen: dict[str, int] = {}
    indexed = []
    for entity in entities:
        key = shape_key(entity)
        occurrence = seen.get(key, 0)
        seen[key] = occurrence + 1
        indexed.append((Slot(shape=key, occurrence=occurrence), entity))
    return indexed


def _claim(
    indexed: Sequence[tuple[Slot, ExtractedEntity]],
    consumed: set[int],
    accepts: Callable[[ExtractedEntity], bool],
) -> Optional[Slot]:
    for position, (slot, entity) in enumerate(indexed):
        if position not in consumed and entity.value is not None and accepts(entity):
            consumed.add(position)
            return slot
    return None


def make_template(query: StructuredQuery, entities: Sequence[ExtractedEntity]) -> StructuredQuery:
    """Replace the literals ``query`` took from ``entities`` with slots.

    A clause is tied to the first unclaimed filter entity with the same
    attribute, operator and value; each entity backs at most one clause.
    """
    indexed = _indexed(entities)
    consumed: set[int] = set()
    filters = []
    for clause in query.filters:
        slot = _claim(
            indexed,
            consumed,
            lambda e, c=clause: (
                e.kind == "filter"
                and e.attribute == c.attribute
                and e.operator == c.operator
                and e.value == c.value
            ),
        )
        filters.append(replace(clause, value=slot) if slot is not None else clause)

    limit: Any = query.limit
    if limit is not None:
        slot = _claim(indexed, consumed, lambda e: e.kind == "modifier" and e.value == limit)
        if slot is not None:
            limit = slot
    return replace(query, filters=tuple(filters), limit=limit, method="pattern", pattern_id=None)


class _UnboundSlot(LookupError):
    pass


def _bind_value(value: Any, literals: Mapping[tuple[str, int], Any]) -> Any:
    if not isinstance(value, Slot):
        return value
    try:
        return literals[(value.shape, value.occurrence)]
    except KeyError:
        raise _UnboundSlot(value.shape) from None


def bind_template(
    template: StructuredQuery, entities: Sequence[ExtractedEntity]
) -> Optional[StructuredQuery]:
    """Fill the slots of ``template`` from ``entities``; ``None`` if one is missing."""
    literals = {(slot.shape, slot.occurrence): entity.value for slot, entity in _indexed(entities)}

    try:
        filters = tuple(
            replace(clause, value=_bind_value(clause.value, literals)) for clause in template.filters
        )
        limit = _bind_value(template.limit, literals)
    except _UnboundSlot as exc:
        LOGGER.debug("Template slot %s has no literal to bind", exc)
        return None
    return replace(template, filters=filters, limit=limit)


# ----------------------------------------------------------------------------
# Serialization
# ----------------------------------------------------------------------------

def _encode(value: Any) -> Any:
    if isinstance(value, Slot):
        return {"$slot": value.shape, "occurrence": value.occurrence}
    if isinstance(value, Decimal):
        return {"$decimal": str(value)}
    if isinstance(value, (tuple, list)):
        return {"$tuple": [_encode(item) for item in value]}
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if "$slot" in value:
            return Slot(shape=value["$slot"], occurrence=int(value.get("occurrence", 0)))
        if "$decimal" in value:
            return Decimal(value["$decimal"])
        if "$tuple" in value:
            return tuple(_decode(item) for item in value["$tuple"])
    return value


def template_to_dict(template: StructuredQuery) -> dict[str, Any]:
    return {
        "filters": [
            {"attribute": c.attribute, "operator": c.operator, "value": _encode(c.value)}
            for c in template.filters
        ],
        "aggregation": (
            {"op": template.aggregation.op, "attribute": template.aggregation.attribute}
            if template.aggregation
            else None
        ),
        "group_by": template.group_by,
        "sort": (
            {"attribute": template.sort.attribute, "direction": template.sort.direction}
            if template.sort
            else None
        ),
        "limit": _encode(template.limit),
        "select": list(template.select),
    }


def template_from_dict(payload: Mapping[str, Any]) -> StructuredQuery:
    aggregation = payload.get("aggregation")
    sort = payload.get("sort")
    return StructuredQuery(
        filters=tuple(
            FilterClause(item["attribute"], item["operator"], _decode(item["value"]))
            for item in payload.get("filters") or ()
        ),
        aggregation=Aggregation(aggregation["op"], aggregation.get("attribute")) if aggregation else None,
        group_by=payload.get("group_by"),
        sort=SortClause(sort["attribute"], sort.get("direction", "desc")) if sort else None,
        limit=_decode(payload.get("limit")),
        select=tuple(payload.get("select") or ()),
        method="pattern",
    )


# ----------------------------------------------------------------------------
# Learner
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class PatternStats:
    """Outcome counts for one pattern, as reported by analytics."""

    uses: int
    successes: int
    negative_feedback: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.uses if self.uses else 0.0


class PatternLearner:
    """Learn reusable templates from successful decompositions."""

    def __init__(
        self,
        options: Optional[PipelineOptions] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.options = options or PipelineOptions()
        self.clock = clock
        self._lock = threading.Lock()
        self._patterns: Mapping[str, QueryPattern] = MappingProxyType({})

    def __len__(self) -> int:
        return len(self._patterns)

    def get(self, pattern_id: str) -> Optional[QueryPattern]:
        return self._patterns.get(pattern_id)

    def snapshot(self) -> tuple[QueryPattern, ...]:
        return tuple(self._patterns.values())

    def load(self, patterns: Iterable[QueryPattern]) -> int:
        """Replace the current state with ``patterns``."""
        loaded = {pattern.pattern_id: pattern for pattern in patterns}
        with self._lock:
            self._patterns = MappingProxyType(loaded)
        LOGGER.info("Loaded %d learned patterns", len(loaded))
        return len(loaded)

    def _swap(self, updates: Mapping[str, Optional[QueryPattern]]) -> None:
        # Callers hold the lock.
        current = dict(self._patterns)
        for pattern_id, pattern in updates.items():
            if pattern is None:
                current.pop(pattern_id, None)
            else:
                current[pattern_id] = pattern
        self._patterns = MappingProxyType(current)

    # -- lookup -------------------------------------------------------------

    def find_matching_pattern(
        self, entities: Sequence[ExtractedEntity], intent: IntentMatch
    ) -> Optional[PatternMatch]:
        """Best confident pattern for this entity shape with its slots bound.

        Exact-order signatures are preferred over order-insensitive ones.
        Among candidates the higher confidence wins, then the most recently
        used.
        """
        if not entities:
            return None
        exact, near = signatures(entities, intent.label)
        patterns = self._patterns
        threshold = self.options.pattern_match_confidence

        for field_name, signature in (("trigger_signature", exact), ("near_signature", near)):
            candidates = [
                pattern
                for pattern in patterns.values()
                if getattr(pattern, field_name) == signature and pattern.confidence >= threshold
            ]
            candidates.sort(
                key=lambda p: (p.confidence, p.last_used_at or datetime.min.replace(tzinfo=timezone.utc)),
                reverse=True,
            )
            for pattern in candidates:
                bound = bind_template(pattern.template, entities)
                if bound is not None:
                    LOGGER.debug(
                        "Pattern %s matched (%s, confidence=%.2f)",
                        pattern.pattern_id,
                        "exact" if field_name == "trigger_signature" else "near",
                        pattern.confidence,
                    )
                    return PatternMatch(
                        pattern=pattern,
                        query=replace(bound, method="pattern", pattern_id=pattern.pattern_id),
                    )
        return None

    # -- updates ------------------------------------------------------------

    def learn_from_success(
        self,
        query: StructuredQuery,
        entities: Sequence[ExtractedEntity],
        intent: IntentMatch,
        pattern_id: Optional[str] = None,
    ) -> Optional[QueryPattern]:
        """Store a template for this shape, or reinforce the pattern that produced ``query``."""
        pattern_id = pattern_id or query.pattern_id
        if pattern_id is not None:
            return self.record_success(pattern_id)
        if not entities:
            return None

        exact, near = signatures(entities, intent.label)
        now = self.clock()
        with self._lock:
            existing = next(
                (p for p in self._patterns.values() if p.trigger_signature == exact), None
            )
            if existing is not None:
                pattern = self._reinforced(existing, now)
            else:
                pattern = QueryPattern(
                    pattern_id=uuid.uuid4().hex,
                    trigger_signature=exact,
                    near_signature=near,
                    template=make_template(query, entities),
                    confidence=self.options.pattern_initial_confidence,
                    usage_count=1,
                    last_used_at=now,
                    created_at=now,
                    intent_label=intent.label,
                )
                LOGGER.info("Learned pattern %s for intent %s", pattern.pattern_id, intent.label)
            self._swap({pattern.pattern_id: pattern})
        return pattern

    def _reinforced(self, pattern: QueryPattern, now: datetime) -> QueryPattern:
        confidence = min(
            self.options.pattern_confidence_ceiling,
            pattern.confidence + self.options.pattern_confidence_boost,
        )
        return replace(
            pattern,
            confidence=confidence,
            usage_count=pattern.usage_count + 1,
            last_used_at=now,
        )

    def record_success(self, pattern_id: str) -> Optional[QueryPattern]:
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if pattern is None:
                return None
            updated = self._reinforced(pattern, self.clock())
            self._swap({pattern_id: updated})
        return updated

    def record_failure(self, pattern_id: str) -> Optional[QueryPattern]:
        """Decay confidence; evict the pattern once it drops below the floor."""
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if pattern is None:
                return None
            confidence = pattern.confidence * self.options.pattern_confidence_decay
            if confidence < self.options.pattern_confidence_floor:
                self._swap({pattern_id: None})
                LOGGER.info("Evicted pattern %s (confidence %.2f)", pattern_id, confidence)
                return None
            updated = replace(pattern, confidence=confidence, failure_count=pattern.failure_count + 1)
            self._swap({pattern_id: updated})
        LOGGER.info("Pattern %s confidence decayed to %.2f", pattern_id, confidence)
        return updated

    def apply_feedback(self, pattern_id: str, positive: Optional[bool]) -> Optional[QueryPattern]:
        """Boost or decay a pattern after a user judged an answer it produced.

        Neutral feedback leaves the pattern as it is. Unlike
        ``record_success`` a boost does not count as another use.
        """
        if positive is None:
            return self.get(pattern_id)
        if not positive:
            return self.record_failure(pattern_id)
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if pattern is None:
                return None
            confidence = min(
                self.options.pattern_confidence_ceiling,
                pattern.confidence + self.options.pattern_confidence_boost,
            )
            updated = replace(pattern, confidence=confidence)
            self._swap({pattern_id: updated})
        LOGGER.info("Pattern %s boosted to %.2f by feedback", pattern_id, confidence)
        return updated

    def recalibrate(self, analytics: "QueryAnalytics") -> int:
        """Pull confidence toward the success rate analytics observed for each pattern."""
        stats = analytics.pattern_metrics()
        floor = self.options.pattern_confidence_floor
        ceiling = self.options.pattern_confidence_ceiling
        updates: dict[str, Optional[QueryPattern]] = {}
        with self._lock:
            for pattern_id, stat in stats.items():
                pattern = self._patterns.get(pattern_id)
                if pattern is None or stat.uses < RECALIBRATION_MIN_USES:
                    continue
                confidence = (pattern.confidence + stat.success_rate) / 2
                if confidence < floor:
                    updates[pattern_id] = None
                else:
                    updates[pattern_id] = replace(pattern, confidence=min(ceiling, confidence))
            if updates:
                self._swap(updates)
        if updates:
            LOGGER.info("Recalibrated %d patterns", len(updates))
        return len(updates)


__all__ = [
    "PatternLearner",
    "PatternStats",
    "bind_template",
    "entity_shape",
    "make_template",
    "shape_key",
    "signatures",
    "template_from_dict",
    "template_to_dict",
]
