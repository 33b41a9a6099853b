"""
Entity extraction.

Turns an utterance into typed ``ExtractedEntity`` records by combining the
numeric literals found by ``text_extraction`` with the vocabulary spans from
``vocabulary`` and associating them by proximity.
"""
from __future__ import annotations

import bisect
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from cardquery.core.log import get_logger

from . import vocabulary as vocab
from .text_extraction import (
    NumericLiteral,
    card_reference_span,
    extract_card_reference,
    iter_numeric_literals,
)
from .types import ExtractedEntity

LOGGER = get_logger(__name__)

_TOKEN_RE = re.compile(r"\S+")
_CONJUNCTION_RE = re.compile(r"\b(?:and|or|but|while|plus|also)\b|[,;]", re.IGNORECASE)
_RANGE_GAP_RE = re.compile(r"^\s*(?:and|to|-)\s*$", re.IGNORECASE)
_VALUE_GAP_RE = re.compile(r"^\s*(?:,|/|or|and|,\s*or|,\s*and)?\s*$", re.IGNORECASE)
_NEGATION_GAP_RE = re.compile(r"^[\s-]*$")
_CARDS_AFTER_RE = re.compile(r"^\s+cards?\b", re.IGNORECASE)
_MAX_MODIFIER_COUNT = 100

# Words that make a "my ... card" phrase a description rather than a card name.
_GENERIC_WORDS = frozenset({"credit", "new", "other", "which", "what", "every", "each", "one", "only"})

_SPAN_TABLES = (
    ("timeframe", vocab.DUE_TIMEFRAME_PHRASES),
    ("balance_status", vocab.BALANCE_STATUS_PHRASES),
    ("attribute", vocab.ATTRIBUTE_SYNONYMS),
    ("operator", vocab.operator_table()),
    ("aggregation", vocab.AGGREGATION_PHRASES),
    ("modifier", vocab.MODIFIER_PHRASES),
    ("sort", vocab.SORT_PHRASES),
    ("grouping", vocab.GROUPING_PHRASES),
    ("distinct", vocab.DISTINCT_PHRASES),
    ("listing", vocab.LISTING_PHRASES),
    ("issuer", vocab.ISSUER_VALUES),
    ("network", vocab.NETWORK_VALUES),
    ("category", vocab.REWARD_CATEGORIES),
    ("negation", vocab.NEGATION_PHRASES),
)

_GROUPABLE_FIELDS = frozenset({"issuer", "card_network", "card_type", "card_name", "nickname"})


@dataclass
class _Anchor:
    """An attribute occurrence that literals and modifiers can attach to."""

    attribute: str
    start: int
    end: int
    source: str = "attribute"
    category: Optional[str] = None
    used_by: set[str] = field(default_factory=set)


class _Layout:
    """Token and clause geometry of one utterance."""

    def __init__(self, text: str, split_points: list[int]) -> None:
        self._token_starts = [m.start() for m in _TOKEN_RE.finditer(text)]
        self._split_points = sorted(split_points)

    def token(self, pos: int) -> int:
        return max(bisect.bisect_right(self._token_starts, pos) - 1, 0)

    def clause(self, pos: int) -> int:
        return bisect.bisect_right(self._split_points, pos)

    def distance(self, a_start: int, a_end: int, b_start: int, b_end: int) -> int:
        """Number of tokens separating two spans (0 when adjacent)."""
        if b_start >= a_end:
            return max(self.token(b_start) - self.token(max(a_end - 1, a_start)) - 1, 0)
        return max(self.token(a_start) - self.token(max(b_end - 1, b_start)) - 1, 0)


class EntityExtractor:
    """Extract filters, modifiers, aggregations and groupings from an utterance."""

    def __init__(self, *, association_window: int = 6, min_digits: int = 1) -> None:
        self.association_window = association_window
        self.min_digits = min_digits

    def extract(self, utterance: Optional[str]) -> list[ExtractedEntity]:
        """Return every entity found in ``utterance``; never raises."""
        if not utterance or not isinstance(utterance, str) or not utterance.strip():
            return []
        try:
            entities = self._extract(utterance)
        except Exception:  # noqa: BLE001 - extraction must degrade to "nothing found"
            LOGGER.exception("Entity extraction failed for %r", utterance)
            return []
        LOGGER.debug("Extracted %d entities from %r", len(entities), utterance)
        return entities

    # ------------------------------------------------------------------ internals

    def _extract(self, text: str) -> list[ExtractedEntity]:
        entities: list[ExtractedEntity] = []
        claimed: list[tuple[int, int]] = []

        card_entity, card_span = self._card_reference(text)
        if card_entity is not None and card_span is not None:
            entities.append(card_entity)
            claimed.append(card_span)

        spans = vocab.find_all_spans(text, _SPAN_TABLES, exclude=claimed)
        literals = [
            literal
            for literal in iter_numeric_literals(text, min_digits=self.min_digits)
            if not any(s <= literal.start < e or s < literal.end <= e for s, e in claimed)
            and not any(span.overlaps(literal.start, literal.end) for span in spans)
        ]

        by_table: dict[str, list[vocab.VocabSpan]] = {}
        for span in spans:
            by_table.setdefault(span.table, []).append(span)

        ranges, range_gaps = self._between_ranges(text, by_table.get("operator", []), literals)
        layout = _Layout(text, self._split_points(text, spans, range_gaps))
        anchors = self._anchors(by_table)
        category_anchor = self._category_anchor(by_table)

        counts = self._modifier_counts(text, layout, by_table.get("modifier", []), literals)
        consumed = {id(literal) for literal in counts.values()}
        for op_span, low, high in ranges:
            consumed.update({id(low), id(high)})

        used_operators: set[int] = {id(op_span) for op_span, _, _ in ranges}
        for op_span, low, high in ranges:
            anchor = self._nearest_anchor(layout, op_span.start, op_span.end, anchors, numeric=True)
            if anchor is None:
                continue
            anchor.used_by.add("filter")
            entities.append(
                ExtractedEntity(
                    kind="filter",
                    attribute=anchor.attribute,
                    operator="between",
                    value=(
                        vocab.convert_literal(anchor.attribute, low.value, low.kind),
                        vocab.convert_literal(anchor.attribute, high.value, high.kind),
                    ),
                    position=op_span.start,
                )
            )

        for literal in literals:
            if id(literal) in consumed:
                continue
            entity = self._literal_filter(layout, literal, anchors, by_table.get("operator", []), used_operators)
            if entity is not None:
                entities.append(entity)

        for span in by_table.get("timeframe", []):
            entities.append(
                ExtractedEntity(
                    kind="filter",
                    attribute="days_until_due",
                    operator="lte",
                    value=int(span.value),
                    position=span.start,
                )
            )

        entities.extend(self._balance_status(by_table.get("balance_status", []), anchors))
        entities.extend(self._value_filters(text, by_table))
        entities.extend(self._negated_attributes(text, by_table.get("negation", []), anchors))

        has_aggregation = bool(by_table.get("aggregation"))
        has_distinct = bool(by_table.get("distinct"))

        category_used = False
        for span in by_table.get("modifier", []):
            anchor = self._nearest_anchor(layout, span.start, span.end, anchors, numeric=True, prefer_following=True)
            attribute: Optional[str] = None
            category: Optional[str] = None
            if anchor is not None:
                anchor.used_by.add("modifier")
                attribute, category = anchor.attribute, anchor.category
            elif category_anchor is not None:
                attribute, category = category_anchor.attribute, category_anchor.category
            if category is not None:
                category_used = True
            count = counts.get(id(span))
            entities.append(
                ExtractedEntity(
                    kind="modifier",
                    attribute=attribute,
                    modifier=span.value,
                    value=int(count.value) if count is not None else None,
                    category=category,
                    position=span.start,
                )
            )

        for span in by_table.get("aggregation", []):
            entities.append(self._aggregation(layout, span, anchors))

        for span in by_table.get("grouping", []):
            if span.value == "weak" and not (has_aggregation or has_distinct):
                continue
            anchor = self._following_anchor(layout, span, anchors, window=3)
            if anchor is None or anchor.attribute not in _GROUPABLE_FIELDS:
                continue
            anchor.used_by.add("group")
            entities.append(ExtractedEntity(kind="group", attribute=anchor.attribute, position=span.start))

        for span in by_table.get("distinct", []):
            anchor = self._following_anchor(layout, span, anchors, window=3)
            if anchor is None or anchor.attribute not in _GROUPABLE_FIELDS or "group" in anchor.used_by:
                continue
            anchor.used_by.add("group")
            entities.append(ExtractedEntity(kind="group", attribute=anchor.attribute, position=span.start))

        for span in by_table.get("sort", []):
            anchor = self._following_anchor(layout, span, anchors, window=3)
            if anchor is None:
                continue
            anchor.used_by.add("sort")
            entities.append(
                ExtractedEntity(
                    kind="mention",
                    attribute=anchor.attribute,
                    modifier="highest" if span.value == "desc" else "lowest",
                    category=anchor.category,
                    position=anchor.start,
                )
            )

        mentioned: set[str] = set()
        for anchor in anchors:
            if anchor.used_by or anchor.source != "attribute" or anchor.attribute in mentioned:
                continue
            mentioned.add(anchor.attribute)
            if anchor.category is not None:
                category_used = True
            entities.append(
                ExtractedEntity(
                    kind="mention",
                    attribute=anchor.attribute,
                    category=anchor.category,
                    position=anchor.start,
                )
            )

        if category_anchor is not None and not category_used:
            entities.append(
                ExtractedEntity(
                    kind="mention",
                    attribute=category_anchor.attribute,
                    category=category_anchor.category,
                    position=category_anchor.start,
                )
            )

        return _dedupe(sorted(entities, key=lambda entity: entity.position))

    def _card_reference(self, text: str) -> tuple[Optional[ExtractedEntity], Optional[tuple[int, int]]]:
        reference = extract_card_reference(text)
        span = card_reference_span(text)
        if reference is None or span is None:
            return None, None

        if reference.isdigit():
            entity = ExtractedEntity(
                kind="filter",
                attribute="last_four",
                operator="eq",
                value=reference,
                position=span[0],
            )
            return entity, span

        words = reference.split()
        value_words = set()
        for table in (vocab.ISSUER_VALUES, vocab.NETWORK_VALUES):
            for phrases in table.values():
                for phrase in phrases:
                    value_words.update(phrase.split())
        descriptive = [
            word
            for word in words
            if word in _GENERIC_WORDS
            or vocab.find_all_spans(word, [t for t in _SPAN_TABLES if t[0] not in ("issuer", "network")])
        ]
        if descriptive or all(word in value_words for word in words):
            return None, None

        entity = ExtractedEntity(
            kind="filter",
            attribute="card_label",
            operator="contains",
            value=reference,
            position=span[0],
        )
        return entity, span

    @staticmethod
    def _between_ranges(
        text: str, operators: list[vocab.VocabSpan], literals: list[NumericLiteral]
    ) -> tuple[list[tuple[vocab.VocabSpan, NumericLiteral, NumericLiteral]], list[tuple[int, int]]]:
        ranges = []
        gaps = []
        for span in operators:
            if span.value[0] != "between":
                continue
            following = [literal for literal in literals if literal.start >= span.end]
            if len(following) < 2:
                continue
            low, high = following[0], following[1]
            if text[span.end:low.start].strip() or not _RANGE_GAP_RE.match(text[low.end:high.start]):
                continue
            if low.value > high.value:
                low, high = high, low
            ranges.append((span, low, high))
            gaps.append((min(low.end, high.end), max(low.start, high.start)))
        return ranges, gaps

    @staticmethod
    def _split_points(
        text: str, spans: Iterable[vocab.VocabSpan], protected: Iterable[tuple[int, int]]
    ) -> list[int]:
        blocked = [(span.start, span.end) for span in spans] + list(protected)
        points = []
        for match in _CONJUNCTION_RE.finditer(text):
            if any(s <= match.start() < e for s, e in blocked):
                continue
            points.append(match.start())
        return points

    @staticmethod
    def _category_anchor(by_table: dict[str, list[vocab.VocabSpan]]) -> Optional[_Anchor]:
        categories = by_table.get("category", [])
        if not categories:
            return None
        first = categories[0]
        return _Anchor(
            attribute=vocab.reward_field(first.value),
            start=first.start,
            end=first.end,
            source="category",
            category=first.value,
        )

    @staticmethod
    def _anchors(by_table: dict[str, list[vocab.VocabSpan]]) -> list[_Anchor]:
        categories = by_table.get("category", [])
        category = categories[0].value if categories else None
        anchors = []
        for span in by_table.get("attribute", []):
            attribute = span.value
            anchor_category = None
            if attribute == "reward_multiplier":
                attribute = vocab.reward_field(category)
                anchor_category = category
            anchors.append(_Anchor(attribute=attribute, start=span.start, end=span.end, category=anchor_category))
        for span in by_table.get("balance_status", []):
            if span.value == "with_balance":
                anchors.append(
                    _Anchor(attribute="current_balance", start=span.start, end=span.end, source="balance_status")
                )
        return sorted(anchors, key=lambda anchor: anchor.start)

    def _nearest_anchor(
        self,
        layout: _Layout,
        start: int,
        end: int,
        anchors: list[_Anchor],
        *,
        numeric: bool = False,
        prefer_following: bool = False,
    ) -> Optional[_Anchor]:
        clause = layout.clause(start)
        best: Optional[tuple[tuple[int, int, int], _Anchor]] = None
        for anchor in anchors:
            if numeric and not vocab.is_numeric_field(anchor.attribute):
                continue
            distance = layout.distance(start, end, anchor.start, anchor.end)
            if distance > self.association_window:
                continue
            following = anchor.start >= end
            side = int(following != prefer_following)
            score = (int(layout.clause(anchor.start) != clause), distance, side)
            if best is None or score < best[0]:
                best = (score, anchor)
        return best[1] if best else None

    def _following_anchor(
        self, layout: _Layout, span: vocab.VocabSpan, anchors: list[_Anchor], *, window: int
    ) -> Optional[_Anchor]:
        for anchor in anchors:
            if anchor.start < span.end:
                continue
            if layout.distance(span.start, span.end, anchor.start, anchor.end) <= window:
                return anchor
            break
        return None

    def _modifier_counts(
        self, text: str, layout: _Layout, modifiers: list[vocab.VocabSpan], literals: list[NumericLiteral]
    ) -> dict[int, NumericLiteral]:
        """Small bare integers counting cards for a modifier.

        Covers "3 highest", "top 3" and "3 cards with the highest ...".
        """
        counts: dict[int, NumericLiteral] = {}
        candidates = [
            literal
            for literal in literals
            if literal.kind == "bare"
            and literal.value == literal.value.to_integral_value()
            and 0 < literal.value <= _MAX_MODIFIER_COUNT
        ]
        taken: set[int] = set()
        for span in modifiers:
            for literal in candidates:
                if id(literal) in taken:
                    continue
                if layout.distance(span.start, span.end, literal.start, literal.end) == 0:
                    counts[id(span)] = literal
                    taken.add(id(literal))
                    break
        for span in modifiers:
            if id(span) in counts:
                continue
            for literal in candidates:
                if id(literal) in taken or literal.start > span.start:
                    continue
                if _CARDS_AFTER_RE.match(text[literal.end:]):
                    counts[id(span)] = literal
                    taken.add(id(literal))
                    break
        return counts

    def _literal_filter(
        self,
        layout: _Layout,
        literal: NumericLiteral,
        anchors: list[_Anchor],
        operators: list[vocab.VocabSpan],
        used_operators: set[int],
    ) -> Optional[ExtractedEntity]:
        anchor = self._nearest_anchor(layout, literal.start, literal.end, anchors, numeric=True)
        if anchor is None:
            LOGGER.debug("Dropping unassociated literal %r", literal.text)
            return None

        clause = layout.clause(literal.start)
        operator = "eq"
        best: Optional[tuple[tuple[int, int], vocab.VocabSpan]] = None
        for span in operators:
            if id(span) in used_operators:
                continue
            op, postfix = span.value
            if op == "between":
                continue
            distance = layout.distance(literal.start, literal.end, span.start, span.end)
            if postfix:
                if span.start < literal.end or distance > 1:
                    continue
            elif span.end > literal.start or distance > self.association_window:
                continue
            score = (int(layout.clause(span.start) != clause), distance)
            if best is None or score < best[0]:
                best = (score, span)
        if best is not None:
            used_operators.add(id(best[1]))
            operator = best[1].value[0]

        anchor.used_by.add("filter")
        return ExtractedEntity(
            kind="filter",
            attribute=anchor.attribute,
            operator=operator,
            value=vocab.convert_literal(anchor.attribute, literal.value, literal.kind),
            category=anchor.category,
            position=literal.start,
        )

    @staticmethod
    def _balance_status(spans: list[vocab.VocabSpan], anchors: list[_Anchor]) -> list[ExtractedEntity]:
        entities = []
        for span in spans:
            if span.value == "with_balance":
                anchor = next(
                    (a for a in anchors if a.source == "balance_status" and a.start == span.start),
                    None,
                )
                if anchor is not None and anchor.used_by:
                    continue
                entities.append(
                    ExtractedEntity(
                        kind="filter",
                        attribute="current_balance",
                        operator="gt",
                        value=Decimal("0"),
                        position=span.start,
                    )
                )
            else:
                entities.append(
                    ExtractedEntity(
                        kind="filter",
                        attribute="current_balance",
                        operator="eq",
                        value=Decimal("0"),
                        position=span.start,
                    )
                )
        return entities

    @staticmethod
    def _value_filters(text: str, by_table: dict[str, list[vocab.VocabSpan]]) -> list[ExtractedEntity]:
        """Issuer and network values; "chase or citi" is a set, "non-visa" a negation."""
        negations = by_table.get("negation", [])
        entities = []
        for table, attribute in (("issuer", "issuer"), ("network", "card_network")):
            groups: list[list[vocab.VocabSpan]] = []
            for span in by_table.get(table, []):
                if groups and _VALUE_GAP_RE.match(text[groups[-1][-1].end:span.start]):
                    groups[-1].append(span)
                else:
                    groups.append([span])

            for group in groups:
                first = group[0]
                negated = any(
                    n.end <= first.start and _NEGATION_GAP_RE.match(text[n.end:first.start])
                    for n in negations
                )
                values = tuple(dict.fromkeys(span.value for span in group))
                if negated:
                    entities.extend(
                        ExtractedEntity(
                            kind="filter",
                            attribute=attribute,
                            operator="ne",
                            value=value,
                            position=first.start,
                        )
                        for value in values
                    )
                elif len(values) == 1:
                    entities.append(
                        ExtractedEntity(
                            kind="filter",
                            attribute=attribute,
                            operator="eq",
                            value=values[0],
                            position=first.start,
                        )
                    )
                else:
                    entities.append(
                        ExtractedEntity(
                            kind="filter",
                            attribute=attribute,
                            operator="in",
                            value=values,
                            position=first.start,
                        )
                    )
        return entities

    @staticmethod
    def _negated_attributes(
        text: str, negations: list[vocab.VocabSpan], anchors: list[_Anchor]
    ) -> list[ExtractedEntity]:
        """``no annual fee`` style phrases: a money field that must be zero."""
        entities = []
        for negation in negations:
            anchor = next((a for a in anchors if a.start >= negation.end), None)
            if anchor is None or anchor.used_by:
                continue
            if not _NEGATION_GAP_RE.match(text[negation.end:anchor.start]):
                continue
            if vocab.field_kind(anchor.attribute) != "money":
                continue
            anchor.used_by.add("filter")
            entities.append(
                ExtractedEntity(
                    kind="filter",
                    attribute=anchor.attribute,
                    operator="eq",
                    value=Decimal("0"),
                    position=negation.start,
                )
            )
        return entities

    def _aggregation(self, layout: _Layout, span: vocab.VocabSpan, anchors: list[_Anchor]) -> ExtractedEntity:
        if span.value == "count":
            return ExtractedEntity(kind="aggregation", aggregation="count", position=span.start)

        anchor = self._nearest_anchor(layout, span.start, span.end, anchors, numeric=True, prefer_following=True)
        attribute = None
        category = None
        if anchor is not None:
            anchor.used_by.add("aggregation")
            attribute, category = anchor.attribute, anchor.category
        return ExtractedEntity(
            kind="aggregation",
            attribute=attribute,
            aggregation=span.value,
            category=category,
            position=span.start,
        )


def _dedupe(entities: list[ExtractedEntity]) -> list[ExtractedEntity]:
    seen = []
    for entity in entities:
        if entity not in seen:
            seen.append(entity)
    return seen


__all__ = ["EntityExtractor"]
