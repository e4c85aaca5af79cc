"""Stage 1 — Pattern-based query classification."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from hybrid_search.models import QueryClassification, SearchConfig

GENERAL = "general"
GENERAL_CONFIDENCE = 0.5

# Built-in categories are evaluated first, in this order.
_PRIORITY: tuple[str, ...] = ("url", "technical", "news", "privacy_sensitive")
_DEFAULT_CONFIDENCE: dict[str, float] = {
    "url": 0.9,
    "technical": 0.8,
    "news": 0.8,
    "privacy_sensitive": 0.7,
}
_OTHER_CONFIDENCE = 0.6


@dataclass(frozen=True)
class CategoryRule:
    """Compiled regex set for one query category."""

    name: str
    patterns: tuple[re.Pattern[str], ...]
    confidence: float
    suggested_providers: tuple[str, ...] = ()

    def matches(self, query: str) -> bool:
        return any(p.search(query) for p in self.patterns)


class QueryClassifier:
    """Tags queries with the categories whose patterns they match.

    The first matching category (in priority order) decides the primary
    type, confidence and suggested providers; every matching category is
    reported in ``patterns``.  Classification is a pure function of the
    query.
    """

    def __init__(self, rules: Iterable[CategoryRule]) -> None:
        self._rules = tuple(rules)

    @classmethod
    def from_config(cls, config: SearchConfig) -> "QueryClassifier":
        """Compile ``query_analysis`` into ordered rules.

        Suggested providers are limited to ids the configuration declares.
        """
        known = set(config.providers)
        names = [n for n in _PRIORITY if n in config.query_analysis]
        names += [n for n in config.query_analysis if n not in _PRIORITY]

        rules: list[CategoryRule] = []
        for name in names:
            analysis = config.query_analysis[name]
            confidence = analysis.confidence
            if confidence is None:
                confidence = _DEFAULT_CONFIDENCE.get(name, _OTHER_CONFIDENCE)
            rules.append(
                CategoryRule(
                    name=name,
                    patterns=tuple(re.compile(p, re.IGNORECASE) for p in analysis.patterns),
                    confidence=confidence,
                    suggested_providers=tuple(p for p in analysis.suggested_providers if p in known),
                )
            )
        return cls(rules)

    @property
    def categories(self) -> list[str]:
        return [rule.name for rule in self._rules]

    def classify(self, query: str) -> QueryClassification:
        """Classify *query*.

        Args:
            query: Raw user query.

        Returns:
            :class:`QueryClassification`; ``general`` with confidence 0.5
            when no category matches.
        """
        matched = [rule for rule in self._rules if rule.matches(query)]
        if not matched:
            return QueryClassification(query_type=GENERAL, confidence=GENERAL_CONFIDENCE)

        primary = matched[0]
        return QueryClassification(
            query_type=primary.name,
            patterns=[rule.name for rule in matched],
            confidence=primary.confidence,
            suggested_providers=list(primary.suggested_providers),
        )
