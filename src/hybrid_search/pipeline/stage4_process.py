"""Stage 4 — Quality filtering, deduplication and relevance ranking."""

from __future__ import annotations

from typing import NamedTuple

import structlog

from hybrid_search.models import ResultProcessingConfig, SearchResult

logger = structlog.get_logger(__name__)


class RelevanceWeights(NamedTuple):
    """Score added when the query appears in each field."""

    title: float = 0.4
    content: float = 0.3
    url: float = 0.2


def title_similarity(a: str, b: str) -> float:
    """Word-overlap ratio of two titles.

    Shared distinct words (case-insensitive) divided by the distinct word
    count of the richer title; 0.0 when either title is empty.
    """
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b))


def relevance_score(
    result: SearchResult, query: str, weights: RelevanceWeights = RelevanceWeights()
) -> float:
    """Substring-match relevance of *result* to *query*, capped at 1.0."""
    needle = query.lower()
    score = 0.0
    if needle in result.title.lower():
        score += weights.title
    if needle in result.content.lower():
        score += weights.content
    if result.url and needle in result.url.lower():
        score += weights.url
    return round(min(score, 1.0), 4)


class ResultProcessor:
    """Filter → deduplicate → rank, in that fixed order.

    Args:
        min_content_length:   Results with shorter content are dropped (0 disables).
        similarity_threshold: Title-overlap ratio above which two results are duplicates.
        weights:              Per-field relevance weights.
    """

    def __init__(
        self,
        min_content_length: int = 0,
        similarity_threshold: float = 0.8,
        weights: RelevanceWeights = RelevanceWeights(),
    ) -> None:
        self.min_content_length = min_content_length
        self.similarity_threshold = similarity_threshold
        self.weights = weights

    @classmethod
    def from_config(cls, config: ResultProcessingConfig) -> "ResultProcessor":
        return cls(
            min_content_length=config.min_content_length,
            similarity_threshold=config.similarity_threshold,
            weights=RelevanceWeights(config.title_weight, config.content_weight, config.url_weight),
        )

    def process(self, results: list[SearchResult], query: str) -> list[SearchResult]:
        """Return the filtered, deduplicated, ranked results.

        Truncation to the requested size is left to the caller.
        """
        filtered = self.quality_filter(results)
        unique = self.deduplicate(filtered)
        ranked = self.rank(unique, query)
        logger.debug(
            "processor.done",
            received=len(results),
            filtered=len(filtered),
            unique=len(unique),
        )
        return ranked

    def quality_filter(self, results: list[SearchResult]) -> list[SearchResult]:
        if self.min_content_length <= 0:
            return list(results)
        return [r for r in results if len(r.content) >= self.min_content_length]

    def is_duplicate(self, candidate: SearchResult, kept: SearchResult) -> bool:
        if candidate.url and kept.url and candidate.url == kept.url:
            return True
        return title_similarity(candidate.title, kept.title) > self.similarity_threshold

    def deduplicate(self, results: list[SearchResult]) -> list[SearchResult]:
        """Drop later results duplicating an already-kept one (first wins)."""
        unique: list[SearchResult] = []
        for result in results:
            if any(self.is_duplicate(result, kept) for kept in unique):
                continue
            unique.append(result)
        return unique

    def rank(self, results: list[SearchResult], query: str) -> list[SearchResult]:
        """Score each result and sort descending; ties keep arrival order."""
        scored = [
            r.model_copy(update={"relevance": relevance_score(r, query, self.weights)})
            for r in results
        ]
        return sorted(scored, key=lambda r: r.relevance, reverse=True)
