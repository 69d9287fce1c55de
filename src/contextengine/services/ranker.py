"""Relevance ranking for query and similarity results.

The score is a weighted sum of independent signals:
- base:     the record's author-assigned base_score
- tags:     share of filter tags the record carries
- kind:     bonus when the record's kind is one of the filter kinds
- category: bonus when the domain category matches exactly
- text:     share of query keywords found in title/description/content/tags

Every weight is non-negative and every signal only grows as more of the
filter matches, so adding a matching tag, kind or keyword never lowers a
score. The ranker keeps no state between calls.
"""

import logging
from typing import TYPE_CHECKING, Iterable

from ..interfaces import ContextFilter, ContextKind, ContextRecord, ScoredContext
from ..utils import searchable_tokens, tokenize

if TYPE_CHECKING:
    from ..config.providers import RankingConfig

logger = logging.getLogger(__name__)

# Default weights; they sum to 1.0 so scores stay within [0, 1]
DEFAULT_BASE_WEIGHT = 0.4
DEFAULT_TAG_WEIGHT = 0.25
DEFAULT_KIND_WEIGHT = 0.1
DEFAULT_CATEGORY_WEIGHT = 0.1
DEFAULT_TEXT_WEIGHT = 0.15


def query_tokens(filter: ContextFilter) -> set[str]:
    return tokenize(filter.text_query or "")


class RelevanceRanker:
    """Deterministic weighted relevance scoring."""

    def __init__(
        self,
        base_weight: float = DEFAULT_BASE_WEIGHT,
        tag_weight: float = DEFAULT_TAG_WEIGHT,
        kind_weight: float = DEFAULT_KIND_WEIGHT,
        category_weight: float = DEFAULT_CATEGORY_WEIGHT,
        text_weight: float = DEFAULT_TEXT_WEIGHT,
    ):
        """Initialize ranker.

        Args:
            base_weight: Weight of record.base_score
            tag_weight: Weight of the tag overlap ratio
            kind_weight: Bonus for a kind match
            category_weight: Bonus for a domain category match
            text_weight: Weight of the keyword overlap ratio

        Raises:
            ValueError: If any weight is negative
        """
        for name, value in (
            ("base_weight", base_weight),
            ("tag_weight", tag_weight),
            ("kind_weight", kind_weight),
            ("category_weight", category_weight),
            ("text_weight", text_weight),
        ):
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")
        self.base_weight = base_weight
        self.tag_weight = tag_weight
        self.kind_weight = kind_weight
        self.category_weight = category_weight
        self.text_weight = text_weight

    @classmethod
    def from_config(cls, config: "RankingConfig") -> "RelevanceRanker":
        return cls(**config.weights())

    def score(self, record: ContextRecord, filter: ContextFilter) -> float:
        """Score a record against a filter."""
        score = self.base_weight * min(max(record.base_score, 0.0), 1.0)

        if filter.tags:
            matched = sum(1 for tag in filter.tags if tag in record.tags)
            score += self.tag_weight * matched / len(filter.tags)

        if filter.kinds and record.kind in filter.kinds:
            score += self.kind_weight

        if filter.domain_category and record.domain_category == filter.domain_category:
            score += self.category_weight

        tokens = query_tokens(filter)
        if tokens:
            matched = len(tokens & searchable_tokens(record))
            score += self.text_weight * matched / len(tokens)

        return score

    def sort_key(self, record: ContextRecord, filter: ContextFilter) -> tuple:
        """Score descending, then newest first, then id ascending."""
        return (-self.score(record, filter), -record.created_at.timestamp(), record.id)

    def rank(
        self, records: Iterable[ContextRecord], filter: ContextFilter
    ) -> list[ScoredContext]:
        """Score and order records. No pagination is applied."""
        scored = [
            (self.sort_key(record, filter), record)
            for record in records
        ]
        scored.sort(key=lambda x: x[0])
        return [ScoredContext(record=r, score=-key[0]) for key, r in scored]

    @staticmethod
    def prior_score(record: ContextRecord) -> float:
        """Default base_score for records ingested without one.

        Reference material (documentation, best practices, security tips)
        and deployment tooling start higher; detailed, well-tagged and
        described records get small boosts.
        """
        score = 0.5
        if record.kind in (
            ContextKind.DOCUMENTATION,
            ContextKind.BEST_PRACTICE,
            ContextKind.SECURITY_TIP,
        ):
            score += 0.2
        elif record.kind == ContextKind.DEPLOYMENT_TOOL:
            score += 0.15
        if len(record.content) > 500:
            score += 0.1
        if len(record.tags) >= 3:
            score += 0.1
        if len(record.description) > 50:
            score += 0.1
        return min(score, 1.0)


def create_ranker(config: "RankingConfig") -> RelevanceRanker:
    """Factory function to create a ranker from config."""
    ranker = RelevanceRanker.from_config(config)
    logger.debug("Relevance ranker weights: %s", config.weights())
    return ranker
