"""Context Engine service implementations."""

from .ranker import RelevanceRanker, create_ranker
from .seed import SeedContext, SeedSummary, load_seed_files
from .retrieval import EnhancedQuery, RetrievalService

__all__ = [
    "RelevanceRanker",
    "create_ranker",
    "SeedContext",
    "SeedSummary",
    "load_seed_files",
    "EnhancedQuery",
    "RetrievalService",
]
