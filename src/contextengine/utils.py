"""Shared helpers for tag normalization and text tokenization.

Stores, the ranker and the retrieval service all go through these so that
index keys, filter values and scores agree on what a tag or token is.
"""

import re
from typing import Iterable

from .errors import ValidationError

_TOKEN_RE = re.compile(r"[a-z0-9_]+")

# Words that carry no signal when extracting keywords from free text
STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "can", "do",
    "does", "for", "from", "get", "has", "have", "how", "i", "if", "in",
    "into", "is", "it", "its", "me", "my", "of", "on", "or", "should",
    "so", "that", "the", "their", "then", "there", "this", "to", "use",
    "using", "want", "was", "we", "what", "when", "where", "which", "who",
    "why", "will", "with", "would", "you", "your",
})


def normalize_tag(tag: str) -> str:
    """Lower-case and trim a tag.

    Raises:
        ValidationError: If the tag is not a string or is blank.
    """
    if not isinstance(tag, str):
        raise ValidationError(f"Tag must be a string, got {type(tag).__name__}")
    normalized = tag.strip().lower()
    if not normalized:
        raise ValidationError("Tags must be non-empty strings")
    return normalized


def normalize_tags(tags: Iterable[str]) -> list[str]:
    """Normalize, de-duplicate and sort tags."""
    if isinstance(tags, str):
        tags = [tags]
    return sorted({normalize_tag(t) for t in tags})


def tokenize(text: str) -> set[str]:
    """Split text into lower-case word tokens of two or more characters."""
    if not text:
        return set()
    return {t for t in _TOKEN_RE.findall(text.lower()) if len(t) >= 2}


def extract_keywords(text: str) -> list[str]:
    """Keywords of a free-text message in order of first appearance, stop words removed."""
    seen: set[str] = set()
    keywords = []
    for token in _TOKEN_RE.findall((text or "").lower()):
        if len(token) < 2 or token in STOP_WORDS or token in seen:
            continue
        seen.add(token)
        keywords.append(token)
    return keywords


def searchable_tokens(record) -> set[str]:
    """Tokens of a record's title, description, content and tags.

    This is what a text query is matched against.
    """
    return tokenize(
        " ".join([record.title, record.description, record.content, " ".join(record.tags)])
    )
