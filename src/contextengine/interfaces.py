"""Core interfaces for the Context Engine.

These define the record model and the contract that every storage backend
must satisfy. Backends are interchangeable: callers observe the same
results, ordering and errors from each of them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional
import uuid

from .errors import ValidationError
from .utils import normalize_tags

# How the fields of a ContextFilter combine
MatchMode = Literal["all", "any"]


class ContextKind(Enum):
    """Closed set of context record categories."""
    CODE_EXAMPLE = "code_example"
    BEST_PRACTICE = "best_practice"
    SECURITY_TIP = "security_tip"
    OPTIMIZATION = "optimization"
    DOCUMENTATION = "documentation"
    ERROR_PATTERN = "error_pattern"
    DEPLOYMENT_TOOL = "deployment_tool"
    RUNTIME_BEHAVIOR = "runtime_behavior"

    @classmethod
    def parse(cls, value: "str | ContextKind") -> "ContextKind":
        """Parse a kind, accepting hyphenated spellings and short aliases.

        Raises:
            ValidationError: If the value is not a known kind.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValidationError(f"Unknown context kind: {value!r}")
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        key = _KIND_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(f"Unknown context kind: {value!r}") from None


_KIND_ALIASES = {
    "example": "code_example",
    "security_note": "security_tip",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ContextRecord:
    """A single stored knowledge unit.

    Attributes:
        id: Unique identifier (UUID by default), immutable once stored
        kind: Category of the context
        content: Body text (code, prose, commands)
        title: Short title
        description: Short summary
        tags: Normalized tags (lower-case, trimmed, unique, sorted)
        language: Language of the content, if any
        domain_category: Optional classification (e.g. contract type)
        author: Who authored the context
        base_score: Author-assigned prior relevance in [0, 1]
        created_at: When the record was stored
        updated_at: When the record was last modified
        related_ids: IDs of related records. May reference deleted records.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    kind: ContextKind = ContextKind.DOCUMENTATION
    content: str = ""
    title: str = ""
    description: str = ""
    tags: list[str] = field(default_factory=list)
    language: Optional[str] = None
    domain_category: Optional[str] = None
    author: Optional[str] = None
    base_score: float = 0.5
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    related_ids: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.kind = ContextKind.parse(self.kind)
        self.tags = normalize_tags(self.tags)

    def copy(self) -> "ContextRecord":
        """Return an independent copy (list fields are not shared)."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["tags"] = list(self.tags)
        data["related_ids"] = list(self.related_ids)
        return ContextRecord(**data)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "content": self.content,
            "title": self.title,
            "description": self.description,
            "tags": list(self.tags),
            "language": self.language,
            "domain_category": self.domain_category,
            "author": self.author,
            "base_score": self.base_score,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "related_ids": list(self.related_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextRecord":
        """Inverse of :meth:`to_dict`."""
        return cls(
            id=data["id"],
            kind=ContextKind.parse(data["kind"]),
            content=data.get("content", ""),
            title=data.get("title", ""),
            description=data.get("description") or "",
            tags=data.get("tags") or [],
            language=data.get("language"),
            domain_category=data.get("domain_category"),
            author=data.get("author"),
            base_score=float(data.get("base_score", 0.5)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            related_ids=list(data.get("related_ids") or []),
        )

    def __repr__(self) -> str:
        return f"ContextRecord(id={self.id[:8]}..., kind={self.kind.value}, title='{self.title[:40]}')"


@dataclass
class ContextPatch:
    """Partial update for a context record. None means "leave unchanged"."""
    kind: Optional[ContextKind] = None
    content: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[list[str]] = None
    language: Optional[str] = None
    domain_category: Optional[str] = None
    author: Optional[str] = None
    base_score: Optional[float] = None
    related_ids: Optional[list[str]] = None

    def changes(self) -> dict[str, Any]:
        """Return the non-None fields of this patch."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.changes()

    def apply(self, record: ContextRecord, now: datetime) -> ContextRecord:
        """Return a patched copy of ``record`` with ``updated_at`` set to ``now``."""
        updated = record.copy()
        for name, value in self.changes().items():
            if name == "kind":
                value = ContextKind.parse(value)
            elif name == "tags":
                value = normalize_tags(value)
            elif name == "related_ids":
                value = list(value)
            setattr(updated, name, value)
        updated.updated_at = max(now, record.created_at)
        return updated


@dataclass
class ContextFilter:
    """Query filter.

    Within a field values are alternatives (kinds OR, tags ANY). Across
    fields, ``match="all"`` requires every supplied field to match and
    ``match="any"`` accepts a record matching any supplied field.

    Attributes:
        kinds: Accepted kinds
        tags: Accepted tags (a record needs at least one)
        domain_category: Exact domain category
        text_query: Free text; a record needs at least one of its tokens
        limit: Page size
        offset: Page start
        match: How fields combine
    """
    kinds: frozenset[ContextKind] = frozenset()
    tags: frozenset[str] = frozenset()
    domain_category: Optional[str] = None
    text_query: Optional[str] = None
    limit: int = 10
    offset: int = 0
    match: MatchMode = "all"

    @property
    def is_unfiltered(self) -> bool:
        """True when no field restricts the result set."""
        return not (self.kinds or self.tags or self.domain_category or self.text_query)


@dataclass
class ScoredContext:
    """A record together with the ranker score it was ordered by."""
    record: ContextRecord
    score: float

    def __repr__(self) -> str:
        return f"ScoredContext(score={self.score:.3f}, id={self.record.id[:8]}...)"


@dataclass
class QueryResult:
    """One page of query results plus the pre-pagination total."""
    results: list[ScoredContext]
    total: int
    offset: int
    limit: int

    @property
    def records(self) -> list[ContextRecord]:
        return [r.record for r in self.results]

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.results) < self.total


class IContextStore(ABC):
    """Contract implemented identically by every storage backend.

    Ordering contract for ``query``: ranker score descending, then
    ``created_at`` descending, then ``id`` ascending.
    """

    @abstractmethod
    async def create(self, record: ContextRecord) -> str:
        """Store a new record and return its id.

        Assigns ``created_at``/``updated_at``.

        Raises:
            ValidationError: If the id is already present.
            CapacityExceededError: If the store is full and may not evict.
        """

    @abstractmethod
    async def get(self, context_id: str) -> ContextRecord:
        """Get a record by id.

        Raises:
            NotFoundError: If no such record exists.
        """

    @abstractmethod
    async def update(self, context_id: str, patch: ContextPatch) -> ContextRecord:
        """Merge a patch into a record, re-indexing changed attributes.

        Raises:
            NotFoundError: If no such record exists.
        """

    @abstractmethod
    async def delete(self, context_id: str) -> bool:
        """Delete a record. Idempotent; returns whether one was removed."""

    @abstractmethod
    async def query(self, filter: ContextFilter) -> tuple[list[ContextRecord], int]:
        """Return one ordered page of matches plus the total match count."""

    @abstractmethod
    async def count(self, filter: Optional[ContextFilter] = None) -> int:
        """Count records matching a filter (all records when None)."""

    @abstractmethod
    async def batch_create(self, records: list[ContextRecord]) -> list[str]:
        """Store many records in chunks; each chunk is all-or-nothing.

        Raises:
            BatchIngestError: When a chunk fails. Earlier chunks stay committed.
        """

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        """Aggregate counts: total, by_kind, by_tag, by_domain_category."""

    @abstractmethod
    async def verify(self) -> list[str]:
        """Audit index consistency, prune dangling entries, return repaired ids."""
