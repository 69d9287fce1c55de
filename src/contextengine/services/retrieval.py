"""Retrieval Service - high-level API over the active context store.

This is the entry point for query-style and tool-style callers. It
validates every request, delegates to the store selected at startup and
returns ranked, paginated results with totals.
"""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from ..config import EngineConfig
from ..container import Container
from ..errors import ConfigurationError, ValidationError
from ..interfaces import (
    ContextFilter,
    ContextKind,
    ContextPatch,
    ContextRecord,
    MatchMode,
    QueryResult,
    ScoredContext,
)
from ..providers.base import ProviderHealth
from ..utils import extract_keywords, normalize_tags
from .seed import SeedSummary, load_seed_files

logger = logging.getLogger(__name__)

# Number of contexts attached by enhance() unless told otherwise
DEFAULT_ENHANCE_LIMIT = 3


@dataclass
class EnhancedQuery:
    """A free-text message together with the contexts found for it.

    Attributes:
        original: The message as given
        keywords: Keywords the context query was built from
        contexts: Matching contexts in ranked order
        text: Markdown rendering of the message and its contexts
    """
    original: str
    keywords: list[str] = field(default_factory=list)
    contexts: list[ScoredContext] = field(default_factory=list)
    text: str = ""


def format_contexts(message: str, contexts: list[ScoredContext]) -> str:
    """Render a message and its supporting contexts as markdown."""
    lines = [f'Query: "{message}"', ""]
    if not contexts:
        return "\n".join(lines)

    lines += ["## Relevant Context:", ""]
    for scored in contexts:
        record = scored.record
        lines.append(f"### {record.title}")
        if record.description:
            lines += [record.description, ""]
        lines += [f"```{record.language or ''}", record.content, "```", ""]
    lines += ["", "## Original Query:", message]
    return "\n".join(lines)


class RetrievalService:
    """High-level context retrieval API.

    Usage:
        config = EngineConfig.from_env()
        service = RetrievalService(config)

        async with service:
            context_id = await service.create("best_practice", "Title", "Body")
            page = await service.query(tags=["security"])

    Or manually:
        service = RetrievalService(config)
        await service.start()
        try:
            ...
        finally:
            await service.stop()
    """

    def __init__(self, config: EngineConfig, redis_client: Optional[Any] = None):
        """Initialize retrieval service.

        Args:
            config: Engine configuration
            redis_client: Optional Redis client handed to the redis backend
        """
        self.config = config
        self._container = Container(config, redis_client=redis_client)
        self._started = False

    async def start(self) -> None:
        """Validate configuration, open the store and ingest configured seed files."""
        if self._started:
            return

        errors = self.config.validate()
        if errors:
            raise ConfigurationError(errors)

        await self._container.initialize()
        self._started = True

        if self.config.seed_paths:
            try:
                await self.ingest_seed_files(self.config.seed_paths)
            except Exception:
                await self.stop()
                raise

    async def stop(self) -> None:
        """Stop the service and release the store."""
        if not self._started:
            return
        await self._container.shutdown()
        self._started = False

    def _ensure_started(self) -> None:
        if not self._started:
            raise RuntimeError("RetrievalService not started. Call start() first.")

    @property
    def store(self):
        self._ensure_started()
        return self._container.store

    @property
    def ranker(self):
        self._ensure_started()
        return self._container.ranker

    # -- validation ---------------------------------------------------------

    @staticmethod
    def _check_id(context_id: str) -> str:
        if not isinstance(context_id, str) or not context_id.strip():
            raise ValidationError("Context id must be a non-empty string")
        return context_id.strip()

    @staticmethod
    def _check_title(title: Optional[str]) -> str:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Title must be a non-empty string")
        return title.strip()

    @staticmethod
    def _check_base_score(base_score: float) -> float:
        if isinstance(base_score, bool) or not isinstance(base_score, (int, float)):
            raise ValidationError(f"base_score must be a number, got {base_score!r}")
        if not 0.0 <= base_score <= 1.0:
            raise ValidationError(f"base_score must be between 0 and 1, got {base_score}")
        return float(base_score)

    @staticmethod
    def _check_optional_text(name: str, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string, got {type(value).__name__}")
        return value.strip() or None

    def build_filter(
        self,
        kinds: Optional[Iterable[Union[str, ContextKind]]] = None,
        tags: Optional[Iterable[str]] = None,
        domain_category: Optional[str] = None,
        text: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        match: MatchMode = "all",
    ) -> ContextFilter:
        """Validate query arguments into a ContextFilter.

        Raises:
            ValidationError: On an out-of-range limit or offset, an unknown
                kind, a blank tag, a non-string category or text, or an unknown
                match mode
        """
        max_page = self.config.query.max_page_size
        if limit is None:
            limit = self.config.query.default_page_size
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= max_page:
            raise ValidationError(f"limit must be between 1 and {max_page}, got {limit!r}")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise ValidationError(f"offset must be >= 0, got {offset!r}")
        if match not in ("all", "any"):
            raise ValidationError(f"match must be 'all' or 'any', got {match!r}")

        if isinstance(kinds, (str, ContextKind)):
            kinds = [kinds]
        domain_category = self._check_optional_text("domain_category", domain_category)
        text = self._check_optional_text("text", text)

        return ContextFilter(
            kinds=frozenset(ContextKind.parse(k) for k in kinds or ()),
            tags=frozenset(normalize_tags(tags or ())),
            domain_category=domain_category,
            text_query=text,
            limit=limit,
            offset=offset,
            match=match,
        )

    # -- CRUD ---------------------------------------------------------------

    async def create(
        self,
        kind: Union[str, ContextKind],
        title: str,
        content: str,
        *,
        description: str = "",
        tags: Optional[list[str]] = None,
        language: Optional[str] = None,
        domain_category: Optional[str] = None,
        author: Optional[str] = None,
        base_score: Optional[float] = None,
        related_ids: Optional[list[str]] = None,
    ) -> str:
        """Create a context and return its new id.

        When ``base_score`` is omitted it is derived from the record by
        :meth:`RelevanceRanker.prior_score`.

        Raises:
            ValidationError: On invalid input
            CapacityExceededError: If the store is full and may not evict
        """
        self._ensure_started()

        record = ContextRecord(
            id=str(uuid.uuid4()),
            kind=ContextKind.parse(kind),
            content=content or "",
            title=self._check_title(title),
            description=description or "",
            tags=normalize_tags(tags or []),
            language=language,
            domain_category=domain_category,
            author=author,
            related_ids=list(related_ids or []),
        )
        if base_score is None:
            record.base_score = self.ranker.prior_score(record)
        else:
            record.base_score = self._check_base_score(base_score)

        context_id = await self.store.create(record)
        logger.debug("Created context %s (%s)", context_id, record.kind.value)
        return context_id

    def _check_record(self, record: ContextRecord) -> ContextRecord:
        """Validate a caller-built record and return a copy safe to store."""
        if not isinstance(record, ContextRecord):
            raise ValidationError(f"Expected ContextRecord, got {type(record).__name__}")
        checked = record.copy()
        checked.id = self._check_id(record.id)
        checked.title = self._check_title(record.title)
        checked.base_score = self._check_base_score(record.base_score)
        return checked

    async def batch_create(self, records: Iterable[ContextRecord]) -> list[str]:
        """Store many records in atomic chunks.

        The caller's records are copied, never modified.

        Raises:
            ValidationError: If any record is invalid (nothing is stored)
            BatchIngestError: If a chunk fails after earlier chunks committed
        """
        self._ensure_started()
        checked = [self._check_record(r) for r in records]
        if not checked:
            return []
        return await self.store.batch_create(checked)

    async def get(self, context_id: str) -> ContextRecord:
        """Get a context by id.

        Raises:
            NotFoundError: If the context does not exist
        """
        self._ensure_started()
        return await self.store.get(self._check_id(context_id))

    async def update(self, context_id: str, patch: ContextPatch) -> ContextRecord:
        """Apply a partial update and return the updated context.

        Raises:
            ValidationError: On an invalid patch
            NotFoundError: If the context does not exist
        """
        self._ensure_started()
        context_id = self._check_id(context_id)
        if not isinstance(patch, ContextPatch):
            raise ValidationError(f"Expected ContextPatch, got {type(patch).__name__}")

        checked = ContextPatch(**patch.changes())
        if checked.title is not None:
            checked.title = self._check_title(checked.title)
        if checked.base_score is not None:
            checked.base_score = self._check_base_score(checked.base_score)
        if checked.kind is not None:
            checked.kind = ContextKind.parse(checked.kind)
        if checked.tags is not None:
            checked.tags = normalize_tags(checked.tags)
        if checked.related_ids is not None:
            checked.related_ids = list(checked.related_ids)

        return await self.store.update(context_id, checked)

    async def delete(self, context_id: str) -> bool:
        """Delete a context. Returns False if it did not exist."""
        self._ensure_started()
        return await self.store.delete(self._check_id(context_id))

    # -- retrieval ----------------------------------------------------------

    async def query(
        self,
        kinds: Optional[Iterable[Union[str, ContextKind]]] = None,
        tags: Optional[Iterable[str]] = None,
        domain_category: Optional[str] = None,
        text: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        match: MatchMode = "all",
    ) -> QueryResult:
        """Query contexts.

        Args:
            kinds: Accepted kinds (any of)
            tags: Accepted tags (a context needs at least one)
            domain_category: Exact domain category
            text: Free text; contexts sharing more keywords rank higher
            limit: Page size (defaults to query.default_page_size)
            offset: Page start
            match: "all" to require every supplied field, "any" for one

        Returns:
            QueryResult holding one ranked page and the total match count
        """
        self._ensure_started()
        filter = self.build_filter(kinds, tags, domain_category, text, limit, offset, match)
        return await self._run_query(filter)

    async def _run_query(self, filter: ContextFilter) -> QueryResult:
        records, total = await self.store.query(filter)
        results = [
            ScoredContext(record=r, score=self.ranker.score(r, filter))
            for r in records
        ]
        return QueryResult(results=results, total=total, offset=filter.offset, limit=filter.limit)

    async def count(
        self,
        kinds: Optional[Iterable[Union[str, ContextKind]]] = None,
        tags: Optional[Iterable[str]] = None,
        domain_category: Optional[str] = None,
        text: Optional[str] = None,
        match: MatchMode = "all",
    ) -> int:
        """Count contexts matching the given criteria."""
        self._ensure_started()
        filter = self.build_filter(kinds, tags, domain_category, text, match=match)
        return await self.store.count(filter)

    async def similar(self, context_id: str, top_k: int = 5) -> list[ScoredContext]:
        """Find contexts similar to an existing one.

        Candidates share the source's kind, a tag or its domain category;
        the source itself is never returned.

        Raises:
            ValidationError: If top_k is out of range
            NotFoundError: If the source context does not exist
        """
        self._ensure_started()
        max_page = self.config.query.max_page_size
        if isinstance(top_k, bool) or not isinstance(top_k, int) or not 0 <= top_k <= max_page:
            raise ValidationError(f"top_k must be between 0 and {max_page}, got {top_k!r}")

        source = await self.store.get(self._check_id(context_id))
        if top_k == 0:
            return []

        filter = ContextFilter(
            kinds=frozenset({source.kind}),
            tags=frozenset(source.tags),
            domain_category=source.domain_category,
            limit=top_k + 1,
            match="any",
        )
        result = await self._run_query(filter)
        return [r for r in result.results if r.record.id != source.id][:top_k]

    async def stats(self) -> dict[str, Any]:
        """Counts per kind, tag and domain category, plus the backend name."""
        self._ensure_started()
        stats = await self.store.stats()
        stats["backend"] = self.config.store.backend.value
        return stats

    async def enhance(
        self,
        message: str,
        limit: int = DEFAULT_ENHANCE_LIMIT,
        auto_include: bool = True,
    ) -> EnhancedQuery:
        """Attach the most relevant contexts to a free-text message.

        Keywords are extracted from the message (stop words removed) and
        used as a text query. With ``auto_include=False`` the contexts are
        returned but left out of the rendered text.
        """
        self._ensure_started()
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message must be a non-empty string")

        keywords = extract_keywords(message)
        contexts: list[ScoredContext] = []
        if keywords:
            result = await self.query(text=" ".join(keywords), limit=limit)
            contexts = result.results

        logger.debug("Enhance found %d contexts for keywords %s", len(contexts), keywords)
        return EnhancedQuery(
            original=message,
            keywords=keywords,
            contexts=contexts,
            text=format_contexts(message, contexts if auto_include else []),
        )

    # -- ingestion and maintenance ------------------------------------------

    async def ingest_seed(self, records: Iterable[ContextRecord]) -> list[str]:
        """Ingest seed records through batch_create."""
        records = list(records)
        ids = await self.batch_create(records)
        logger.info("Ingested %d seed contexts", len(ids))
        return ids

    async def ingest_seed_files(
        self,
        paths: Iterable[Union[str, Path]],
        default_language: Optional[str] = None,
    ) -> SeedSummary:
        """Load seed files, skip invalid entries and ingest the rest."""
        self._ensure_started()
        records, summary = load_seed_files(paths, default_language)
        summary.ingested = len(await self.ingest_seed(records))
        return summary

    async def verify(self) -> list[str]:
        """Audit and repair index consistency. Returns the repaired ids."""
        self._ensure_started()
        return await self.store.verify()

    async def health(self) -> dict[str, ProviderHealth]:
        """Health of the underlying providers."""
        return await self._container.health_check()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
