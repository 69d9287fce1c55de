"""Seed data loading.

Seed files are YAML or JSON documents holding either a list of contexts or
a mapping with a ``contexts`` list. Each context may be written flat::

    - kind: best_practice
      title: Validate caller input
      content: ...
      tags: [security, input]

or in the nested catalogue shape, with attributes under ``metadata``::

    - type: best-practice
      content: ...
      metadata:
        title: Validate caller input
        contractType: token
        relevanceScore: 0.8
      relatedContextIds: []

Entries are validated one by one; invalid entries are counted and skipped
so that one bad entry never blocks the rest of a file.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..errors import ValidationError
from ..interfaces import ContextKind, ContextRecord
from ..utils import normalize_tags
from .ranker import RelevanceRanker

logger = logging.getLogger(__name__)

# Keys that belong under ``metadata`` in the nested shape
_METADATA_KEYS = {
    "title", "description", "tags", "language", "author",
    "domain_category", "contractType", "base_score", "relevanceScore",
}


class SeedMetadata(BaseModel):
    """Descriptive attributes of a seed context."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(..., min_length=1, description="Short title")
    description: str = Field(default="", description="Short summary")
    tags: list[str] = Field(default_factory=list, description="Tags, normalized on load")
    language: Optional[str] = Field(default=None, description="Language of the content")
    domain_category: Optional[str] = Field(
        default=None,
        alias="contractType",
        description="Domain classification, e.g. the contract type",
    )
    author: Optional[str] = Field(default=None, description="Author of the context")
    base_score: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        alias="relevanceScore",
        description="Prior relevance; derived from the record when omitted",
    )

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be blank")
        return v.strip()

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: Any) -> list[str]:
        if v is None:
            return []
        return normalize_tags(v)


class SeedContext(BaseModel):
    """One seed entry, in either the flat or the nested shape."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = Field(default=None, description="Explicit id; a UUID is assigned when omitted")
    kind: ContextKind = Field(..., alias="type", description="Context kind")
    content: str = Field(..., description="Body text")
    metadata: SeedMetadata
    related_ids: list[str] = Field(
        default_factory=list,
        alias="relatedContextIds",
        description="IDs of related contexts",
    )

    @model_validator(mode="before")
    @classmethod
    def lift_flat_shape(cls, data: Any) -> Any:
        """Move top-level metadata keys of a flat entry under ``metadata``."""
        if not isinstance(data, dict) or "metadata" in data:
            return data
        data = dict(data)
        data["metadata"] = {k: data.pop(k) for k in list(data) if k in _METADATA_KEYS}
        return data

    @field_validator("kind", mode="before")
    @classmethod
    def validate_kind(cls, v: Any) -> ContextKind:
        return ContextKind.parse(v)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("id must not be blank")
        return v

    def to_record(self, default_language: Optional[str] = None) -> ContextRecord:
        """Build a ContextRecord, deriving base_score when the entry has none."""
        meta = self.metadata
        record = ContextRecord(
            kind=self.kind,
            content=self.content,
            title=meta.title,
            description=meta.description,
            tags=meta.tags,
            language=meta.language or default_language,
            domain_category=meta.domain_category,
            author=meta.author,
            related_ids=list(self.related_ids),
        )
        if self.id is not None:
            record.id = self.id
        if meta.base_score is None:
            record.base_score = RelevanceRanker.prior_score(record)
        else:
            record.base_score = meta.base_score
        return record


@dataclass
class SeedSummary:
    """Result summary of a seed load.

    Attributes:
        total: Entries read from all sources
        loaded: Entries that passed validation
        invalid: Entries skipped because they failed validation
        ingested: Records committed to the store (set by the caller)
    """
    total: int = 0
    loaded: int = 0
    invalid: int = 0
    ingested: int = 0
    duration_ms: float = 0.0
    sources: list[str] = field(default_factory=list)
    error_details: list[str] = field(default_factory=list)


def _describe(exc: Exception) -> str:
    if isinstance(exc, pydantic.ValidationError):
        return "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'entry'}: {err['msg']}"
            for err in exc.errors()
        )
    return str(exc)


def read_seed_file(path: Union[str, Path]) -> list[dict]:
    """Read the raw entries of a YAML or JSON seed file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValidationError: If the document is not a list of entries
    """
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("contexts")
    if not isinstance(data, list):
        raise ValidationError(
            f"Seed file {path} must contain a list of contexts or a 'contexts' list"
        )
    return data


def parse_seed_entries(
    entries: Iterable[Any],
    source: str = "<seed>",
    default_language: Optional[str] = None,
    summary: Optional[SeedSummary] = None,
) -> list[ContextRecord]:
    """Validate raw entries and convert the valid ones to records.

    Args:
        entries: Raw entry dicts
        source: Name used in error details
        default_language: Language for entries that do not name one
        summary: Summary to accumulate counts into

    Returns:
        Records for the valid entries, in input order.
    """
    if summary is None:
        summary = SeedSummary()
    records = []
    for index, entry in enumerate(entries):
        summary.total += 1
        try:
            seed = SeedContext.model_validate(entry)
            records.append(seed.to_record(default_language))
        except (pydantic.ValidationError, ValidationError) as e:
            summary.invalid += 1
            summary.error_details.append(f"{source}[{index}]: {_describe(e)}")
            continue
        summary.loaded += 1
    return records


def load_seed_files(
    paths: Iterable[Union[str, Path]],
    default_language: Optional[str] = None,
) -> tuple[list[ContextRecord], SeedSummary]:
    """Load and validate every entry of the given seed files.

    Duplicate explicit ids across files keep their first occurrence.

    Returns:
        Tuple of (records, summary).
    """
    t0 = time.monotonic()
    summary = SeedSummary()
    records: list[ContextRecord] = []
    seen: set[str] = set()

    for path in paths:
        source = str(path)
        summary.sources.append(source)
        for record in parse_seed_entries(
            read_seed_file(path), source, default_language, summary
        ):
            if record.id in seen:
                summary.loaded -= 1
                summary.invalid += 1
                summary.error_details.append(f"{source}: duplicate context id {record.id}")
                continue
            seen.add(record.id)
            records.append(record)

    summary.duration_ms = (time.monotonic() - t0) * 1000
    logger.info(
        "Seed load: %d total, %d valid, %d invalid from %d files in %.0fms",
        summary.total,
        summary.loaded,
        summary.invalid,
        len(summary.sources),
        summary.duration_ms,
    )
    for detail in summary.error_details:
        logger.warning("Skipped seed entry %s", detail)
    return records, summary
