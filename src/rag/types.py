from __future__ import annotations

"""Core data types for extraction, chunking and retrieval."""

from dataclasses import dataclass, field
from typing import Any, Sequence


@dataclass(frozen=True)
class ExtractedDocument:
    """Normalized text extracted from a fetched web resource."""
    content: str
    source_url: str
    mime_type: str = "text/html"
    title: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Chunk:
    """Offset-addressed span of a normalized text."""
    content: str
    index: int
    start_offset: int
    end_offset: int
    token_estimate: int


@dataclass(frozen=True)
class EmbeddingRecord:
    """Embedding vector owned by a chunk."""
    id: str
    chunk_id: str
    vector: Sequence[float]
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class QueryResult:
    """Nearest-neighbour hit with raw distance and derived score."""
    id: str
    chunk_id: str
    score: float
    distance: float
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class QueryOptions:
    top_k: int = 5
    threshold: float | None = None
    chunk_ids: Sequence[str] | None = None
