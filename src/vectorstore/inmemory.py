from __future__ import annotations

"""In-memory vector index for local testing and small notebooks."""

import itertools
from dataclasses import dataclass, field
from typing import Any

from src.rag.types import EmbeddingRecord, QueryOptions, QueryResult
from src.vectorstore.base import BackendType, BaseVectorIndex, cosine_distance, rank_candidates


@dataclass
class _Entry:
    seq: int
    chunk_id: str
    vector: list[float]
    metadata: dict[str, Any] | None = field(default=None)


class InMemoryVectorIndex(BaseVectorIndex):
    """Exact cosine search over entries held in a dict; data dies with close."""
    backend = BackendType.MEMORY

    def __init__(self) -> None:
        super().__init__()
        self._entries: dict[str, _Entry] = {}
        self._sequence = itertools.count()

    def _open(self, notebook_id: str, dimensions: int) -> None:
        self._entries = {}

    def _upsert(self, records: list[EmbeddingRecord], vectors: list[list[float]]) -> None:
        staged = dict(self._entries)
        for record, vector in zip(records, vectors):
            existing = staged.get(record.id)
            seq = existing.seq if existing else next(self._sequence)
            staged[record.id] = _Entry(
                seq=seq,
                chunk_id=record.chunk_id,
                vector=vector,
                metadata=dict(record.metadata) if record.metadata else None,
            )
        self._entries = staged

    def _delete_where(self, field_name: str, values: list[str]) -> int:
        targets = set(values)
        if field_name == "embedding_id":
            doomed = [key for key in self._entries if key in targets]
        else:
            doomed = [key for key, entry in self._entries.items() if entry.chunk_id in targets]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def _query(self, vector: list[float], options: QueryOptions) -> list[QueryResult]:
        allowed = set(options.chunk_ids) if options.chunk_ids is not None else None
        candidates = [
            (cosine_distance(vector, entry.vector), entry.seq, key, entry.chunk_id, entry.metadata)
            for key, entry in self._entries.items()
            if allowed is None or entry.chunk_id in allowed
        ]
        return rank_candidates(candidates, options)

    def _clear(self) -> None:
        self._entries = {}

    def _count(self) -> int:
        return len(self._entries)

    def _release(self) -> None:
        self._entries = {}
