from __future__ import annotations

"""Shared vector index contract, errors and similarity helpers."""

import hashlib
import logging
import math
import re
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Iterable, Sequence

from src.rag.types import EmbeddingRecord, QueryOptions, QueryResult

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9]")


class VectorStoreError(RuntimeError):
    """Raised when a vector index operation fails."""
    pass


class NotInitializedError(VectorStoreError):
    """Raised when an index is used before initialize or after close."""
    pass


class UnsupportedBackendError(VectorStoreError):
    """Raised when a backend type is not one of the known kinds."""
    def __init__(self, backend_type: Any) -> None:
        self.backend_type = backend_type
        super().__init__(f"Unsupported vector store backend: {backend_type}")


class DimensionMismatchError(VectorStoreError):
    """Raised when a vector width differs from the index width."""
    def __init__(self, expected: int, actual: int, record_id: str | None = None) -> None:
        self.expected = expected
        self.actual = actual
        self.record_id = record_id
        target = f" for {record_id}" if record_id else ""
        super().__init__(
            f"Vector dimension mismatch{target}: expected {expected}, got {actual}"
        )


class BackendType(str, Enum):
    """Closed set of storage engines."""
    MEMORY = "memory"
    SQLITE = "sqlite"
    MILVUS = "milvus"

    @classmethod
    def parse(cls, value: BackendType | str) -> BackendType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower().strip())
        except ValueError as exc:
            raise UnsupportedBackendError(value) from exc


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine distance in [0, 2]; zero vectors are treated as orthogonal."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 1.0
    similarity = max(-1.0, min(1.0, dot / (norm_a * norm_b)))
    return 1.0 - similarity


def distance_to_score(distance: float) -> float:
    """Map a cosine distance to a similarity score in [0, 1]."""
    return max(0.0, min(1.0, 1.0 - distance / 2.0))


def rank_candidates(
    candidates: Iterable[tuple[float, int, str, str, dict[str, Any] | None]],
    options: QueryOptions,
) -> list[QueryResult]:
    """Order (distance, seq, id, chunk_id, metadata) tuples and apply limits.

    Ties on distance fall back to insertion sequence. The threshold only
    removes entries from the top_k window, it never widens it.
    """
    if options.top_k <= 0:
        return []
    ordered = sorted(candidates, key=lambda item: (item[0], item[1]))[: options.top_k]
    results = [
        QueryResult(
            id=embedding_id,
            chunk_id=chunk_id,
            score=distance_to_score(distance),
            distance=distance,
            metadata=metadata,
        )
        for distance, _, embedding_id, chunk_id, metadata in ordered
    ]
    if options.threshold is not None:
        results = [result for result in results if result.score >= options.threshold]
    return results


def collection_name(prefix: str, notebook_id: str, dimensions: int) -> str:
    """Build a storage-safe collection name for one notebook and width."""
    return f"{collection_prefix(prefix, notebook_id)}{dimensions}"


def collection_prefix(prefix: str, notebook_id: str) -> str:
    safe = _UNSAFE_NAME_RE.sub("_", notebook_id)[:48]
    digest = hashlib.sha1(notebook_id.encode("utf-8")).hexdigest()[:8]
    return f"{prefix}_{safe}_{digest}_d"


class BaseVectorIndex(ABC):
    """Collection-scoped embedding store bound to one notebook and width.

    Public methods validate state and serialize access with a per-instance
    lock; backends implement the underscored hooks.
    """
    backend: BackendType

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._notebook_id: str | None = None
        self._dimensions: int | None = None
        self._initialized = False
        self._closed = False

    @property
    def notebook_id(self) -> str | None:
        return self._notebook_id

    @property
    def dimensions(self) -> int | None:
        return self._dimensions

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self, notebook_id: str, dimensions: int) -> None:
        """Bind the index to a notebook and vector width."""
        if not notebook_id:
            raise VectorStoreError("notebook_id must not be empty")
        if dimensions <= 0:
            raise VectorStoreError("dimensions must be greater than zero")
        with self._lock:
            if self._closed:
                raise VectorStoreError("Vector index is closed and cannot be re-initialized")
            if self._initialized:
                if (self._notebook_id, self._dimensions) == (notebook_id, dimensions):
                    return
                raise VectorStoreError(
                    f"Vector index already bound to {self._notebook_id} ({self._dimensions} dims)"
                )
            self._open(notebook_id, dimensions)
            self._notebook_id = notebook_id
            self._dimensions = dimensions
            self._initialized = True
        logger.info(
            "vector_index_initialized",
            extra={
                "backend": self.backend.value,
                "notebook_id": notebook_id,
                "dimensions": dimensions,
            },
        )

    def upsert(self, records: Iterable[EmbeddingRecord]) -> int:
        """Insert or replace records by embedding id as one batch."""
        with self._lock:
            self._require_initialized()
            batch = list(records)
            if not batch:
                return 0
            vectors = [self._validate_vector(record.vector, record.id) for record in batch]
            self._upsert(batch, vectors)
        logger.debug(
            "vectors_upserted",
            extra={"backend": self.backend.value, "notebook_id": self._notebook_id, "count": len(batch)},
        )
        return len(batch)

    def delete(self, ids: Sequence[str]) -> int:
        """Delete entries by embedding id."""
        with self._lock:
            self._require_initialized()
            if not ids:
                return 0
            return self._delete_where("embedding_id", list(dict.fromkeys(ids)))

    def delete_by_chunk_ids(self, chunk_ids: Sequence[str]) -> int:
        """Delete every entry owned by one of the chunks."""
        with self._lock:
            self._require_initialized()
            if not chunk_ids:
                return 0
            return self._delete_where("chunk_id", list(dict.fromkeys(chunk_ids)))

    def query(
        self, vector: Sequence[float], options: QueryOptions | None = None
    ) -> list[QueryResult]:
        """Return the nearest entries ordered by ascending distance."""
        opts = options or QueryOptions()
        with self._lock:
            self._require_initialized()
            query_vector = self._validate_vector(vector, None)
            if opts.top_k <= 0:
                return []
            if opts.chunk_ids is not None and not opts.chunk_ids:
                return []
            results = self._query(query_vector, opts)
        logger.debug(
            "vector_query_completed",
            extra={
                "backend": self.backend.value,
                "notebook_id": self._notebook_id,
                "results": len(results),
                "threshold": opts.threshold,
            },
        )
        return results

    def clear(self) -> None:
        """Remove every entry of the notebook collection."""
        with self._lock:
            self._require_initialized()
            self._clear()
        logger.info(
            "vector_index_cleared",
            extra={"backend": self.backend.value, "notebook_id": self._notebook_id},
        )

    def count(self) -> int:
        with self._lock:
            self._require_initialized()
            return self._count()

    def close(self) -> None:
        """Release backend resources; the instance is unusable afterwards."""
        with self._lock:
            if self._closed:
                return
            was_initialized = self._initialized
            self._initialized = False
            self._closed = True
            if was_initialized:
                self._release()
        logger.info(
            "vector_index_closed",
            extra={"backend": self.backend.value, "notebook_id": self._notebook_id},
        )

    def stats(self) -> dict[str, int | str | None]:
        """Return basic stats for the index."""
        return {
            "backend": self.backend.value,
            "notebook_id": self._notebook_id,
            "dimensions": self._dimensions,
            "count": self.count(),
            "collection": self.collection_name,
        }

    @property
    def collection_name(self) -> str | None:
        return None

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Vector index not initialized")

    def _validate_vector(self, vector: Sequence[float], record_id: str | None) -> list[float]:
        """Reject vectors of the wrong width or with non-finite values."""
        expected = self._dimensions or 0
        if len(vector) != expected:
            logger.warning(
                "vector_dimension_mismatch",
                extra={
                    "backend": self.backend.value,
                    "notebook_id": self._notebook_id,
                    "expected": expected,
                    "actual": len(vector),
                    "record_id": record_id,
                },
            )
            raise DimensionMismatchError(expected, len(vector), record_id)
        cleaned: list[float] = []
        for value in vector:
            number = float(value)
            if not math.isfinite(number):
                raise VectorStoreError("Vector contains a non-finite value")
            cleaned.append(number)
        return cleaned

    @abstractmethod
    def _open(self, notebook_id: str, dimensions: int) -> None:
        """Prepare storage for the notebook at the given width."""

    @abstractmethod
    def _upsert(self, records: list[EmbeddingRecord], vectors: list[list[float]]) -> None:
        ...

    @abstractmethod
    def _delete_where(self, field_name: str, values: list[str]) -> int:
        """Delete entries whose embedding_id or chunk_id is in values."""

    @abstractmethod
    def _query(self, vector: list[float], options: QueryOptions) -> list[QueryResult]:
        ...

    @abstractmethod
    def _clear(self) -> None:
        ...

    @abstractmethod
    def _count(self) -> int:
        ...

    @abstractmethod
    def _release(self) -> None:
        ...
