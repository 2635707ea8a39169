from __future__ import annotations

"""Milvus-backed vector index, one collection per notebook and width."""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from src.rag.types import EmbeddingRecord, QueryOptions, QueryResult
from src.vectorstore.base import (
    BackendType,
    BaseVectorIndex,
    VectorStoreError,
    collection_name,
    collection_prefix,
    rank_candidates,
)

logger = logging.getLogger(__name__)

_ALL_ROWS_EXPR = 'embedding_id != ""'
_OUTPUT_FIELDS = ["embedding_id", "chunk_id", "metadata"]


class MilvusDependencyError(VectorStoreError):
    """Raised when Milvus dependencies are missing."""
    pass


@dataclass(frozen=True)
class MilvusConfig:
    """Configuration for Milvus connection and indexing."""
    uri: str = "http://localhost:19530"
    token: str | None = None
    collection_prefix: str = "notebook"
    consistency: str = "Strong"
    index_type: str = "HNSW"
    nlist: int = 1024
    nprobe: int = 10
    hnsw_m: int = 16
    hnsw_ef_construction: int = 200
    hnsw_ef: int = 64
    alias: str = "default"
    id_max_length: int = 256


def _import_pymilvus() -> Any:
    try:
        import pymilvus
    except ImportError as exc:
        raise MilvusDependencyError("pymilvus is required for MilvusVectorIndex") from exc
    return pymilvus


@contextmanager
def _storage_errors(operation: str, notebook_id: str | None) -> Iterator[None]:
    """Log client failures and re-raise them as VectorStoreError."""
    try:
        yield
    except VectorStoreError:
        raise
    except Exception as exc:
        logger.error(
            "milvus_vector_operation_failed",
            extra={"operation": operation, "notebook_id": notebook_id, "detail": str(exc)},
        )
        raise VectorStoreError(f"Milvus vector {operation} failed: {exc}") from exc


def stored_dimensions(config: MilvusConfig, notebook_id: str) -> int | None:
    """Return the width of the notebook's existing collection, if any."""
    pymilvus = _import_pymilvus()
    prefix = collection_prefix(config.collection_prefix, notebook_id)
    with _storage_errors("lookup", notebook_id):
        pymilvus.connections.connect(alias=config.alias, uri=config.uri, token=config.token or "")
        names = pymilvus.utility.list_collections(using=config.alias)
    for name in names:
        suffix = name[len(prefix):] if name.startswith(prefix) else ""
        if suffix.isdigit():
            return int(suffix)
    return None


class MilvusVectorIndex(BaseVectorIndex):
    """Approximate cosine search in an external Milvus deployment."""
    backend = BackendType.MILVUS
    metric_type = "COSINE"

    def __init__(self, config: MilvusConfig | None = None) -> None:
        super().__init__()
        self.config = config or MilvusConfig()
        self._collection: Any = None
        self._name: str | None = None

    @property
    def collection_name(self) -> str | None:
        return self._name

    def _open(self, notebook_id: str, dimensions: int) -> None:
        self._name = collection_name(self.config.collection_prefix, notebook_id, dimensions)
        with _storage_errors("open", notebook_id):
            self._collection = self._open_collection(notebook_id, dimensions)

    def _open_collection(self, notebook_id: str, dimensions: int) -> Any:
        """Connect, purge collections of other widths and load this one."""
        pymilvus = _import_pymilvus()
        utility = pymilvus.utility

        alias = self.config.alias
        pymilvus.connections.connect(alias=alias, uri=self.config.uri, token=self.config.token or "")
        stale_prefix = collection_prefix(self.config.collection_prefix, notebook_id)
        for existing in utility.list_collections(using=alias):
            if existing.startswith(stale_prefix) and existing != self._name:
                logger.warning(
                    "milvus_collection_replaced",
                    extra={"notebook_id": notebook_id, "old_collection": existing, "dimensions": dimensions},
                )
                utility.drop_collection(existing, using=alias)

        if utility.has_collection(self._name, using=alias):
            collection = pymilvus.Collection(
                self._name, using=alias, consistency_level=self.config.consistency
            )
        else:
            collection = pymilvus.Collection(
                self._name,
                self._build_schema(dimensions),
                using=alias,
                consistency_level=self.config.consistency,
            )
            collection.create_index(field_name="embedding", index_params=self._index_params())
        collection.load()
        return collection

    def _build_schema(self, dimensions: int) -> Any:
        from pymilvus import CollectionSchema, DataType, FieldSchema

        fields = [
            FieldSchema(
                name="embedding_id",
                dtype=DataType.VARCHAR,
                is_primary=True,
                max_length=self.config.id_max_length,
            ),
            FieldSchema(name="chunk_id", dtype=DataType.VARCHAR, max_length=self.config.id_max_length),
            FieldSchema(name="metadata", dtype=DataType.JSON),
            FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=dimensions),
        ]
        return CollectionSchema(fields=fields, description="Notebook chunk embeddings")

    def _index_params(self) -> dict[str, Any]:
        if self.config.index_type.upper() == "HNSW":
            return {
                "index_type": "HNSW",
                "metric_type": self.metric_type,
                "params": {
                    "M": self.config.hnsw_m,
                    "efConstruction": self.config.hnsw_ef_construction,
                },
            }
        return {
            "index_type": self.config.index_type,
            "metric_type": self.metric_type,
            "params": {"nlist": self.config.nlist},
        }

    def _search_params(self) -> dict[str, Any]:
        if self.config.index_type.upper() == "HNSW":
            return {"metric_type": self.metric_type, "params": {"ef": self.config.hnsw_ef}}
        return {"metric_type": self.metric_type, "params": {"nprobe": self.config.nprobe}}

    def _upsert(self, records: list[EmbeddingRecord], vectors: list[list[float]]) -> None:
        # Last occurrence wins when a batch repeats an id.
        rows_by_id: dict[str, dict[str, Any]] = {}
        for record, vector in zip(records, vectors):
            rows_by_id[record.id] = {
                "embedding_id": record.id,
                "chunk_id": record.chunk_id,
                "metadata": dict(record.metadata) if record.metadata else {},
                "embedding": vector,
            }
        with _storage_errors("upsert", self._notebook_id):
            self._collection.upsert(list(rows_by_id.values()))
            self._collection.flush()

    def _delete_where(self, field_name: str, values: list[str]) -> int:
        with _storage_errors("delete", self._notebook_id):
            result = self._collection.delete(_in_expr(field_name, values))
            self._collection.flush()
        return int(getattr(result, "delete_count", 0) or 0)

    def _query(self, vector: list[float], options: QueryOptions) -> list[QueryResult]:
        expr = _in_expr("chunk_id", list(options.chunk_ids)) if options.chunk_ids is not None else None
        with _storage_errors("query", self._notebook_id):
            results = self._collection.search(
                data=[vector],
                anns_field="embedding",
                param=self._search_params(),
                limit=options.top_k,
                expr=expr,
                output_fields=_OUTPUT_FIELDS,
            )
        candidates = []
        for position, hit in enumerate(results[0]):
            entity = hit.entity
            # COSINE hits report similarity in [-1, 1].
            distance = 1.0 - float(hit.distance)
            metadata = entity.get("metadata") or None
            candidates.append(
                (distance, position, str(entity.get("embedding_id")), str(entity.get("chunk_id")), metadata)
            )
        return rank_candidates(candidates, options)

    def _clear(self) -> None:
        with _storage_errors("clear", self._notebook_id):
            self._collection.delete(_ALL_ROWS_EXPR)
            self._collection.flush()

    def _count(self) -> int:
        with _storage_errors("count", self._notebook_id):
            rows = self._collection.query(expr=_ALL_ROWS_EXPR, output_fields=["count(*)"])
        if not rows:
            return 0
        return int(rows[0].get("count(*)", 0))

    def _release(self) -> None:
        collection, self._collection = self._collection, None
        if collection is None:
            return
        try:
            collection.release()
        except Exception as exc:
            logger.warning(
                "milvus_release_failed",
                extra={"collection": self._name, "detail": str(exc)},
            )


def _in_expr(field_name: str, values: list[str]) -> str:
    """Build a Milvus IN expression with JSON-quoted string literals."""
    quoted = ", ".join(json.dumps(value) for value in values)
    return f"{field_name} in [{quoted}]"
