from __future__ import annotations

"""SQLite-backed vector index built on SQLAlchemy Core."""

import json
import logging
from array import array
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from src.rag.types import EmbeddingRecord, QueryOptions, QueryResult
from src.vectorstore.base import (
    BackendType,
    BaseVectorIndex,
    VectorStoreError,
    collection_name,
    cosine_distance,
    rank_candidates,
)

logger = logging.getLogger(__name__)

_catalog_metadata = MetaData()
# One row per notebook: the live table and the width it was created with.
vec_metadata = Table(
    "vec_metadata",
    _catalog_metadata,
    Column("notebook_id", String(255), primary_key=True),
    Column("table_name", String(128), nullable=False),
    Column("dimensions", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


@dataclass(frozen=True)
class SQLiteConfig:
    """Connection and naming settings for the SQLite backend."""
    url: str = "sqlite:///vectors.db"
    table_prefix: str = "vec"
    busy_timeout_ms: int = 5000
    journal_mode: str = "WAL"


def create_sqlite_engine(config: SQLiteConfig) -> Engine:
    """Create an engine with WAL journaling and a busy timeout.

    The ``vec_metadata`` catalog table is created up front.
    """
    engine = create_engine(config.url)

    @event.listens_for(engine, "connect")
    def _apply_pragmas(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"PRAGMA journal_mode={config.journal_mode}")
            cursor.execute(f"PRAGMA busy_timeout={int(config.busy_timeout_ms)}")
            cursor.execute("PRAGMA synchronous=NORMAL")
        finally:
            cursor.close()

    _catalog_metadata.create_all(engine)
    return engine


def stored_dimensions(engine: Engine, notebook_id: str) -> int | None:
    """Return the width recorded in ``vec_metadata`` for the notebook."""
    try:
        with engine.connect() as conn:
            return conn.execute(
                select(vec_metadata.c.dimensions).where(vec_metadata.c.notebook_id == notebook_id)
            ).scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.error(
            "sqlite_vector_operation_failed",
            extra={"operation": "lookup", "notebook_id": notebook_id, "detail": str(exc)},
        )
        raise VectorStoreError(f"SQLite vector lookup failed: {exc}") from exc


def _vector_table(name: str) -> Table:
    return Table(
        name,
        MetaData(),
        Column("seq", Integer, primary_key=True, autoincrement=True),
        Column("embedding_id", String(255), nullable=False, unique=True),
        Column("chunk_id", String(255), nullable=False, index=True),
        Column("vector", LargeBinary, nullable=False),
        Column("metadata_json", Text, nullable=True),
    )


def _pack(vector: list[float]) -> bytes:
    return array("f", vector).tobytes()


def _unpack(blob: bytes) -> list[float]:
    return array("f", blob).tolist()


def _load_metadata(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return {"raw": value}


class SQLiteVectorIndex(BaseVectorIndex):
    """Table-per-collection store with exact cosine search.

    Vectors are stored as float32 blobs. Opening a notebook at a new width
    drops the table created for its previous width.
    """
    backend = BackendType.SQLITE

    def __init__(self, config: SQLiteConfig | None = None, engine: Engine | None = None) -> None:
        super().__init__()
        self.config = config or SQLiteConfig()
        self._owns_engine = engine is None
        self._engine = engine
        self._table: Table | None = None

    @property
    def collection_name(self) -> str | None:
        return self._table.name if self._table is not None else None

    def _open(self, notebook_id: str, dimensions: int) -> None:
        if self._engine is None:
            self._engine = create_sqlite_engine(self.config)
        table_name = collection_name(self.config.table_prefix, notebook_id, dimensions)
        table = _vector_table(table_name)
        with self._storage_errors("open"), self._engine.begin() as conn:
            vec_metadata.create(conn, checkfirst=True)
            row = conn.execute(
                select(vec_metadata.c.table_name, vec_metadata.c.dimensions).where(
                    vec_metadata.c.notebook_id == notebook_id
                )
            ).first()
            if row is not None and (row.dimensions != dimensions or row.table_name != table_name):
                logger.warning(
                    "vector_table_replaced",
                    extra={
                        "notebook_id": notebook_id,
                        "old_table": row.table_name,
                        "old_dimensions": row.dimensions,
                        "dimensions": dimensions,
                    },
                )
                conn.execute(text(f'DROP TABLE IF EXISTS "{row.table_name}"'))
                conn.execute(delete(vec_metadata).where(vec_metadata.c.notebook_id == notebook_id))
                row = None
            table.create(conn, checkfirst=True)
            if row is None:
                conn.execute(
                    insert(vec_metadata).values(
                        notebook_id=notebook_id,
                        table_name=table_name,
                        dimensions=dimensions,
                        created_at=datetime.now(timezone.utc),
                    )
                )
        self._table = table

    def _upsert(self, records: list[EmbeddingRecord], vectors: list[list[float]]) -> None:
        table = self._require_table()
        rows = [
            {
                "embedding_id": record.id,
                "chunk_id": record.chunk_id,
                "vector": _pack(vector),
                "metadata_json": json.dumps(record.metadata, ensure_ascii=True, default=str)
                if record.metadata
                else None,
            }
            for record, vector in zip(records, vectors)
        ]
        stmt = sqlite_insert(table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.embedding_id],
            set_={
                "chunk_id": stmt.excluded.chunk_id,
                "vector": stmt.excluded.vector,
                "metadata_json": stmt.excluded.metadata_json,
            },
        )
        with self._storage_errors("upsert"), self._engine.begin() as conn:
            conn.execute(stmt, rows)

    def _delete_where(self, field_name: str, values: list[str]) -> int:
        table = self._require_table()
        with self._storage_errors("delete"), self._engine.begin() as conn:
            result = conn.execute(delete(table).where(table.c[field_name].in_(values)))
        return int(result.rowcount or 0)

    def _query(self, vector: list[float], options: QueryOptions) -> list[QueryResult]:
        table = self._require_table()
        stmt = select(
            table.c.seq,
            table.c.embedding_id,
            table.c.chunk_id,
            table.c.vector,
            table.c.metadata_json,
        )
        if options.chunk_ids is not None:
            stmt = stmt.where(table.c.chunk_id.in_(list(options.chunk_ids)))
        with self._storage_errors("query"), self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        candidates = [
            (
                cosine_distance(vector, _unpack(row.vector)),
                row.seq,
                row.embedding_id,
                row.chunk_id,
                _load_metadata(row.metadata_json),
            )
            for row in rows
        ]
        return rank_candidates(candidates, options)

    def _clear(self) -> None:
        table = self._require_table()
        with self._storage_errors("clear"), self._engine.begin() as conn:
            conn.execute(delete(table))

    def _count(self) -> int:
        table = self._require_table()
        with self._storage_errors("count"), self._engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(table)).scalar_one())

    def _release(self) -> None:
        self._table = None
        if self._owns_engine and self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def _require_table(self) -> Table:
        if self._table is None or self._engine is None:
            raise VectorStoreError("SQLite vector table is not open")
        return self._table

    @contextmanager
    def _storage_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error(
                "sqlite_vector_operation_failed",
                extra={
                    "operation": operation,
                    "notebook_id": self._notebook_id,
                    "detail": str(exc),
                },
            )
            raise VectorStoreError(f"SQLite vector {operation} failed: {exc}") from exc
