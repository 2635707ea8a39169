from __future__ import annotations

"""Registry of live vector indexes keyed by notebook and backend."""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from sqlalchemy.engine import Engine

from src.vectorstore.base import BackendType, BaseVectorIndex, VectorStoreError
from src.vectorstore.inmemory import InMemoryVectorIndex
from src.vectorstore.milvus import MilvusConfig, MilvusVectorIndex
from src.vectorstore.milvus import stored_dimensions as milvus_stored_dimensions
from src.vectorstore.sqlite import SQLiteConfig, SQLiteVectorIndex, create_sqlite_engine
from src.vectorstore.sqlite import stored_dimensions as sqlite_stored_dimensions

logger = logging.getLogger(__name__)

IndexKey = tuple[str, BackendType]


@dataclass
class RegistryConfig:
    """Defaults and backend settings used when creating indexes."""
    default_backend: BackendType = BackendType.SQLITE
    default_dimensions: int = 1024
    sqlite: SQLiteConfig = field(default_factory=SQLiteConfig)
    milvus: MilvusConfig = field(default_factory=MilvusConfig)


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class VectorIndexRegistry:
    """Own one live index per (notebook, backend) and recreate on width change.

    The index map is guarded by a lock; creation is serialized per key so
    concurrent first access yields a single instance. Locks are always taken
    in the order key lock, then map lock. Key locks exist only while a caller
    holds or waits on them.
    """
    def __init__(self, config: RegistryConfig | None = None) -> None:
        self.config = config or RegistryConfig()
        self._indexes: dict[IndexKey, BaseVectorIndex] = {}
        self._key_locks: dict[IndexKey, _KeyLock] = {}
        self._lock = threading.Lock()
        self._sqlite_engine: Engine | None = None

    @property
    def default_backend(self) -> BackendType:
        return self.config.default_backend

    @default_backend.setter
    def default_backend(self, value: BackendType | str) -> None:
        self.config.default_backend = BackendType.parse(value)

    @property
    def default_dimensions(self) -> int:
        return self.config.default_dimensions

    @default_dimensions.setter
    def default_dimensions(self, value: int) -> None:
        if value <= 0:
            raise VectorStoreError("dimensions must be greater than zero")
        self.config.default_dimensions = value

    def get_index(
        self,
        notebook_id: str,
        backend_type: BackendType | str | None = None,
        dimensions: int | None = None,
    ) -> BaseVectorIndex:
        """Return the live index for a notebook, creating or replacing it.

        A missing ``dimensions`` means the configured default width; a width
        different from the live or stored one replaces the collection.
        """
        backend = self._backend(backend_type)
        key = (notebook_id, backend)
        with self._locked_key(key):
            return self._get_or_create(key, dimensions or self.config.default_dimensions)

    def get_active_index(
        self,
        notebook_id: str,
        backend_type: BackendType | str | None = None,
        dimensions: int | None = None,
    ) -> BaseVectorIndex:
        """Like get_index, but a missing width reuses the one already in use.

        The default width applies only when the notebook has neither a live
        index nor a stored collection for the backend.
        """
        backend = self._backend(backend_type)
        key = (notebook_id, backend)
        with self._locked_key(key):
            target = (
                dimensions
                or self._active_dimensions(key)
                or self.config.default_dimensions
            )
            return self._get_or_create(key, target)

    def active_dimensions(
        self, notebook_id: str, backend_type: BackendType | str | None = None
    ) -> int | None:
        """Width of the notebook's live index or stored collection, if any."""
        key = (notebook_id, self._backend(backend_type))
        with self._locked_key(key):
            return self._active_dimensions(key)

    def close_index(self, notebook_id: str) -> int:
        """Close and evict every backend's index for the notebook."""
        with self._lock:
            keys = [key for key in self._indexes if key[0] == notebook_id]
        closed = 0
        for key in keys:
            with self._locked_key(key):
                with self._lock:
                    index = self._indexes.pop(key, None)
                if index is not None:
                    index.close()
                    closed += 1
        logger.debug("vector_indexes_closed", extra={"notebook_id": notebook_id, "closed": closed})
        return closed

    def close_all(self) -> None:
        """Close every live index and dispose of shared engines."""
        with self._lock:
            keys = list(self._indexes)
        for key in keys:
            with self._locked_key(key):
                with self._lock:
                    index = self._indexes.pop(key, None)
                if index is not None:
                    index.close()
        with self._lock:
            engine, self._sqlite_engine = self._sqlite_engine, None
        if engine is not None:
            engine.dispose()
        logger.info("vector_indexes_closed_all", extra={"closed": len(keys)})

    def index_count(self) -> int:
        with self._lock:
            return len(self._indexes)

    def _backend(self, backend_type: BackendType | str | None) -> BackendType:
        return BackendType.parse(backend_type) if backend_type else self.config.default_backend

    @contextmanager
    def _locked_key(self, key: IndexKey) -> Iterator[None]:
        with self._lock:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[key]

    def _get_or_create(self, key: IndexKey, dimensions: int) -> BaseVectorIndex:
        """Resolve the index for key; the caller holds the key lock."""
        notebook_id, backend = key
        with self._lock:
            existing = self._indexes.get(key)
        if existing is not None:
            if existing.dimensions == dimensions and existing.is_initialized:
                return existing
            logger.warning(
                "vector_index_dimension_changed",
                extra={
                    "notebook_id": notebook_id,
                    "backend": backend.value,
                    "existing_dimensions": existing.dimensions,
                    "dimensions": dimensions,
                },
            )
            with self._lock:
                self._indexes.pop(key, None)
            existing.close()

        index = self._create_index(backend)
        index.initialize(notebook_id, dimensions)
        with self._lock:
            self._indexes[key] = index
        logger.info(
            "vector_index_created",
            extra={"notebook_id": notebook_id, "backend": backend.value, "dimensions": dimensions},
        )
        return index

    def _active_dimensions(self, key: IndexKey) -> int | None:
        notebook_id, backend = key
        with self._lock:
            existing = self._indexes.get(key)
        if existing is not None and existing.is_initialized:
            return existing.dimensions
        if backend is BackendType.SQLITE:
            return sqlite_stored_dimensions(self._shared_sqlite_engine(), notebook_id)
        if backend is BackendType.MILVUS:
            return milvus_stored_dimensions(self.config.milvus, notebook_id)
        return None

    def _create_index(self, backend: BackendType) -> BaseVectorIndex:
        if backend is BackendType.MEMORY:
            return InMemoryVectorIndex()
        if backend is BackendType.SQLITE:
            return SQLiteVectorIndex(self.config.sqlite, engine=self._shared_sqlite_engine())
        if backend is BackendType.MILVUS:
            return MilvusVectorIndex(self.config.milvus)
        raise VectorStoreError(f"No factory for backend: {backend}")

    def _shared_sqlite_engine(self) -> Engine:
        with self._lock:
            if self._sqlite_engine is None:
                self._sqlite_engine = create_sqlite_engine(self.config.sqlite)
            return self._sqlite_engine
