from __future__ import annotations

"""Registry lifecycle and concurrency tests."""

import threading

import pytest

from src.rag.types import EmbeddingRecord
from src.vectorstore.base import BackendType, NotInitializedError, UnsupportedBackendError, VectorStoreError
from src.vectorstore.inmemory import InMemoryVectorIndex
from src.vectorstore.registry import RegistryConfig, VectorIndexRegistry
from src.vectorstore.sqlite import SQLiteConfig, SQLiteVectorIndex


@pytest.fixture()
def registry(tmp_path) -> VectorIndexRegistry:
    config = RegistryConfig(
        default_backend=BackendType.MEMORY,
        default_dimensions=4,
        sqlite=SQLiteConfig(url=f"sqlite:///{tmp_path / 'registry.db'}"),
    )
    instance = VectorIndexRegistry(config)
    yield instance
    instance.close_all()


def test_get_index_uses_defaults_and_caches(registry: VectorIndexRegistry) -> None:
    first = registry.get_index("nb-1")
    second = registry.get_index("nb-1", "memory", 4)

    assert isinstance(first, InMemoryVectorIndex)
    assert first is second
    assert first.notebook_id == "nb-1"
    assert first.dimensions == 4
    assert registry.index_count() == 1


def test_dimension_change_replaces_and_closes_previous(registry: VectorIndexRegistry) -> None:
    old = registry.get_index("nb-1", BackendType.MEMORY, 768)
    new = registry.get_index("nb-1", BackendType.MEMORY, 1024)

    assert old is not new
    assert new.dimensions == 1024
    assert old.is_initialized is False
    with pytest.raises(NotInitializedError):
        old.count()
    assert registry.index_count() == 1


def test_backends_are_keyed_separately(registry: VectorIndexRegistry) -> None:
    memory = registry.get_index("nb-1", "memory")
    sqlite = registry.get_index("nb-1", "SQLite")

    assert isinstance(sqlite, SQLiteVectorIndex)
    assert memory is not sqlite
    assert registry.index_count() == 2


def test_sqlite_indexes_share_an_engine(registry: VectorIndexRegistry) -> None:
    first = registry.get_index("nb-1", "sqlite")
    second = registry.get_index("nb-2", "sqlite")

    first.upsert([EmbeddingRecord(id="e1", chunk_id="c1", vector=[1.0, 0.0, 0.0, 0.0])])

    assert first._engine is second._engine
    assert first.collection_name != second.collection_name
    assert first.count() == 1
    assert second.count() == 0


def test_unknown_backend_is_rejected(registry: VectorIndexRegistry) -> None:
    with pytest.raises(UnsupportedBackendError) as excinfo:
        registry.get_index("nb-1", "qdrant")

    assert excinfo.value.backend_type == "qdrant"
    assert registry.index_count() == 0


def test_close_index_evicts_every_backend_for_notebook(registry: VectorIndexRegistry) -> None:
    memory = registry.get_index("nb-1", "memory")
    registry.get_index("nb-1", "sqlite")
    other = registry.get_index("nb-10", "memory")

    assert registry.close_index("nb-1") == 2
    assert registry.close_index("nb-1") == 0
    assert memory.is_initialized is False
    assert other.is_initialized is True
    assert registry.index_count() == 1

    reopened = registry.get_index("nb-1", "memory")
    assert reopened is not memory


def test_close_all_closes_everything(registry: VectorIndexRegistry) -> None:
    indexes = [registry.get_index(f"nb-{idx}") for idx in range(3)]

    registry.close_all()

    assert registry.index_count() == 0
    assert all(not index.is_initialized for index in indexes)


def test_default_setters_validate(registry: VectorIndexRegistry) -> None:
    registry.default_backend = "sqlite"
    registry.default_dimensions = 8

    index = registry.get_index("nb-1")

    assert index.backend is BackendType.SQLITE
    assert index.dimensions == 8
    with pytest.raises(UnsupportedBackendError):
        registry.default_backend = "pinecone"
    with pytest.raises(VectorStoreError):
        registry.default_dimensions = 0


def test_concurrent_first_access_yields_single_instance(registry: VectorIndexRegistry) -> None:
    barrier = threading.Barrier(8)
    results: list[object] = []
    results_lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        index = registry.get_index("shared", "memory", 4)
        with results_lock:
            results.append(index)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 8
    assert all(index is results[0] for index in results)
    assert registry.index_count() == 1


def test_active_index_reuses_live_width(registry: VectorIndexRegistry) -> None:
    narrow = registry.get_index("nb-1", "memory", 2)

    assert registry.active_dimensions("nb-1", "memory") == 2
    assert registry.get_active_index("nb-1", "memory") is narrow
    assert registry.active_dimensions("nb-2", "memory") is None
    assert registry.get_active_index("nb-2", "memory").dimensions == 4


def test_active_index_reads_stored_sqlite_width(tmp_path) -> None:
    config = RegistryConfig(
        default_backend=BackendType.SQLITE,
        default_dimensions=4,
        sqlite=SQLiteConfig(url=f"sqlite:///{tmp_path / 'stored.db'}"),
    )
    first = VectorIndexRegistry(config)
    first.get_index("nb-1", dimensions=2).upsert(
        [EmbeddingRecord(id="e1", chunk_id="c1", vector=[1.0, 0.0])]
    )
    first.close_all()

    second = VectorIndexRegistry(config)
    try:
        index = second.get_active_index("nb-1")
        assert index.dimensions == 2
        assert index.count() == 1
        assert second.get_index("nb-1", dimensions=2).count() == 1
    finally:
        second.close_all()


def test_key_locks_are_released_after_use(registry: VectorIndexRegistry) -> None:
    for idx in range(5):
        registry.get_index(f"nb-{idx}", "memory")
    registry.get_active_index("nb-0", "memory")
    registry.close_index("nb-1")

    assert registry._key_locks == {}

    registry.close_all()
    assert registry._key_locks == {}
