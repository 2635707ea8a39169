from __future__ import annotations

from functools import lru_cache

from src.app.settings import settings
from src.loaders.chunking import ChunkingOptions, TextChunker
from src.loaders.web import DEFAULT_ACCEPT_LANGUAGE, DEFAULT_USER_AGENT, ContentExtractor, FetchOptions
from src.vectorstore.base import BackendType
from src.vectorstore.milvus import MilvusConfig
from src.vectorstore.registry import RegistryConfig, VectorIndexRegistry
from src.vectorstore.sqlite import SQLiteConfig


@lru_cache
def get_registry() -> VectorIndexRegistry:
    return VectorIndexRegistry(build_registry_config())


@lru_cache
def get_content_extractor() -> ContentExtractor:
    return ContentExtractor(options=build_fetch_options())


@lru_cache
def get_text_chunker() -> TextChunker:
    return TextChunker(
        options=ChunkingOptions(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            min_chunk_size=settings.chunk_min_size,
        )
    )


def reset_caches() -> None:
    """Close live indexes and drop cached providers."""
    if get_registry.cache_info().currsize:
        get_registry().close_all()
    get_registry.cache_clear()
    get_content_extractor.cache_clear()
    get_text_chunker.cache_clear()


def build_registry_config() -> RegistryConfig:
    return RegistryConfig(
        default_backend=BackendType.parse(settings.vectorstore),
        default_dimensions=settings.embedding_dimension,
        sqlite=SQLiteConfig(
            url=settings.sqlite_url,
            table_prefix=settings.sqlite_table_prefix,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        ),
        milvus=MilvusConfig(
            uri=settings.milvus_uri,
            token=settings.milvus_token,
            collection_prefix=settings.milvus_collection_prefix,
            consistency=settings.milvus_consistency,
            index_type=settings.milvus_index_type,
            nlist=settings.milvus_nlist,
            nprobe=settings.milvus_nprobe,
            hnsw_m=settings.milvus_hnsw_m,
            hnsw_ef_construction=settings.milvus_hnsw_ef_construction,
            hnsw_ef=settings.milvus_hnsw_ef,
        ),
    )


def build_fetch_options() -> FetchOptions:
    return FetchOptions(
        timeout=settings.web_timeout,
        extract_main_content=settings.web_extract_main_content,
        convert_to_markdown=settings.web_convert_to_markdown,
        user_agent=settings.web_user_agent or DEFAULT_USER_AGENT,
        accept_language=settings.web_accept_language or DEFAULT_ACCEPT_LANGUAGE,
        max_bytes=settings.web_max_bytes,
    )
