from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    vectorstore_backend: str = os.getenv("RAG_VECTORSTORE", "sqlite")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", "1024"))
    default_top_k: int = int(os.getenv("RAG_TOP_K", "5"))
    sqlite_url: str = os.getenv("RAG_SQLITE_URL", "sqlite:///vectors.db")
    sqlite_table_prefix: str = os.getenv("RAG_SQLITE_TABLE_PREFIX", "vec")
    sqlite_busy_timeout_ms: int = int(os.getenv("RAG_SQLITE_BUSY_TIMEOUT_MS", "5000"))
    milvus_uri: str = os.getenv("MILVUS_URI", "http://localhost:19530")
    milvus_token: str | None = os.getenv("MILVUS_TOKEN")
    milvus_collection_prefix: str = os.getenv("MILVUS_COLLECTION_PREFIX", "notebook")
    milvus_consistency: str = os.getenv("MILVUS_CONSISTENCY", "Strong")
    milvus_index_type: str = os.getenv("MILVUS_INDEX_TYPE", "HNSW")
    milvus_nlist: int = int(os.getenv("MILVUS_NLIST", "1024"))
    milvus_nprobe: int = int(os.getenv("MILVUS_NPROBE", "10"))
    milvus_hnsw_m: int = int(os.getenv("MILVUS_HNSW_M", "16"))
    milvus_hnsw_ef_construction: int = int(os.getenv("MILVUS_HNSW_EF_CONSTRUCTION", "200"))
    milvus_hnsw_ef: int = int(os.getenv("MILVUS_HNSW_EF", "64"))
    chunk_size: int = int(os.getenv("RAG_CHUNK_SIZE", "500"))
    chunk_overlap: int = int(os.getenv("RAG_CHUNK_OVERLAP", "50"))
    chunk_min_size: int = int(os.getenv("RAG_CHUNK_MIN_SIZE", "100"))
    web_timeout: float = float(os.getenv("WEB_TIMEOUT", "30"))
    web_user_agent: str | None = os.getenv("WEB_USER_AGENT")
    web_accept_language: str | None = os.getenv("WEB_ACCEPT_LANGUAGE")
    web_max_bytes: int = int(os.getenv("WEB_MAX_BYTES", "10485760"))
    web_extract_main_content: bool = _env_bool("WEB_EXTRACT_MAIN_CONTENT", "true")
    web_convert_to_markdown: bool = _env_bool("WEB_CONVERT_TO_MARKDOWN", "true")
    metrics_enabled: bool = _env_bool("RAG_METRICS_ENABLED", "true")

    @property
    def vectorstore(self) -> str:
        return os.getenv("RAG_VECTORSTORE", self.vectorstore_backend)


settings = Settings()
