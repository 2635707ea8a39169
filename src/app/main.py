from __future__ import annotations

"""FastAPI entrypoint exposing extraction, chunking and vector index operations."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException

from src.app.dependencies import (
    get_content_extractor,
    get_registry,
    get_text_chunker,
    reset_caches,
)
from src.app.metrics import metrics_middleware, metrics_response, record_index_operation
from src.app.schemas import (
    ChunkModel,
    ChunkRequest,
    ChunkResponse,
    CountResponse,
    DeleteVectorsRequest,
    DeleteVectorsResponse,
    ExtractRequest,
    ExtractResponse,
    IndexTarget,
    QueryResultModel,
    UpsertRequest,
    UpsertResponse,
    VectorQueryRequest,
    VectorQueryResponse,
)
from src.app.settings import settings
from src.loaders.chunking import TextChunker
from src.loaders.web import (
    ContentExtractor,
    FetchError,
    FetchTimeoutError,
    InvalidURLError,
    UnsupportedContentTypeError,
    WebLoaderError,
)
from src.rag.types import EmbeddingRecord, QueryOptions
from src.vectorstore.base import (
    BaseVectorIndex,
    DimensionMismatchError,
    NotInitializedError,
    UnsupportedBackendError,
    VectorStoreError,
)
from src.vectorstore.registry import VectorIndexRegistry

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    reset_caches()


app = FastAPI(title="Notebook Vector Core", version="0.1.0", lifespan=lifespan)
app.middleware("http")(metrics_middleware)


def _resolve_index(
    registry: VectorIndexRegistry, notebook_id: str, target: IndexTarget
) -> BaseVectorIndex:
    try:
        return registry.get_active_index(notebook_id, target.backend, target.dimensions)
    except UnsupportedBackendError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except VectorStoreError as exc:
        logger.error(
            "vector_index_unavailable",
            extra={"notebook_id": notebook_id, "detail": str(exc)},
        )
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _vector_error(exc: VectorStoreError) -> HTTPException:
    if isinstance(exc, DimensionMismatchError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, NotInitializedError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=503, detail=str(exc))


@app.get("/health")
async def health() -> dict[str, str | int]:
    return {"status": "ok", "indexes": get_registry().index_count()}


@app.get("/metrics")
async def metrics():
    return metrics_response()


@app.post("/extract", response_model=ExtractResponse)
async def extract(
    request: ExtractRequest,
    extractor: ContentExtractor = Depends(get_content_extractor),
) -> ExtractResponse:
    """Fetch a web page and return its normalized content."""
    options = extractor.resolve_options(
        timeout=request.timeout,
        extract_main_content=request.extract_main_content,
        convert_to_markdown=request.convert_to_markdown,
        user_agent=request.user_agent,
    )
    try:
        document = await extractor.fetch_url(request.url, options)
    except InvalidURLError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UnsupportedContentTypeError as exc:
        raise HTTPException(status_code=415, detail=str(exc)) from exc
    except FetchTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except (FetchError, WebLoaderError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ExtractResponse(
        content=document.content,
        title=document.title,
        description=document.description,
        source_url=document.source_url,
        mime_type=document.mime_type,
        metadata=document.metadata,
    )


@app.post("/chunk", response_model=ChunkResponse)
def chunk(
    request: ChunkRequest,
    chunker: TextChunker = Depends(get_text_chunker),
) -> ChunkResponse:
    """Split text into chunks using window or sentence mode."""
    overrides = {
        key: value
        for key, value in {
            "chunk_size": request.chunk_size,
            "chunk_overlap": request.chunk_overlap,
            "min_chunk_size": request.min_chunk_size,
        }.items()
        if value is not None
    }
    try:
        active = chunker.with_defaults(**overrides) if overrides else chunker
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if request.mode == "sentence":
        chunks = active.chunk_by_sentence(request.text)
    else:
        chunks = active.chunk(request.text)
    return ChunkResponse(
        chunks=[
            ChunkModel(
                content=item.content,
                index=item.index,
                start_offset=item.start_offset,
                end_offset=item.end_offset,
                token_estimate=item.token_estimate,
            )
            for item in chunks
        ]
    )


@app.put("/notebooks/{notebook_id}/vectors", response_model=UpsertResponse)
def upsert_vectors(
    notebook_id: str,
    request: UpsertRequest,
    registry: VectorIndexRegistry = Depends(get_registry),
) -> UpsertResponse:
    """Insert or replace embeddings for a notebook."""
    index = _resolve_index(registry, notebook_id, request)
    records = [
        EmbeddingRecord(
            id=record.id,
            chunk_id=record.chunk_id,
            vector=record.vector,
            metadata=record.metadata,
        )
        for record in request.records
    ]
    try:
        upserted = index.upsert(records)
        count = index.count()
    except VectorStoreError as exc:
        raise _vector_error(exc) from exc
    record_index_operation("upsert", index.backend.value)
    logger.info(
        "vectors_ingested",
        extra={"notebook_id": notebook_id, "upserted": upserted, "count": count},
    )
    return UpsertResponse(upserted=upserted, count=count)


@app.post("/notebooks/{notebook_id}/vectors/query", response_model=VectorQueryResponse)
def query_vectors(
    notebook_id: str,
    request: VectorQueryRequest,
    registry: VectorIndexRegistry = Depends(get_registry),
) -> VectorQueryResponse:
    """Return the nearest embeddings for a precomputed query vector."""
    index = _resolve_index(registry, notebook_id, request)
    options = QueryOptions(
        top_k=request.top_k or settings.default_top_k,
        threshold=request.threshold,
        chunk_ids=request.chunk_ids,
    )
    try:
        results = index.query(request.vector, options)
    except VectorStoreError as exc:
        raise _vector_error(exc) from exc
    record_index_operation("query", index.backend.value)
    return VectorQueryResponse(
        results=[
            QueryResultModel(
                id=result.id,
                chunk_id=result.chunk_id,
                score=result.score,
                distance=result.distance,
                metadata=result.metadata,
            )
            for result in results
        ]
    )


@app.post("/notebooks/{notebook_id}/vectors/delete", response_model=DeleteVectorsResponse)
def delete_vectors(
    notebook_id: str,
    request: DeleteVectorsRequest,
    registry: VectorIndexRegistry = Depends(get_registry),
) -> DeleteVectorsResponse:
    """Delete embeddings by id and/or by owning chunk."""
    index = _resolve_index(registry, notebook_id, request)
    try:
        deleted = index.delete(request.ids) + index.delete_by_chunk_ids(request.chunk_ids)
    except VectorStoreError as exc:
        raise _vector_error(exc) from exc
    record_index_operation("delete", index.backend.value)
    return DeleteVectorsResponse(deleted=deleted)


@app.get("/notebooks/{notebook_id}/vectors/count", response_model=CountResponse)
def count_vectors(
    notebook_id: str,
    backend: str | None = None,
    dimensions: int | None = None,
    registry: VectorIndexRegistry = Depends(get_registry),
) -> CountResponse:
    index = _resolve_index(registry, notebook_id, IndexTarget(backend=backend, dimensions=dimensions))
    try:
        count = index.count()
    except VectorStoreError as exc:
        raise _vector_error(exc) from exc
    return CountResponse(
        notebook_id=notebook_id,
        backend=index.backend.value,
        dimensions=index.dimensions or 0,
        count=count,
    )


@app.delete("/notebooks/{notebook_id}/vectors", status_code=204)
def clear_vectors(
    notebook_id: str,
    backend: str | None = None,
    dimensions: int | None = None,
    registry: VectorIndexRegistry = Depends(get_registry),
) -> None:
    index = _resolve_index(registry, notebook_id, IndexTarget(backend=backend, dimensions=dimensions))
    try:
        index.clear()
    except VectorStoreError as exc:
        raise _vector_error(exc) from exc
    record_index_operation("clear", index.backend.value)


@app.delete("/notebooks/{notebook_id}")
def close_notebook(
    notebook_id: str,
    registry: VectorIndexRegistry = Depends(get_registry),
) -> dict[str, int]:
    """Release every live index held for the notebook."""
    return {"closed": registry.close_index(notebook_id)}
