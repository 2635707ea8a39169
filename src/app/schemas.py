from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ExtractRequest(BaseModel):
    url: str = Field(min_length=1)
    timeout: float | None = Field(default=None, gt=0.0, le=300.0)
    extract_main_content: bool | None = None
    convert_to_markdown: bool | None = None
    user_agent: str | None = None


class ExtractResponse(BaseModel):
    content: str
    title: str | None = None
    description: str | None = None
    source_url: str
    mime_type: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChunkRequest(BaseModel):
    text: str
    mode: Literal["window", "sentence"] = "window"
    chunk_size: int | None = Field(default=None, ge=1)
    chunk_overlap: int | None = Field(default=None, ge=0)
    min_chunk_size: int | None = Field(default=None, ge=0)


class ChunkModel(BaseModel):
    content: str
    index: int
    start_offset: int
    end_offset: int
    token_estimate: int


class ChunkResponse(BaseModel):
    chunks: list[ChunkModel]


class EmbeddingRecordModel(BaseModel):
    id: str = Field(min_length=1)
    chunk_id: str = Field(min_length=1)
    vector: list[float] = Field(min_length=1)
    metadata: dict[str, Any] | None = None


class IndexTarget(BaseModel):
    backend: str | None = None
    dimensions: int | None = Field(default=None, ge=1)


class UpsertRequest(IndexTarget):
    records: list[EmbeddingRecordModel]


class UpsertResponse(BaseModel):
    upserted: int
    count: int


class VectorQueryRequest(IndexTarget):
    vector: list[float] = Field(min_length=1)
    top_k: int | None = Field(default=None, ge=1, le=1000)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    chunk_ids: list[str] | None = None


class QueryResultModel(BaseModel):
    id: str
    chunk_id: str
    score: float
    distance: float
    metadata: dict[str, Any] | None = None


class VectorQueryResponse(BaseModel):
    results: list[QueryResultModel]


class DeleteVectorsRequest(IndexTarget):
    ids: list[str] = Field(default_factory=list)
    chunk_ids: list[str] = Field(default_factory=list)


class DeleteVectorsResponse(BaseModel):
    deleted: int


class CountResponse(BaseModel):
    notebook_id: str
    backend: str
    dimensions: int
    count: int
