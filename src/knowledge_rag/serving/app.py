"""FastAPI application exposing ingestion, document management and search."""

from __future__ import annotations

import asyncio
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, JsonValue

from knowledge_rag.config import settings
from knowledge_rag.errors import (
    ConfigError,
    EmbeddingError,
    InvalidInputError,
    KnowledgeError,
    NotFoundError,
    StorageError,
)
from knowledge_rag.ingestion.embedder import create_embedding_gateway
from knowledge_rag.ingestion.pipeline import IngestionPipeline
from knowledge_rag.models import (
    BatchIngestResult,
    CollectionStats,
    Document,
    DocumentMetadata,
    IngestionSource,
    IngestResult,
    SearchResult,
)
from knowledge_rag.retrieval.search import SearchEngine
from knowledge_rag.storage.knowledge_base import KnowledgeBase

app = FastAPI(
    title="Knowledge RAG API",
    version="0.1.0",
    description="Document ingestion, management and semantic search over a local knowledge base.",
)


# ── Service wiring ────────────────────────────────────────────────────
class Services:
    """The knowledge base plus the pipeline and engine that share it."""

    def __init__(self, knowledge_base: KnowledgeBase, pipeline: IngestionPipeline, search: SearchEngine) -> None:
        self.knowledge_base = knowledge_base
        self.pipeline = pipeline
        self.search = search


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Build the process-wide services from ``settings`` on first use."""
    gateway = create_embedding_gateway(settings)
    kb = KnowledgeBase.open(settings.storage_dir)
    return Services(
        knowledge_base=kb,
        pipeline=IngestionPipeline(kb, gateway, config=settings),
        search=SearchEngine(kb, gateway, timeout=settings.embed_timeout),
    )


_STATUS_BY_ERROR: list[tuple[type[KnowledgeError], int]] = [
    (NotFoundError, 404),
    (InvalidInputError, 400),
    (ConfigError, 400),
    (EmbeddingError, 502),
    (StorageError, 500),
]

_STATUS_BY_STAGE = {"embed": 502, "persist": 500}


def status_for(exc: KnowledgeError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 422


@app.exception_handler(KnowledgeError)
async def knowledge_error_handler(_request: Request, exc: KnowledgeError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": str(exc), "stage": exc.stage, "source": exc.source},
    )


# ── Request / Response schemas ────────────────────────────────────────
class IngestRequest(BaseModel):
    """Either a server-side file path or inline text."""

    file_path: Path | None = None
    text_content: str | None = None
    tags: list[str] = []
    metadata: dict[str, JsonValue] = {}


class BatchIngestRequest(BaseModel):
    """Ingest every matching file under a server-side directory."""

    directory: Path
    patterns: list[str] = ["*"]
    recursive: bool = True
    tags: list[str] = []
    metadata: dict[str, JsonValue] = {}
    concurrency_limit: int | None = Field(default=None, ge=1)


class UpdateDocumentRequest(BaseModel):
    custom_metadata: dict[str, JsonValue] | None = None
    tags: list[str] | None = None


class SearchRequest(BaseModel):
    query: str
    k: int = Field(default=10, ge=1, le=100)
    threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    filter_tags: list[str] | None = None
    filter_metadata: dict[str, JsonValue] | None = None


class DocumentSummary(BaseModel):
    """A document without its content and chunks."""

    id: str
    metadata: DocumentMetadata
    chunk_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, document: Document) -> DocumentSummary:
        return cls(
            id=document.id,
            metadata=document.metadata,
            chunk_count=len(document.chunks),
            created_at=document.created_at,
            updated_at=document.updated_at,
        )


class SearchHit(BaseModel):
    document_id: str
    chunk_id: str
    chunk_index: int
    filename: str
    content: str
    score: float
    distance: float
    start_char: int
    end_char: int
    tags: list[str] = []

    @classmethod
    def from_result(cls, result: SearchResult) -> SearchHit:
        return cls(
            document_id=result.document.id,
            chunk_id=result.chunk.id,
            chunk_index=result.chunk.index,
            filename=result.document.metadata.filename,
            content=result.chunk.content,
            score=result.score,
            distance=result.distance,
            start_char=result.chunk.metadata.start_char,
            end_char=result.chunk.metadata.end_char,
            tags=result.document.metadata.tags,
        )


class SearchResponse(BaseModel):
    query: str
    results: list[SearchHit] = []


# ── Routes ────────────────────────────────────────────────────────────
@app.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "ok"}


@app.post("/documents", response_model=IngestResult, status_code=201)
async def ingest_document(request: IngestRequest, services: Services = Depends(get_services)) -> Any:
    """Ingest one file or text; failures come back as an error result."""
    source = IngestionSource(
        file_path=request.file_path,
        text_content=request.text_content,
        tags=request.tags,
        metadata=request.metadata,
    )
    result = await services.pipeline.ingest_one(source)
    if not result.ok:
        return JSONResponse(
            status_code=_STATUS_BY_STAGE.get(result.stage or "", 400),
            content=result.model_dump(mode="json"),
        )
    return result


@app.post("/documents/batch", response_model=BatchIngestResult)
async def ingest_directory(request: BatchIngestRequest, services: Services = Depends(get_services)) -> BatchIngestResult:
    return await services.pipeline.ingest_directory(
        request.directory,
        patterns=request.patterns,
        recursive=request.recursive,
        tags=request.tags,
        metadata=request.metadata,
        concurrency_limit=request.concurrency_limit,
    )


@app.get("/documents", response_model=list[DocumentSummary])
async def list_documents(
    tags: list[str] | None = Query(default=None),
    limit: int | None = Query(default=None, ge=0),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
) -> list[DocumentSummary]:
    documents = await asyncio.to_thread(
        services.knowledge_base.list_documents, tags=tags, limit=limit, offset=offset
    )
    return [DocumentSummary.from_document(d) for d in documents]


@app.get("/documents/{document_id}")
async def get_document(document_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Full document record, with chunk embeddings omitted."""
    document = await asyncio.to_thread(services.knowledge_base.get_document, document_id)
    if document is None:
        raise NotFoundError("document not found", source=document_id)
    return document.model_dump(mode="json", exclude={"chunks": {"__all__": {"embedding"}}})


@app.patch("/documents/{document_id}", response_model=DocumentSummary)
async def update_document(
    document_id: str,
    request: UpdateDocumentRequest,
    services: Services = Depends(get_services),
) -> DocumentSummary:
    document = await asyncio.to_thread(
        services.knowledge_base.update_document_metadata,
        document_id,
        custom_metadata=request.custom_metadata,
        tags=request.tags,
    )
    return DocumentSummary.from_document(document)


@app.delete("/documents/{document_id}")
async def delete_document(document_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    deleted = await asyncio.to_thread(services.knowledge_base.delete_document, document_id)
    return {"document_id": document_id, "deleted": deleted}


@app.post("/search", response_model=SearchResponse)
async def search(request: SearchRequest, services: Services = Depends(get_services)) -> SearchResponse:
    results = await services.search.search(
        request.query,
        k=request.k,
        threshold=request.threshold,
        filter_tags=request.filter_tags,
        filter_metadata=request.filter_metadata,
    )
    return SearchResponse(query=request.query, results=[SearchHit.from_result(r) for r in results])


@app.get("/stats", response_model=CollectionStats)
async def stats(services: Services = Depends(get_services)) -> CollectionStats:
    return await asyncio.to_thread(services.knowledge_base.get_stats)
