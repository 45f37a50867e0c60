"""Domain models for documents, chunks, and ingestion / search results.

All models are pydantic ``BaseModel`` subclasses so they round-trip
losslessly through JSON (the persisted record format) and the HTTP layer.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, JsonValue


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Documents and chunks
# ---------------------------------------------------------------------------


class ChunkMetadata(BaseModel):
    """Half-open ``[start_char, end_char)`` interval into the document content."""

    start_char: int
    end_char: int


class Chunk(BaseModel):
    """A contiguous slice of a document; the unit of embedding and retrieval.

    Attributes
    ----------
    id:
        ``<document_id>_chunk_<index>``; empty until the chunk is assembled
        into a document.
    document_id:
        Back-reference to the owning document (empty until assembled).
    content:
        Exactly ``document.content[start_char:end_char]``.
    index:
        0-based, dense ordinal within the document.
    embedding:
        Vector produced by the embedding provider (empty until embedded).
    """

    id: str = ""
    document_id: str = ""
    content: str
    index: int
    embedding: list[float] = Field(default_factory=list)
    metadata: ChunkMetadata


class DocumentMetadata(BaseModel):
    filename: str
    file_path: str | None = None
    file_type: str
    tags: list[str] = Field(default_factory=list)
    custom_metadata: dict[str, JsonValue] = Field(default_factory=dict)
    size: int = 0


class Document(BaseModel):
    """An ingested document together with the chunks it owns."""

    id: str
    content: str
    metadata: DocumentMetadata
    chunks: list[Chunk] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def chunk_at(self, index: int) -> Chunk | None:
        """Return the chunk with ordinal *index*, or ``None``."""
        if 0 <= index < len(self.chunks) and self.chunks[index].index == index:
            return self.chunks[index]
        return next((c for c in self.chunks if c.index == index), None)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class IngestionSource(BaseModel):
    """One thing to ingest: a file on disk *or* raw text content."""

    file_path: Path | None = None
    text_content: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, JsonValue] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        """Human-readable name used in logs and error reports."""
        if self.file_path is not None:
            return str(self.file_path)
        return "text_content"


class IngestResult(BaseModel):
    """Outcome of ingesting a single source — success or structured failure."""

    source: str
    status: Literal["success", "error"]
    document_id: str = ""
    chunks_created: int = 0
    message: str = ""
    stage: str | None = None
    document: Document | None = Field(default=None, exclude=True)

    @property
    def ok(self) -> bool:
        return self.status == "success"


class BatchError(BaseModel):
    file: str
    error: str
    stage: str | None = None


class BatchIngestResult(BaseModel):
    total_files: int
    success_count: int
    failed_count: int
    documents: list[IngestResult] = Field(default_factory=list)
    errors: list[BatchError] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Index, search, and stats
# ---------------------------------------------------------------------------


class IndexHit(BaseModel):
    """A raw vector-index match before it is joined to its document."""

    chunk_id: str
    document_id: str
    chunk_index: int
    score: float


class SearchResult(BaseModel):
    chunk: Chunk
    document: Document
    score: float
    distance: float


class CollectionStats(BaseModel):
    total_documents: int
    total_chunks: int
    collection_size: int
    average_chunks_per_document: float
    file_types: dict[str, int] = Field(default_factory=dict)
    dimensions: int | None = None
