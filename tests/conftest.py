"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from knowledge_rag.config import Settings
from knowledge_rag.errors import EmbeddingError
from knowledge_rag.ingestion.chunker import ChunkingOptions
from knowledge_rag.ingestion.embedder import EmbeddingGateway
from knowledge_rag.models import Chunk, ChunkMetadata, Document, DocumentMetadata
from knowledge_rag.storage.knowledge_base import KnowledgeBase


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


# ── Fake embedding gateway ──────────────────────────────────────────────


class FakeGateway(EmbeddingGateway):
    """Deterministic offline gateway.

    Texts listed in *vectors* get that exact vector; anything else gets a
    hash-derived one.  Knobs simulate slow, failing, or misbehaving
    providers.
    """

    model_name = "fake-test"

    def __init__(
        self,
        dims: int = 8,
        vectors: dict[str, list[float]] | None = None,
        *,
        delay: float = 0.0,
        fail: bool = False,
        drop_last: bool = False,
    ) -> None:
        self.dims = dims
        self.vectors = vectors or {}
        self.delay = delay
        self.fail = fail
        self.drop_last = drop_last
        self.calls: list[list[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode()).digest()
        return [digest[i % len(digest)] / 255.0 - 0.5 for i in range(self.dims)]

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise EmbeddingError("provider unavailable", source=self.model_name)
            vectors = [self.vector_for(t) for t in texts]
            return vectors[:-1] if self.drop_last else vectors
        finally:
            self.in_flight -= 1

    async def embed_one(self, text: str) -> list[float]:
        self.calls.append([text])
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EmbeddingError("provider unavailable", source=self.model_name)
        return self.vector_for(text)

    def dimensions(self) -> int:
        return self.dims


# ── Fixtures ────────────────────────────────────────────────────────────


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def make_gateway() -> Callable[..., FakeGateway]:
    return FakeGateway


@pytest.fixture()
def kb() -> KnowledgeBase:
    return KnowledgeBase.in_memory()


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        storage_dir=tmp_path / "storage",
        embedding_provider="fake",
        embed_timeout=5.0,
        batch_concurrency=2,
        max_file_size=1024 * 1024,
    )


@pytest.fixture()
def small_chunks() -> ChunkingOptions:
    return ChunkingOptions(size=200, overlap=20, strategy="sentence", min_size=50)


@pytest.fixture()
def make_document() -> Callable[..., Document]:
    """Factory for committed-shape documents with explicit chunk vectors."""

    def _make(
        doc_id: str,
        embeddings: list[list[float]],
        *,
        tags: list[str] | None = None,
        custom_metadata: dict[str, Any] | None = None,
        filename: str = "notes.txt",
        file_type: str = "txt",
    ) -> Document:
        pieces = [f"chunk {i} of {doc_id}." for i in range(len(embeddings))]
        content = " ".join(pieces)
        chunks: list[Chunk] = []
        offset = 0
        for i, (piece, embedding) in enumerate(zip(pieces, embeddings)):
            chunks.append(
                Chunk(
                    id=f"{doc_id}_chunk_{i}",
                    document_id=doc_id,
                    content=piece,
                    index=i,
                    embedding=embedding,
                    metadata=ChunkMetadata(start_char=offset, end_char=offset + len(piece)),
                )
            )
            offset += len(piece) + 1
        return Document(
            id=doc_id,
            content=content,
            metadata=DocumentMetadata(
                filename=filename,
                file_type=file_type,
                tags=tags or [],
                custom_metadata=custom_metadata or {},
                size=len(content),
            ),
            chunks=chunks,
        )

    return _make
