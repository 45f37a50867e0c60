"""Ingestion pipeline — extract → chunk → embed → assemble → persist.

Usage::

    from knowledge_rag.ingestion.pipeline import IngestionPipeline
    from knowledge_rag.models import IngestionSource

    pipeline = IngestionPipeline(kb, gateway)
    result = await pipeline.ingest_one(IngestionSource(file_path=Path("notes.md")))
    batch = await pipeline.ingest_directory(Path("docs/"), patterns=["*.md"])

Every per-document failure is turned into an error :class:`IngestResult`
naming the source and the stage it failed in; nothing is persisted for a
document until all earlier stages succeeded.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import logging
import time
import uuid
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from knowledge_rag.concurrency import throttled_gather, with_deadline
from knowledge_rag.config import Settings, settings
from knowledge_rag.errors import ConfigError, EmbeddingError, ExtractionError, InvalidInputError, KnowledgeError
from knowledge_rag.ingestion.chunker import ChunkingOptions, chunk_text, validate_options
from knowledge_rag.ingestion.embedder import EmbeddingGateway
from knowledge_rag.ingestion.loader import LoaderTextExtractor, TextExtractor
from knowledge_rag.models import (
    BatchError,
    BatchIngestResult,
    Chunk,
    Document,
    DocumentMetadata,
    IngestionSource,
    IngestResult,
    utc_now,
)
from knowledge_rag.storage.knowledge_base import KnowledgeBase
from knowledge_rag.validation import (
    file_type_of,
    normalize_tags,
    sanitize_filename,
    validate_directory,
    validate_file,
    validate_metadata,
)

logger = logging.getLogger(__name__)

TEXT_SOURCE_NAME = "text_content"


def generate_document_id(filename: str) -> str:
    """``doc_<epoch millis>_<12 hex chars>``, unique even for same-named files."""
    millis = int(time.time() * 1000)
    digest = hashlib.sha256(
        f"{sanitize_filename(filename)}:{millis}:{uuid.uuid4().hex}".encode()
    ).hexdigest()
    return f"doc_{millis}_{digest[:12]}"


def discover_files(
    directory: Path,
    *,
    patterns: Sequence[str] = ("*",),
    recursive: bool = True,
    allowed_types: Iterable[str] = (),
) -> list[Path]:
    """Files under *directory* with an allowed extension that match any pattern.

    A pattern containing glob characters is matched with :mod:`fnmatch`;
    anything else matches when it occurs in the file name.
    """
    allowed = {t.lower().lstrip(".") for t in allowed_types}
    candidates = directory.rglob("*") if recursive else directory.glob("*")
    found = [
        path
        for path in candidates
        if path.is_file()
        and file_type_of(path) in allowed
        and any(_matches(path.name, pattern) for pattern in patterns)
    ]
    return sorted(found)


def _matches(name: str, pattern: str) -> bool:
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatch(name.lower(), pattern.lower())
    return pattern in name


class IngestionPipeline:
    """Turns sources into committed documents.

    Parameters
    ----------
    knowledge_base:
        Where finished documents are committed.
    gateway:
        Embedding provider; one ``embed_many`` call per document.
    extractor:
        File-to-text collaborator (defaults to :class:`LoaderTextExtractor`).
    chunking:
        Chunk size/overlap/strategy.  Validated here, so a bad setup fails
        before any source is touched.
    config:
        File limits, batch concurrency and embedding timeout.
    """

    def __init__(
        self,
        knowledge_base: KnowledgeBase,
        gateway: EmbeddingGateway,
        *,
        extractor: TextExtractor | None = None,
        chunking: ChunkingOptions | None = None,
        config: Settings = settings,
    ) -> None:
        self.knowledge_base = knowledge_base
        self.gateway = gateway
        self.extractor = extractor or LoaderTextExtractor()
        self.chunking = chunking or ChunkingOptions()
        self.config = config
        validate_options(self.chunking)

    # -- single source --------------------------------------------------------

    async def ingest_one(self, source: IngestionSource) -> IngestResult:
        """Ingest one file or text source; never raises for per-document failures."""
        label = source.label
        stage = "validate"
        try:
            tags = normalize_tags(source.tags)
            custom_metadata = validate_metadata(dict(source.metadata))
            if (source.file_path is None) == (source.text_content is None):
                raise InvalidInputError("provide exactly one of file_path or text_content", source=label)

            if source.file_path is not None:
                path = Path(source.file_path)
                await asyncio.to_thread(
                    validate_file,
                    path,
                    max_size=self.config.max_file_size,
                    allowed_types=self.config.allowed_file_types,
                )
                stage = "extract"
                content = await asyncio.to_thread(self.extractor.extract, path)
                metadata = DocumentMetadata(
                    filename=path.name,
                    file_path=str(path.resolve()),
                    file_type=file_type_of(path),
                    size=path.stat().st_size,
                )
            else:
                stage = "extract"
                content = source.text_content or ""
                if not content.strip():
                    raise ExtractionError("text content is empty", source=label)
                metadata = DocumentMetadata(filename=TEXT_SOURCE_NAME, file_type="txt", size=len(content))
            metadata.tags = tags
            metadata.custom_metadata = custom_metadata

            stage = "chunk"
            chunks = await asyncio.to_thread(chunk_text, content, self.chunking)
            if not chunks:
                raise ExtractionError("document has no chunkable text", source=label)

            stage = "embed"
            embeddings = await self._embed(chunks, label)

            stage = "assemble"
            document = self._assemble(content, metadata, chunks, embeddings)

            stage = "persist"
            await asyncio.to_thread(self.knowledge_base.commit, document)
        except KnowledgeError as exc:
            logger.warning("Ingestion failed for %s: %s", label, exc)
            return IngestResult(source=label, status="error", message=str(exc), stage=exc.stage or stage)
        except Exception as exc:
            logger.exception("Unexpected error ingesting %s during %s", label, stage)
            return IngestResult(source=label, status="error", message=f"[{stage}] {label}: {exc}", stage=stage)

        logger.info("Ingested %s as %s (%d chunks)", label, document.id, len(document.chunks))
        return IngestResult(
            source=label,
            status="success",
            document_id=document.id,
            chunks_created=len(document.chunks),
            message=f"Successfully ingested {metadata.filename}",
            document=document,
        )

    async def ingest_file(
        self,
        file_path: Path,
        *,
        tags: Sequence[str] = (),
        metadata: dict[str, Any] | None = None,
    ) -> IngestResult:
        return await self.ingest_one(
            IngestionSource(file_path=file_path, tags=list(tags), metadata=metadata or {})
        )

    async def ingest_text(
        self,
        text: str,
        *,
        tags: Sequence[str] = (),
        metadata: dict[str, Any] | None = None,
    ) -> IngestResult:
        return await self.ingest_one(
            IngestionSource(text_content=text, tags=list(tags), metadata=metadata or {})
        )

    # -- batches --------------------------------------------------------------

    async def batch_ingest(
        self,
        sources: Sequence[IngestionSource],
        concurrency_limit: int | None = None,
    ) -> BatchIngestResult:
        """Ingest *sources* with at most *concurrency_limit* in flight.

        One source's failure never stops the others; results keep input order.
        """
        limit = concurrency_limit if concurrency_limit is not None else self.config.batch_concurrency
        if limit < 1:
            raise ConfigError(f"concurrency limit must be at least 1, got {limit}")

        logger.info("Batch ingesting %d sources (concurrency=%d)", len(sources), limit)
        semaphore = asyncio.Semaphore(limit)
        outcomes = await throttled_gather([self.ingest_one(s) for s in sources], semaphore)

        documents: list[IngestResult] = []
        errors: list[BatchError] = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                # ingest_one only lets cancellation-like exceptions escape
                result = IngestResult(source=source.label, status="error", message=str(outcome), stage="ingest")
            else:
                result = outcome
            if result.ok:
                documents.append(result)
            else:
                errors.append(BatchError(file=result.source, error=result.message, stage=result.stage))

        summary = BatchIngestResult(
            total_files=len(sources),
            success_count=len(documents),
            failed_count=len(errors),
            documents=documents,
            errors=errors,
        )
        logger.info(
            "Batch complete: %d succeeded, %d failed of %d",
            summary.success_count, summary.failed_count, summary.total_files,
        )
        return summary

    async def ingest_directory(
        self,
        directory: Path,
        *,
        patterns: Sequence[str] = ("*",),
        recursive: bool = True,
        tags: Sequence[str] = (),
        metadata: dict[str, Any] | None = None,
        concurrency_limit: int | None = None,
    ) -> BatchIngestResult:
        """Discover matching files under *directory* and batch-ingest them.

        Raises
        ------
        InvalidInputError
            When *directory* does not exist or is not a directory.
        """
        directory = Path(directory)
        validate_directory(directory)
        files = await asyncio.to_thread(
            discover_files,
            directory,
            patterns=patterns or ("*",),
            recursive=recursive,
            allowed_types=self.config.allowed_file_types,
        )
        logger.info("Found %d files to ingest under %s", len(files), directory)
        sources = [IngestionSource(file_path=f, tags=list(tags), metadata=metadata or {}) for f in files]
        return await self.batch_ingest(sources, concurrency_limit)

    # -- internals ------------------------------------------------------------

    async def _embed(self, chunks: list[Chunk], label: str) -> list[list[float]]:
        embeddings = await with_deadline(
            self.gateway.embed_many([c.content for c in chunks]),
            self.config.embed_timeout,
            source=label,
        )
        if len(embeddings) != len(chunks):
            raise EmbeddingError(
                f"provider returned {len(embeddings)} embeddings for {len(chunks)} chunks", source=label
            )
        lengths = {len(e) for e in embeddings}
        if len(lengths) != 1 or 0 in lengths:
            raise EmbeddingError(f"provider returned embeddings of lengths {sorted(lengths)}", source=label)
        return embeddings

    @staticmethod
    def _assemble(
        content: str,
        metadata: DocumentMetadata,
        chunks: list[Chunk],
        embeddings: list[list[float]],
    ) -> Document:
        document_id = generate_document_id(metadata.filename)
        now = utc_now()
        assembled = [
            chunk.model_copy(
                update={
                    "id": f"{document_id}_chunk_{chunk.index}",
                    "document_id": document_id,
                    "embedding": embedding,
                }
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
        return Document(
            id=document_id,
            content=content,
            metadata=metadata,
            chunks=assembled,
            created_at=now,
            updated_at=now,
        )
