"""Semantic search — embed the query, rank chunks, join them to documents.

Usage::

    from knowledge_rag.retrieval.search import SearchEngine

    engine  = SearchEngine(kb, gateway)
    results = await engine.search("how are chunks persisted?", k=5, filter_tags=["design"])
    for r in results:
        print(r.document.metadata.filename, round(r.score, 3), r.chunk.content[:80])
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from knowledge_rag.concurrency import with_deadline
from knowledge_rag.ingestion.embedder import EmbeddingGateway
from knowledge_rag.models import Document, SearchResult
from knowledge_rag.storage.knowledge_base import DocumentFilter, KnowledgeBase
from knowledge_rag.validation import normalize_tags, validate_query

logger = logging.getLogger(__name__)

# Built-in metadata fields a ``filter_metadata`` key may fall back to.
_BUILTIN_FIELDS = ("filename", "file_path", "file_type", "size")

_MISSING = object()


def _metadata_value(document: Document, key: str) -> Any:
    custom = document.metadata.custom_metadata
    if key in custom:
        return custom[key]
    if key in _BUILTIN_FIELDS:
        return getattr(document.metadata, key)
    return _MISSING


def build_document_filter(
    filter_tags: Sequence[str] | None = None,
    filter_metadata: dict[str, Any] | None = None,
) -> DocumentFilter | None:
    """Predicate keeping documents with any of *filter_tags* and every
    *filter_metadata* key equal; ``None`` when there is nothing to filter.
    """
    tags = set(normalize_tags(list(filter_tags))) if filter_tags else set()
    wanted = dict(filter_metadata or {})
    if not tags and not wanted:
        return None

    def keep(document: Document) -> bool:
        if tags and not tags.intersection(document.metadata.tags):
            return False
        return all(_metadata_value(document, key) == value for key, value in wanted.items())

    return keep


class SearchEngine:
    """Query-side counterpart of the ingestion pipeline.

    Parameters
    ----------
    knowledge_base:
        The index and document store to search.
    gateway:
        Must be the same embedding provider that ingested the documents.
    default_k:
        Result count when :meth:`search` is called without ``k``.
    score_threshold:
        Minimum cosine similarity; ``None`` keeps every hit.
    timeout:
        Default deadline in seconds for the query embedding call.
    """

    def __init__(
        self,
        knowledge_base: KnowledgeBase,
        gateway: EmbeddingGateway,
        *,
        default_k: int = 10,
        score_threshold: float | None = None,
        timeout: float | None = None,
    ) -> None:
        self.knowledge_base = knowledge_base
        self.gateway = gateway
        self.default_k = default_k
        self.score_threshold = score_threshold
        self.timeout = timeout

    async def search(
        self,
        query: str,
        *,
        k: int | None = None,
        threshold: float | None = None,
        filter_tags: Sequence[str] | None = None,
        filter_metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[SearchResult]:
        """Return at most *k* results in descending similarity order.

        Raises
        ------
        InvalidInputError
            Empty, whitespace-only, or over-long query.
        EmbeddingError
            Provider failure, timeout, or a query vector whose length does
            not match the index.
        """
        cleaned = validate_query(query)
        k = self.default_k if k is None else k
        threshold = self.score_threshold if threshold is None else threshold
        document_filter = build_document_filter(filter_tags, filter_metadata)

        embedding = await with_deadline(
            self.gateway.embed_one(cleaned),
            timeout if timeout is not None else self.timeout,
            source=cleaned[:80],
            stage="search",
        )
        results = await asyncio.to_thread(
            self.knowledge_base.search,
            embedding,
            k=k,
            threshold=threshold,
            document_filter=document_filter,
        )
        logger.info("Search returned %d results (k=%d)", len(results), k)
        return results
