"""Single owner of a :class:`DocumentStore` and its :class:`VectorIndex`.

All operations that touch both halves run under one re-entrant lock, so a
reader never sees a document's vectors without its record or the other way
round.  Write ordering keeps a crash recoverable:

* commit writes the document record first, then its vectors;
* delete removes the vectors first, then the record.

Either way the worst leftover is a document without vectors, which a
re-ingest repairs; vectors pointing at a missing document never persist.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from knowledge_rag.config import settings
from knowledge_rag.errors import StorageError
from knowledge_rag.models import CollectionStats, Document, SearchResult
from knowledge_rag.storage.document_store import DocumentStore
from knowledge_rag.storage.vector_index import VectorIndex
from knowledge_rag.validation import normalize_tags, validate_document_id, validate_metadata

logger = logging.getLogger(__name__)

INDEX_FILENAME = "vector_index.json"
DOCUMENTS_DIRNAME = "documents"

DocumentFilter = Callable[[Document], bool]


class KnowledgeBase:
    """Documents plus their vector index behind one critical section."""

    def __init__(self, store: DocumentStore, index: VectorIndex) -> None:
        self.store = store
        self.index = index
        self._lock = threading.RLock()

    @classmethod
    def open(cls, storage_dir: Path | None = None, *, dimensions: int | None = None) -> KnowledgeBase:
        """Load (or create) the file-backed knowledge base under *storage_dir*."""
        root = Path(storage_dir) if storage_dir is not None else settings.storage_dir
        kb = cls(
            DocumentStore(root / DOCUMENTS_DIRNAME),
            VectorIndex(root / INDEX_FILENAME, dimensions=dimensions),
        )
        kb._report_orphans()
        logger.info("Knowledge base initialised at %s", root)
        return kb

    @classmethod
    def in_memory(cls, *, dimensions: int | None = None) -> KnowledgeBase:
        return cls(DocumentStore(None), VectorIndex(None, dimensions=dimensions))

    # -- writes ---------------------------------------------------------------

    def commit(self, document: Document) -> None:
        """Persist *document* and index its chunks as one unit.

        When indexing fails the freshly written record is removed again
        before the error propagates.
        """
        with self._lock:
            self.store.put(document)
            try:
                self.index.upsert(document.id, document.chunks)
            except Exception:
                logger.error("Indexing failed for %s; rolling back document record", document.id)
                try:
                    self.store.delete(document.id)
                except StorageError:
                    logger.exception("Rollback failed; %s left without vectors", document.id)
                raise
            logger.info("Stored document %s with %d chunks", document.id, len(document.chunks))

    def delete_document(self, document_id: str) -> bool:
        """Delete a document and its vectors; ``False`` if nothing existed."""
        validate_document_id(document_id)
        with self._lock:
            removed_vectors = self.index.remove_document(document_id)
            removed_record = self.store.delete(document_id)
        if removed_record or removed_vectors:
            logger.info("Deleted document %s (%d vectors)", document_id, removed_vectors)
        return removed_record or removed_vectors > 0

    def update_document_metadata(
        self,
        document_id: str,
        *,
        custom_metadata: dict[str, Any] | None = None,
        tags: Sequence[str] | None = None,
    ) -> Document:
        """Merge custom metadata and/or replace tags; raises NotFoundError if absent."""
        validate_document_id(document_id)
        if custom_metadata is not None:
            validate_metadata(custom_metadata)
        cleaned_tags = normalize_tags(list(tags)) if tags is not None else None
        with self._lock:
            return self.store.update(document_id, custom_metadata=custom_metadata, tags=cleaned_tags)

    # -- reads ----------------------------------------------------------------

    def get_document(self, document_id: str) -> Document | None:
        validate_document_id(document_id)
        with self._lock:
            return self.store.get(document_id)

    def list_documents(
        self,
        *,
        tags: Sequence[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Document]:
        wanted = normalize_tags(list(tags)) if tags else None
        with self._lock:
            return self.store.list(tags=wanted, limit=limit, offset=offset)

    def search(
        self,
        query_embedding: Sequence[float],
        *,
        k: int,
        threshold: float | None = None,
        document_filter: DocumentFilter | None = None,
    ) -> list[SearchResult]:
        """Rank chunks against *query_embedding* and join them to their documents.

        Hits whose document has disappeared are dropped silently.
        *document_filter* is evaluated per document before the top-*k* cut,
        so filtering never starves the result list.
        """
        with self._lock:
            verdicts: dict[str, bool] = {}

            def keep(document_id: str, _chunk_index: int) -> bool:
                if document_id not in verdicts:
                    stored = self.store.peek(document_id)
                    verdicts[document_id] = stored is not None and (
                        document_filter is None or document_filter(stored)
                    )
                return verdicts[document_id]

            hits = self.index.search(query_embedding, k, threshold=threshold, predicate=keep)

            # Only documents that make it into the results are copied.
            copies: dict[str, Document | None] = {}
            results: list[SearchResult] = []
            for hit in hits:
                if hit.document_id not in copies:
                    copies[hit.document_id] = self.store.get(hit.document_id)
                document = copies[hit.document_id]
                chunk = document.chunk_at(hit.chunk_index) if document is not None else None
                if document is None or chunk is None:
                    logger.debug("Dropping stale hit %s", hit.chunk_id)
                    continue
                results.append(
                    SearchResult(chunk=chunk, document=document, score=hit.score, distance=1.0 - hit.score)
                )
            return results

    def get_stats(self) -> CollectionStats:
        with self._lock:
            documents = self.store.all()
            collection_size = len(self.index)
            dimensions = self.index.dimensions

        total_chunks = sum(len(d.chunks) for d in documents)
        return CollectionStats(
            total_documents=len(documents),
            total_chunks=total_chunks,
            collection_size=collection_size,
            average_chunks_per_document=round(total_chunks / len(documents), 2) if documents else 0.0,
            file_types=dict(Counter(d.metadata.file_type for d in documents)),
            dimensions=dimensions,
        )

    # -- internals ------------------------------------------------------------

    def _report_orphans(self) -> None:
        indexed = self.index.document_ids()
        orphan_vectors = sorted(doc_id for doc_id in indexed if doc_id not in self.store)
        for doc_id in orphan_vectors:
            self.index.remove_document(doc_id)
        if orphan_vectors:
            logger.warning("Removed vectors of %d missing documents: %s", len(orphan_vectors), orphan_vectors)

        unindexed = [d.id for d in self.store.all() if d.chunks and d.id not in indexed]
        if unindexed:
            logger.warning("%d documents have no indexed vectors; re-ingest to repair: %s", len(unindexed), unindexed)
