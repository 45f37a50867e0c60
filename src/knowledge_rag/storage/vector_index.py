"""Brute-force cosine-similarity vector index with a JSON snapshot on disk.

Every entry maps a chunk id to its embedding, owning document id, and chunk
ordinal.  Each mutation builds the new entry map, writes it to disk, and only
then swaps it in, so a failed write leaves both disk and memory at the last
committed state.

The index is scoped to one vector length: the first inserted vector fixes
it, and inserts or queries of any other length raise
:class:`~knowledge_rag.errors.EmbeddingError`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

import numpy as np
from pydantic import BaseModel, Field, ValidationError

from knowledge_rag.errors import EmbeddingError, StorageError
from knowledge_rag.models import Chunk, IndexHit
from knowledge_rag.storage.files import atomic_write_text

logger = logging.getLogger(__name__)

# (document_id, chunk_index) -> keep?
EntryPredicate = Callable[[str, int], bool]


class IndexEntry(BaseModel):
    embedding: list[float]
    document_id: str
    chunk_index: int


class IndexSnapshot(BaseModel):
    dimensions: int | None = None
    entries: dict[str, IndexEntry] = Field(default_factory=dict)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """``dot(a, b) / (|a| |b|)``; ``0.0`` when either vector has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise EmbeddingError(f"vector length mismatch: {va.shape[0]} != {vb.shape[0]}")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


class VectorIndex:
    """Exact nearest-neighbour index over chunk embeddings.

    Parameters
    ----------
    path:
        Snapshot file.  ``None`` keeps the index purely in memory.
    dimensions:
        Pin the vector length up front instead of learning it from the
        first insert.
    """

    def __init__(self, path: Path | None = None, *, dimensions: int | None = None) -> None:
        self._path = path
        self._pinned = dimensions is not None
        self._dimensions = dimensions
        self._entries: dict[str, IndexEntry] = {}
        self._lock = threading.RLock()
        self._matrix: np.ndarray | None = None
        self._norms: np.ndarray | None = None
        self._ids: list[str] = []
        if path is not None:
            self._load()

    # -- accessors ------------------------------------------------------------

    @property
    def dimensions(self) -> int | None:
        return self._dimensions

    def __len__(self) -> int:
        return len(self._entries)

    def document_ids(self) -> set[str]:
        with self._lock:
            return {entry.document_id for entry in self._entries.values()}

    def chunk_ids(self, document_id: str) -> list[str]:
        with self._lock:
            return sorted(cid for cid, e in self._entries.items() if e.document_id == document_id)

    # -- mutations ------------------------------------------------------------

    def upsert(self, document_id: str, chunks: Sequence[Chunk]) -> None:
        """Replace every entry of *document_id* with *chunks*."""
        with self._lock:
            dimensions = self._dimensions if (self._entries or self._pinned) else None
            for chunk in chunks:
                if not chunk.embedding:
                    raise EmbeddingError(f"chunk {chunk.index} has no embedding", source=document_id)
                if dimensions is None:
                    dimensions = len(chunk.embedding)
                elif len(chunk.embedding) != dimensions:
                    raise EmbeddingError(
                        f"chunk {chunk.index} has {len(chunk.embedding)}-dim embedding, "
                        f"index holds {dimensions}-dim vectors",
                        source=document_id,
                    )

            entries = {cid: e for cid, e in self._entries.items() if e.document_id != document_id}
            for chunk in chunks:
                chunk_id = chunk.id or f"{document_id}_chunk_{chunk.index}"
                entries[chunk_id] = IndexEntry(
                    embedding=list(chunk.embedding),
                    document_id=document_id,
                    chunk_index=chunk.index,
                )
            self._commit(entries, dimensions)
            logger.debug("Indexed %d chunks for %s", len(chunks), document_id)

    def remove_document(self, document_id: str) -> int:
        """Drop every entry of *document_id*; returns how many were removed."""
        with self._lock:
            entries = {cid: e for cid, e in self._entries.items() if e.document_id != document_id}
            removed = len(self._entries) - len(entries)
            if removed:
                self._commit(entries, self._dimensions)
                logger.debug("Removed %d index entries for %s", removed, document_id)
            return removed

    # -- search ---------------------------------------------------------------

    def search(
        self,
        query_embedding: Sequence[float],
        k: int,
        *,
        threshold: float | None = None,
        predicate: EntryPredicate | None = None,
    ) -> list[IndexHit]:
        """Return the top-*k* entries by cosine similarity.

        Entries scoring below *threshold* or rejected by *predicate* are
        skipped.  Results are ordered by descending score, ties broken by
        ascending chunk id.
        """
        if k <= 0:
            return []
        with self._lock:
            if not self._entries:
                return []
            query = np.asarray(query_embedding, dtype=np.float64)
            if query.ndim != 1 or query.shape[0] != self._dimensions:
                raise EmbeddingError(
                    f"query has {query.shape[-1] if query.ndim else 0}-dim embedding, "
                    f"index holds {self._dimensions}-dim vectors",
                    stage="search",
                )
            scores = self._scores(query)

            ranked = [
                (float(score), chunk_id)
                for chunk_id, score in zip(self._ids, scores)
                if threshold is None or score >= threshold
            ]
            ranked.sort(key=lambda item: (-item[0], item[1]))

            hits: list[IndexHit] = []
            for score, chunk_id in ranked:
                entry = self._entries[chunk_id]
                if predicate is not None and not predicate(entry.document_id, entry.chunk_index):
                    continue
                hits.append(
                    IndexHit(
                        chunk_id=chunk_id,
                        document_id=entry.document_id,
                        chunk_index=entry.chunk_index,
                        score=score,
                    )
                )
                if len(hits) >= k:
                    break
            return hits

    # -- internals ------------------------------------------------------------

    def _scores(self, query: np.ndarray) -> np.ndarray:
        if self._matrix is None:
            self._ids = list(self._entries)
            self._matrix = np.array([self._entries[cid].embedding for cid in self._ids], dtype=np.float64)
            self._norms = np.linalg.norm(self._matrix, axis=1)
        denom = self._norms * np.linalg.norm(query)
        dots = self._matrix @ query
        scores = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
        return np.clip(scores, -1.0, 1.0)

    def _commit(self, entries: dict[str, IndexEntry], dimensions: int | None) -> None:
        if self._path is not None:
            snapshot = IndexSnapshot(dimensions=dimensions, entries=entries)
            try:
                atomic_write_text(self._path, snapshot.model_dump_json())
            except OSError as exc:
                raise StorageError(f"failed to write vector index: {exc}", source=str(self._path)) from exc
        self._entries = entries
        self._dimensions = dimensions
        self._matrix = None
        self._norms = None

    def _load(self) -> None:
        assert self._path is not None
        if not self._path.exists():
            logger.info("Creating new vector index at %s", self._path)
            return
        try:
            snapshot = IndexSnapshot.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            raise StorageError(f"failed to load vector index: {exc}", source=str(self._path)) from exc

        if self._pinned and snapshot.entries and snapshot.dimensions != self._dimensions:
            raise EmbeddingError(
                f"index on disk holds {snapshot.dimensions}-dim vectors, expected {self._dimensions}",
                source=str(self._path),
            )
        self._entries = snapshot.entries
        if not self._pinned:
            self._dimensions = snapshot.dimensions
        logger.info("Loaded vector index with %d entries", len(self._entries))
