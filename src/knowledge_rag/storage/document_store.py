"""Durable document records — one JSON file per document."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from knowledge_rag.errors import NotFoundError, StorageError
from knowledge_rag.models import Document, utc_now
from knowledge_rag.storage.files import atomic_write_text
from knowledge_rag.validation import validate_document_id

logger = logging.getLogger(__name__)


class DocumentStore:
    """CRUD over :class:`~knowledge_rag.models.Document` records.

    All records are loaded into memory at construction; every write goes
    to disk first and is reflected in memory only once it succeeded.
    Callers receive copies, never the stored objects, except through
    :meth:`peek`, which is for read-only checks.

    Parameters
    ----------
    directory:
        Where ``<document_id>.json`` files live.  ``None`` keeps the store
        purely in memory.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self._directory = directory
        self._documents: dict[str, Document] = {}
        self._lock = threading.RLock()
        if directory is not None:
            self._load()

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._documents

    # -- CRUD -----------------------------------------------------------------

    def put(self, document: Document) -> None:
        """Insert or overwrite *document*."""
        with self._lock:
            stored = document.model_copy(deep=True)
            self._write(stored)
            self._documents[stored.id] = stored
            logger.debug("Saved document %s", stored.id)

    def get(self, document_id: str) -> Document | None:
        with self._lock:
            document = self._documents.get(document_id)
            return document.model_copy(deep=True) if document is not None else None

    def peek(self, document_id: str) -> Document | None:
        """The stored record itself, not a copy; callers must not mutate it."""
        with self._lock:
            return self._documents.get(document_id)

    def update(
        self,
        document_id: str,
        *,
        custom_metadata: dict[str, Any] | None = None,
        tags: list[str] | None = None,
    ) -> Document:
        """Shallow-merge *custom_metadata* and replace *tags* when given.

        Raises
        ------
        NotFoundError
            If *document_id* is not stored.
        """
        with self._lock:
            current = self._documents.get(document_id)
            if current is None:
                raise NotFoundError("document not found", source=document_id, stage="update")

            updated = current.model_copy(deep=True)
            if custom_metadata:
                updated.metadata.custom_metadata = {**updated.metadata.custom_metadata, **custom_metadata}
            if tags is not None:
                updated.metadata.tags = list(tags)
            updated.updated_at = utc_now()

            self._write(updated)
            self._documents[document_id] = updated
            logger.debug("Updated metadata for document %s", document_id)
            return updated.model_copy(deep=True)

    def delete(self, document_id: str) -> bool:
        """Remove *document_id*; returns ``False`` if it was not stored."""
        with self._lock:
            if document_id not in self._documents:
                return False
            if self._directory is not None:
                try:
                    self._path_for(document_id).unlink(missing_ok=True)
                except OSError as exc:
                    raise StorageError(f"failed to delete document: {exc}", source=document_id) from exc
            del self._documents[document_id]
            logger.debug("Deleted document %s", document_id)
            return True

    def list(
        self,
        *,
        tags: list[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Document]:
        """Documents newest first, optionally filtered to any of *tags*.

        Pagination is applied after filtering and sorting.
        """
        with self._lock:
            documents = list(self._documents.values())

        if tags:
            wanted = set(tags)
            documents = [d for d in documents if wanted.intersection(d.metadata.tags)]

        documents.sort(key=lambda d: d.id)
        documents.sort(key=lambda d: d.created_at, reverse=True)

        offset = max(offset, 0)
        end = None if limit is None else offset + max(limit, 0)
        return [d.model_copy(deep=True) for d in documents[offset:end]]

    def all(self) -> list[Document]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._documents.values()]

    # -- persistence ----------------------------------------------------------

    def _path_for(self, document_id: str) -> Path:
        assert self._directory is not None
        validate_document_id(document_id)
        return self._directory / f"{document_id}.json"

    def _write(self, document: Document) -> None:
        if self._directory is None:
            return
        try:
            atomic_write_text(self._path_for(document.id), document.model_dump_json())
        except OSError as exc:
            raise StorageError(f"failed to save document: {exc}", source=document.id) from exc

    def _load(self) -> None:
        assert self._directory is not None
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            paths = sorted(self._directory.glob("*.json"))
        except OSError as exc:
            raise StorageError(f"failed to open document store: {exc}", source=str(self._directory)) from exc

        for path in paths:
            if path.name.startswith("."):
                continue
            try:
                document = Document.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                raise StorageError(f"failed to load document: {exc}", source=str(path)) from exc
            self._documents[document.id] = document
        logger.info("Loaded %d documents from %s", len(self._documents), self._directory)
