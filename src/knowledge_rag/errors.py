"""Exception hierarchy for knowledge-rag.

Every error carries the offending ``source`` (file path, document id, or
query) and the pipeline ``stage`` it failed in, so batch reports and HTTP
responses can say exactly what broke and where::

    KnowledgeError
    +-- ConfigError         invalid chunking / provider settings (before any I/O)
    +-- InvalidInputError   bad path, file type, size, query, tags or metadata
    +-- ExtractionError     a file produced no usable text
    +-- ChunkingError       chunking produced nothing usable
    +-- EmbeddingError      provider failure, timeout, count/dimension mismatch
    +-- StorageError        durable read/write failure
    +-- NotFoundError       caller presumed a document exists and it does not
"""

from __future__ import annotations


class KnowledgeError(Exception):
    """Base class for all knowledge-rag errors."""

    default_stage: str | None = None

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.message = message
        self.source = source
        self.stage = stage or self.default_stage
        super().__init__(message)

    def __str__(self) -> str:
        prefix = f"[{self.stage}] " if self.stage else ""
        if self.source:
            return f"{prefix}{self.source}: {self.message}"
        return f"{prefix}{self.message}"


class ConfigError(KnowledgeError, ValueError):
    default_stage = "config"


class InvalidInputError(KnowledgeError, ValueError):
    default_stage = "validate"


class ExtractionError(KnowledgeError):
    default_stage = "extract"


class ChunkingError(KnowledgeError):
    default_stage = "chunk"


class EmbeddingError(KnowledgeError):
    default_stage = "embed"


class StorageError(KnowledgeError):
    default_stage = "persist"


class NotFoundError(KnowledgeError, LookupError):
    default_stage = "lookup"
