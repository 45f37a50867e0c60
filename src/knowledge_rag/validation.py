"""Boundary validation for paths, queries, tags, and metadata."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from knowledge_rag.errors import InvalidInputError

MAX_QUERY_LENGTH = 10_000
MAX_METADATA_BYTES = 100_000
MAX_TAGS = 100

_DOCUMENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]")


def file_type_of(path: str | Path) -> str:
    """Lower-case extension without the dot (``"report.PDF"`` → ``"pdf"``)."""
    return Path(path).suffix.lower().lstrip(".")


def validate_file(path: Path, *, max_size: int, allowed_types: list[str]) -> None:
    """Ensure *path* is an existing regular file of an allowed type and size."""
    source = str(path)
    if not path.exists():
        raise InvalidInputError("file not found", source=source)
    if not path.is_file():
        raise InvalidInputError("path is not a file", source=source)

    size = path.stat().st_size
    if size > max_size:
        raise InvalidInputError(
            f"file size ({size} bytes) exceeds maximum allowed size ({max_size} bytes)",
            source=source,
        )

    allowed = {t.lower().lstrip(".") for t in allowed_types}
    ext = file_type_of(path)
    if ext not in allowed:
        raise InvalidInputError(
            f"file type {ext!r} is not allowed. Allowed types: {', '.join(sorted(allowed))}",
            source=source,
        )


def validate_directory(path: Path) -> None:
    if not path.exists():
        raise InvalidInputError("directory not found", source=str(path))
    if not path.is_dir():
        raise InvalidInputError("path is not a directory", source=str(path))


def validate_document_id(document_id: str) -> None:
    if not document_id or not _DOCUMENT_ID_RE.match(document_id):
        raise InvalidInputError(
            "document id may only contain letters, digits, hyphens and underscores",
            source=document_id or "<empty>",
        )


def validate_query(query: str) -> str:
    """Return the stripped query or raise :class:`InvalidInputError`."""
    if not isinstance(query, str) or not query.strip():
        raise InvalidInputError("search query cannot be empty or only whitespace", stage="search")
    if len(query) > MAX_QUERY_LENGTH:
        raise InvalidInputError(
            f"search query exceeds maximum length of {MAX_QUERY_LENGTH} characters",
            stage="search",
        )
    return query.strip()


def validate_metadata(metadata: Any) -> dict[str, Any]:
    """Check that *metadata* is a JSON-serialisable mapping under the size cap."""
    if not isinstance(metadata, dict):
        raise InvalidInputError("metadata must be a mapping")
    if not all(isinstance(key, str) for key in metadata):
        raise InvalidInputError("metadata keys must be strings")
    try:
        encoded = json.dumps(metadata)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"metadata is not JSON-serialisable: {exc}") from exc
    if len(encoded) > MAX_METADATA_BYTES:
        raise InvalidInputError(f"metadata exceeds maximum size of {MAX_METADATA_BYTES // 1000}KB")
    return metadata


def normalize_tags(tags: Any) -> list[str]:
    """Trim, drop empties and de-duplicate *tags* keeping first-seen order."""
    if not isinstance(tags, (list, tuple)):
        raise InvalidInputError("tags must be a list of strings")
    if not all(isinstance(tag, str) for tag in tags):
        raise InvalidInputError("all tags must be strings")
    if len(tags) > MAX_TAGS:
        raise InvalidInputError(f"cannot exceed {MAX_TAGS} tags")

    seen: dict[str, None] = {}
    for tag in tags:
        cleaned = tag.strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def sanitize_filename(filename: str) -> str:
    """Replace path separators and other unsafe characters with ``_``."""
    return _UNSAFE_FILENAME_RE.sub("_", filename)
