"""Text extraction — thin wrappers around LangChain document loaders."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from knowledge_rag.errors import ExtractionError
from knowledge_rag.validation import file_type_of

if TYPE_CHECKING:
    from langchain_core.document_loaders import BaseLoader

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = frozenset({"txt", "md", "markdown", "pdf", "docx", "csv", "html", "htm", "json"})


class TextExtractor(ABC):
    """Turns a file on disk into plain text."""

    @abstractmethod
    def extract(self, path: Path) -> str:
        """Return the text of *path*.

        Raises
        ------
        ExtractionError
            When the file cannot be read or yields no usable text.
        """
        ...


class LoaderTextExtractor(TextExtractor):
    """Default extractor dispatching on file extension."""

    def extract(self, path: Path) -> str:
        path = Path(path)
        file_type = file_type_of(path)
        if file_type not in SUPPORTED_FILE_TYPES:
            raise ExtractionError(f"no extractor for file type {file_type!r}", source=str(path))

        if file_type == "json":
            text = _load_json(path)
        else:
            loader = _loader_for(path, file_type)
            try:
                pages = loader.load()
            except Exception as exc:
                raise ExtractionError(f"{file_type} extraction failed: {exc}", source=str(path)) from exc
            text = "\n\n".join(page.page_content for page in pages if page.page_content)

        if not text.strip():
            raise ExtractionError("file produced no text content", source=str(path))
        logger.info("Extracted %d characters from %s", len(text), path.name)
        return text


def _loader_for(path: Path, file_type: str) -> BaseLoader:
    from langchain_community.document_loaders import (
        BSHTMLLoader,
        CSVLoader,
        Docx2txtLoader,
        PyPDFLoader,
        TextLoader,
    )

    if file_type in ("txt", "md", "markdown"):
        return TextLoader(str(path), encoding="utf-8", autodetect_encoding=True)
    if file_type == "pdf":
        return PyPDFLoader(str(path))
    if file_type == "docx":
        return Docx2txtLoader(str(path))
    if file_type == "csv":
        return CSVLoader(str(path), encoding="utf-8")
    return BSHTMLLoader(str(path), open_encoding="utf-8")


def _load_json(path: Path) -> str:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ExtractionError(f"json extraction failed: {exc}", source=str(path)) from exc
    if data in (None, "", [], {}):
        return ""
    return json.dumps(data, indent=2, ensure_ascii=False)
