"""Text chunking strategies.

Every strategy works on character offsets into the original text, so each
emitted :class:`~knowledge_rag.models.Chunk` satisfies
``chunk.content == text[start_char:end_char]`` and successive chunks start
strictly later than their predecessor.

Strategies
----------
``fixed``
    Sliding ``size``-character window advanced by ``size - overlap``.
``paragraph`` / ``sentence``
    Whole units (blank-line separated paragraphs, or sentences) are
    accumulated until the next unit would push the chunk to ``size``.  The
    next chunk is seeded with the longest run of trailing units that fits in
    ``overlap`` characters, or a raw character tail when no unit fits.  A
    single unit longer than ``size`` becomes one oversized chunk.
``recursive``
    LangChain's ``RecursiveCharacterTextSplitter`` with start-index tracking.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from enum import Enum

from langchain_text_splitters import RecursiveCharacterTextSplitter
from pydantic import BaseModel, Field

from knowledge_rag.config import settings
from knowledge_rag.errors import ChunkingError, ConfigError
from knowledge_rag.models import Chunk, ChunkMetadata

logger = logging.getLogger(__name__)

Span = tuple[int, int]


class ChunkingStrategy(str, Enum):
    FIXED = "fixed"
    SENTENCE = "sentence"
    PARAGRAPH = "paragraph"
    RECURSIVE = "recursive"


class ChunkingOptions(BaseModel):
    """Chunking parameters; defaults come from the global settings."""

    size: int = Field(default_factory=lambda: settings.chunk_size)
    overlap: int = Field(default_factory=lambda: settings.chunk_overlap)
    strategy: str = Field(default_factory=lambda: settings.chunking_strategy)
    min_size: int = Field(default_factory=lambda: settings.min_chunk_size)


def resolve_strategy(value: str | ChunkingStrategy) -> ChunkingStrategy:
    if isinstance(value, ChunkingStrategy):
        return value
    try:
        return ChunkingStrategy(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(s.value for s in ChunkingStrategy)
        raise ConfigError(f"unknown chunking strategy {value!r} (choose from: {choices})") from None


def validate_options(options: ChunkingOptions) -> ChunkingStrategy:
    """Check *options* and return the resolved strategy.

    Raises
    ------
    ConfigError
        When ``overlap`` is negative, ``size <= overlap``, ``size`` is below
        the configured minimum, or the strategy is unknown.
    """
    if options.overlap < 0:
        raise ConfigError(f"chunk overlap ({options.overlap}) must not be negative")
    if options.size <= options.overlap:
        raise ConfigError(
            f"chunk overlap ({options.overlap}) must be less than chunk size ({options.size})"
        )
    if options.size < options.min_size:
        raise ConfigError(f"chunk size ({options.size}) must be at least {options.min_size} characters")
    return resolve_strategy(options.strategy)


def chunk_text(text: str, options: ChunkingOptions | None = None) -> list[Chunk]:
    """Split *text* into ordered chunks.

    Parameters
    ----------
    text:
        Full document text.
    options:
        Size, overlap, and strategy.  Validated before any work is done.

    Returns
    -------
    list[Chunk]
        Chunks with ``index`` set to ``0..n-1``; ``id``, ``document_id`` and
        ``embedding`` are left for the ingestion pipeline to fill in.
    """
    options = options or ChunkingOptions()
    strategy = validate_options(options)

    if not text or not text.strip():
        return []

    logger.debug(
        "Chunking %d chars with %s strategy (size=%d, overlap=%d)",
        len(text), strategy.value, options.size, options.overlap,
    )
    spans = _SPLITTERS[strategy](text, options.size, options.overlap)
    if not spans:
        raise ChunkingError(f"{strategy.value} strategy produced no chunks from non-empty text")

    chunks = [
        Chunk(
            content=text[start:end],
            index=i,
            metadata=ChunkMetadata(start_char=start, end_char=end),
        )
        for i, (start, end) in enumerate(spans)
    ]
    logger.info("Created %d chunks using %s strategy", len(chunks), strategy.value)
    return chunks


# ---------------------------------------------------------------------------
# Span helpers
# ---------------------------------------------------------------------------

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_END = re.compile(r"[.!?]+[\"')\]]*(?=\s|$)")

# A period after one of these does not end a sentence.
_ABBREVIATIONS = (
    "Dr", "Mr", "Mrs", "Ms", "Prof", "Jr", "Sr", "St", "vs", "etc",
    "approx", "dept", "est", "Inc", "Ltd", "Co", "No", "Vol", "Fig", "e.g", "i.e",
)
_ABBREVIATION_RE = re.compile(r"\b(?:%s)\." % "|".join(re.escape(a) for a in _ABBREVIATIONS))


def _strip_span(text: str, start: int, end: int) -> Span | None:
    """Shrink ``[start, end)`` past surrounding whitespace; ``None`` if blank."""
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return (start, end) if start < end else None


def _paragraph_units(text: str) -> list[Span]:
    units: list[Span] = []
    last = 0
    for match in _PARAGRAPH_BREAK.finditer(text):
        span = _strip_span(text, last, match.start())
        if span:
            units.append(span)
        last = match.end()
    span = _strip_span(text, last, len(text))
    if span:
        units.append(span)
    return units


def _sentence_units(text: str) -> list[Span]:
    # Mask abbreviation periods with a same-width placeholder so offsets
    # in the masked copy line up with the original text.
    masked = _ABBREVIATION_RE.sub(lambda m: m.group(0)[:-1] + "\x00", text)
    units: list[Span] = []
    for p_start, p_end in _paragraph_units(text):
        last = p_start
        for match in _SENTENCE_END.finditer(masked, p_start, p_end):
            span = _strip_span(text, last, match.end())
            if span:
                units.append(span)
            last = match.end()
        span = _strip_span(text, last, p_end)
        if span:
            units.append(span)
    return units


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _fixed_spans(text: str, size: int, overlap: int) -> list[Span]:
    step = size - overlap
    length = len(text)
    spans: list[Span] = []
    position = 0
    while position < length:
        end = min(position + size, length)
        span = _strip_span(text, position, end)
        if span:
            if spans and span[0] == spans[-1][0]:
                # Leading whitespace pushed both windows to the same first
                # character; the later window is a superset of the earlier.
                spans[-1] = span
            else:
                spans.append(span)
        if end >= length:
            break
        position += step
    return spans


def _overlap_tail(text: str, units: list[Span], overlap: int) -> list[Span]:
    """Units (or a raw tail) of an emitted chunk that seed the next one.

    The first unit is never part of the tail, so the next chunk always
    starts strictly after the emitted one.
    """
    if overlap <= 0:
        return []
    chunk_start, chunk_end = units[0][0], units[-1][1]

    first = None
    for i in range(len(units) - 1, 0, -1):
        if chunk_end - units[i][0] > overlap:
            break
        first = i
    if first is not None:
        return units[first:]

    tail_start = chunk_end - overlap
    if tail_start <= chunk_start:
        return []
    span = _strip_span(text, tail_start, chunk_end)
    return [span] if span else []


def _accumulate(text: str, units: list[Span], size: int, overlap: int) -> list[Span]:
    spans: list[Span] = []
    current: list[Span] = []
    for unit in units:
        if current and unit[1] - current[0][0] >= size:
            spans.append((current[0][0], current[-1][1]))
            current = _overlap_tail(text, current, overlap)
        current.append(unit)
    if current:
        spans.append((current[0][0], current[-1][1]))
    return spans


def _paragraph_spans(text: str, size: int, overlap: int) -> list[Span]:
    return _accumulate(text, _paragraph_units(text), size, overlap)


def _sentence_spans(text: str, size: int, overlap: int) -> list[Span]:
    return _accumulate(text, _sentence_units(text), size, overlap)


def _recursive_spans(text: str, size: int, overlap: int) -> list[Span]:
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=size,
        chunk_overlap=overlap,
        length_function=len,
        separators=["\n\n", "\n", ". ", " ", ""],
        add_start_index=True,
    )
    spans: list[Span] = []
    for doc in splitter.create_documents([text]):
        piece = doc.page_content
        start = doc.metadata.get("start_index", -1)
        if start < 0 or text[start : start + len(piece)] != piece:
            start = text.find(piece, spans[-1][0] + 1 if spans else 0)
        if start < 0:
            logger.warning("Dropping recursive chunk not found in source text (%d chars)", len(piece))
            continue
        span = _strip_span(text, start, start + len(piece))
        if span and (not spans or span[0] > spans[-1][0]):
            spans.append(span)
    return spans


_SPLITTERS: dict[ChunkingStrategy, Callable[[str, int, int], list[Span]]] = {
    ChunkingStrategy.FIXED: _fixed_spans,
    ChunkingStrategy.PARAGRAPH: _paragraph_spans,
    ChunkingStrategy.SENTENCE: _sentence_spans,
    ChunkingStrategy.RECURSIVE: _recursive_spans,
}
