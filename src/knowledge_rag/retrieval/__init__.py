"""
Retrieval — semantic search over the knowledge base.

Public surface
--------------
- :class:`SearchEngine` — embeds a query and returns ranked, filtered results.
- :func:`build_document_filter` — tag / metadata predicate used by the engine.
"""

from knowledge_rag.retrieval.search import SearchEngine, build_document_filter

__all__ = [
    "SearchEngine",
    "build_document_filter",
]
