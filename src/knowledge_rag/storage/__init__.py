"""
Storage — durable document records and the brute-force vector index.

Public surface
--------------
- :class:`DocumentStore` — one JSON record per document.
- :class:`VectorIndex` — chunk-id → embedding snapshot with cosine search.
- :class:`KnowledgeBase` — single owner of both; commits and deletes each
  document atomically with respect to readers.
"""

from knowledge_rag.storage.document_store import DocumentStore
from knowledge_rag.storage.knowledge_base import KnowledgeBase
from knowledge_rag.storage.vector_index import VectorIndex, cosine_similarity

__all__ = [
    "DocumentStore",
    "KnowledgeBase",
    "VectorIndex",
    "cosine_similarity",
]
