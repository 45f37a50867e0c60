"""
Ingestion — text extraction, chunking, and embedding into the knowledge base.

This package converts raw sources (files on disk or plain text) into
documents whose chunks carry embeddings, then commits them through the
:class:`~knowledge_rag.storage.KnowledgeBase`.
"""
