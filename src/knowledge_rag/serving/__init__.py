"""
Serving — FastAPI application over the knowledge base.

Run with ``uvicorn knowledge_rag.serving.app:app``.
"""
