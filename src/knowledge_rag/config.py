"""Shared configuration loaded from environment / .env file."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

_DEFAULT_HOME = Path.home() / ".knowledge-rag"


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # Storage
    storage_dir: Path = Field(
        default=_DEFAULT_HOME / "storage",
        description="Directory holding per-document records and the vector-index snapshot",
    )

    # Embedding
    embedding_provider: str = Field(
        default="huggingface",
        description="One of 'huggingface', 'openai' or 'fake'",
    )
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dimensions: int | None = Field(
        default=None,
        description="Vector length; probed from the provider when unset",
    )
    openai_api_key: str = Field(default="", description="Required when embedding_provider='openai'")
    embed_timeout: float | None = Field(
        default=120.0,
        description="Seconds allowed for a single embedding call; None disables the deadline",
    )

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200
    chunking_strategy: str = "sentence"
    min_chunk_size: int = 100

    # Ingestion
    max_file_size: int = 100 * 1024 * 1024
    allowed_file_types: list[str] = Field(
        default_factory=lambda: ["pdf", "docx", "txt", "md", "csv", "json", "html", "htm"],
    )
    batch_concurrency: int = 4

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


# Singleton — import `settings` wherever needed.
settings = Settings()
