"""Embedding gateway — the single seam between ingestion/search and providers.

Providers are LangChain ``Embeddings`` implementations; the gateway adds
async batch calls, error translation, and a fixed dimensionality that the
vector index can rely on.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING

from knowledge_rag.config import Settings, settings
from knowledge_rag.errors import ConfigError, EmbeddingError

if TYPE_CHECKING:
    from langchain_core.embeddings import Embeddings

logger = logging.getLogger(__name__)

# Known output sizes, so the index can be validated before the first call.
_MODEL_DIMENSIONS: dict[str, int] = {
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-MiniLM-L12-v2": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

_FAKE_DEFAULT_DIMENSIONS = 384


class EmbeddingProvider(str, Enum):
    HUGGINGFACE = "huggingface"
    OPENAI = "openai"
    FAKE = "fake"


class EmbeddingGateway(ABC):
    """Provider-agnostic embedding interface.

    Implementations must return vectors in input order, one per text, each
    of length :meth:`dimensions`.
    """

    model_name: str = "unknown"

    @abstractmethod
    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts in a single provider call."""
        ...

    @abstractmethod
    async def embed_one(self, text: str) -> list[float]:
        """Embed a single (query) text."""
        ...

    @abstractmethod
    def dimensions(self) -> int:
        """Length of every vector this gateway produces."""
        ...


class LangChainEmbeddingGateway(EmbeddingGateway):
    """Adapter from a LangChain ``Embeddings`` object to :class:`EmbeddingGateway`.

    Parameters
    ----------
    embeddings:
        Any LangChain embeddings implementation.
    model_name:
        Identifier reported in logs and errors.
    dimensions:
        Expected vector length.  When ``None`` it is learned from the first
        batch, or probed with a one-off query on :meth:`dimensions`.
    """

    def __init__(
        self,
        embeddings: Embeddings,
        *,
        model_name: str = "unknown",
        dimensions: int | None = None,
    ) -> None:
        self._embeddings = embeddings
        self.model_name = model_name
        self._dimensions = dimensions

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = await self._embeddings.aembed_documents(texts)
        except Exception as exc:
            raise EmbeddingError(f"embedding provider failed: {exc}", source=self.model_name) from exc
        result = [[float(x) for x in vector] for vector in vectors]
        if result and self._dimensions is None:
            self._dimensions = len(result[0])
        return result

    async def embed_one(self, text: str) -> list[float]:
        try:
            vector = await self._embeddings.aembed_query(text)
        except Exception as exc:
            raise EmbeddingError(f"embedding provider failed: {exc}", source=self.model_name) from exc
        result = [float(x) for x in vector]
        if self._dimensions is None:
            self._dimensions = len(result)
        return result

    def dimensions(self) -> int:
        if self._dimensions is None:
            try:
                probe = self._embeddings.embed_query("dimension probe")
            except Exception as exc:
                raise EmbeddingError(
                    f"could not determine embedding dimensions: {exc}", source=self.model_name
                ) from exc
            self._dimensions = len(probe)
            logger.info("Probed embedding dimensions for %s: %d", self.model_name, self._dimensions)
        return self._dimensions


def resolve_provider(value: str | EmbeddingProvider) -> EmbeddingProvider:
    if isinstance(value, EmbeddingProvider):
        return value
    try:
        return EmbeddingProvider(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(p.value for p in EmbeddingProvider)
        raise ConfigError(f"unknown embedding provider {value!r} (choose from: {choices})") from None


def create_embedding_gateway(config: Settings = settings) -> LangChainEmbeddingGateway:
    """Build the configured embedding gateway.

    Provider libraries are imported lazily so that only the selected one
    needs to be importable.
    """
    provider = resolve_provider(config.embedding_provider)
    model = config.embedding_model
    dimensions = config.embedding_dimensions or _MODEL_DIMENSIONS.get(model)

    if provider is EmbeddingProvider.HUGGINGFACE:
        from langchain_huggingface import HuggingFaceEmbeddings

        embeddings: Embeddings = HuggingFaceEmbeddings(
            model_name=model,
            encode_kwargs={"normalize_embeddings": True},
        )
    elif provider is EmbeddingProvider.OPENAI:
        if not config.openai_api_key:
            raise ConfigError("OPENAI_API_KEY is required for the openai embedding provider")
        from langchain_openai import OpenAIEmbeddings

        kwargs: dict = {"model": model, "api_key": config.openai_api_key}
        if config.embedding_dimensions:
            kwargs["dimensions"] = config.embedding_dimensions
        embeddings = OpenAIEmbeddings(**kwargs)
    else:
        from langchain_core.embeddings import DeterministicFakeEmbedding

        dimensions = config.embedding_dimensions or _FAKE_DEFAULT_DIMENSIONS
        embeddings = DeterministicFakeEmbedding(size=dimensions)
        model = f"fake-{dimensions}"

    logger.info("Using %s embeddings (model=%s)", provider.value, model)
    return LangChainEmbeddingGateway(embeddings, model_name=model, dimensions=dimensions)
