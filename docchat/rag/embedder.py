"""Embedding service using OpenAI or Azure OpenAI.

Generates vector embeddings for text chunks and queries.
"""

import logging
from typing import Protocol

import httpx
from openai import AsyncAzureOpenAI, AsyncOpenAI

from docchat.core.config import Settings

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Anything that can embed documents and queries."""

    async def embed_documents(self, texts: list[str]) -> list[list[float]]: ...

    async def embed_query(self, text: str) -> list[float]: ...


class Embedder:
    """OpenAI embedding service.

    Uses text-embedding-3-small by default for cost-effective embeddings.
    Empty texts are not sent to the API and get zero vectors.
    """

    DEFAULT_MODEL = "text-embedding-3-small"

    def __init__(
        self,
        client: AsyncOpenAI | AsyncAzureOpenAI,
        model: str = DEFAULT_MODEL,
        dimensions: int = 1536,
        batch_size: int = 100,
    ):
        self.client = client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts in batches.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, parallel to ``texts``
        """
        if not texts:
            return []

        non_empty = [(i, t.strip()) for i, t in enumerate(texts) if t.strip()]
        all_embeddings: list[list[float] | None] = [None] * len(texts)

        for batch_start in range(0, len(non_empty), self.batch_size):
            batch = non_empty[batch_start : batch_start + self.batch_size]

            response = await self.client.embeddings.create(
                input=[t for _, t in batch],
                model=self.model,
            )

            # Map embeddings back to original indices
            for j, (original_idx, _) in enumerate(batch):
                all_embeddings[original_idx] = response.data[j].embedding

        logger.debug(f"[Embedder] Embedded {len(non_empty)}/{len(texts)} texts with {self.model}")

        zero_vector = [0.0] * self.dimensions
        return [e if e is not None else list(zero_vector) for e in all_embeddings]

    async def embed_query(self, text: str) -> list[float]:
        """Embed a search query."""
        text = text.strip()
        if not text:
            raise ValueError("Cannot embed empty text")

        response = await self.client.embeddings.create(
            input=text,
            model=self.model,
        )
        return response.data[0].embedding


def create_openai_client(settings: Settings) -> AsyncOpenAI | AsyncAzureOpenAI:
    """Azure OpenAI when an endpoint is configured, otherwise OpenAI."""
    # Default timeout is too short for batch embedding operations
    timeout = httpx.Timeout(120.0, connect=30.0)

    if settings.azure_openai_endpoint:
        return AsyncAzureOpenAI(
            api_key=settings.azure_openai_api_key,
            api_version=settings.azure_openai_api_version,
            azure_endpoint=settings.azure_openai_endpoint,
            timeout=timeout,
        )

    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=timeout,
    )


def create_embedder(settings: Settings, client: AsyncOpenAI | AsyncAzureOpenAI | None = None) -> Embedder:
    """Build the embedder from settings."""
    logger.info(f"Initializing embedder with model '{settings.embedding_model}'")
    return Embedder(
        client=client or create_openai_client(settings),
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        batch_size=settings.embedding_batch_size,
    )
