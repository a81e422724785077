"""Vector store backends.

The orchestrator depends only on ``VectorStore``; the backend is picked from
settings at construction time.
"""

from docchat.core.config import Settings
from docchat.rag.vector_store.base import (
    ChunkRecord,
    StoredDocument,
    VectorMatch,
    VectorStore,
    chunk_id_for,
    require_owner,
)


def create_vector_store(settings: Settings) -> VectorStore:
    """Build the configured backend (not yet initialized)."""
    if settings.vector_backend == "pgvector":
        from docchat.db.database import create_engine, create_session_maker
        from docchat.rag.vector_store.pgvector import PgVectorStore

        engine = create_engine(settings)
        return PgVectorStore(engine, create_session_maker(engine))

    from qdrant_client import AsyncQdrantClient

    from docchat.rag.vector_store.qdrant import QdrantVectorStore

    if settings.qdrant_url:
        # Longer timeout for batched upserts of large documents
        client = AsyncQdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key, timeout=60)
    else:
        settings.qdrant_path.mkdir(parents=True, exist_ok=True)
        client = AsyncQdrantClient(path=str(settings.qdrant_path))

    return QdrantVectorStore(client, settings.qdrant_collection, settings.embedding_dimensions)


__all__ = [
    "ChunkRecord",
    "StoredDocument",
    "VectorMatch",
    "VectorStore",
    "chunk_id_for",
    "create_vector_store",
    "require_owner",
]
