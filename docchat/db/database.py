"""Async database engine and schema setup for the pgvector backend."""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from docchat.core.config import Settings
from docchat.db.models import Base, DocumentChunk

logger = logging.getLogger(__name__)


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine (asyncpg driver)."""
    return create_async_engine(
        settings.get_database_url,
        pool_pre_ping=True,
        echo=settings.debug,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(engine, expire_on_commit=False)


def embedding_dimensions() -> int:
    """Dimension of the ``document_chunks.embedding`` column as mapped."""
    return DocumentChunk.__table__.c.embedding.type.dim


def match_function_sql(dimensions: int) -> str:
    """DDL for the owner-scoped similarity search function.

    Tenancy is enforced inside the database: the join against ``documents``
    restricts results to the given owner, and ``filter`` must be contained in
    the chunk metadata.
    """
    return f"""
        CREATE OR REPLACE FUNCTION match_document_chunks(
            query_embedding vector({dimensions}),
            match_count int,
            owner text,
            filter jsonb DEFAULT '{{}}'::jsonb
        )
        RETURNS TABLE (
            id varchar,
            document_id varchar,
            content text,
            chunk_metadata jsonb,
            similarity float
        )
        LANGUAGE sql STABLE
        AS $$
            SELECT
                c.id,
                c.document_id,
                c.content,
                c.chunk_metadata,
                1 - (c.embedding <=> query_embedding) AS similarity
            FROM document_chunks c
            JOIN documents d ON d.id = c.document_id
            WHERE d.owner_id = owner
              AND c.chunk_metadata @> filter
            ORDER BY c.embedding <=> query_embedding
            LIMIT match_count;
        $$;
    """


async def init_db(engine: AsyncEngine) -> None:
    """Create the vector extension, tables, ANN index and search function.

    Idempotent; safe to run on every start.
    """
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)

        # ivfflat works best once the table has data; run ANALYZE after bulk loads
        await conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS ix_document_chunks_embedding_ivfflat
                ON document_chunks USING ivfflat (embedding vector_cosine_ops)
                WITH (lists = 100)
                """
            )
        )
        await conn.execute(text(match_function_sql(embedding_dimensions())))

    logger.info("[Database] Schema ready")
