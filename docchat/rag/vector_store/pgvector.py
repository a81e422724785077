"""PostgreSQL + pgvector backend.

Chunks live in ``document_chunks`` and belong to a row in ``documents`` that
carries the owner. Queries go through the ``match_document_chunks`` SQL
function, which joins ``documents`` and filters by owner server-side.
"""

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from docchat.db.database import embedding_dimensions, init_db
from docchat.db.models import Document, DocumentChunk
from docchat.rag.exceptions import TenancyViolation, VectorStoreError
from docchat.rag.vector_store.base import (
    UPSERT_BATCH_SIZE,
    ChunkRecord,
    StoredDocument,
    VectorMatch,
    VectorStore,
    require_owner,
)

logger = logging.getLogger(__name__)

MATCH_QUERY = text(
    "SELECT id, content, chunk_metadata, similarity "
    "FROM match_document_chunks(CAST(:embedding AS vector), :match_count, :owner, CAST(:filter AS jsonb))"
)

# Per-chunk keys that do not belong on the document row
_CHUNK_ONLY_KEYS = {"chunk_index", "total_chunks"}


def _document_values(chunk: ChunkRecord) -> dict[str, Any]:
    """Columns of the owning document row, derived from a chunk's metadata."""
    metadata = chunk.metadata
    uploaded_at = metadata.get("uploaded_at")
    values = {
        "id": chunk.document_id,
        "owner_id": chunk.owner_id,
        "filename": metadata.get("filename") or metadata.get("source", ""),
        "file_size": int(metadata.get("file_size") or 0),
        "file_type": metadata.get("file_type", "unknown"),
        "content_hash": metadata.get("content_hash"),
        "storage_key": metadata.get("storage_key"),
        "doc_metadata": {k: v for k, v in metadata.items() if k not in _CHUNK_ONLY_KEYS},
    }
    if uploaded_at:
        values["created_at"] = datetime.fromisoformat(uploaded_at)
    return values


def _to_stored(document: Document, chunk_count: int) -> StoredDocument:
    return StoredDocument(
        document_id=document.id,
        owner_id=document.owner_id,
        filename=document.filename,
        chunk_count=chunk_count,
        uploaded_at=document.created_at.isoformat() if document.created_at else None,
        file_size=document.file_size or 0,
        file_type=document.file_type or "unknown",
        content_hash=document.content_hash,
        storage_key=document.storage_key,
    )


class PgVectorStore(VectorStore):
    """Relational vector store with server-side tenancy."""

    def __init__(
        self,
        engine: AsyncEngine,
        session_maker: async_sessionmaker,
    ):
        self.engine = engine
        self.session_maker = session_maker
        # The column type is the single source of the dimension
        self.embedding_dim = embedding_dimensions()

    async def initialize(self) -> None:
        await init_db(self.engine)

    async def upsert_chunks(self, chunks: list[ChunkRecord]) -> int:
        if not chunks:
            return 0

        for chunk in chunks:
            require_owner(chunk.owner_id)
        await self._check_document_owners(chunks)

        total_upserted = 0
        failed_ids: list[str] = []

        for i in range(0, len(chunks), UPSERT_BATCH_SIZE):
            batch = chunks[i : i + UPSERT_BATCH_SIZE]
            try:
                async with self.session_maker() as session, session.begin():
                    await self._upsert_documents(session, batch)
                    stmt = insert(DocumentChunk).values(
                        [
                            {
                                "id": chunk.chunk_id,
                                "document_id": chunk.document_id,
                                "chunk_index": chunk.chunk_index,
                                "content": chunk.text,
                                "embedding": chunk.embedding,
                                "chunk_metadata": chunk.metadata,
                            }
                            for chunk in batch
                        ]
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[DocumentChunk.id],
                        set_={
                            "chunk_index": stmt.excluded.chunk_index,
                            "content": stmt.excluded.content,
                            "embedding": stmt.excluded.embedding,
                            "chunk_metadata": stmt.excluded.chunk_metadata,
                        },
                    )
                    await session.execute(stmt)
            except SQLAlchemyError as e:
                logger.error(f"[VectorStore] Batch starting at {i} failed: {e}")
                failed_ids.extend(chunk.chunk_id for chunk in batch)
                continue
            total_upserted += len(batch)

        if failed_ids:
            raise VectorStoreError(
                f"Failed to upsert {len(failed_ids)} of {len(chunks)} chunks",
                failed_ids=failed_ids,
            )

        logger.info(f"[VectorStore] Upserted {total_upserted} chunks")
        return total_upserted

    async def query(
        self,
        query_embedding: list[float],
        k: int,
        owner_id: str,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        require_owner(owner_id)
        if k <= 0:
            return []
        if filter and filter.get("owner_id", owner_id) != owner_id:
            raise TenancyViolation("Filter owner does not match the query owner")

        params = {
            "embedding": json.dumps(query_embedding),
            "match_count": k,
            "owner": owner_id,
            "filter": json.dumps({key: v for key, v in (filter or {}).items() if key != "owner_id"}),
        }
        try:
            async with self.session_maker() as session:
                rows = (await session.execute(MATCH_QUERY, params)).mappings().all()
        except SQLAlchemyError as e:
            raise VectorStoreError(f"Query failed: {e}") from e

        return [
            VectorMatch(
                id=row["id"],
                text=row["content"],
                metadata=row["chunk_metadata"] or {},
                distance=1.0 - row["similarity"],
            )
            for row in rows
        ]

    async def delete_by_document(self, document_id: str, owner_id: str) -> int:
        require_owner(owner_id)
        owned = select(Document.id).where(Document.id == document_id, Document.owner_id == owner_id)

        try:
            async with self.session_maker() as session, session.begin():
                result = await session.execute(
                    delete(DocumentChunk).where(DocumentChunk.document_id.in_(owned))
                )
                await session.execute(
                    delete(Document).where(Document.id == document_id, Document.owner_id == owner_id)
                )
        except SQLAlchemyError as e:
            raise VectorStoreError(f"Failed to delete chunks of {document_id}: {e}") from e

        deleted = result.rowcount or 0
        logger.info(f"[VectorStore] Deleted {deleted} chunks of {document_id}")
        return deleted

    async def delete_by_ids(self, ids: list[str], owner_id: str) -> None:
        require_owner(owner_id)
        if not ids:
            return

        owned = select(Document.id).where(Document.owner_id == owner_id)
        try:
            async with self.session_maker() as session, session.begin():
                await session.execute(
                    delete(DocumentChunk).where(
                        DocumentChunk.id.in_(ids),
                        DocumentChunk.document_id.in_(owned),
                    )
                )
        except SQLAlchemyError as e:
            raise VectorStoreError(f"Failed to delete {len(ids)} chunks: {e}", failed_ids=list(ids)) from e

    async def count(self, owner_id: str | None = None) -> int:
        stmt = select(func.count(DocumentChunk.id))
        if owner_id:
            stmt = stmt.join(Document, Document.id == DocumentChunk.document_id).where(
                Document.owner_id == owner_id
            )
        try:
            async with self.session_maker() as session:
                return (await session.execute(stmt)).scalar_one()
        except SQLAlchemyError as e:
            raise VectorStoreError(f"Count failed: {e}") from e

    async def list_documents(self, owner_id: str) -> list[StoredDocument]:
        require_owner(owner_id)
        stmt = (
            select(Document, func.count(DocumentChunk.id))
            .join(DocumentChunk, DocumentChunk.document_id == Document.id)
            .where(Document.owner_id == owner_id)
            .group_by(Document.id)
            .order_by(Document.created_at.desc())
        )
        try:
            async with self.session_maker() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise VectorStoreError(f"Failed to list documents: {e}") from e

        return [_to_stored(document, chunk_count) for document, chunk_count in rows]

    async def get_document(self, document_id: str, owner_id: str) -> StoredDocument | None:
        require_owner(owner_id)
        stmt = (
            select(Document, func.count(DocumentChunk.id))
            .join(DocumentChunk, DocumentChunk.document_id == Document.id)
            .where(Document.id == document_id, Document.owner_id == owner_id)
            .group_by(Document.id)
        )
        try:
            async with self.session_maker() as session:
                row = (await session.execute(stmt)).first()
        except SQLAlchemyError as e:
            raise VectorStoreError(f"Failed to look up {document_id}: {e}") from e

        return _to_stored(row[0], row[1]) if row else None

    async def find_document_by_hash(self, content_hash: str, owner_id: str) -> str | None:
        require_owner(owner_id)
        stmt = (
            select(Document.id)
            .where(Document.owner_id == owner_id, Document.content_hash == content_hash)
            .limit(1)
        )
        try:
            async with self.session_maker() as session:
                return (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise VectorStoreError(f"Hash lookup failed: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()

    async def _check_document_owners(self, chunks: list[ChunkRecord]) -> None:
        """Refuse to attach chunks to a document row owned by someone else."""
        owners = {chunk.document_id: chunk.owner_id for chunk in chunks}
        stmt = select(Document.id, Document.owner_id).where(Document.id.in_(owners))
        try:
            async with self.session_maker() as session:
                existing = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise VectorStoreError(f"Owner check failed: {e}", failed_ids=[c.chunk_id for c in chunks]) from e

        for document_id, owner_id in existing:
            if owners[document_id] != owner_id:
                raise TenancyViolation(f"Document {document_id} belongs to another owner")

    @staticmethod
    async def _upsert_documents(session, batch: list[ChunkRecord]) -> None:
        # One row per document, taken from its first chunk in the batch
        rows: dict[str, dict[str, Any]] = {}
        for chunk in batch:
            rows.setdefault(chunk.document_id, _document_values(chunk))

        for values in rows.values():
            stmt = insert(Document).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[Document.id],
                set_={
                    "filename": stmt.excluded.filename,
                    "file_size": stmt.excluded.file_size,
                    "file_type": stmt.excluded.file_type,
                    "content_hash": stmt.excluded.content_hash,
                    "storage_key": stmt.excluded.storage_key,
                    "doc_metadata": stmt.excluded.doc_metadata,
                },
                where=Document.owner_id == stmt.excluded.owner_id,
            )
            await session.execute(stmt)
