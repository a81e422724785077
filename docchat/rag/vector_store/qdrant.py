"""Qdrant vector store backend.

One global collection holds every owner's chunks. Owner isolation and
document grouping rely on keyword payload indexes:
- Payload: chunk_id, document_id, owner_id, chunk_index, text, metadata
- Every read and delete carries a ``must owner_id == X`` condition
"""

import logging
from collections import Counter
from typing import Any
from uuid import NAMESPACE_DNS, uuid5

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qdrant_models
from qdrant_client.http.models import Distance, PayloadSchemaType, VectorParams

from docchat.rag.exceptions import TenancyViolation, VectorStoreError
from docchat.rag.vector_store.base import (
    UPSERT_BATCH_SIZE,
    ChunkRecord,
    StoredDocument,
    VectorMatch,
    VectorStore,
    document_from_metadata,
    require_owner,
)

logger = logging.getLogger(__name__)

# Payload keys stored at the top level; anything else is looked up in metadata
_TOP_LEVEL_FIELDS = {"chunk_id", "document_id", "chunk_index", "text"}
_SCROLL_PAGE = 256


def point_id_for(chunk_id: str) -> str:
    """Qdrant needs UUID or integer point ids; derive a stable UUID from the chunk id."""
    return str(uuid5(NAMESPACE_DNS, chunk_id))


def _match(key: str, value: Any) -> qdrant_models.FieldCondition:
    return qdrant_models.FieldCondition(key=key, match=qdrant_models.MatchValue(value=value))


class QdrantVectorStore(VectorStore):
    """Qdrant-backed chunk store (embedded local mode or a server)."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        collection_name: str,
        embedding_dim: int,
    ):
        self.client = client
        self.collection_name = collection_name
        self.embedding_dim = embedding_dim

    async def initialize(self) -> None:
        """Create the collection and its payload indexes if missing."""
        if await self.client.collection_exists(self.collection_name):
            return

        # See: https://qdrant.tech/documentation/guides/multitenancy/
        await self.client.create_collection(
            collection_name=self.collection_name,
            vectors_config=VectorParams(
                size=self.embedding_dim,
                distance=Distance.COSINE,
            ),
            # Store chunk text on disk to save RAM
            on_disk_payload=True,
            # Per-tenant HNSW graphs plus the global one
            hnsw_config=qdrant_models.HnswConfigDiff(payload_m=16, m=16),
        )

        await self.client.create_payload_index(
            collection_name=self.collection_name,
            field_name="document_id",
            field_schema=PayloadSchemaType.KEYWORD,
        )
        # Tenant index co-locates each owner's vectors on disk
        await self.client.create_payload_index(
            collection_name=self.collection_name,
            field_name="owner_id",
            field_schema=qdrant_models.KeywordIndexParams(
                type=qdrant_models.KeywordIndexType.KEYWORD,
                is_tenant=True,
            ),
        )
        logger.info(f"[VectorStore] Created collection '{self.collection_name}' (dim={self.embedding_dim})")

    async def upsert_chunks(self, chunks: list[ChunkRecord]) -> int:
        if not chunks:
            return 0

        for chunk in chunks:
            require_owner(chunk.owner_id)

        logger.info(f"[VectorStore] Upserting {len(chunks)} chunks to '{self.collection_name}'")

        total_upserted = 0
        failed_ids: list[str] = []
        batch_count = (len(chunks) + UPSERT_BATCH_SIZE - 1) // UPSERT_BATCH_SIZE

        for i in range(0, len(chunks), UPSERT_BATCH_SIZE):
            batch = chunks[i : i + UPSERT_BATCH_SIZE]
            points = [
                qdrant_models.PointStruct(
                    id=point_id_for(chunk.chunk_id),
                    vector=chunk.embedding,
                    payload={
                        "chunk_id": chunk.chunk_id,
                        "document_id": chunk.document_id,
                        "owner_id": chunk.owner_id,
                        "chunk_index": chunk.chunk_index,
                        "text": chunk.text,
                        "metadata": chunk.metadata,
                    },
                )
                for chunk in batch
            ]
            try:
                await self.client.upsert(collection_name=self.collection_name, points=points)
            except Exception as e:
                # Keep going; the caller gets the full list of failed ids at the end
                logger.error(
                    f"[VectorStore] Batch {i // UPSERT_BATCH_SIZE + 1}/{batch_count} failed: {e}"
                )
                failed_ids.extend(chunk.chunk_id for chunk in batch)
                continue
            total_upserted += len(batch)

        if failed_ids:
            raise VectorStoreError(
                f"Failed to upsert {len(failed_ids)} of {len(chunks)} chunks",
                failed_ids=failed_ids,
            )

        logger.info(f"[VectorStore] Upserted {total_upserted} points")
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

        query_filter = self._owner_filter(owner_id, filter)
        try:
            response = await self.client.query_points(
                collection_name=self.collection_name,
                query=query_embedding,
                limit=k,
                query_filter=query_filter,
                with_payload=True,
            )
        except Exception as e:
            raise VectorStoreError(f"Query failed: {e}") from e

        matches = []
        for point in response.points:
            payload = point.payload or {}
            # Tenancy is enforced by the filter; this guards against a misbuilt one
            if payload.get("owner_id") != owner_id:
                raise TenancyViolation(f"Query for {owner_id} returned a foreign chunk")
            matches.append(
                VectorMatch(
                    id=payload.get("chunk_id", str(point.id)),
                    text=payload.get("text", ""),
                    metadata=payload.get("metadata", {}),
                    distance=1.0 - point.score,
                )
            )

        matches.sort(key=lambda m: m.distance)
        return matches

    async def delete_by_document(self, document_id: str, owner_id: str) -> int:
        """Metadata-scoped bulk delete of a document's chunks."""
        require_owner(owner_id)
        document_filter = self._owner_filter(owner_id, {"document_id": document_id})

        try:
            count_before = (
                await self.client.count(
                    collection_name=self.collection_name,
                    count_filter=document_filter,
                    exact=True,
                )
            ).count
            if count_before:
                await self.client.delete(
                    collection_name=self.collection_name,
                    points_selector=qdrant_models.FilterSelector(filter=document_filter),
                )
        except Exception as e:
            raise VectorStoreError(f"Failed to delete chunks of {document_id}: {e}") from e

        logger.info(f"[VectorStore] Deleted {count_before} chunks of {document_id}")
        return count_before

    async def delete_by_ids(self, ids: list[str], owner_id: str) -> None:
        require_owner(owner_id)
        if not ids:
            return

        # Ids alone are not enough; the owner condition keeps deletes in scope
        selector = qdrant_models.FilterSelector(
            filter=qdrant_models.Filter(
                must=[
                    _match("owner_id", owner_id),
                    qdrant_models.HasIdCondition(has_id=[point_id_for(i) for i in ids]),
                ]
            )
        )
        try:
            await self.client.delete(collection_name=self.collection_name, points_selector=selector)
        except Exception as e:
            raise VectorStoreError(f"Failed to delete {len(ids)} chunks: {e}", failed_ids=list(ids)) from e

    async def count(self, owner_id: str | None = None) -> int:
        count_filter = self._owner_filter(owner_id) if owner_id else None
        try:
            result = await self.client.count(
                collection_name=self.collection_name,
                count_filter=count_filter,
                exact=True,
            )
        except Exception as e:
            raise VectorStoreError(f"Count failed: {e}") from e
        return result.count

    async def list_documents(self, owner_id: str) -> list[StoredDocument]:
        require_owner(owner_id)

        counts: Counter[str] = Counter()
        first_metadata: dict[str, dict] = {}
        async for payload in self._scroll(self._owner_filter(owner_id)):
            document_id = payload.get("document_id")
            if not document_id:
                continue
            counts[document_id] += 1
            first_metadata.setdefault(document_id, payload.get("metadata", {}))

        return [
            document_from_metadata(owner_id, {**first_metadata[doc_id], "document_id": doc_id}, count)
            for doc_id, count in counts.items()
        ]

    async def get_document(self, document_id: str, owner_id: str) -> StoredDocument | None:
        require_owner(owner_id)
        document_filter = self._owner_filter(owner_id, {"document_id": document_id})

        try:
            chunk_count = (
                await self.client.count(
                    collection_name=self.collection_name,
                    count_filter=document_filter,
                    exact=True,
                )
            ).count
        except Exception as e:
            raise VectorStoreError(f"Failed to look up {document_id}: {e}") from e

        if not chunk_count:
            return None

        async for payload in self._scroll(document_filter, limit=1):
            return document_from_metadata(
                owner_id, {**payload.get("metadata", {}), "document_id": document_id}, chunk_count
            )
        return None

    async def find_document_by_hash(self, content_hash: str, owner_id: str) -> str | None:
        require_owner(owner_id)
        hash_filter = self._owner_filter(owner_id, {"content_hash": content_hash})
        async for payload in self._scroll(hash_filter, limit=1):
            return payload.get("document_id")
        return None

    async def close(self) -> None:
        await self.client.close()

    def _owner_filter(
        self, owner_id: str, extra: dict[str, Any] | None = None
    ) -> qdrant_models.Filter:
        conditions = [_match("owner_id", owner_id)]
        for key, value in (extra or {}).items():
            if key == "owner_id":
                if value != owner_id:
                    raise TenancyViolation("Filter owner does not match the query owner")
                continue
            field_key = key if key in _TOP_LEVEL_FIELDS or key.startswith("metadata.") else f"metadata.{key}"
            conditions.append(_match(field_key, value))
        return qdrant_models.Filter(must=conditions)

    async def _scroll(self, scroll_filter: qdrant_models.Filter, limit: int | None = None):
        """Yield payloads matching the filter, page by page."""
        offset = None
        yielded = 0
        while True:
            page_size = _SCROLL_PAGE if limit is None else min(_SCROLL_PAGE, limit - yielded)
            try:
                points, offset = await self.client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=scroll_filter,
                    limit=page_size,
                    offset=offset,
                    with_payload=["document_id", "metadata"],
                    with_vectors=False,
                )
            except Exception as e:
                raise VectorStoreError(f"Scroll failed: {e}") from e

            for point in points:
                yield point.payload or {}
                yielded += 1
                if limit is not None and yielded >= limit:
                    return

            if offset is None:
                return
