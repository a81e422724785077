"""RAG service - document lifecycle and retrieval facade.

Pipeline for a new upload:
1. Hash the raw bytes and skip everything if the owner already has them
2. Store the source file
3. Extract text and split into chunks
4. Reuse cached embeddings or generate and cache them
5. Upsert chunks into the vector store
6. Record a version

The service holds no persistent state of its own; every collaborator is
injected, and ``create_rag_service`` builds the production wiring.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from docchat.core.config import Settings
from docchat.rag.chunking import ChunkingStrategy, get_chunker
from docchat.rag.embedder import EmbeddingProvider, create_embedder, create_openai_client
from docchat.rag.embedding_cache import EmbeddingCache
from docchat.rag.exceptions import (
    CacheMiss,
    CacheWriteError,
    DocumentLoadError,
    DocumentNotFoundError,
    RollbackCacheMismatch,
    UnsupportedFormatError,
    VectorStoreError,
)
from docchat.rag.extractors import DocumentLoader
from docchat.rag.retriever import Retriever
from docchat.rag.storage import FileStorage, LocalFileStorage
from docchat.rag.vector_store import ChunkRecord, VectorStore, chunk_id_for, create_vector_store, require_owner
from docchat.rag.versioning import VersionManager, VersionMetadata

logger = logging.getLogger(__name__)


@dataclass
class AddDocumentResult:
    """Outcome of an upload."""

    document_id: str
    version_id: str
    chunk_count: int
    # False when identical content already existed for the owner
    created: bool = True


@dataclass
class QueryResult:
    """Ranked chunks for a question, as parallel lists."""

    chunks: list[str]
    metadatas: list[dict]
    distances: list[float]
    context: str
    requires_context: bool


@dataclass
class DocumentSummary:
    """One row of a document listing."""

    id: str
    filename: str
    chunk_count: int
    uploaded_at: str | None
    file_size: int
    file_type: str


class RAGService:
    """Coordinates loading, chunking, embedding, storage and versioning.

    Safe to call concurrently for different documents. Concurrent calls for
    the same document are not serialized here; deterministic chunk ids make
    duplicate upserts overwrite instead of duplicating.
    """

    def __init__(
        self,
        loader: DocumentLoader,
        chunker: ChunkingStrategy,
        embedder: EmbeddingProvider,
        cache: EmbeddingCache,
        versions: VersionManager,
        vector_store: VectorStore,
        file_storage: FileStorage,
        retriever: Retriever,
        default_k: int = 4,
    ):
        self.loader = loader
        self.chunker = chunker
        self.embedder = embedder
        self.cache = cache
        self.versions = versions
        self.vector_store = vector_store
        self.file_storage = file_storage
        self.retriever = retriever
        self.default_k = default_k

    async def initialize(self) -> None:
        """Prepare the vector store (collections, tables, indexes)."""
        await self.vector_store.initialize()
        logger.info("[Service] RAG service initialized")

    async def close(self) -> None:
        await self.vector_store.close()

    # ------------------------------------------------------------------
    # Document lifecycle
    # ------------------------------------------------------------------

    async def add_document(
        self,
        filename: str,
        owner_id: str,
        content: bytes | str | None = None,
        file_path: str | Path | None = None,
        metadata: dict | None = None,
    ) -> AddDocumentResult:
        """Ingest a document for an owner.

        Args:
            filename: Original file name; its extension selects the extractor
            owner_id: Owning user
            content: Raw document bytes (or text), or
            file_path: Path to read the document from
            metadata: Extra metadata copied onto every chunk

        Returns:
            AddDocumentResult; ``created`` is False if the owner already had
            a document with identical bytes

        Raises:
            UnsupportedFormatError: Unknown file extension
            DocumentLoadError: The file could not be read or parsed
            VectorStoreError: Chunks could not be stored
        """
        require_owner(owner_id)
        if not self.loader.supports(filename):
            raise UnsupportedFormatError(Path(filename).suffix.lower())

        raw = await self._read_input(filename, content, file_path)
        content_hash = self.cache.generate_hash(raw)

        while existing_id := await self.vector_store.find_document_by_hash(content_hash, owner_id):
            current = self.versions.get_current_version(existing_id)
            if current is None:
                # Chunks without a version are what an interrupted add leaves behind
                logger.warning(f"[Service] Discarding unversioned chunks of {existing_id}")
                await self.vector_store.delete_by_document(existing_id, owner_id)
                continue

            logger.info(f"[Service] {filename} already stored as {existing_id}, skipping")
            existing = await self.vector_store.get_document(existing_id, owner_id)
            return AddDocumentResult(
                document_id=existing_id,
                version_id=current.version_id,
                chunk_count=existing.chunk_count if existing else 0,
                created=False,
            )

        document_id = str(uuid4())
        logger.info(f"[Service] Adding {filename} as {document_id} for owner {owner_id}")

        stored = await self.file_storage.save(owner_id, filename, raw)
        try:
            records = await self._prepare_chunks(
                document_id, owner_id, filename, raw, stored.key, metadata, use_cache=True
            )
            await self.vector_store.upsert_chunks(records)
        except Exception:
            await self._discard_chunks(document_id, owner_id)
            await self._delete_stored_file(stored.key)
            await self._forget_cached(document_id)
            raise

        version_id = await self.versions.create_version(
            document_id, content_hash, ["initial"], cache_ref=content_hash
        )

        logger.info(f"[Service] Added {document_id}: {len(records)} chunks, version {version_id}")
        return AddDocumentResult(
            document_id=document_id,
            version_id=version_id,
            chunk_count=len(records),
        )

    async def update_document(
        self,
        document_id: str,
        owner_id: str,
        content: bytes | str,
        filename: str | None = None,
        metadata: dict | None = None,
    ) -> str:
        """Replace a document's content. Always reprocesses.

        Old chunks are removed before the new ones are written. If writing the
        new chunks fails, whatever landed is removed again and the document
        is left without chunks: it no longer lists or matches queries, while
        its stored file, cache entries and version history are kept. Upload
        it again with ``add_document`` to recover.

        Returns:
            The new version id

        Raises:
            DocumentNotFoundError: The owner has no such document
            VectorStoreError: The new chunks could not be stored; the document
                is left empty and ``failed_ids`` names the chunks not written
        """
        require_owner(owner_id)
        existing = await self.vector_store.get_document(document_id, owner_id)
        if existing is None:
            raise DocumentNotFoundError(document_id)

        filename = filename or existing.filename
        if not self.loader.supports(filename):
            raise UnsupportedFormatError(Path(filename).suffix.lower())

        raw = await self._read_input(filename, content, None)
        content_hash = self.cache.generate_hash(raw)

        stored = await self.file_storage.save(owner_id, filename, raw)
        try:
            records = await self._prepare_chunks(
                document_id, owner_id, filename, raw, stored.key, metadata, use_cache=False
            )
            # Old chunks go first so a shorter document leaves no stale tail
            await self.vector_store.delete_by_document(document_id, owner_id)
        except Exception:
            await self._delete_stored_file(stored.key)
            raise

        try:
            await self.vector_store.upsert_chunks(records)
        except VectorStoreError as e:
            await self._discard_chunks(document_id, owner_id)
            await self._delete_stored_file(stored.key)
            raise VectorStoreError(
                f"Update of {document_id} failed, document left empty: {e}",
                failed_ids=e.failed_ids,
            ) from e
        except Exception:
            await self._discard_chunks(document_id, owner_id)
            await self._delete_stored_file(stored.key)
            raise

        if existing.storage_key:
            await self._delete_stored_file(existing.storage_key)

        version_id = await self.versions.create_version(
            document_id, content_hash, ["update"], cache_ref=content_hash
        )
        logger.info(f"[Service] Updated {document_id}: {len(records)} chunks, version {version_id}")
        return version_id

    async def delete_document(self, document_id: str, owner_id: str) -> bool:
        """Delete a document's chunks, stored file, cache entry and history.

        Deleting an already-deleted document succeeds.
        """
        require_owner(owner_id)
        existing = await self.vector_store.get_document(document_id, owner_id)
        deleted = await self.vector_store.delete_by_document(document_id, owner_id)

        if existing is None and not deleted:
            logger.info(f"[Service] {document_id} not found for owner {owner_id}, treating as deleted")
            return True

        if existing and existing.storage_key:
            await self._delete_stored_file(existing.storage_key)

        # Earlier versions may have left payloads that only this document referenced
        version_hashes = {v.hash for v in self.versions.get_version_history(document_id)}

        await self.cache.invalidate(document_id)
        await self.versions.delete_history(document_id)
        await self._evict_unreferenced(version_hashes)

        logger.info(f"[Service] Deleted {document_id} ({deleted} chunks)")
        return True

    async def list_documents(self, owner_id: str) -> list[DocumentSummary]:
        """Documents of an owner, with chunk counts from stored metadata."""
        require_owner(owner_id)
        documents = await self.vector_store.list_documents(owner_id)

        summaries = []
        for document in documents:
            file_size = document.file_size
            uploaded_at = document.uploaded_at
            if document.storage_key:
                stat = await self.file_storage.stat(document.storage_key)
                if stat is None:
                    logger.warning(f"[Service] Stored file missing for {document.document_id}")
                else:
                    file_size = stat.size
                    uploaded_at = uploaded_at or stat.modified_at.isoformat()

            summaries.append(
                DocumentSummary(
                    id=document.document_id,
                    filename=document.filename,
                    chunk_count=document.chunk_count,
                    uploaded_at=uploaded_at,
                    file_size=file_size,
                    file_type=document.file_type,
                )
            )

        summaries.sort(key=lambda s: s.uploaded_at or "", reverse=True)
        return summaries

    async def count(self, owner_id: str | None = None) -> int:
        """Number of stored chunks, optionally for one owner."""
        return await self.vector_store.count(owner_id)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def query(self, question: str, owner_id: str, k: int | None = None) -> QueryResult:
        """Gate, search and rank for a question."""
        require_owner(owner_id)
        result = await self.retriever.retrieve(question, owner_id, k or self.default_k)
        return QueryResult(
            chunks=[c.text for c in result.chunks],
            metadatas=[c.metadata for c in result.chunks],
            distances=[c.distance for c in result.chunks],
            context=result.context,
            requires_context=result.requires_context,
        )

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    async def rollback_to_version(self, document_id: str, owner_id: str, version_id: str) -> bool:
        """Point a document at an earlier version.

        Only the pointer moves; stored chunks are left as they are.

        Returns:
            False if the version does not exist

        Raises:
            DocumentNotFoundError: The owner has no such document
            RollbackCacheMismatch: The target version's embeddings are no longer cached
        """
        require_owner(owner_id)
        if await self.vector_store.get_document(document_id, owner_id) is None:
            raise DocumentNotFoundError(document_id)

        version = self.versions.get_version(document_id, version_id)
        if version is None:
            return False

        try:
            await self.cache.load_by_hash(version.hash)
        except CacheMiss as e:
            raise RollbackCacheMismatch(document_id, version_id, version.hash) from e

        return await self.versions.rollback_to_version(document_id, version_id)

    def get_version_history(self, document_id: str) -> list[VersionMetadata]:
        return self.versions.get_version_history(document_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _read_input(
        self,
        filename: str,
        content: bytes | str | None,
        file_path: str | Path | None,
    ) -> bytes:
        if (content is None) == (file_path is None):
            raise ValueError("Exactly one of content or file_path is required")
        if isinstance(content, str):
            return content.encode("utf-8")
        if content is not None:
            return content
        try:
            return await asyncio.to_thread(Path(file_path).read_bytes)
        except OSError as e:
            raise DocumentLoadError(filename, str(e)) from e

    async def _prepare_chunks(
        self,
        document_id: str,
        owner_id: str,
        filename: str,
        raw: bytes,
        storage_key: str,
        metadata: dict | None,
        use_cache: bool,
    ) -> list[ChunkRecord]:
        """Load, chunk and embed a document into vector store records."""
        loaded = await asyncio.to_thread(self.loader.load_bytes, raw, filename)
        chunks = self.chunker.chunk(loaded.content)
        texts = [chunk.text for chunk in chunks]
        content_hash = self.cache.generate_hash(raw)

        if not texts:
            logger.warning(f"[Service] No text extracted from {filename}, nothing to embed")
            return []

        cached, exact_hit = await self._cached_embeddings(document_id, raw, texts) if use_cache else (None, False)
        if cached is not None:
            embeddings = cached
        else:
            logger.info(f"[Service] Generating embeddings for {len(texts)} chunks")
            embeddings = await self.embedder.embed_documents(texts)

        if not exact_hit:
            try:
                await self.cache.store(document_id, raw, embeddings, texts, version="latest")
            except CacheWriteError as e:
                logger.warning(f"[Service] Cache write failed for {document_id}, continuing uncached: {e}")

        base_metadata = {
            **(metadata or {}),
            **loaded.metadata,
            "document_id": document_id,
            "filename": filename,
            "file_type": self.loader.file_type_for(filename),
            "file_size": len(raw),
            "content_hash": content_hash,
            "uploaded_at": datetime.now(UTC).isoformat(),
            "storage_key": storage_key,
        }

        return [
            ChunkRecord(
                chunk_id=chunk_id_for(document_id, chunk.index),
                document_id=document_id,
                owner_id=owner_id,
                chunk_index=chunk.index,
                text=chunk.text,
                embedding=embedding,
                metadata={**base_metadata, "chunk_index": chunk.index, "total_chunks": len(chunks)},
            )
            for chunk, embedding in zip(chunks, embeddings, strict=True)
        ]

    async def _cached_embeddings(
        self, document_id: str, raw: bytes, texts: list[str]
    ) -> tuple[list[list[float]] | None, bool]:
        """Embeddings for ``texts`` from the cache.

        Returns:
            (embeddings or None, whether the hit was indexed under this document)
        """
        entry = await self.cache.lookup(document_id, raw)
        exact_hit = entry is not None

        if entry is None:
            # Identical bytes cached for another document
            content_hash = self.cache.generate_hash(raw)
            if not self.cache.has_hash(content_hash):
                return None, False
            try:
                entry = await self.cache.load_by_hash(content_hash)
            except CacheMiss:
                return None, False

        if entry.chunks != texts:
            logger.info(f"[Service] Cached chunks for {document_id} no longer match, re-embedding")
            return None, False

        return entry.embeddings, exact_hit

    async def _evict_unreferenced(self, content_hashes: set[str]) -> None:
        """Drop cached payloads no cache entry or version log points at any more."""
        for content_hash in content_hashes:
            if self.cache.is_referenced(content_hash) or self.versions.references_hash(content_hash):
                continue
            if await self.cache.evict_hash(content_hash):
                logger.info(f"[Service] Evicted orphaned payload {content_hash[:12]}")

    async def _discard_chunks(self, document_id: str, owner_id: str) -> None:
        """Best effort removal of chunks written before a failure."""
        try:
            removed = await self.vector_store.delete_by_document(document_id, owner_id)
        except VectorStoreError as e:
            logger.error(f"[Service] Could not remove partial chunks of {document_id}: {e}")
            return
        if removed:
            logger.warning(f"[Service] Removed {removed} partial chunks of {document_id}")

    async def _forget_cached(self, document_id: str) -> None:
        """Drop the cache entry of an add that did not complete."""
        try:
            await self.cache.invalidate(document_id)
        except CacheWriteError as e:
            logger.warning(f"[Service] Could not drop cache entry of {document_id}: {e}")

    async def _delete_stored_file(self, key: str) -> None:
        """Best effort: a missing or undeletable file is logged, not raised."""
        try:
            if not await self.file_storage.delete(key):
                logger.warning(f"[Service] Stored file {key} was already gone")
        except (OSError, ValueError) as e:
            logger.warning(f"[Service] Could not delete stored file {key}: {e}")


def create_rag_service(settings: Settings) -> RAGService:
    """Wire the production service from settings.

    Call ``await service.initialize()`` before use.
    """
    client = create_openai_client(settings)
    embedder = create_embedder(settings, client)
    vector_store = create_vector_store(settings)

    return RAGService(
        loader=DocumentLoader(),
        chunker=get_chunker(settings),
        embedder=embedder,
        cache=EmbeddingCache(settings.cache_dir),
        versions=VersionManager(settings.version_dir),
        vector_store=vector_store,
        file_storage=LocalFileStorage(settings.file_storage_dir),
        retriever=Retriever(
            vector_store,
            embedder,
            similarity_threshold=settings.relevance_threshold,
        ),
        default_k=settings.retrieval_top_k,
    )
