"""Content-addressed embedding cache.

Avoids re-embedding documents whose content has not changed.

On-disk layout under ``cache_dir``:
- metadata.json                  document id -> {hash, last_processed, chunk_count, version}
- embeddings/<hash>/chunks.json  chunk texts
- embeddings/<hash>/embeddings.json  embedding vectors, parallel to chunks

Payloads are stored under the content hash, so identical content uploaded
under different document ids shares one payload. A payload is only removed
on invalidation once no document id references its hash any more.
"""

import asyncio
import hashlib
import logging
import shutil
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

from docchat.rag.exceptions import CacheMiss, CacheWriteError
from docchat.rag.persistence import read_json, write_json_atomic

logger = logging.getLogger(__name__)

_CHUNKS_FILE = "chunks.json"
_EMBEDDINGS_FILE = "embeddings.json"


@dataclass
class CacheMetadata:
    """Index record for a cached document."""

    hash: str
    last_processed: str
    chunk_count: int
    version: str


@dataclass
class CacheEntry:
    """Cached chunks and their embeddings."""

    metadata: CacheMetadata
    chunks: list[str]
    embeddings: list[list[float]]


class EmbeddingCache:
    """Embedding cache keyed by (document id, content hash).

    Reads fail open: any I/O or decode error is logged and reported as a miss.
    Writes fail closed: errors raise ``CacheWriteError``.
    """

    def __init__(self, cache_dir: str | Path):
        self.cache_dir = Path(cache_dir)
        self.embeddings_dir = self.cache_dir / "embeddings"
        self.metadata_path = self.cache_dir / "metadata.json"
        self.embeddings_dir.mkdir(parents=True, exist_ok=True)

        # Serializes read-modify-write of metadata.json
        self._lock = asyncio.Lock()
        self._metadata: dict[str, CacheMetadata] = self._load_metadata()

    @staticmethod
    def generate_hash(content: str | bytes) -> str:
        """SHA-256 hex digest of the content, used for change detection."""
        if isinstance(content, str):
            content = content.encode("utf-8")
        return hashlib.sha256(content).hexdigest()

    def get_metadata(self, document_id: str) -> CacheMetadata | None:
        """Index record for a document, if cached."""
        return self._metadata.get(document_id)

    def has_hash(self, content_hash: str) -> bool:
        """Whether a complete payload exists for the hash."""
        payload_dir = self._payload_dir(content_hash)
        return (payload_dir / _CHUNKS_FILE).is_file() and (payload_dir / _EMBEDDINGS_FILE).is_file()

    def is_referenced(self, content_hash: str) -> bool:
        """Whether any document id is indexed under the hash."""
        return any(m.hash == content_hash for m in self._metadata.values())

    async def lookup(self, document_id: str, content: str | bytes) -> CacheEntry | None:
        """Return cached chunks/embeddings if ``content`` matches the stored hash.

        Returns:
            CacheEntry on an exact hash match, None on a miss
        """
        content_hash = self.generate_hash(content)
        metadata = self._metadata.get(document_id)

        if metadata is None or metadata.hash != content_hash:
            logger.debug(f"[Cache] Miss for {document_id}")
            return None

        try:
            chunks, embeddings = await asyncio.to_thread(self._read_payload, content_hash)
        except CacheMiss:
            return None

        logger.info(f"[Cache] Hit for {document_id} ({len(chunks)} chunks)")
        return CacheEntry(metadata=metadata, chunks=chunks, embeddings=embeddings)

    async def load_by_hash(self, content_hash: str) -> CacheEntry:
        """Load a payload by hash regardless of which document references it.

        Raises:
            CacheMiss: If no readable payload exists for the hash
        """
        chunks, embeddings = await asyncio.to_thread(self._read_payload, content_hash)
        metadata = next(
            (m for m in self._metadata.values() if m.hash == content_hash),
            CacheMetadata(
                hash=content_hash,
                last_processed="",
                chunk_count=len(chunks),
                version="unknown",
            ),
        )
        return CacheEntry(metadata=metadata, chunks=chunks, embeddings=embeddings)

    async def store(
        self,
        document_id: str,
        content: str | bytes,
        embeddings: list[list[float]],
        chunks: list[str],
        version: str,
    ) -> CacheMetadata:
        """Persist chunks and embeddings for ``content`` and index them under ``document_id``.

        The payload and the index are both on disk when this returns.

        Raises:
            CacheWriteError: If anything could not be written
        """
        if len(embeddings) != len(chunks):
            raise ValueError(
                f"embeddings ({len(embeddings)}) and chunks ({len(chunks)}) must be parallel"
            )

        content_hash = self.generate_hash(content)
        metadata = CacheMetadata(
            hash=content_hash,
            last_processed=datetime.now(UTC).isoformat(),
            chunk_count=len(chunks),
            version=version,
        )

        try:
            await asyncio.to_thread(self._write_payload, content_hash, chunks, embeddings)
        except OSError as e:
            raise CacheWriteError(f"Failed to write cache payload {content_hash}: {e}") from e

        async with self._lock:
            updated = {**self._metadata, document_id: metadata}
            await self._save_metadata(updated)
            self._metadata = updated

        logger.info(f"[Cache] Stored {len(chunks)} chunks for {document_id} (hash={content_hash[:12]})")
        return metadata

    async def invalidate(self, document_id: str) -> None:
        """Drop the cache entry for a document. Absent entries are a no-op."""
        async with self._lock:
            metadata = self._metadata.get(document_id)
            if metadata is None:
                return

            updated = {k: v for k, v in self._metadata.items() if k != document_id}
            await self._save_metadata(updated)
            self._metadata = updated

            if any(m.hash == metadata.hash for m in updated.values()):
                logger.info(f"[Cache] Payload {metadata.hash[:12]} still referenced, keeping it")
            else:
                await asyncio.to_thread(self._remove_payload, metadata.hash)

        logger.info(f"[Cache] Invalidated {document_id}")

    async def evict_hash(self, content_hash: str) -> bool:
        """Remove a payload and every index entry pointing at it.

        Returns:
            True if anything was removed
        """
        async with self._lock:
            updated = {k: v for k, v in self._metadata.items() if v.hash != content_hash}
            removed_entries = len(updated) != len(self._metadata)
            if removed_entries:
                await self._save_metadata(updated)
                self._metadata = updated

            existed = self.has_hash(content_hash) or self._payload_dir(content_hash).exists()
            await asyncio.to_thread(self._remove_payload, content_hash)

        return removed_entries or existed

    # ------------------------------------------------------------------
    # Disk helpers (blocking, run via asyncio.to_thread)
    # ------------------------------------------------------------------

    def _payload_dir(self, content_hash: str) -> Path:
        return self.embeddings_dir / content_hash

    def _load_metadata(self) -> dict[str, CacheMetadata]:
        if not self.metadata_path.exists():
            return {}
        try:
            raw = read_json(self.metadata_path)
            return {doc_id: CacheMetadata(**record) for doc_id, record in raw.items()}
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"[Cache] Ignoring unreadable cache index {self.metadata_path}: {e}")
            return {}

    async def _save_metadata(self, metadata: dict[str, CacheMetadata]) -> None:
        data = {doc_id: asdict(record) for doc_id, record in metadata.items()}
        try:
            await asyncio.to_thread(write_json_atomic, self.metadata_path, data, 2)
        except OSError as e:
            raise CacheWriteError(f"Failed to write cache index: {e}") from e

    def _read_payload(self, content_hash: str) -> tuple[list[str], list[list[float]]]:
        payload_dir = self._payload_dir(content_hash)
        try:
            chunks = read_json(payload_dir / _CHUNKS_FILE)
            embeddings = read_json(payload_dir / _EMBEDDINGS_FILE)
        except (OSError, ValueError) as e:
            logger.warning(f"[Cache] Unreadable payload {content_hash[:12]}, treating as miss: {e}")
            raise CacheMiss(content_hash) from e

        if not isinstance(chunks, list) or not isinstance(embeddings, list) or len(chunks) != len(embeddings):
            logger.warning(f"[Cache] Corrupt payload {content_hash[:12]}, treating as miss")
            raise CacheMiss(content_hash)

        return chunks, embeddings

    def _write_payload(
        self, content_hash: str, chunks: list[str], embeddings: list[list[float]]
    ) -> None:
        payload_dir = self._payload_dir(content_hash)
        # Embeddings land last: a payload without them is read as a miss
        write_json_atomic(payload_dir / _CHUNKS_FILE, chunks)
        write_json_atomic(payload_dir / _EMBEDDINGS_FILE, embeddings)

    def _remove_payload(self, content_hash: str) -> None:
        shutil.rmtree(self._payload_dir(content_hash), ignore_errors=True)
