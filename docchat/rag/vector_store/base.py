"""Vector store interface.

Both backends take the owner scope as a mandatory argument on every read and
delete, so tenancy is enforced by the store rather than filtered afterwards.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from docchat.rag.exceptions import TenancyViolation

UPSERT_BATCH_SIZE = 100


@dataclass
class ChunkRecord:
    """A chunk ready to be written to the vector store."""

    chunk_id: str
    document_id: str
    owner_id: str
    chunk_index: int
    text: str
    embedding: list[float]
    metadata: dict = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A query hit. ``distance`` is cosine distance (1 - similarity)."""

    id: str
    text: str
    metadata: dict
    distance: float


@dataclass
class StoredDocument:
    """Per-document aggregate built from stored chunk metadata."""

    document_id: str
    owner_id: str
    filename: str
    chunk_count: int
    uploaded_at: str | None = None
    file_size: int = 0
    file_type: str = "unknown"
    content_hash: str | None = None
    storage_key: str | None = None


def chunk_id_for(document_id: str, index: int) -> str:
    """Deterministic chunk id, so re-upserting a chunk overwrites it."""
    return f"{document_id}_chunk_{index}"


def require_owner(owner_id: str | None) -> str:
    """Reject operations without an owner scope."""
    if not owner_id or not str(owner_id).strip():
        raise TenancyViolation("An owner scope is required for this operation")
    return owner_id


def document_from_metadata(owner_id: str, metadata: dict[str, Any], chunk_count: int) -> StoredDocument:
    """Build a document summary from one of its chunks' metadata."""
    return StoredDocument(
        document_id=metadata.get("document_id", ""),
        owner_id=owner_id,
        filename=metadata.get("filename") or metadata.get("source", ""),
        chunk_count=chunk_count,
        uploaded_at=metadata.get("uploaded_at"),
        file_size=int(metadata.get("file_size") or 0),
        file_type=metadata.get("file_type", "unknown"),
        content_hash=metadata.get("content_hash"),
        storage_key=metadata.get("storage_key"),
    )


class VectorStore(ABC):
    """Persists chunk vectors and answers owner-scoped nearest-neighbour queries."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create collections/tables and indexes if missing."""

    @abstractmethod
    async def upsert_chunks(self, chunks: list[ChunkRecord]) -> int:
        """Insert or overwrite chunks in batches.

        Returns:
            Number of chunks written

        Raises:
            VectorStoreError: After all batches ran, if any failed; ``failed_ids``
                names the chunks that were not written
        """

    @abstractmethod
    async def query(
        self,
        query_embedding: list[float],
        k: int,
        owner_id: str,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        """Nearest chunks for the owner, ascending by distance, at most ``k``.

        ``filter`` matches top-level chunk fields (e.g. ``document_id``).
        """

    @abstractmethod
    async def delete_by_document(self, document_id: str, owner_id: str) -> int:
        """Delete every chunk of a document. Returns the number deleted."""

    @abstractmethod
    async def delete_by_ids(self, ids: list[str], owner_id: str) -> None:
        """Delete chunks by chunk id within the owner scope."""

    @abstractmethod
    async def count(self, owner_id: str | None = None) -> int:
        """Number of stored chunks, optionally for one owner."""

    @abstractmethod
    async def list_documents(self, owner_id: str) -> list[StoredDocument]:
        """Documents of an owner with their chunk counts."""

    @abstractmethod
    async def get_document(self, document_id: str, owner_id: str) -> StoredDocument | None:
        """One document of an owner, or None."""

    @abstractmethod
    async def find_document_by_hash(self, content_hash: str, owner_id: str) -> str | None:
        """Id of the owner's document with this content hash, if any."""

    async def close(self) -> None:
        """Release client resources."""
