"""SQLAlchemy database models.

Relational schema for the pgvector backend: documents own their chunks, and
every query joins back to ``documents`` to scope results to one owner.
"""

from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from docchat.core.config import get_settings


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# ============================================
# Documents
# ============================================

class Document(Base):
    """An uploaded document, scoped to one owner.

    The row is written alongside the document's first chunk batch and removed
    together with its chunks (ON DELETE CASCADE).
    """
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)

    filename: Mapped[str] = mapped_column(String(512), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, default=0)
    file_type: Mapped[str] = mapped_column(String(32), default="unknown")

    # SHA-256 of the raw upload, used for per-owner dedup
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    storage_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    # Document-level metadata ("metadata" is reserved on declarative classes)
    doc_metadata: Mapped[dict] = mapped_column(JSONB, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    chunks = relationship(
        "DocumentChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_documents_owner_id", "owner_id"),
        Index("ix_documents_owner_hash", "owner_id", "content_hash"),
    )


class DocumentChunk(Base):
    """An embedded chunk of a document.

    ``id`` is the deterministic ``<document_id>_chunk_<index>`` so re-upserts
    overwrite rather than duplicate.
    """
    __tablename__ = "document_chunks"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    document_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding = mapped_column(Vector(get_settings().embedding_dimensions), nullable=False)
    chunk_metadata: Mapped[dict] = mapped_column(JSONB, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    document = relationship("Document", back_populates="chunks")

    __table_args__ = (
        Index("ix_document_chunks_document_id", "document_id"),
    )
