"""RAG (Retrieval-Augmented Generation) package.

Components:
- DocumentLoader: Text extraction from TXT, MD, PDF, XLS(X), DOC(X), CSV, JSON, XML
- RecursiveChunker: Separator-based chunking with overlap
- Embedder: OpenAI / Azure OpenAI embedding service
- EmbeddingCache: Content-addressed cache of chunk embeddings
- VectorStore: Qdrant or pgvector backend, owner-scoped
- VersionManager: Per-document version log
- Retriever: Context gate, semantic search and ranking
- RAGChain: Prompt assembly and completion
- RAGService: Document lifecycle facade
"""

from docchat.rag.chain import ChatAnswer, RAGChain, create_rag_chain
from docchat.rag.chunking import Chunk, RecursiveChunker, get_chunker
from docchat.rag.embedder import Embedder, EmbeddingProvider, create_embedder
from docchat.rag.embedding_cache import CacheEntry, CacheMetadata, EmbeddingCache
from docchat.rag.extractors import DocumentLoader, LoadedDocument
from docchat.rag.retriever import RankedChunk, RetrievalResult, Retriever, needs_context
from docchat.rag.service import (
    AddDocumentResult,
    DocumentSummary,
    QueryResult,
    RAGService,
    create_rag_service,
)
from docchat.rag.vector_store import VectorStore, create_vector_store
from docchat.rag.versioning import VersionManager, VersionMetadata

__all__ = [
    "AddDocumentResult",
    "CacheEntry",
    "CacheMetadata",
    "ChatAnswer",
    "Chunk",
    "DocumentLoader",
    "DocumentSummary",
    "Embedder",
    "EmbeddingCache",
    "EmbeddingProvider",
    "LoadedDocument",
    "QueryResult",
    "RAGChain",
    "RAGService",
    "RankedChunk",
    "RecursiveChunker",
    "RetrievalResult",
    "Retriever",
    "VectorStore",
    "VersionManager",
    "VersionMetadata",
    "create_embedder",
    "create_rag_chain",
    "create_rag_service",
    "create_vector_store",
    "get_chunker",
    "needs_context",
]
