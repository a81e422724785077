import hashlib

import pytest
from qdrant_client import AsyncQdrantClient

from docchat.rag.chunking import RecursiveChunker
from docchat.rag.embedding_cache import EmbeddingCache
from docchat.rag.extractors import DocumentLoader
from docchat.rag.retriever import Retriever
from docchat.rag.service import RAGService
from docchat.rag.storage import LocalFileStorage
from docchat.rag.vector_store.base import ChunkRecord, chunk_id_for
from docchat.rag.vector_store.qdrant import QdrantVectorStore
from docchat.rag.versioning import VersionManager

DIM = 8


def fake_vector(text: str, dim: int = DIM) -> list[float]:
    """Deterministic pseudo-embedding: equal texts map to equal vectors."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b / 255.0) - 0.5 + 0.01 for b in digest[:dim]]


class FakeEmbedder:
    def __init__(self, dim: int = DIM):
        self.dim = dim
        self.document_calls: list[list[str]] = []
        self.query_calls: list[str] = []

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.document_calls.append(list(texts))
        return [fake_vector(t, self.dim) for t in texts]

    async def embed_query(self, text: str) -> list[float]:
        self.query_calls.append(text)
        return fake_vector(text, self.dim)


class FakeCompletion:
    def __init__(self, answer: str = "stub answer"):
        self.answer = answer
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answer


def make_record(document_id: str, owner_id: str, index: int, text: str, **metadata) -> ChunkRecord:
    return ChunkRecord(
        chunk_id=chunk_id_for(document_id, index),
        document_id=document_id,
        owner_id=owner_id,
        chunk_index=index,
        text=text,
        embedding=fake_vector(text),
        metadata={"document_id": document_id, "chunk_index": index, "source": f"{document_id}.txt", **metadata},
    )


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
async def vector_store():
    store = QdrantVectorStore(AsyncQdrantClient(location=":memory:"), "test_documents", DIM)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def retriever(vector_store, embedder) -> Retriever:
    return Retriever(vector_store, embedder, similarity_threshold=0.7)


@pytest.fixture
def service(tmp_path, vector_store, embedder, retriever) -> RAGService:
    return RAGService(
        loader=DocumentLoader(),
        chunker=RecursiveChunker(chunk_size=200, chunk_overlap=40),
        embedder=embedder,
        cache=EmbeddingCache(tmp_path / "cache"),
        versions=VersionManager(tmp_path / "versions"),
        vector_store=vector_store,
        file_storage=LocalFileStorage(tmp_path / "files"),
        retriever=retriever,
    )
