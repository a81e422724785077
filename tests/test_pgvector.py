"""pgvector backend checks that need no running database."""

import pytest

from docchat.core.config import get_settings
from docchat.db.database import embedding_dimensions, match_function_sql
from docchat.rag.exceptions import TenancyViolation
from docchat.rag.vector_store.pgvector import PgVectorStore, _document_values

from conftest import make_record


def _no_database():
    raise AssertionError("the database must not be touched")


@pytest.fixture
def store() -> PgVectorStore:
    return PgVectorStore(engine=None, session_maker=_no_database)


async def test_query_requires_owner_before_io(store):
    with pytest.raises(TenancyViolation):
        await store.query([0.1] * 8, 4, "")


async def test_query_rejects_foreign_owner_filter_before_io(store):
    with pytest.raises(TenancyViolation):
        await store.query([0.1] * 8, 4, "alice", {"owner_id": "bob"})


async def test_deletes_require_owner_before_io(store):
    with pytest.raises(TenancyViolation):
        await store.delete_by_document("doc-1", "")
    with pytest.raises(TenancyViolation):
        await store.delete_by_ids(["doc-1_chunk_0"], " ")


async def test_upsert_requires_owner_before_io(store):
    with pytest.raises(TenancyViolation):
        await store.upsert_chunks([make_record("doc-1", "", 0, "orphan")])


async def test_zero_k_returns_nothing(store):
    assert await store.query([0.1] * 8, 0, "alice") == []


def test_match_function_scopes_by_owner():
    sql = match_function_sql(1536)

    assert "vector(1536)" in sql
    assert "d.owner_id = owner" in sql
    assert "c.chunk_metadata @> filter" in sql
    assert "1 - (c.embedding <=> query_embedding) AS similarity" in sql


def test_document_row_from_chunk_metadata():
    record = make_record(
        "doc-1",
        "alice",
        0,
        "text",
        filename="report.pdf",
        file_size=99,
        file_type="pdf",
        content_hash="abc",
        uploaded_at="2024-05-01T10:00:00+00:00",
        total_chunks=3,
    )

    values = _document_values(record)

    assert values["id"] == "doc-1"
    assert values["owner_id"] == "alice"
    assert values["filename"] == "report.pdf"
    assert values["file_size"] == 99
    assert values["content_hash"] == "abc"
    assert values["created_at"].year == 2024
    assert "chunk_index" not in values["doc_metadata"]
    assert "total_chunks" not in values["doc_metadata"]


def test_store_dimension_follows_the_mapped_column(store):
    dimensions = get_settings().embedding_dimensions

    assert embedding_dimensions() == dimensions
    assert store.embedding_dim == dimensions
    assert f"vector({dimensions})" in match_function_sql(embedding_dimensions())
