import json

import pytest

from docchat.rag import embedding_cache as embedding_cache_module
from docchat.rag.embedding_cache import EmbeddingCache
from docchat.rag.exceptions import CacheMiss, CacheWriteError

CHUNKS = ["first chunk", "second chunk"]
EMBEDDINGS = [[0.1, 0.2], [0.3, 0.4]]


@pytest.fixture
def cache(tmp_path) -> EmbeddingCache:
    return EmbeddingCache(tmp_path / "cache")


async def test_store_then_lookup(cache):
    stored = await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="latest")

    entry = await cache.lookup("doc-1", b"hello")

    assert entry is not None
    assert entry.chunks == CHUNKS
    assert entry.embeddings == EMBEDDINGS
    assert entry.metadata == stored
    assert stored.hash == EmbeddingCache.generate_hash(b"hello")
    assert stored.chunk_count == 2
    assert stored.version == "latest"


async def test_changed_content_is_a_miss(cache):
    await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="latest")

    assert await cache.lookup("doc-1", b"hello, world") is None
    assert await cache.lookup("doc-2", b"hello") is None


def test_hash_of_text_matches_hash_of_utf8_bytes():
    assert EmbeddingCache.generate_hash("héllo") == EmbeddingCache.generate_hash("héllo".encode())


async def test_store_rejects_mismatched_lengths(cache):
    with pytest.raises(ValueError):
        await cache.store("doc-1", b"hello", [[0.1]], CHUNKS, version="latest")


async def test_entries_survive_restart(cache, tmp_path):
    await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="v1")

    reopened = EmbeddingCache(tmp_path / "cache")

    entry = await reopened.lookup("doc-1", b"hello")
    assert entry is not None
    assert entry.embeddings == EMBEDDINGS
    assert reopened.get_metadata("doc-1").version == "v1"


async def test_invalidate_is_idempotent(cache):
    await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="latest")
    content_hash = EmbeddingCache.generate_hash(b"hello")

    await cache.invalidate("doc-1")
    await cache.invalidate("doc-1")
    await cache.invalidate("never-cached")

    assert cache.get_metadata("doc-1") is None
    assert await cache.lookup("doc-1", b"hello") is None
    assert not cache.has_hash(content_hash)


async def test_shared_payload_outlives_one_reference(cache):
    await cache.store("doc-1", b"same bytes", EMBEDDINGS, CHUNKS, version="latest")
    await cache.store("doc-2", b"same bytes", EMBEDDINGS, CHUNKS, version="latest")
    content_hash = EmbeddingCache.generate_hash(b"same bytes")

    await cache.invalidate("doc-1")

    assert cache.has_hash(content_hash)
    assert await cache.lookup("doc-2", b"same bytes") is not None

    await cache.invalidate("doc-2")
    assert not cache.has_hash(content_hash)


async def test_load_by_hash(cache):
    await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="latest")
    content_hash = EmbeddingCache.generate_hash(b"hello")

    entry = await cache.load_by_hash(content_hash)

    assert entry.chunks == CHUNKS
    with pytest.raises(CacheMiss):
        await cache.load_by_hash("0" * 64)


async def test_corrupt_payload_is_a_miss(cache):
    await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="latest")
    content_hash = EmbeddingCache.generate_hash(b"hello")
    (cache.embeddings_dir / content_hash / "embeddings.json").write_text("{broken", encoding="utf-8")

    assert await cache.lookup("doc-1", b"hello") is None
    with pytest.raises(CacheMiss):
        await cache.load_by_hash(content_hash)


async def test_payload_with_mismatched_lengths_is_a_miss(cache):
    await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="latest")
    content_hash = EmbeddingCache.generate_hash(b"hello")
    (cache.embeddings_dir / content_hash / "embeddings.json").write_text(
        json.dumps([[0.1, 0.2]]), encoding="utf-8"
    )

    assert await cache.lookup("doc-1", b"hello") is None


def test_corrupt_index_starts_empty(tmp_path, caplog):
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    (cache_dir / "metadata.json").write_text("not json", encoding="utf-8")

    cache = EmbeddingCache(cache_dir)

    assert cache.get_metadata("doc-1") is None
    assert "unreadable cache index" in caplog.text


async def test_write_failure_raises_cache_write_error(cache, monkeypatch):
    def fail(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(embedding_cache_module, "write_json_atomic", fail)

    with pytest.raises(CacheWriteError):
        await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="latest")

    assert cache.get_metadata("doc-1") is None


async def test_index_write_failure_keeps_previous_index(cache, monkeypatch):
    await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="v1")
    original = embedding_cache_module.write_json_atomic

    def fail_on_index(path, data, indent=None):
        if path.name == "metadata.json":
            raise OSError("read-only")
        original(path, data, indent)

    monkeypatch.setattr(embedding_cache_module, "write_json_atomic", fail_on_index)

    with pytest.raises(CacheWriteError):
        await cache.store("doc-1", b"changed", EMBEDDINGS, CHUNKS, version="v2")

    assert cache.get_metadata("doc-1").version == "v1"


async def test_evict_hash(cache):
    await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="latest")
    await cache.store("doc-2", b"hello", EMBEDDINGS, CHUNKS, version="latest")
    content_hash = EmbeddingCache.generate_hash(b"hello")

    assert await cache.evict_hash(content_hash) is True

    assert not cache.has_hash(content_hash)
    assert cache.get_metadata("doc-1") is None
    assert cache.get_metadata("doc-2") is None
    assert await cache.evict_hash(content_hash) is False


async def test_is_referenced_follows_the_index(cache):
    await cache.store("doc-1", b"hello", EMBEDDINGS, CHUNKS, version="latest")
    content_hash = EmbeddingCache.generate_hash(b"hello")

    assert cache.is_referenced(content_hash) is True
    await cache.invalidate("doc-1")
    assert cache.is_referenced(content_hash) is False
