import pytest

from docchat.rag import versioning as versioning_module
from docchat.rag.exceptions import VersionStoreError
from docchat.rag.versioning import VersionManager


@pytest.fixture
def versions(tmp_path) -> VersionManager:
    return VersionManager(tmp_path / "versions")


async def test_create_version_becomes_current(versions):
    first = await versions.create_version("doc-1", "hash-a", ["initial"], cache_ref="hash-a")
    second = await versions.create_version("doc-1", "hash-b", ["update"], cache_ref="hash-b")

    history = versions.get_version_history("doc-1")
    assert [v.version_id for v in history] == [first, second]
    assert history[0].changes == ["initial"]
    assert history[1].embedding_cache_ref == "hash-b"
    assert versions.get_current_version("doc-1").version_id == second


def test_unknown_document_has_no_history(versions):
    assert versions.get_version_history("missing") == []
    assert versions.get_current_version("missing") is None
    assert versions.get_version("missing", "v") is None


async def test_rollback_moves_pointer_only(versions):
    first = await versions.create_version("doc-1", "hash-a", ["initial"], cache_ref="hash-a")
    await versions.create_version("doc-1", "hash-b", ["update"], cache_ref="hash-b")

    assert await versions.rollback_to_version("doc-1", first) is True

    assert versions.get_current_version("doc-1").hash == "hash-a"
    assert len(versions.get_version_history("doc-1")) == 2


async def test_rollback_to_unknown_version(versions):
    await versions.create_version("doc-1", "hash-a", ["initial"], cache_ref="hash-a")

    assert await versions.rollback_to_version("doc-1", "nope") is False
    assert await versions.rollback_to_version("other-doc", "nope") is False


async def test_current_version_cannot_be_deleted(versions):
    first = await versions.create_version("doc-1", "hash-a", ["initial"], cache_ref="hash-a")
    second = await versions.create_version("doc-1", "hash-b", ["update"], cache_ref="hash-b")

    assert await versions.delete_version("doc-1", second) is False
    assert await versions.delete_version("doc-1", first) is True
    assert await versions.delete_version("doc-1", first) is False
    assert [v.version_id for v in versions.get_version_history("doc-1")] == [second]


async def test_history_persists_across_instances(versions, tmp_path):
    first = await versions.create_version("doc-1", "hash-a", ["initial"], cache_ref="hash-a")
    await versions.create_version("doc-1", "hash-b", ["update"], cache_ref="hash-b")
    await versions.rollback_to_version("doc-1", first)

    reopened = VersionManager(tmp_path / "versions")

    assert reopened.get_current_version("doc-1").version_id == first
    assert len(reopened.get_version_history("doc-1")) == 2


async def test_failed_write_restores_memory(versions, monkeypatch):
    first = await versions.create_version("doc-1", "hash-a", ["initial"], cache_ref="hash-a")

    def fail(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(versioning_module, "write_json_atomic", fail)

    with pytest.raises(VersionStoreError):
        await versions.create_version("doc-1", "hash-b", ["update"], cache_ref="hash-b")

    assert [v.version_id for v in versions.get_version_history("doc-1")] == [first]
    assert versions.get_current_version("doc-1").version_id == first


def test_unreadable_log_raises(tmp_path):
    version_dir = tmp_path / "versions"
    version_dir.mkdir()
    (version_dir / "versions.json").write_text("{truncated", encoding="utf-8")

    with pytest.raises(VersionStoreError):
        VersionManager(version_dir)


async def test_delete_history(versions):
    await versions.create_version("doc-1", "hash-a", ["initial"], cache_ref="hash-a")
    await versions.create_version("doc-2", "hash-c", ["initial"], cache_ref="hash-c")

    assert await versions.delete_history("doc-1") is True
    assert await versions.delete_history("doc-1") is False

    assert versions.get_version_history("doc-1") == []
    assert len(versions.get_version_history("doc-2")) == 1


async def test_references_hash_covers_every_version(versions):
    await versions.create_version("doc-1", "hash-a", ["initial"], cache_ref="hash-a")
    await versions.create_version("doc-1", "hash-b", ["update"], cache_ref="hash-b")

    assert versions.references_hash("hash-a") is True
    assert versions.references_hash("hash-b") is True
    assert versions.references_hash("hash-c") is False

    await versions.delete_history("doc-1")
    assert versions.references_hash("hash-a") is False
