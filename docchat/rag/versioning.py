"""Document version log.

Each document has an append-only list of processing versions and a single
``current_version`` pointer. The whole log lives in one ``versions.json``
which is rewritten on every mutation. That is fine for document-count scale
but is a known ceiling: high write rates would need an append-only journal.
"""

import asyncio
import copy
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from docchat.rag.exceptions import VersionStoreError
from docchat.rag.persistence import read_json, write_json_atomic

logger = logging.getLogger(__name__)


@dataclass
class VersionMetadata:
    """A single processing version of a document."""

    version_id: str
    timestamp: str
    hash: str
    changes: list[str] = field(default_factory=list)
    embedding_cache_ref: str = ""


@dataclass
class DocumentVersions:
    """Ordered version log plus the current pointer."""

    versions: list[VersionMetadata] = field(default_factory=list)
    current_version: str = ""

    def find(self, version_id: str) -> VersionMetadata | None:
        return next((v for v in self.versions if v.version_id == version_id), None)


class VersionManager:
    """Persists and navigates per-document version history.

    Rollback only moves the pointer. Checking that the target version's
    embeddings are still cached is the caller's job.
    """

    def __init__(self, version_dir: str | Path):
        self.version_dir = Path(version_dir)
        self.version_dir.mkdir(parents=True, exist_ok=True)
        self.versions_path = self.version_dir / "versions.json"

        self._lock = asyncio.Lock()
        self._versions: dict[str, DocumentVersions] = self._load()

    def get_version(self, document_id: str, version_id: str) -> VersionMetadata | None:
        """Look up one version of a document."""
        history = self._versions.get(document_id)
        return history.find(version_id) if history else None

    def get_current_version(self, document_id: str) -> VersionMetadata | None:
        """The version the current pointer refers to."""
        history = self._versions.get(document_id)
        return history.find(history.current_version) if history else None

    def get_version_history(self, document_id: str) -> list[VersionMetadata]:
        """All versions of a document, oldest first."""
        history = self._versions.get(document_id)
        return list(history.versions) if history else []

    def references_hash(self, content_hash: str) -> bool:
        """Whether any version of any document points at the hash."""
        return any(
            version.hash == content_hash or version.embedding_cache_ref == content_hash
            for history in self._versions.values()
            for version in history.versions
        )

    async def create_version(
        self,
        document_id: str,
        content_hash: str,
        changes: list[str],
        cache_ref: str,
    ) -> str:
        """Append a version and make it current.

        Returns:
            The new version id
        """
        version = VersionMetadata(
            version_id=str(uuid4()),
            timestamp=datetime.now(UTC).isoformat(),
            hash=content_hash,
            changes=list(changes),
            embedding_cache_ref=cache_ref,
        )

        async with self._lock:
            previous = copy.deepcopy(self._versions)
            history = self._versions.setdefault(document_id, DocumentVersions())
            history.versions.append(version)
            history.current_version = version.version_id
            await self._persist(previous)

        logger.info(f"[Versions] Created {version.version_id} for {document_id} ({', '.join(changes)})")
        return version.version_id

    async def rollback_to_version(self, document_id: str, version_id: str) -> bool:
        """Point the document at an existing version.

        Returns:
            False if the document or version does not exist
        """
        async with self._lock:
            history = self._versions.get(document_id)
            if history is None or history.find(version_id) is None:
                return False
            previous = copy.deepcopy(self._versions)
            history.current_version = version_id
            await self._persist(previous)

        logger.info(f"[Versions] Rolled {document_id} back to {version_id}")
        return True

    async def delete_version(self, document_id: str, version_id: str) -> bool:
        """Remove a non-current version.

        Returns:
            False if the version does not exist or is current
        """
        async with self._lock:
            history = self._versions.get(document_id)
            if history is None or history.current_version == version_id:
                return False
            version = history.find(version_id)
            if version is None:
                return False
            previous = copy.deepcopy(self._versions)
            history.versions.remove(version)
            await self._persist(previous)

        return True

    async def delete_history(self, document_id: str) -> bool:
        """Drop every version of a document."""
        async with self._lock:
            if document_id not in self._versions:
                return False
            previous = copy.deepcopy(self._versions)
            del self._versions[document_id]
            await self._persist(previous)

        logger.info(f"[Versions] Deleted history for {document_id}")
        return True

    def _load(self) -> dict[str, DocumentVersions]:
        if not self.versions_path.exists():
            return {}
        try:
            raw = read_json(self.versions_path)
        except (OSError, ValueError) as e:
            raise VersionStoreError(f"Failed to read {self.versions_path}: {e}") from e

        return {
            doc_id: DocumentVersions(
                versions=[VersionMetadata(**v) for v in record.get("versions", [])],
                current_version=record.get("current_version", ""),
            )
            for doc_id, record in raw.items()
        }

    async def _persist(self, previous: dict[str, DocumentVersions]) -> None:
        """Write the full log, restoring ``previous`` in memory if the write fails.

        Must be called with the lock held.
        """
        snapshot = {doc_id: asdict(history) for doc_id, history in self._versions.items()}
        try:
            await asyncio.to_thread(write_json_atomic, self.versions_path, snapshot, 2)
        except OSError as e:
            self._versions = previous
            raise VersionStoreError(f"Failed to write {self.versions_path}: {e}") from e
