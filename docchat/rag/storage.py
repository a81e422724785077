"""Blob storage for uploaded source files.

Files are addressed by an opaque key of the form ``<owner>/<timestamp>-<name>``.
"""

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^\w\s-]", re.ASCII)
_MAX_NAME_LENGTH = 100


@dataclass
class StoredFile:
    """Location and stat info of a stored blob."""

    key: str
    size: int
    modified_at: datetime


def sanitize_filename(filename: str) -> str:
    """ASCII-only, path-safe version of a file name; keeps the extension."""
    path = Path(filename)
    stem, suffix = (path.stem, path.suffix) if path.stem else (filename, "")

    name = _UNSAFE_CHARS.sub("", stem)
    name = re.sub(r"\s+", "_", name)
    name = re.sub(r"-+", "-", name).strip("-")[:_MAX_NAME_LENGTH]

    suffix = _UNSAFE_CHARS.sub("", suffix.lstrip(".")).lower()
    return f"{name or 'file'}.{suffix}" if suffix else (name or "file")


class FileStorage(ABC):
    """Key-value blob store."""

    @abstractmethod
    async def save(self, owner_id: str, filename: str, content: bytes) -> StoredFile:
        """Store a new blob and return its key."""

    @abstractmethod
    async def read(self, key: str) -> bytes:
        """Read a blob. Raises FileNotFoundError if missing."""

    @abstractmethod
    async def stat(self, key: str) -> StoredFile | None:
        """Size and modified time, or None if missing."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a blob. Returns False if it did not exist."""


class LocalFileStorage(FileStorage):
    """Blobs as plain files under ``root/<owner>/``."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    async def save(self, owner_id: str, filename: str, content: bytes) -> StoredFile:
        owner = sanitize_filename(owner_id)
        name = sanitize_filename(filename)
        timestamp = int(time.time() * 1000)

        def write() -> str:
            nonlocal timestamp
            while True:
                key = f"{owner}/{timestamp}-{name}"
                path = self._path(key)
                path.parent.mkdir(parents=True, exist_ok=True)
                try:
                    with open(path, "xb") as f:
                        f.write(content)
                    return key
                except FileExistsError:
                    # Same owner, name and millisecond: take the next free slot
                    timestamp += 1

        key = await asyncio.to_thread(write)
        logger.info(f"[Storage] Saved {filename} as {key} ({len(content)} bytes)")
        return StoredFile(key=key, size=len(content), modified_at=datetime.now(UTC))

    async def read(self, key: str) -> bytes:
        return await asyncio.to_thread(self._path(key).read_bytes)

    async def stat(self, key: str) -> StoredFile | None:
        try:
            st = await asyncio.to_thread(self._path(key).stat)
        except FileNotFoundError:
            return None
        return StoredFile(
            key=key,
            size=st.st_size,
            modified_at=datetime.fromtimestamp(st.st_mtime, UTC),
        )

    async def delete(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self._path(key).unlink)
        except FileNotFoundError:
            return False
        logger.info(f"[Storage] Deleted {key}")
        return True

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Storage key escapes the storage root: {key}")
        return path
