"""Document chunking.

Splits normalized document text into overlapping passages suitable for
embedding and retrieval.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from docchat.core.config import Settings

# Paragraph, line, sentence endings (CJK and Latin), word, character
DEFAULT_SEPARATORS = ["\n\n", "\n", "。", ". ", "! ", "? ", " ", ""]

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class Chunk:
    """A document chunk ready for embedding."""

    index: int
    text: str
    metadata: dict = field(default_factory=dict)


def clean_chunk_text(text: str) -> str:
    """Strip null bytes and control characters, collapse whitespace."""
    text = _CONTROL_CHARS_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


class ChunkingStrategy(ABC):
    """Base class for chunking strategies."""

    @abstractmethod
    def chunk(self, text: str, metadata: dict | None = None) -> list[Chunk]:
        """Split text into chunks."""


class RecursiveChunker(ChunkingStrategy):
    """Recursive separator-based chunking with overlap.

    Splits on the highest-priority separator present in the text, recurses
    into pieces still larger than ``chunk_size`` with the remaining
    separators, then merges neighbouring pieces back up to ``chunk_size``.
    Consecutive chunks share up to ``chunk_overlap`` trailing characters of
    the previous chunk, taken on piece boundaries.
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        separators: list[str] | None = None,
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError(
                f"chunk_overlap must be in [0, chunk_size), got {chunk_overlap} for size {chunk_size}"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = separators or DEFAULT_SEPARATORS

    def chunk(self, text: str, metadata: dict | None = None) -> list[Chunk]:
        """Split text into cleaned chunks with dense 0-based indexes."""
        if not text or not text.strip():
            return []

        texts = [clean_chunk_text(piece) for piece in self.split_text(text)]
        texts = [t for t in texts if t]

        return [
            Chunk(index=i, text=t, metadata=dict(metadata or {}))
            for i, t in enumerate(texts)
        ]

    def split_text(self, text: str) -> list[str]:
        """Split text into raw (uncleaned) chunks."""
        return self._split(text, self.separators)

    def _split(self, text: str, separators: list[str]) -> list[str]:
        separator = separators[-1]
        remaining: list[str] = []
        for i, candidate in enumerate(separators):
            if candidate == "" or candidate in text:
                separator = candidate
                remaining = separators[i + 1 :]
                break

        chunks: list[str] = []
        pending: list[str] = []

        for piece in self._split_on(text, separator):
            if len(piece) <= self.chunk_size:
                pending.append(piece)
                continue

            if pending:
                chunks.extend(self._merge(pending, separator))
                pending = []
            if remaining:
                chunks.extend(self._split(piece, remaining))
            else:
                chunks.append(piece)

        if pending:
            chunks.extend(self._merge(pending, separator))

        return chunks

    @staticmethod
    def _split_on(text: str, separator: str) -> list[str]:
        if separator == "":
            return list(text)
        if separator.isspace():
            pieces = text.split(separator)
        else:
            # Keep punctuation attached to the sentence it ends
            pieces = re.split(f"(?<={re.escape(separator)})", text)
        return [p for p in pieces if p.strip()]

    def _merge(self, pieces: list[str], separator: str) -> list[str]:
        joiner = separator if separator.isspace() else ""
        joiner_len = len(joiner)

        merged: list[str] = []
        window: list[str] = []
        total = 0

        for piece in pieces:
            extra = joiner_len if window else 0
            if window and total + len(piece) + extra > self.chunk_size:
                text = joiner.join(window).strip()
                if text:
                    merged.append(text)

                # Keep trailing pieces as overlap for the next chunk
                while window and (
                    total > self.chunk_overlap
                    or total + len(piece) + (joiner_len if window else 0) > self.chunk_size
                ):
                    total -= len(window[0]) + (joiner_len if len(window) > 1 else 0)
                    window.pop(0)

            window.append(piece)
            total += len(piece) + (joiner_len if len(window) > 1 else 0)

        text = joiner.join(window).strip()
        if text:
            merged.append(text)

        return merged


def get_chunker(settings: Settings) -> ChunkingStrategy:
    """Build the configured chunking strategy."""
    return RecursiveChunker(
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )


__all__ = [
    "DEFAULT_SEPARATORS",
    "Chunk",
    "ChunkingStrategy",
    "RecursiveChunker",
    "clean_chunk_text",
    "get_chunker",
]
