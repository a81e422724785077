"""Error taxonomy for the retrieval core.

Every failure that reaches a caller is a ``RAGError`` subclass so the caller
can tell the classes apart without parsing messages.
"""


class RAGError(Exception):
    """Base class for retrieval-core errors."""


class UnsupportedFormatError(RAGError):
    """Raised when no extractor handles a file extension. Not retryable."""

    def __init__(self, extension: str):
        self.extension = extension
        super().__init__(f"Unsupported file type: {extension or '(none)'}")


class DocumentLoadError(RAGError):
    """Raised when a supported file cannot be parsed.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, source: str, reason: str):
        self.source = source
        super().__init__(f"Failed to load {source}: {reason}")


class CacheMiss(RAGError):
    """Control-flow signal: cached data is absent and must be recomputed."""

    def __init__(self, content_hash: str):
        self.content_hash = content_hash
        super().__init__(f"No cached embeddings for hash {content_hash}")


class CacheWriteError(RAGError):
    """Raised when the embedding cache cannot persist an entry."""


class VectorStoreError(RAGError):
    """Raised on vector store failures.

    ``failed_ids`` lists the chunk ids that were not written when a batch
    operation partially failed.
    """

    def __init__(self, message: str, failed_ids: list[str] | None = None):
        self.failed_ids = failed_ids or []
        super().__init__(message)


class TenancyViolation(RAGError):
    """Raised when an operation lacks an owner scope or targets another owner's data."""


class DocumentNotFoundError(RAGError):
    """Raised when a document does not exist for the given owner."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")


class VersionStoreError(RAGError):
    """Raised when the version log cannot be persisted."""


class RollbackCacheMismatch(RAGError):
    """Raised when a rollback target's content hash is no longer cached."""

    def __init__(self, document_id: str, version_id: str, content_hash: str):
        self.document_id = document_id
        self.version_id = version_id
        self.content_hash = content_hash
        super().__init__(
            f"Cache miss for version rollback: document={document_id} version={version_id}"
        )


class InsufficientContext(RAGError):
    """The question needs document context but no relevant chunk was found."""

    user_message = (
        "I don't have enough relevant information in the provided documents "
        "to answer this question accurately."
    )

    def __init__(self, question: str):
        self.question = question
        super().__init__(self.user_message)
