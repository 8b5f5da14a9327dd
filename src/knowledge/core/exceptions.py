"""
Custom exceptions for the knowledge retrieval module.
"""


class KnowledgeError(Exception):
    """Base exception for all knowledge module errors."""
    pass


class KnowledgeConfigError(KnowledgeError):
    """
    Error in knowledge configuration.

    Raised when:
    - Embedding API key or model name is not set
    - Provider name is not recognised
    - Numeric tuning values are not valid integers or are out of range
    """
    pass


class EmbeddingProviderError(KnowledgeError):
    """
    Error communicating with an embedding provider.

    The whole batch fails; there is no partial-batch success.
    """

    def __init__(self, message: str, provider: str = None, status_code: int = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class EmbeddingTransportError(EmbeddingProviderError):
    """Provider unreachable, timed out, or returned a non-success status."""
    pass


class EmbeddingResponseError(EmbeddingProviderError):
    """Provider response body could not be parsed into vectors."""
    pass


class EmbeddingLengthMismatchError(EmbeddingProviderError):
    """Provider returned a different number of vectors than inputs sent."""

    def __init__(self, message: str, provider: str = None, expected: int = 0, received: int = 0):
        super().__init__(message, provider=provider)
        self.expected = expected
        self.received = received


class EmptyQueryError(KnowledgeError):
    """Retrieval was requested with an empty or whitespace-only query."""

    def __init__(self, message: str = "non-empty query required"):
        super().__init__(message)


class IndexNotFoundError(KnowledgeError):
    """
    No index file exists for a board.

    Only raised in strict mode; normal retrieval treats a missing index
    as an empty result.
    """

    def __init__(self, board: str, command: str = "knowledge-ingest"):
        super().__init__(
            f'Knowledge index not found for "{board}". Run: {command} {board}'
        )
        self.board = board
        self.command = command


class IndexSchemaError(KnowledgeError):
    """
    Index schema problem.

    Raised when:
    - Appending to an index whose schema version is not current
    - An index file is not valid JSON or is missing required fields
    """

    def __init__(self, message: str, found_version: int = None):
        super().__init__(message)
        self.found_version = found_version


class IndexCompatibilityError(KnowledgeError):
    """
    Index cannot be queried with the configured embedder.

    Raised when:
    - The index was built with a different embedding model
    - Query and stored vectors have different dimensions
    """
    pass


class KnowledgeStorageError(KnowledgeError):
    """Error writing an index file to disk."""
    pass


class KnowledgeIngestError(KnowledgeError):
    """Ingestion precondition failed (e.g. no source documents for a board)."""
    pass
