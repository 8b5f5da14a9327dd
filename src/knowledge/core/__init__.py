"""
Core subpackage for the knowledge module.

Contains configuration, exceptions, logging and vector/text utilities.
"""

from .config import (
    ChunkingConfig,
    EmbeddingConfig,
    KnowledgeSettings,
    RetrievalConfig,
)
from .exceptions import (
    EmbeddingLengthMismatchError,
    EmbeddingProviderError,
    EmbeddingResponseError,
    EmbeddingTransportError,
    EmptyQueryError,
    IndexCompatibilityError,
    IndexNotFoundError,
    IndexSchemaError,
    KnowledgeConfigError,
    KnowledgeError,
    KnowledgeIngestError,
    KnowledgeStorageError,
)

__all__ = [
    # Config
    "ChunkingConfig",
    "EmbeddingConfig",
    "KnowledgeSettings",
    "RetrievalConfig",
    # Exceptions
    "EmbeddingLengthMismatchError",
    "EmbeddingProviderError",
    "EmbeddingResponseError",
    "EmbeddingTransportError",
    "EmptyQueryError",
    "IndexCompatibilityError",
    "IndexNotFoundError",
    "IndexSchemaError",
    "KnowledgeConfigError",
    "KnowledgeError",
    "KnowledgeIngestError",
    "KnowledgeStorageError",
]
