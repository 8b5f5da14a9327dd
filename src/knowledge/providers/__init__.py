"""
Embedding provider clients.
"""

from .embedding_client import (
    DashScopeProvider,
    Embedder,
    EmbeddingProvider,
    OpenAICompatibleProvider,
    create_embedder,
    create_provider,
)

__all__ = [
    "DashScopeProvider",
    "Embedder",
    "EmbeddingProvider",
    "OpenAICompatibleProvider",
    "create_embedder",
    "create_provider",
]
