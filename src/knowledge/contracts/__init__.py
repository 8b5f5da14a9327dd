"""
Knowledge Contracts

Data models shared by ingestion and retrieval.
"""

from .knowledge_contracts import (
    INDEX_SCHEMA_VERSION,
    LEGACY_SCHEMA_VERSION,
    LEVEL_CHILD,
    LEVEL_PARENT,
    IngestAction,
    IngestPlan,
    IngestSummary,
    KnowledgeChunk,
    KnowledgeContext,
    KnowledgeIndex,
    PassageDraft,
    RetrievedPassage,
)

__all__ = [
    "INDEX_SCHEMA_VERSION",
    "LEGACY_SCHEMA_VERSION",
    "LEVEL_CHILD",
    "LEVEL_PARENT",
    "IngestAction",
    "IngestPlan",
    "IngestSummary",
    "KnowledgeChunk",
    "KnowledgeContext",
    "KnowledgeIndex",
    "PassageDraft",
    "RetrievedPassage",
]
