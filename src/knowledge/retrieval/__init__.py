"""
Retrieval module for board knowledge (hierarchical RAG).

This module provides:
- Chunking: Split documents into parent and child passages
- Indexing: Embed passages and persist one index per board
- Search: Flat and hierarchical retrieval
- Context: Format passages into a prompt grounding block
"""

from .chunker import HierarchicalChunker, chunk_text
from .context import KnowledgeService, format_knowledge_context
from .index_store import DEFAULT_INDEX_CACHE, IndexCache, IndexStore
from .indexer import KnowledgeIndexer, plan_ingest
from .search import KnowledgeRetriever, cosine_similarity, is_redundant

__all__ = [
    "HierarchicalChunker",
    "chunk_text",
    "KnowledgeService",
    "format_knowledge_context",
    "DEFAULT_INDEX_CACHE",
    "IndexCache",
    "IndexStore",
    "KnowledgeIndexer",
    "plan_ingest",
    "KnowledgeRetriever",
    "cosine_similarity",
    "is_redundant",
]
