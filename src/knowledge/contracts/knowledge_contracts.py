"""
Knowledge Contracts - data models for the on-disk knowledge index.

These models define the structure of indexed chunks, per-board indexes,
retrieved passages, and ingestion plans. The JSON field names of
``KnowledgeChunk`` and ``KnowledgeIndex`` are the persisted wire format
(camelCase), so index files stay readable by other tooling.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
import re


INDEX_SCHEMA_VERSION = 2
LEGACY_SCHEMA_VERSION = 1

LEVEL_PARENT = 0
LEVEL_CHILD = 1


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class PassageDraft:
    """
    A chunker output passage, not yet identified or embedded.

    Attributes:
        level: 0 for a section summary, 1 for a detail passage
        title: Section or sub-section heading
        text: Passage text (what gets embedded)
        section_index: Index of the top-level section within the document
    """
    level: int
    title: str
    text: str
    section_index: int = 0


@dataclass
class KnowledgeChunk:
    """
    An indexed passage.

    Attributes:
        id: Unique key within a board (``<board>-<doc>-<n>``)
        text: Passage content
        source: Originating document path relative to the board directory
        embedding: Raw embedding vector as returned by the provider
        doc_id: Source document identifier within the board
        group_id: Top-level section identifier (parent + its children)
        parent_id: Owning parent id for level-1 chunks, None for level-0
        level: 0 = section summary, 1 = detail passage; None in legacy indexes
        title: Section or sub-section heading
        order: Position within the document
        vector: Unit-normalised copy of ``embedding``, filled on load (not persisted)
    """
    id: str
    text: str
    source: str
    embedding: List[float]
    doc_id: Optional[str] = None
    group_id: Optional[str] = None
    parent_id: Optional[str] = None
    level: Optional[int] = None
    title: Optional[str] = None
    order: Optional[int] = None
    vector: Optional[List[float]] = field(default=None, repr=False, compare=False)

    @property
    def is_parent(self) -> bool:
        return self.level == LEVEL_PARENT

    @property
    def is_child(self) -> bool:
        return self.level == LEVEL_CHILD

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted JSON shape."""
        result = {
            "id": self.id,
            "text": self.text,
            "source": self.source,
            "embedding": self.embedding,
        }
        if self.level is not None:
            result.update({
                "docId": self.doc_id,
                "groupId": self.group_id,
                "parentId": self.parent_id,
                "level": self.level,
                "title": self.title,
                "order": self.order,
            })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeChunk":
        """Create from the persisted JSON shape."""
        return cls(
            id=data["id"],
            text=data["text"],
            source=data.get("source", ""),
            embedding=data["embedding"],
            doc_id=data.get("docId"),
            group_id=data.get("groupId"),
            parent_id=data.get("parentId"),
            level=data.get("level"),
            title=data.get("title"),
            order=data.get("order"),
        )


@dataclass
class KnowledgeIndex:
    """
    The persisted index for one board.

    Attributes:
        version: Schema version (2 = hierarchical, 1 = legacy flat)
        board: Board name
        model: Embedding model that produced every vector in ``chunks``
        created_at: ISO timestamp of the first build
        chunks: Ordered chunk records
    """
    version: int
    board: str
    model: str
    created_at: str
    chunks: List[KnowledgeChunk] = field(default_factory=list)

    @property
    def dimension(self) -> Optional[int]:
        """Embedding dimension, or None for an empty index."""
        if not self.chunks:
            return None
        return len(self.chunks[0].embedding)

    @property
    def has_hierarchy(self) -> bool:
        """True if at least one parent (level-0) chunk exists."""
        return any(chunk.is_parent for chunk in self.chunks)

    def parents(self) -> List[KnowledgeChunk]:
        return [chunk for chunk in self.chunks if chunk.is_parent]

    def children_by_parent(self) -> Dict[str, List[KnowledgeChunk]]:
        """Group level-1 chunks under their parent id, in index order."""
        grouped: Dict[str, List[KnowledgeChunk]] = {}
        for chunk in self.chunks:
            if not chunk.is_child or not chunk.parent_id:
                continue
            grouped.setdefault(chunk.parent_id, []).append(chunk)
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted JSON shape."""
        return {
            "version": self.version,
            "board": self.board,
            "model": self.model,
            "createdAt": self.created_at,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeIndex":
        """Create from the persisted JSON shape."""
        return cls(
            version=int(data.get("version", LEGACY_SCHEMA_VERSION)),
            board=data["board"],
            model=data.get("model", ""),
            created_at=data.get("createdAt") or utc_now_iso(),
            chunks=[KnowledgeChunk.from_dict(c) for c in data.get("chunks", [])],
        )


@dataclass
class RetrievedPassage:
    """
    A single retrieval result.

    For hierarchical retrieval ``text`` is an assembled section (parent
    passage followed by selected children) and ``score`` is the parent's
    similarity; the identity fields describe the parent.
    """
    text: str
    source: str
    score: float
    id: Optional[str] = None
    doc_id: Optional[str] = None
    group_id: Optional[str] = None
    parent_id: Optional[str] = None
    level: Optional[int] = None
    title: Optional[str] = None
    order: Optional[int] = None
    child_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_chunk(cls, chunk: KnowledgeChunk, score: float, text: Optional[str] = None) -> "RetrievedPassage":
        return cls(
            text=chunk.text if text is None else text,
            source=chunk.source,
            score=score,
            id=chunk.id,
            doc_id=chunk.doc_id,
            group_id=chunk.group_id,
            parent_id=chunk.parent_id,
            level=chunk.level,
            title=chunk.title,
            order=chunk.order,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and JSON output."""
        return {
            "text": self.text,
            "source": self.source,
            "score": self.score,
            "id": self.id,
            "docId": self.doc_id,
            "groupId": self.group_id,
            "parentId": self.parent_id,
            "level": self.level,
            "title": self.title,
            "order": self.order,
            "childIds": self.child_ids,
        }


@dataclass
class KnowledgeContext:
    """
    What the retrieval consumer receives.

    Attributes:
        context: Formatted text block; empty when there is nothing to add
        passages: Ranked passages the context was built from
        warning: Soft-failure message when retrieval degraded to no context
    """
    context: str
    passages: List[RetrievedPassage] = field(default_factory=list)
    warning: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.warning is not None


class IngestAction(str, Enum):
    """How an ingestion run treats the board's existing index."""
    BUILD_FRESH = "build_fresh"
    APPEND = "append"
    REBUILD_MISMATCH = "rebuild_mismatch"


@dataclass
class IngestPlan:
    """
    Decision taken before an ingestion run writes anything.

    Attributes:
        action: One of the three ingest actions
        existing: Index to append to (APPEND only)
        next_doc_counter: First document counter for newly ingested files
        reason: Human-readable explanation, logged with the decision
    """
    action: IngestAction
    existing: Optional[KnowledgeIndex] = None
    next_doc_counter: int = 0
    reason: str = ""


@dataclass
class IngestSummary:
    """Statistics for a completed ingestion run."""
    board: str
    action: IngestAction
    index_path: Path
    files_processed: int = 0
    chunks_added: int = 0
    chunks_total: int = 0
    parents_added: int = 0
    children_added: int = 0
    passages_dropped: int = 0
    batches: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "board": self.board,
            "action": self.action.value,
            "index_path": str(self.index_path),
            "files_processed": self.files_processed,
            "chunks_added": self.chunks_added,
            "chunks_total": self.chunks_total,
            "parents_added": self.parents_added,
            "children_added": self.children_added,
            "passages_dropped": self.passages_dropped,
            "batches": self.batches,
            "duration_seconds": self.duration_seconds,
        }


def make_doc_id(board: str, doc_counter: int) -> str:
    return f"{board}-{doc_counter}"


def make_chunk_id(board: str, doc_counter: int, chunk_index: int) -> str:
    """
    Chunk id for the ``chunk_index``-th chunk of a document.

    Example:
        >>> make_chunk_id("bazi", 3, 0)
        'bazi-3-0'
    """
    return f"{board}-{doc_counter}-{chunk_index}"


def make_group_id(board: str, doc_counter: int, section_index: int) -> str:
    return f"{board}-{doc_counter}-g{section_index}"


def parse_doc_counter(board: str, chunk_id: str) -> Optional[int]:
    """
    Extract the document counter from a chunk id of ``board``.

    Returns None for ids that do not follow the ``<board>-<n>-`` pattern.
    """
    match = re.match(rf"^{re.escape(board)}-(\d+)-", chunk_id or "")
    if not match:
        return None
    return int(match.group(1))


__all__ = [
    "INDEX_SCHEMA_VERSION",
    "LEGACY_SCHEMA_VERSION",
    "LEVEL_PARENT",
    "LEVEL_CHILD",
    "PassageDraft",
    "KnowledgeChunk",
    "KnowledgeIndex",
    "RetrievedPassage",
    "KnowledgeContext",
    "IngestAction",
    "IngestPlan",
    "IngestSummary",
    "make_doc_id",
    "make_chunk_id",
    "make_group_id",
    "parse_doc_counter",
    "utc_now_iso",
]
