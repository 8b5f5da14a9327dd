"""
Indexer - Ingest a board's documents into its knowledge index.

Implements:
- Source discovery (``*.txt`` under ``<data>/knowledge/<board>``)
- Hierarchical chunking and id assignment
- Sequential batch embedding (any failed batch aborts the run)
- The three-state ingest plan: build fresh / append / rebuild on mismatch
- A single index write at the end of the run

Usage:
    knowledge-ingest bazi
    knowledge-ingest qimen --rewrite
"""

import logging
import math
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from ..contracts.knowledge_contracts import (
    INDEX_SCHEMA_VERSION,
    LEVEL_PARENT,
    IngestAction,
    IngestPlan,
    IngestSummary,
    KnowledgeChunk,
    KnowledgeIndex,
    make_chunk_id,
    make_doc_id,
    make_group_id,
)
from ..core.config import KnowledgeSettings
from ..core.exceptions import IndexSchemaError, KnowledgeIngestError
from ..core.logging import CorrelationContext, log_with_context
from ..providers.embedding_client import Embedder
from .chunker import ChunkedDocument, HierarchicalChunker
from .index_store import (
    IndexStore,
    append_to_index,
    build_index,
    next_document_counter,
)


logger = logging.getLogger(__name__)


def plan_ingest(
    existing: Optional[KnowledgeIndex],
    board: str,
    model: str,
    rewrite: bool = False,
) -> IngestPlan:
    """
    Decide how an ingestion run treats the board's current index.

    Args:
        existing: Index currently on disk (None if absent or discarded)
        board: Board name
        model: Embedding model the run will use
        rewrite: Operator asked for a full rebuild

    Returns:
        IngestPlan with one of BUILD_FRESH, APPEND, REBUILD_MISMATCH
    """
    if rewrite:
        return IngestPlan(IngestAction.BUILD_FRESH, reason="rewrite requested")

    if existing is None:
        return IngestPlan(IngestAction.BUILD_FRESH, reason="no existing index")

    if existing.version != INDEX_SCHEMA_VERSION:
        return IngestPlan(
            IngestAction.REBUILD_MISMATCH,
            reason=(
                f"existing index has schema version {existing.version}, "
                f"expected {INDEX_SCHEMA_VERSION}; no migration is performed"
            ),
        )

    if existing.model != model:
        return IngestPlan(
            IngestAction.REBUILD_MISMATCH,
            reason=f"existing index was built with model {existing.model!r}, run uses {model!r}",
        )

    return IngestPlan(
        IngestAction.APPEND,
        existing=existing,
        next_doc_counter=next_document_counter(existing, board),
        reason=f"appending to {len(existing.chunks)} existing chunks",
    )


def list_source_files(board_dir: Path) -> List[Path]:
    """All ``.txt`` files (any case) below ``board_dir``, in sorted order."""
    board_dir = Path(board_dir)
    if not board_dir.is_dir():
        return []
    return sorted(
        path for path in board_dir.rglob("*")
        if path.is_file() and path.suffix.lower() == ".txt"
    )


def read_source_text(path: Path) -> str:
    """
    Read a source document as UTF-8.

    Undecodable bytes are replaced with U+FFFD and a warning names the file,
    so a damaged document is still ingested but never silently altered.
    """
    raw = Path(path).read_bytes()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning(
            f"{path} is not valid UTF-8 (first bad byte at offset {e.start}); "
            f"undecodable bytes were replaced"
        )
        return raw.decode("utf-8", errors="replace")


def assign_identities(board: str, doc_counter: int, document: ChunkedDocument) -> List[KnowledgeChunk]:
    """
    Turn chunker drafts into identified (not yet embedded) chunks.

    ``order`` restarts at 0 for each document and runs across all its
    sections; the chunk id reuses it as the per-document chunk index.
    """
    doc_id = make_doc_id(board, doc_counter)
    parent_ids: Dict[int, str] = {}
    chunks = []

    for order, draft in enumerate(document.passages):
        chunk_id = make_chunk_id(board, doc_counter, order)
        if draft.level == LEVEL_PARENT:
            parent_ids[draft.section_index] = chunk_id
            parent_id = None
        else:
            parent_id = parent_ids[draft.section_index]

        chunks.append(KnowledgeChunk(
            id=chunk_id,
            text=draft.text,
            source=document.source,
            embedding=[],
            doc_id=doc_id,
            group_id=make_group_id(board, doc_counter, draft.section_index),
            parent_id=parent_id,
            level=draft.level,
            title=draft.title,
            order=order,
        ))

    return chunks


class KnowledgeIndexer:
    """
    Ingests one board's documents into its index file.

    Workflow:
    1. List source files for the board
    2. Plan: build fresh, append, or rebuild on mismatch
    3. Chunk every file and assign ids
    4. Embed all passages in sequential batches
    5. Build or append, then write the index once
    """

    def __init__(
        self,
        settings: KnowledgeSettings,
        embedder: Embedder,
        store: Optional[IndexStore] = None,
        chunker: Optional[HierarchicalChunker] = None,
    ):
        """
        Initialize the indexer.

        Args:
            settings: Resolved knowledge settings
            embedder: Embedder for the configured provider
            store: Index store (defaults to ``settings.index_dir``)
            chunker: Chunker (defaults to one built from ``settings.chunking``)
        """
        self.settings = settings
        self.embedder = embedder
        self.store = store or IndexStore(settings.index_dir)
        self.chunker = chunker or HierarchicalChunker(settings.chunking)

    def ingest_board(self, board: str, rewrite: bool = False) -> IngestSummary:
        """
        Run a full ingestion for ``board``.

        Args:
            board: Board name (directory under the knowledge root)
            rewrite: Discard the existing index instead of appending

        Returns:
            IngestSummary for the run

        Raises:
            KnowledgeIngestError: If the board has no source documents
            EmbeddingProviderError: If any embedding batch fails (nothing is written)
            KnowledgeStorageError: If the index file cannot be written
        """
        run_id = str(uuid.uuid4())
        start_time = time.time()

        with CorrelationContext(board=board, run_id=run_id):
            board_dir = self.settings.board_dir(board)
            files = list_source_files(board_dir)
            if not files:
                raise KnowledgeIngestError(f"No .txt files found in {board_dir}")

            log_with_context(
                logger, logging.INFO,
                f"Starting ingestion for board {board}: {len(files)} files"
            )

            existing = None if rewrite else self._read_existing(board)
            plan = plan_ingest(existing, board, self.embedder.model, rewrite=rewrite)
            level = logging.WARNING if plan.action == IngestAction.REBUILD_MISMATCH else logging.INFO
            log_with_context(logger, level, f"Ingest plan {plan.action.value}: {plan.reason}")

            summary = IngestSummary(
                board=board,
                action=plan.action,
                index_path=self.store.path_for(board),
            )

            new_chunks: List[KnowledgeChunk] = []
            doc_counter = plan.next_doc_counter
            for path in files:
                source = path.relative_to(board_dir).as_posix()
                content = read_source_text(path)
                document = self.chunker.chunk_document(content, source)
                if not document.passages:
                    logger.warning(f"No content in {source}, skipping")
                else:
                    new_chunks.extend(assign_identities(board, doc_counter, document))
                    summary.parents_added += document.parent_count
                    summary.children_added += document.child_count
                summary.passages_dropped += document.dropped
                summary.files_processed += 1
                doc_counter += 1

            if not new_chunks:
                raise KnowledgeIngestError(f"No passages produced from {len(files)} files in {board_dir}")

            vectors = self.embedder.embed_texts([chunk.text for chunk in new_chunks], normalize=False)
            for chunk, vector in zip(new_chunks, vectors):
                chunk.embedding = vector
            summary.batches = math.ceil(len(new_chunks) / self.embedder.batch_size)

            index = None
            if plan.action == IngestAction.APPEND:
                try:
                    index = append_to_index(plan.existing, new_chunks)
                except IndexSchemaError as e:
                    log_with_context(logger, logging.WARNING, f"Append failed, rebuilding index: {e}")
                    summary.action = IngestAction.REBUILD_MISMATCH
            if index is None:
                index = build_index(board, new_chunks, self.embedder.model)

            summary.index_path = self.store.save(index)
            summary.chunks_added = len(new_chunks)
            summary.chunks_total = len(index.chunks)
            summary.duration_seconds = round(time.time() - start_time, 2)

            log_with_context(
                logger, logging.INFO,
                f"Ingestion for {board} complete: {summary.files_processed} files, "
                f"{summary.chunks_added} chunks added ({summary.parents_added} parents, "
                f"{summary.children_added} children, {summary.passages_dropped} dropped), "
                f"{summary.chunks_total} total"
            )

        return summary

    def _read_existing(self, board: str) -> Optional[KnowledgeIndex]:
        try:
            return self.store.read(board)
        except IndexSchemaError as e:
            logger.warning(f"Existing index for {board} is unreadable and will be rebuilt: {e}")
            return KnowledgeIndex(version=e.found_version or 0, board=board, model="", created_at="")
