"""
Retrieval Search - Find relevant passages for a query.

Implements:
- Cosine similarity scoring over unit-normalised vectors
- Flat top-K retrieval with deterministic tie-breaks
- Hierarchical retrieval: top parents, their best children in document
  order, redundancy filtering, and a whole-section character budget
"""

import logging
import uuid
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from ..contracts.knowledge_contracts import KnowledgeChunk, KnowledgeIndex, RetrievedPassage
from ..core.config import RetrievalConfig
from ..core.exceptions import EmptyQueryError, IndexCompatibilityError, IndexNotFoundError
from ..core.logging import CorrelationContext, log_with_context
from ..core.utils import (
    build_bigrams,
    cosine_similarity,
    dot_product,
    jaccard_similarity,
    normalize_text,
)
from ..providers.embedding_client import Embedder
from .index_store import DEFAULT_INDEX_CACHE, IndexCache, IndexStore


logger = logging.getLogger(__name__)


TOP_P_MIN, TOP_P_MAX = 1, 3
TOP_M_MIN, TOP_M_MAX, TOP_M_DEFAULT = 3, 6, 4
MIN_CONTEXT_CHARS = 500
REDUNDANCY_JACCARD_THRESHOLD = 0.85


def clamp(value: int, low: int, high: Optional[int] = None) -> int:
    value = max(low, value)
    if high is not None:
        value = min(high, value)
    return value


def score_chunks(query_vector: Sequence[float], chunks: Iterable[KnowledgeChunk]) -> List[Tuple[KnowledgeChunk, float]]:
    """
    Score chunks against a unit query vector, best first.

    Ties are broken by chunk id so repeated calls give the same order.

    Raises:
        IndexCompatibilityError: If a chunk vector has a different dimension
    """
    scored = []
    for chunk in chunks:
        vector = chunk.vector if chunk.vector is not None else chunk.embedding
        if len(vector) != len(query_vector):
            raise IndexCompatibilityError(
                f"Query vector has dimension {len(query_vector)} but chunk {chunk.id} "
                f"has dimension {len(vector)}; re-ingest the board with the current model"
            )
        if chunk.vector is not None:
            score = dot_product(query_vector, vector)
        else:
            score = cosine_similarity(query_vector, vector)
        scored.append((chunk, score))

    scored.sort(key=lambda pair: (-pair[1], pair[0].id))
    return scored


def is_redundant(candidate: str, selected: Iterable[str], threshold: float = REDUNDANCY_JACCARD_THRESHOLD) -> bool:
    """
    Whether ``candidate`` adds nothing over the already selected texts.

    Texts are compared after ``normalize_text``. A candidate is redundant if
    it contains or is contained in a selected text, or if the bigram Jaccard
    similarity with one exceeds ``threshold``.

    Example:
        >>> is_redundant("甲木参天，脱胎要火", ["甲木参天，脱胎要火。春不容金"])
        True
    """
    normalized = normalize_text(candidate)
    if not normalized:
        return True
    bigrams = build_bigrams(normalized)

    for text in selected:
        other = normalize_text(text)
        if not other:
            continue
        if normalized in other or other in normalized:
            return True
        if jaccard_similarity(bigrams, build_bigrams(other)) > threshold:
            return True
    return False


class KnowledgeRetriever:
    """
    Ranks a board's passages for a query.

    Indexes are loaded through an ``IndexCache`` (the process-wide one by
    default), so each board's file is read at most once per process.

    Example:
        >>> retriever = KnowledgeRetriever(IndexStore(Path("data/index")), embedder, RetrievalConfig())
        >>> passages = retriever.retrieve("bazi", "甲木日主喜什么", top_k=5)
    """

    def __init__(
        self,
        store: IndexStore,
        embedder: Embedder,
        config: Optional[RetrievalConfig] = None,
        cache: Optional[IndexCache] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.cache = cache if cache is not None else DEFAULT_INDEX_CACHE

    def get_index(self, board: str) -> Optional[KnowledgeIndex]:
        return self.cache.get_or_load(board, self.store.load)

    def retrieve(
        self,
        board: str,
        query: str,
        top_k: Optional[int] = None,
        strict: bool = False,
    ) -> List[RetrievedPassage]:
        """
        Retrieve passages with the configured strategy.

        Hierarchical retrieval is used when enabled and the index has parent
        passages; otherwise flat top-K. In hierarchical mode ``top_k``
        sets how many children are considered per parent.

        Args:
            board: Board name
            query: Natural-language query
            top_k: Result count (flat) or children per parent (hierarchical)
            strict: Raise IndexNotFoundError instead of returning [] for a missing index

        Returns:
            Ranked passages (possibly empty)

        Raises:
            EmptyQueryError: If the query is empty (no provider call is made)
            IndexNotFoundError: If strict and the board has no index
            IndexCompatibilityError: If the index was built with another model
            EmbeddingProviderError: If the query embedding fails
        """
        if self.config.hierarchical:
            top_m = clamp(top_k, TOP_M_MIN, TOP_M_MAX) if top_k is not None else TOP_M_DEFAULT
            return self.retrieve_hierarchical(
                board,
                query,
                top_p=self.config.top_p,
                top_m=top_m,
                max_chars=self.config.max_context_chars,
                strict=strict,
                top_k=top_k,
            )
        return self.retrieve_flat(board, query, top_k=top_k, strict=strict)

    def retrieve_flat(
        self,
        board: str,
        query: str,
        top_k: Optional[int] = None,
        strict: bool = False,
    ) -> List[RetrievedPassage]:
        """Top-K chunks of any level by similarity, best first."""
        top_k = clamp(top_k if top_k is not None else self.config.top_k, 1)
        return self._run(board, query, strict, "flat", lambda index, vector: self._flat(index, vector, top_k))

    def retrieve_hierarchical(
        self,
        board: str,
        query: str,
        top_p: Optional[int] = None,
        top_m: int = TOP_M_DEFAULT,
        max_chars: Optional[int] = None,
        strict: bool = False,
        top_k: Optional[int] = None,
    ) -> List[RetrievedPassage]:
        """
        Parent-then-children retrieval assembled into sections.

        Falls back to flat top-K retrieval when the index has no parent
        passages, e.g. a legacy flat index.

        Args:
            board: Board name
            query: Natural-language query
            top_p: Parents to select (clamped to 1..3)
            top_m: Children considered per parent (clamped to 3..6)
            max_chars: Total character budget for sections (at least 500)
            strict: Raise IndexNotFoundError for a missing index
            top_k: Result count for the flat fallback (config ``top_k`` if None)

        Returns:
            One passage per accepted section, in parent score order
        """
        top_p = clamp(top_p if top_p is not None else self.config.top_p, TOP_P_MIN, TOP_P_MAX)
        top_m = clamp(top_m, TOP_M_MIN, TOP_M_MAX)
        max_chars = clamp(max_chars if max_chars is not None else self.config.max_context_chars, MIN_CONTEXT_CHARS)
        flat_top_k = clamp(top_k if top_k is not None else self.config.top_k, 1)

        def strategy(index: KnowledgeIndex, vector: List[float]) -> List[RetrievedPassage]:
            if not index.has_hierarchy:
                logger.debug(f"Index for {index.board} has no parent passages, using flat retrieval")
                return self._flat(index, vector, flat_top_k)
            return self._hierarchical(index, vector, top_p, top_m, max_chars)

        return self._run(board, query, strict, "hierarchical", strategy)

    def _run(
        self,
        board: str,
        query: str,
        strict: bool,
        strategy_name: str,
        strategy: Callable[[KnowledgeIndex, List[float]], List[RetrievedPassage]],
    ) -> List[RetrievedPassage]:
        if not query or not query.strip():
            raise EmptyQueryError()

        with CorrelationContext(board=board, query_id=str(uuid.uuid4()), strategy=strategy_name):
            index = self.get_index(board)
            if index is None:
                if strict:
                    raise IndexNotFoundError(board)
                log_with_context(logger, logging.WARNING, f"No knowledge index for board {board}")
                return []

            if not index.chunks:
                log_with_context(logger, logging.INFO, f"Knowledge index for {board} is empty")
                return []

            if index.model and index.model != self.embedder.model:
                raise IndexCompatibilityError(
                    f"Index for {board} was built with model {index.model!r} but queries "
                    f"use {self.embedder.model!r}; re-ingest the board"
                )

            query_vector = self.embedder.embed_query(query)
            passages = strategy(index, query_vector)

            log_with_context(
                logger, logging.INFO,
                f"Retrieved {len(passages)} passages from {board} ({strategy_name})"
            )
            return passages

    def _flat(self, index: KnowledgeIndex, query_vector: List[float], top_k: int) -> List[RetrievedPassage]:
        scored = score_chunks(query_vector, index.chunks)
        return [RetrievedPassage.from_chunk(chunk, score) for chunk, score in scored[:top_k]]

    def _hierarchical(
        self,
        index: KnowledgeIndex,
        query_vector: List[float],
        top_p: int,
        top_m: int,
        max_chars: int,
    ) -> List[RetrievedPassage]:
        children_by_parent = index.children_by_parent()
        selected_parents = score_chunks(query_vector, index.parents())[:top_p]

        results: List[RetrievedPassage] = []
        selected_children: List[str] = []
        used_chars = 0

        for parent, parent_score in selected_parents:
            candidates = score_chunks(query_vector, children_by_parent.get(parent.id, []))[:top_m]
            candidates.sort(key=lambda pair: (pair[0].order if pair[0].order is not None else 0, pair[0].id))

            parts = [parent.text]
            section_len = len(parent.text)
            child_ids = []
            section_children = []

            for child, _ in candidates:
                if is_redundant(child.text, selected_children + section_children):
                    logger.debug(f"Skipped redundant child {child.id}")
                    continue
                projected = section_len + 1 + len(child.text)
                if used_chars + projected > max_chars:
                    break
                parts.append(child.text)
                section_children.append(child.text)
                child_ids.append(child.id)
                section_len = projected

            if used_chars + section_len > max_chars:
                break

            passage = RetrievedPassage.from_chunk(parent, parent_score, text="\n".join(parts))
            passage.child_ids = child_ids
            results.append(passage)
            selected_children.extend(section_children)
            used_chars += section_len

        return results
