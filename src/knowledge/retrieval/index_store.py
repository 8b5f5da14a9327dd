"""
Index Store - Persist and load per-board knowledge indexes.

One JSON file per board (``<index_dir>/<board>.json``). Files hold the raw
provider vectors; unit normalisation happens on load.

Also provides the process-wide ``IndexCache``: indexes are loaded lazily,
once per board, and kept for the lifetime of the process. A rebuilt index
is only picked up after a restart (or an explicit ``clear()``).
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ..contracts.knowledge_contracts import (
    INDEX_SCHEMA_VERSION,
    KnowledgeChunk,
    KnowledgeIndex,
    parse_doc_counter,
    utc_now_iso,
)
from ..core.config import validate_board_name
from ..core.exceptions import (
    IndexCompatibilityError,
    IndexSchemaError,
    KnowledgeStorageError,
)
from ..core.utils import normalize_vector


logger = logging.getLogger(__name__)


class IndexStore:
    """
    Filesystem storage for board indexes.

    Example:
        >>> store = IndexStore(Path("data/index"))
        >>> index = store.load("bazi")   # None if never ingested
        >>> store.save(index)
    """

    def __init__(self, index_dir: Path, pretty_print: bool = True):
        """
        Initialize the index store.

        Args:
            index_dir: Directory holding ``<board>.json`` files
            pretty_print: Whether to indent written JSON
        """
        self.index_dir = Path(index_dir)
        self.pretty_print = pretty_print

    def path_for(self, board: str) -> Path:
        """Index file for ``board`` (raises KnowledgeConfigError for an unsafe name)."""
        return self.index_dir / f"{validate_board_name(board)}.json"

    def exists(self, board: str) -> bool:
        return self.path_for(board).exists()

    def read(self, board: str) -> Optional[KnowledgeIndex]:
        """
        Read a board's index exactly as stored.

        Returns:
            The index, or None if no file exists for the board

        Raises:
            IndexSchemaError: If the file is not a valid index
        """
        path = self.path_for(board)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise IndexSchemaError(f"Index file {path} is not valid JSON: {e}")

        try:
            index = KnowledgeIndex.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise IndexSchemaError(f"Index file {path} is missing required fields: {e}")

        dimensions = {len(chunk.embedding) for chunk in index.chunks}
        if len(dimensions) > 1:
            raise IndexSchemaError(
                f"Index file {path} mixes embedding dimensions {sorted(dimensions)}",
                found_version=index.version,
            )
        return index

    def load(self, board: str) -> Optional[KnowledgeIndex]:
        """
        Load a board's index ready for scoring.

        Same as ``read`` but fills every chunk's unit-normalised ``vector``.
        """
        index = self.read(board)
        if index is None:
            logger.debug(f"No index file for board {board} at {self.path_for(board)}")
            return None

        for chunk in index.chunks:
            chunk.vector = normalize_vector(chunk.embedding)

        logger.info(
            f"Loaded index for board {board}: version {index.version}, "
            f"{len(index.chunks)} chunks, model {index.model}"
        )
        return index

    def save(self, index: KnowledgeIndex) -> Path:
        """
        Write an index atomically (temp file + replace).

        Returns:
            Path to the written index file

        Raises:
            KnowledgeStorageError: If the write fails
        """
        path = self.path_for(index.board)
        indent = 2 if self.pretty_print else None
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{index.board}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp_name = f.name
                json.dump(index.to_dict(), f, indent=indent, ensure_ascii=False)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            logger.error(f"Failed to write index {path}: {e}")
            raise KnowledgeStorageError(f"Failed to write index {path}: {e}")

        logger.info(f"Saved index to {path} ({len(index.chunks)} chunks)")
        return path


def build_index(board: str, chunks: Iterable[KnowledgeChunk], model: str) -> KnowledgeIndex:
    """Create a fresh current-version index with ``createdAt = now``."""
    chunk_list = list(chunks)
    _check_unique_ids(chunk_list)
    _check_dimensions(chunk_list)
    return KnowledgeIndex(
        version=INDEX_SCHEMA_VERSION,
        board=board,
        model=model,
        created_at=utc_now_iso(),
        chunks=chunk_list,
    )


def append_to_index(existing: KnowledgeIndex, new_chunks: Iterable[KnowledgeChunk]) -> KnowledgeIndex:
    """
    Concatenate newly embedded chunks onto an existing index.

    ``createdAt`` and ``model`` of the existing index are kept.

    Raises:
        IndexSchemaError: If the existing index is not the current schema version
        IndexCompatibilityError: If the new vectors have a different dimension
    """
    if existing.version != INDEX_SCHEMA_VERSION:
        raise IndexSchemaError(
            f"Cannot append to index for {existing.board}: schema version "
            f"{existing.version}, expected {INDEX_SCHEMA_VERSION}",
            found_version=existing.version,
        )

    chunk_list = list(existing.chunks) + list(new_chunks)
    _check_unique_ids(chunk_list)
    try:
        _check_dimensions(chunk_list)
    except IndexSchemaError as e:
        raise IndexCompatibilityError(str(e))

    return KnowledgeIndex(
        version=existing.version,
        board=existing.board,
        model=existing.model,
        created_at=existing.created_at,
        chunks=chunk_list,
    )


def next_document_counter(index: Optional[KnowledgeIndex], board: str) -> int:
    """
    First unused document counter for ``board``.

    Scans existing chunk ids for the highest counter and continues from
    ``max + 1``; 0 for a missing or empty index.
    """
    if index is None:
        return 0
    counters = [parse_doc_counter(board, chunk.id) for chunk in index.chunks]
    used = [c for c in counters if c is not None]
    return max(used) + 1 if used else 0


def _check_unique_ids(chunks: List[KnowledgeChunk]) -> None:
    seen = set()
    for chunk in chunks:
        if chunk.id in seen:
            raise IndexSchemaError(f"Duplicate chunk id {chunk.id}")
        seen.add(chunk.id)


def _check_dimensions(chunks: List[KnowledgeChunk]) -> None:
    dimensions = {len(chunk.embedding) for chunk in chunks}
    if len(dimensions) > 1:
        raise IndexSchemaError(f"Embedding dimensions differ within index: {sorted(dimensions)}")


class IndexCache:
    """
    Board-keyed cache of loaded indexes.

    Populated lazily on first access, never evicted. A per-board lock keeps
    concurrent first loads of the same board from reading the file twice.
    Missing indexes are not cached, so a board ingested later is found on
    the next lookup.
    """

    def __init__(self):
        self._indexes: Dict[str, KnowledgeIndex] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, board: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(board, threading.Lock())

    def get(self, board: str) -> Optional[KnowledgeIndex]:
        return self._indexes.get(board)

    def get_or_load(
        self,
        board: str,
        loader: Callable[[str], Optional[KnowledgeIndex]],
    ) -> Optional[KnowledgeIndex]:
        """
        Return the cached index for ``board``, loading it on first use.

        Args:
            board: Board name
            loader: Called with the board name on a cache miss

        Returns:
            The index, or None if the loader found none
        """
        cached = self._indexes.get(board)
        if cached is not None:
            return cached

        with self._lock_for(board):
            cached = self._indexes.get(board)
            if cached is not None:
                return cached
            index = loader(board)
            if index is not None:
                self._indexes[board] = index
            return index

    def clear(self) -> None:
        """Drop every cached index."""
        self._indexes.clear()

    def __contains__(self, board: str) -> bool:
        return board in self._indexes

    def __len__(self) -> int:
        return len(self._indexes)


# Process-wide default, shared by retrievers that are not given their own cache
DEFAULT_INDEX_CACHE = IndexCache()
