"""
Ingest CLI - Build or extend a board's knowledge index.

Reads every ``.txt`` file under ``<data>/knowledge/<board>``, chunks and
embeds it, and writes ``<data>/index/<board>.json``. By default new
documents are appended to a compatible existing index; ``--rewrite``
rebuilds from scratch.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from ..core.config import KnowledgeSettings
from ..core.exceptions import KnowledgeError
from ..core.logging import configure_logging
from ..providers.embedding_client import create_embedder
from ..retrieval.indexer import KnowledgeIndexer


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knowledge-ingest",
        description="Ingest a board's knowledge documents into its index",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Append new documents for the bazi board
  knowledge-ingest bazi

  # Rebuild the qimen index from scratch
  knowledge-ingest qimen --rewrite
        """,
    )
    parser.add_argument("board", help="Board name (directory under <data>/knowledge)")
    parser.add_argument(
        "--rewrite", "--overwrite",
        dest="rewrite",
        action="store_true",
        help="Discard the existing index and rebuild it",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional YAML settings file (environment variables still win)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the run summary as JSON",
    )
    parser.add_argument(
        "--structured-logs",
        action="store_true",
        help="Emit JSON log lines",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for ingestion."""
    args = build_parser().parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        structured=args.structured_logs,
    )

    try:
        settings = KnowledgeSettings.load(args.config)
        embedder = create_embedder(settings.embedding)
        indexer = KnowledgeIndexer(settings, embedder)
        summary = indexer.ingest_board(args.board, rewrite=args.rewrite)
    except KnowledgeError as e:
        logger.error(f"Ingestion failed: {e}")
        return 1

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False))
    else:
        print("\n=== Ingestion Summary ===")
        print(f"Board:            {summary.board}")
        print(f"Action:           {summary.action.value}")
        print(f"Files processed:  {summary.files_processed}")
        print(f"Chunks added:     {summary.chunks_added} "
              f"({summary.parents_added} parents, {summary.children_added} children)")
        print(f"Passages dropped: {summary.passages_dropped}")
        print(f"Total chunks:     {summary.chunks_total}")
        print(f"Batches:          {summary.batches}")
        print(f"Duration:         {summary.duration_seconds}s")
        print(f"Index:            {summary.index_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
