"""
Query CLI - Inspect what retrieval returns for a query.

Runs retrieval in strict mode, so a missing index is reported with the
command that builds it instead of an empty result.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from ..contracts.knowledge_contracts import RetrievedPassage
from ..core.config import KnowledgeSettings
from ..core.exceptions import KnowledgeError
from ..core.logging import configure_logging
from ..providers.embedding_client import create_embedder
from ..retrieval.index_store import IndexStore
from ..retrieval.search import KnowledgeRetriever


logger = logging.getLogger(__name__)

DEFAULT_BOARD = "bazi"
DEFAULT_PREVIEW_CHARS = 300


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knowledge-query",
        description="Show the passages retrieved for a query",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  knowledge-query "甲木日主喜用" bazi 5
  knowledge-query "值符落宫" qimen --full
        """,
    )
    parser.add_argument("query", help="Query text")
    parser.add_argument("board", nargs="?", default=DEFAULT_BOARD, help=f"Board name (default: {DEFAULT_BOARD})")
    parser.add_argument("top_k", nargs="?", type=int, default=None, help="Result count (default: from settings)")
    parser.add_argument(
        "--preview",
        type=int,
        default=DEFAULT_PREVIEW_CHARS,
        help=f"Characters of passage text to show (default: {DEFAULT_PREVIEW_CHARS})",
    )
    parser.add_argument("--full", action="store_true", help="Show full passage text")
    parser.add_argument("--json", action="store_true", help="Print passages as JSON")
    parser.add_argument("--config", type=Path, default=None, help="Optional YAML settings file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    return parser


def format_passage(rank: int, passage: RetrievedPassage, preview: Optional[int]) -> str:
    """Human-readable block for one passage; ``preview=None`` shows all text."""
    text = passage.text if preview is None else passage.text[:preview]
    lines = [
        f"#{rank} score={passage.score:.4f} source={passage.source}",
        f"id={passage.id} level={passage.level} parentId={passage.parent_id} groupId={passage.group_id}",
        f"title={passage.title}",
        "-----",
        text,
    ]
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for retrieval inspection."""
    args = build_parser().parse_args(argv)

    configure_logging(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        settings = KnowledgeSettings.load(args.config)
        retriever = KnowledgeRetriever(
            IndexStore(settings.index_dir),
            create_embedder(settings.embedding),
            settings.retrieval,
        )
        passages = retriever.retrieve(args.board, args.query, top_k=args.top_k, strict=True)
    except KnowledgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps([p.to_dict() for p in passages], indent=2, ensure_ascii=False))
        return 0

    if not passages:
        print("No passages found.")
        return 0

    preview = None if args.full else max(0, args.preview)
    for rank, passage in enumerate(passages, start=1):
        print(format_passage(rank, passage, preview))
        print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
