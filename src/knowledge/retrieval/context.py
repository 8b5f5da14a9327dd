"""
Context - Turn retrieved passages into a grounding block for a prompt.

``KnowledgeService`` is the boundary used by callers that only want text
to prepend to a chat prompt: in non-strict mode retrieval problems
degrade to an empty context plus a warning instead of failing the call.
"""

import logging
import time
from typing import List, Optional

from ..contracts.knowledge_contracts import KnowledgeContext, RetrievedPassage
from ..core.config import KnowledgeSettings
from ..core.exceptions import KnowledgeConfigError, KnowledgeError
from ..core.utils import collapse_whitespace
from ..providers.embedding_client import create_embedder
from .index_store import IndexCache, IndexStore
from .search import KnowledgeRetriever


logger = logging.getLogger(__name__)


CONTEXT_PREAMBLE = "以下是可能相关的参考资料，请优先基于这些内容回答。"


def format_knowledge_context(passages: List[RetrievedPassage]) -> str:
    """
    Format passages as a numbered, source-tagged block.

    Returns an empty string for no passages; callers treat that as "no
    context to add".

    Example:
        >>> format_knowledge_context([RetrievedPassage(text="甲木\\n参天", source="tiangan.txt", score=0.9)])
        '以下是可能相关的参考资料，请优先基于这些内容回答。\\n[1] (tiangan.txt) 甲木 参天'
    """
    if not passages:
        return ""

    lines = [CONTEXT_PREAMBLE]
    for i, passage in enumerate(passages, start=1):
        lines.append(f"[{i}] ({passage.source}) {collapse_whitespace(passage.text)}")
    return "\n".join(lines)


class KnowledgeService:
    """Retrieval plus formatting, with soft failure for prompt assembly."""

    def __init__(self, retriever: KnowledgeRetriever):
        self.retriever = retriever

    @classmethod
    def from_settings(cls, settings: KnowledgeSettings, cache: Optional[IndexCache] = None) -> "KnowledgeService":
        """Build the service from resolved settings (raises KnowledgeConfigError if unusable)."""
        embedder = create_embedder(settings.embedding)
        store = IndexStore(settings.index_dir)
        return cls(KnowledgeRetriever(store, embedder, settings.retrieval, cache=cache))

    def retrieve_context(
        self,
        board: str,
        query: str,
        top_k: Optional[int] = None,
        strict: bool = False,
    ) -> KnowledgeContext:
        """
        Retrieve and format grounding context for ``query``.

        Args:
            board: Board name
            query: User query
            top_k: Passed through to the retriever
            strict: Re-raise retrieval errors instead of degrading

        Returns:
            KnowledgeContext; ``warning`` is set when retrieval degraded

        Raises:
            KnowledgeConfigError: Always propagated, strict or not
            KnowledgeError: Any retrieval error, in strict mode only
        """
        start_time = time.time()
        try:
            passages = self.retriever.retrieve(board, query, top_k=top_k, strict=strict)
        except KnowledgeConfigError:
            raise
        except KnowledgeError as e:
            if strict:
                raise
            warning = f"Knowledge retrieval unavailable for {board}: {e}"
            logger.warning(warning)
            return KnowledgeContext(context="", passages=[], warning=warning)

        logger.debug(
            f"Context for {board}: {len(passages)} passages in "
            f"{(time.time() - start_time) * 1000:.0f}ms"
        )
        return KnowledgeContext(context=format_knowledge_context(passages), passages=passages)
