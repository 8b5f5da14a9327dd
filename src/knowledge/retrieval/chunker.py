"""
Chunker - Split knowledge documents into a two-level passage hierarchy.

Implements:
- Top-level sections (``###`` headings) → one parent passage each
- Sub-sections (``####`` headings) → child passages
- Greedy paragraph packing with overlap for oversized sub-sections
- Meaningfulness filter for short child passages
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Iterable, List, Optional, Sequence, Tuple

from ..contracts.knowledge_contracts import LEVEL_CHILD, LEVEL_PARENT, PassageDraft
from ..core.config import ChunkingConfig
from ..core.utils import normalize_text

logger = logging.getLogger(__name__)


TOP_HEADING_RE = re.compile(r"^###(?!#)[ \t]*(.*)$", re.MULTILINE)
SUB_HEADING_RE = re.compile(r"^####(?!#)[ \t]*(.*)$", re.MULTILINE)
PARAGRAPH_SPLIT_RE = re.compile(r"\n[ \t]*\n")


@dataclass
class ChunkedDocument:
    """
    Chunker output for one document.

    Attributes:
        source: Document path relative to the board directory
        passages: Parent and child drafts in emission order
        dropped: Child passages removed by the meaningfulness filter
    """
    source: str
    passages: List[PassageDraft] = field(default_factory=list)
    dropped: int = 0

    @property
    def parent_count(self) -> int:
        return sum(1 for p in self.passages if p.level == LEVEL_PARENT)

    @property
    def child_count(self) -> int:
        return sum(1 for p in self.passages if p.level == LEVEL_CHILD)


class HierarchicalChunker:
    """
    Chunks a document into parent (section) and child (detail) passages.

    Output is deterministic for a given text and config.

    Example:
        >>> chunker = HierarchicalChunker(ChunkingConfig(child_max_chars=900))
        >>> doc = chunker.chunk_document(Path("tiangan.txt").read_text(), source="tiangan.txt")
        >>> [(p.level, p.title) for p in doc.passages][:2]
        [(0, '甲'), (1, '甲')]
    """

    def __init__(self, config: Optional[ChunkingConfig] = None):
        """
        Initialize the chunker.

        Args:
            config: Chunking config (uses defaults if not provided)
        """
        self.config = config or ChunkingConfig()
        self.config.validate()

    def chunk_document(self, content: str, source: str) -> ChunkedDocument:
        """
        Split one document into ordered passages.

        Every top-level section yields exactly one parent passage, followed
        by its surviving child passages.

        Args:
            content: Raw document text
            source: Relative path, also used for the fallback section title

        Returns:
            ChunkedDocument with passages in reading order
        """
        result = ChunkedDocument(source=source)
        text = normalize_document(content)
        if not text:
            return result

        fallback_title = PurePath(source).stem or source
        preamble, sections = split_by_heading(text, TOP_HEADING_RE)
        if preamble:
            sections.insert(0, (fallback_title, preamble))

        for section_index, (title, body) in enumerate(sections):
            title = title or fallback_title
            units = self._sub_sections(body)

            result.passages.append(PassageDraft(
                level=LEVEL_PARENT,
                title=title,
                text=self._parent_text(title, units),
                section_index=section_index,
            ))

            for sub_title, sub_body in units:
                child_title = sub_title or title
                for prefix, piece in self._child_pieces(sub_body):
                    if not self.is_meaningful(piece):
                        result.dropped += 1
                        logger.debug(f"Dropped short passage in {source} [{child_title}]: {piece[:40]!r}")
                        continue
                    body = f"{prefix}\n{piece}" if prefix else piece
                    for text_part in self._fit_ceiling(f"{child_title}\n{body}"):
                        result.passages.append(PassageDraft(
                            level=LEVEL_CHILD,
                            title=child_title,
                            text=text_part,
                            section_index=section_index,
                        ))

        logger.debug(
            f"Chunked {source}: {result.parent_count} parents, "
            f"{result.child_count} children, {result.dropped} dropped"
        )
        return result

    def is_meaningful(self, text: str) -> bool:
        """
        Whether a child passage is worth indexing.

        A passage is kept if its normalised text (whitespace and punctuation
        stripped) reaches the minimum length, or if it contains a domain
        keyword.
        """
        if len(normalize_text(text)) >= self.config.min_meaningful_chars:
            return True
        return any(keyword in text for keyword in self.config.keywords)

    def _sub_sections(self, body: str) -> List[Tuple[Optional[str], str]]:
        preamble, subs = split_by_heading(body, SUB_HEADING_RE)
        units: List[Tuple[Optional[str], str]] = []
        if preamble:
            units.append((None, preamble))
        units.extend((sub_title or None, sub_body) for sub_title, sub_body in subs)
        return units

    def _parent_text(self, title: str, units: Sequence[Tuple[Optional[str], str]]) -> str:
        intro = ""
        for _, sub_body in units:
            paragraphs = split_paragraphs(sub_body)
            if paragraphs:
                intro = paragraphs[0][:self.config.parent_intro_chars].strip()
                break
        text = f"{title}\n{intro}" if intro else title
        return text[:self.config.max_chars]

    def _child_pieces(self, body: str) -> List[Tuple[str, str]]:
        paragraphs = split_paragraphs(body)
        if not paragraphs:
            return []
        if len(body) <= self.config.child_max_chars:
            return [("", paragraph) for paragraph in paragraphs]
        return pack_paragraph_pieces(paragraphs, self.config.child_max_chars, self.config.child_overlap)

    def _fit_ceiling(self, text: str) -> List[str]:
        if len(text) <= self.config.max_chars:
            return [text]
        return [piece for piece, _, _ in chunk_text(text, self.config.max_chars, self.config.overlap)]


def normalize_document(text: str) -> str:
    """Unify line endings, collapse 3+ newlines to one blank line, trim."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def split_by_heading(text: str, pattern: "re.Pattern") -> Tuple[str, List[Tuple[str, str]]]:
    """
    Split text at heading lines matching ``pattern``.

    Returns:
        Tuple of (text before the first heading, [(heading title, body), ...]).
        With no headings the whole text is the preamble.
    """
    matches = list(pattern.finditer(text))
    if not matches:
        return text.strip(), []

    preamble = text[:matches[0].start()].strip()
    sections = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        sections.append((match.group(1).strip(), text[match.end():end].strip()))
    return preamble, sections


def split_paragraphs(text: str) -> List[str]:
    """Blank-line separated paragraphs, stripped, empties removed."""
    return [p.strip() for p in PARAGRAPH_SPLIT_RE.split(text or "") if p.strip()]


def pack_paragraph_pieces(paragraphs: Iterable[str], max_chars: int, overlap: int) -> List[Tuple[str, str]]:
    """
    Greedily pack whole paragraphs into pieces of at most ``max_chars``.

    A paragraph longer than ``max_chars`` is hard-split into overlapping
    windows. Every packed piece after the first carries the last
    ``overlap`` characters of the piece before it as a separate prefix;
    windows of a hard-split paragraph already overlap and get no prefix.

    Args:
        paragraphs: Paragraph texts in reading order
        max_chars: Size cap for a packed piece (before the overlap prefix)
        overlap: Characters carried across piece boundaries

    Returns:
        (overlap prefix, piece text) pairs in reading order; the prefix
        is empty where none applies
    """
    pieces: List[Tuple[str, bool]] = []
    buffer: List[str] = []
    buffer_len = 0

    def flush():
        nonlocal buffer, buffer_len
        if buffer:
            pieces.append(("\n\n".join(buffer), False))
        buffer = []
        buffer_len = 0

    for paragraph in paragraphs:
        if len(paragraph) > max_chars:
            flush()
            windows = chunk_text(paragraph, chunk_size=max_chars, overlap=overlap)
            for i, (window, _, _) in enumerate(windows):
                pieces.append((window, i > 0))
            continue

        projected = buffer_len + (2 if buffer else 0) + len(paragraph)
        if buffer and projected > max_chars:
            flush()
            projected = len(paragraph)
        buffer.append(paragraph)
        buffer_len = projected

    flush()

    packed = []
    for i, (piece, already_overlapping) in enumerate(pieces):
        prefix = ""
        if i > 0 and overlap > 0 and not already_overlapping:
            prefix = pieces[i - 1][0][-overlap:].strip()
        packed.append((prefix, piece))
    return packed


def chunk_text(
    text: str,
    chunk_size: int = 900,
    overlap: int = 120,
) -> List[tuple]:
    """
    Split text into overlapping fixed-size windows.

    Returns windows with their character offsets; consecutive windows
    share at least ``overlap`` characters, so no text falls between them.

    Args:
        text: Text content to split
        chunk_size: Maximum size of each window in characters
        overlap: Overlap between windows in characters

    Returns:
        List of tuples: (window_content, start_offset, end_offset)
    """
    if not text:
        return []

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    if overlap < 0:
        raise ValueError("overlap must be non-negative")

    if overlap >= chunk_size:
        raise ValueError("overlap must be less than chunk_size")

    chunks = []
    text_len = len(text)

    start = 0
    while start < text_len:
        end = min(start + chunk_size, text_len)

        # Prefer a word boundary when the text has spaces (CJK text rarely does)
        if end < text_len:
            last_space = text.rfind(" ", start, end)
            if last_space - start > chunk_size // 2:
                end = last_space

        chunks.append((text[start:end], start, end))

        if end >= text_len:
            break

        start = max(start + 1, end - overlap)

    return chunks
