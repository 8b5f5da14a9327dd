"""
Core Utilities - Shared vector and text helpers for the knowledge module.
"""

import math
import re
from typing import List, Sequence, Set


_WHITESPACE_RE = re.compile(r"\s+")
_NON_CONTENT_RE = re.compile(r"[^\u4e00-\u9fffA-Za-z0-9]")


def normalize_vector(vector: Sequence[float]) -> List[float]:
    """
    Scale a vector to unit L2 norm.

    A zero vector is returned unchanged (as a new list).

    Example:
        >>> normalize_vector([3.0, 4.0])
        [0.6, 0.8]
    """
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return [float(v) for v in vector]
    return [v / norm for v in vector]


def dot_product(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """
    Dot product of two equal-length vectors.

    Raises:
        ValueError: If vectors have different dimensions
    """
    if len(vec_a) != len(vec_b):
        raise ValueError(f"Vector dimensions must match: {len(vec_a)} != {len(vec_b)}")
    return sum(a * b for a, b in zip(vec_a, vec_b))


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Args:
        vec_a: First vector
        vec_b: Second vector

    Returns:
        Cosine similarity score between -1 and 1

    Raises:
        ValueError: If vectors have different dimensions or are empty
    """
    if not vec_a or not vec_b:
        raise ValueError("Vectors cannot be empty")

    dot = dot_product(vec_a, vec_b)
    magnitude_a = math.sqrt(sum(a * a for a in vec_a))
    magnitude_b = math.sqrt(sum(b * b for b in vec_b))

    if magnitude_a == 0 or magnitude_b == 0:
        return 0.0

    return dot / (magnitude_a * magnitude_b)


def normalize_text(text: str) -> str:
    """
    Reduce text to its content characters for comparison.

    Strips whitespace and punctuation, keeping CJK ideographs, ASCII letters
    and digits, and lowercases the result.

    Example:
        >>> normalize_text("甲木， 参天！ Tree-1")
        '甲木参天tree1'
    """
    collapsed = _WHITESPACE_RE.sub("", text)
    return _NON_CONTENT_RE.sub("", collapsed).lower()


def collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace to single spaces and trim."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def build_bigrams(text: str) -> Set[str]:
    """Set of adjacent character pairs in ``text``."""
    return {text[i:i + 2] for i in range(len(text) - 1)}


def jaccard_similarity(set_a: Set[str], set_b: Set[str]) -> float:
    """Jaccard index of two sets; 0.0 when both are empty."""
    union = len(set_a | set_b)
    if union == 0:
        return 0.0
    return len(set_a & set_b) / union

