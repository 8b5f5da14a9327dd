"""
Unit tests for retrieval search.

Tests for:
- Cosine similarity scoring
- Redundancy filter
- Flat ranking and deterministic tie-breaking
- Hierarchical selection, document order and character budget
- Missing, empty and incompatible indexes
"""

import pytest
from unittest.mock import MagicMock, patch

from knowledge.contracts.knowledge_contracts import KnowledgeChunk
from knowledge.core.config import RetrievalConfig
from knowledge.core.exceptions import (
    EmptyQueryError,
    IndexCompatibilityError,
    IndexNotFoundError,
    KnowledgeConfigError,
)
from knowledge.providers.embedding_client import Embedder
from knowledge.retrieval.index_store import build_index
from knowledge.retrieval.search import (
    KnowledgeRetriever,
    cosine_similarity,
    is_redundant,
    score_chunks,
)


QUERY_VECTOR = [1.0, 0.0, 0.0]


def make_chunk(chunk_id, embedding, text, level=None, parent_id=None, order=None, title=None):
    return KnowledgeChunk(
        id=chunk_id,
        text=text,
        source="tiangan.txt",
        embedding=embedding,
        doc_id="bazi-0" if level is not None else None,
        group_id=None,
        parent_id=parent_id,
        level=level,
        title=title,
        order=order,
    )


def parent(chunk_id, embedding, text, order=0):
    return make_chunk(chunk_id, embedding, text, level=0, order=order, title=text.split("\n")[0])


def child(chunk_id, embedding, text, parent_id, order):
    return make_chunk(chunk_id, embedding, text, level=1, parent_id=parent_id, order=order)


HIERARCHY = [
    parent("bazi-0-0", [1.0, 0.0, 0.0], "甲木\n甲木参天，脱胎要火"),
    child("bazi-0-1", [0.2, 0.98, 0.0], "春不容金，秋不容土", "bazi-0-0", 1),
    child("bazi-0-2", [0.9, 0.44, 0.0], "火炽乘龙，水宕骑虎", "bazi-0-0", 2),
    child("bazi-0-3", [0.5, 0.87, 0.0], "地润天和，植立千古", "bazi-0-0", 3),
    child("bazi-0-4", [0.95, 0.31, 0.0], "庚金劈甲，引丁成器", "bazi-0-0", 4),
    child("bazi-0-5", [0.7, 0.71, 0.0], "木火通明，聪慧文秀", "bazi-0-0", 5),
    parent("bazi-0-6", [0.6, 0.8, 0.0], "乙木\n乙木虽柔，刲羊解牛", order=6),
    child("bazi-0-7", [1.0, 0.0, 0.0], "怀丁抱丙，跨凤乘猴", "bazi-0-6", 7),
    child("bazi-0-8", [0.9, 0.1, 0.0], "藤萝系甲，可春可秋", "bazi-0-6", 8),
    parent("bazi-0-9", [0.0, 0.0, 1.0], "丙火\n丙火猛烈，欺霜侮雪", order=9),
]


@pytest.fixture
def query_embedder():
    """Embedder stand-in returning a fixed query vector."""
    embedder = MagicMock(spec=Embedder)
    embedder.model = "m1"
    embedder.embed_query.return_value = QUERY_VECTOR
    return embedder


@pytest.fixture
def make_retriever(index_store, index_cache, query_embedder):
    """Factory saving an index for ``bazi`` and returning a retriever over it."""
    def _make(chunks=None, model="m1", **config):
        if chunks is not None:
            index_store.save(build_index("bazi", chunks, model))
        return KnowledgeRetriever(index_store, query_embedder, RetrievalConfig(**config), cache=index_cache)

    return _make


class TestCosineSimilarity:
    """Tests for the cosine_similarity function."""

    def test_identical_vectors(self):
        """Test similarity of identical vectors is 1.0."""
        vec = [1.0, 2.0, 3.0, 4.0]
        assert abs(cosine_similarity(vec, vec) - 1.0) < 1e-9

    def test_orthogonal_vectors(self):
        """Test similarity of orthogonal vectors is 0.0."""
        assert abs(cosine_similarity([1.0, 0.0, 0.0], [0.0, 1.0, 0.0])) < 1e-9

    def test_opposite_vectors(self):
        """Test similarity of opposite vectors is -1.0."""
        assert abs(cosine_similarity([1.0, 0.0], [-1.0, 0.0]) + 1.0) < 1e-9

    def test_different_vectors(self):
        """Test similarity of different vectors."""
        # cos(45°) ≈ 0.707
        assert 0.7 < cosine_similarity([1.0, 0.0, 0.0], [1.0, 1.0, 0.0]) < 0.72

    def test_empty_vector_error(self):
        """Test that empty vectors raise error."""
        with pytest.raises(ValueError, match="cannot be empty"):
            cosine_similarity([], [1.0])

    def test_dimension_mismatch_error(self):
        """Test that mismatched dimensions raise error."""
        with pytest.raises(ValueError, match="dimensions must match"):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])

    def test_zero_vector(self):
        """Test similarity with zero vector is 0."""
        assert cosine_similarity([1.0, 2.0, 3.0], [0.0, 0.0, 0.0]) == 0.0


class TestIsRedundant:
    """Tests for the redundancy filter."""

    def test_substring_either_way(self):
        assert is_redundant("甲木参天", ["甲木参天，脱胎要火"])
        assert is_redundant("甲木参天，脱胎要火。春不容金", ["脱胎要火"])

    def test_ignores_punctuation_and_space(self):
        assert is_redundant("甲木 参天！", ["甲木参天"])

    def test_high_bigram_overlap(self):
        base = "甲木参天脱胎要火春不容金秋不容土火炽乘龙水宕骑虎"
        variant = base[:-1] + "马"

        assert is_redundant(variant, [base])

    def test_distinct_text(self):
        assert not is_redundant("怀丁抱丙，跨凤乘猴", ["甲木参天，脱胎要火", "春不容金"])

    def test_nothing_selected(self):
        assert not is_redundant("甲木参天", [])


class TestScoreChunks:
    """Tests for score_chunks ordering."""

    def test_ties_broken_by_id(self):
        chunks = [
            make_chunk("b", [1.0, 0.0], "乙"),
            make_chunk("a", [1.0, 0.0], "甲"),
            make_chunk("c", [0.0, 1.0], "丙"),
        ]

        scored = score_chunks([1.0, 0.0], chunks)

        assert [c.id for c, _ in scored] == ["a", "b", "c"]

    def test_dimension_mismatch(self):
        with pytest.raises(IndexCompatibilityError):
            score_chunks([1.0, 0.0], [make_chunk("a", [1.0, 0.0, 0.0], "甲")])


class TestFlatRetrieval:
    """Tests for flat top-K retrieval."""

    def test_top_k_by_score(self, make_retriever):
        retriever = make_retriever(HIERARCHY, hierarchical=False)

        passages = retriever.retrieve("bazi", "甲木", top_k=3)

        assert [p.id for p in passages] == ["bazi-0-0", "bazi-0-7", "bazi-0-8"]
        assert passages[0].score == pytest.approx(1.0)
        assert passages[0].score >= passages[1].score >= passages[2].score

    def test_non_positive_top_k_clamped(self, make_retriever):
        retriever = make_retriever(HIERARCHY, hierarchical=False)

        assert len(retriever.retrieve("bazi", "甲木", top_k=0)) == 1
        assert len(retriever.retrieve("bazi", "甲木", top_k=-5)) == 1

    def test_default_top_k(self, make_retriever):
        retriever = make_retriever(HIERARCHY, hierarchical=False, top_k=2)

        assert len(retriever.retrieve("bazi", "甲木")) == 2

    def test_legacy_index(self, make_retriever):
        legacy = [make_chunk(f"bazi-{i}", [1.0, float(i), 0.0], f"第{i}段") for i in range(3)]
        retriever = make_retriever(legacy, hierarchical=False)

        passages = retriever.retrieve("bazi", "甲木", top_k=5)

        assert [p.id for p in passages] == ["bazi-0", "bazi-1", "bazi-2"]
        assert passages[0].level is None


class TestHierarchicalRetrieval:
    """Tests for hierarchical retrieval."""

    def test_sections_in_parent_score_order(self, make_retriever):
        retriever = make_retriever(HIERARCHY)

        passages = retriever.retrieve("bazi", "甲木")

        assert [p.id for p in passages] == ["bazi-0-0", "bazi-0-6"]
        assert passages[0].score == pytest.approx(1.0)
        assert passages[1].score == pytest.approx(0.6)
        assert all(p.level == 0 for p in passages)

    def test_children_in_document_order(self, make_retriever):
        """Top children by score are re-sorted into document order."""
        retriever = make_retriever(HIERARCHY)

        section = retriever.retrieve_hierarchical("bazi", "甲木", top_p=1, top_m=3)[0]

        assert section.child_ids == ["bazi-0-2", "bazi-0-4", "bazi-0-5"]
        assert section.text == "\n".join([
            "甲木\n甲木参天，脱胎要火",
            "火炽乘龙，水宕骑虎",
            "庚金劈甲，引丁成器",
            "木火通明，聪慧文秀",
        ])

    def test_top_k_sets_children_per_parent(self, make_retriever):
        retriever = make_retriever(HIERARCHY, top_p=1)

        assert len(retriever.retrieve("bazi", "甲木", top_k=4)[0].child_ids) == 4
        assert len(retriever.retrieve("bazi", "甲木", top_k=1)[0].child_ids) == 3
        assert len(retriever.retrieve("bazi", "甲木", top_k=50)[0].child_ids) == 5

    def test_top_p_clamped(self, make_retriever):
        retriever = make_retriever(HIERARCHY)

        assert len(retriever.retrieve_hierarchical("bazi", "甲木", top_p=0)) == 1
        assert len(retriever.retrieve_hierarchical("bazi", "甲木", top_p=10)) == 3

    def test_redundant_child_skipped_across_sections(self, make_retriever):
        chunks = HIERARCHY[:7] + [
            child("bazi-0-7", [1.0, 0.0, 0.0], "火炽乘龙，水宕骑虎。", "bazi-0-6", 7),
            child("bazi-0-8", [0.9, 0.1, 0.0], "藤萝系甲，可春可秋", "bazi-0-6", 8),
        ]
        retriever = make_retriever(chunks)

        passages = retriever.retrieve_hierarchical("bazi", "甲木", top_p=2, top_m=3)

        assert "bazi-0-2" in passages[0].child_ids
        assert passages[1].child_ids == ["bazi-0-8"]

    def test_budget_stops_before_overflowing_section(self, make_retriever):
        chunks = [
            parent("bazi-0-0", [1.0, 0.0, 0.0], "甲" * 300),
            child("bazi-0-1", [1.0, 0.1, 0.0], "子" * 60, "bazi-0-0", 1),
            child("bazi-0-2", [1.0, 0.2, 0.0], "丑" * 60, "bazi-0-0", 2),
            parent("bazi-0-3", [0.9, 0.1, 0.0], "乙" * 100, order=3),
        ]
        retriever = make_retriever(chunks)

        passages = retriever.retrieve_hierarchical("bazi", "甲木", top_p=2, max_chars=500)

        assert [p.id for p in passages] == ["bazi-0-0"]
        assert len(passages[0].text) == 300 + 61 + 61

    def test_budget_skips_children_that_do_not_fit(self, make_retriever):
        chunks = [
            parent("bazi-0-0", [1.0, 0.0, 0.0], "甲" * 300),
            child("bazi-0-1", [1.0, 0.1, 0.0], "子" * 150, "bazi-0-0", 1),
            child("bazi-0-2", [1.0, 0.2, 0.0], "丑" * 150, "bazi-0-0", 2),
        ]
        retriever = make_retriever(chunks)

        passages = retriever.retrieve_hierarchical("bazi", "甲木", max_chars=500)

        assert passages[0].child_ids == ["bazi-0-1"]
        assert len(passages[0].text) <= 500

    def test_budget_minimum(self, make_retriever):
        """Budgets below 500 are raised to 500."""
        chunks = [parent("bazi-0-0", [1.0, 0.0, 0.0], "甲" * 450)]
        retriever = make_retriever(chunks)

        assert len(retriever.retrieve_hierarchical("bazi", "甲木", max_chars=10)) == 1

    def test_flat_fallback_without_parents(self, make_retriever):
        legacy = [make_chunk(f"bazi-{i}", [1.0, float(i), 0.0], f"第{i}段") for i in range(3)]
        retriever = make_retriever(legacy, top_k=2)

        passages = retriever.retrieve("bazi", "甲木")

        assert [p.id for p in passages] == ["bazi-0", "bazi-1"]

    def test_flat_fallback_honours_caller_top_k(self, make_retriever):
        """The caller's top_k, not the configured one, sizes the flat fallback."""
        legacy = [make_chunk(f"bazi-{i}", [1.0, float(i), 0.0], f"第{i}段") for i in range(8)]
        retriever = make_retriever(legacy, top_k=5)

        assert [p.id for p in retriever.retrieve("bazi", "甲木", top_k=1)] == ["bazi-0"]
        assert len(retriever.retrieve("bazi", "甲木", top_k=8)) == 8
        assert len(retriever.retrieve("bazi", "甲木")) == 5


class TestRetrievalErrors:
    """Tests for missing, empty and incompatible indexes."""

    def test_empty_query(self, make_retriever, query_embedder):
        retriever = make_retriever(HIERARCHY)

        with pytest.raises(EmptyQueryError):
            retriever.retrieve("bazi", "   ")

        query_embedder.embed_query.assert_not_called()

    def test_missing_index_non_strict(self, make_retriever, query_embedder):
        retriever = make_retriever()

        assert retriever.retrieve("qimen", "值符") == []
        query_embedder.embed_query.assert_not_called()

    def test_path_like_board_rejected(self, make_retriever, query_embedder):
        retriever = make_retriever(HIERARCHY)

        with pytest.raises(KnowledgeConfigError, match="Invalid board name"):
            retriever.retrieve("../index/bazi", "甲木")

        query_embedder.embed_query.assert_not_called()

    def test_missing_index_strict(self, make_retriever):
        retriever = make_retriever()

        with pytest.raises(IndexNotFoundError) as exc_info:
            retriever.retrieve("qimen", "值符", strict=True)

        assert str(exc_info.value) == 'Knowledge index not found for "qimen". Run: knowledge-ingest qimen'

    def test_empty_index(self, make_retriever):
        retriever = make_retriever([])

        assert retriever.retrieve("bazi", "甲木", strict=True) == []

    def test_model_mismatch(self, make_retriever):
        retriever = make_retriever(HIERARCHY, model="other-model")

        with pytest.raises(IndexCompatibilityError, match="other-model"):
            retriever.retrieve("bazi", "甲木")

    def test_dimension_mismatch(self, make_retriever, query_embedder):
        query_embedder.embed_query.return_value = [1.0, 0.0]
        retriever = make_retriever(HIERARCHY)

        with pytest.raises(IndexCompatibilityError):
            retriever.retrieve("bazi", "甲木")

    def test_index_loaded_once(self, make_retriever, index_store):
        retriever = make_retriever(HIERARCHY)

        with patch.object(index_store, "load", wraps=index_store.load) as mock_load:
            retriever.retrieve("bazi", "甲木")
            retriever.retrieve("bazi", "乙木")

        assert mock_load.call_count == 1
