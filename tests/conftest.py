"""
Shared test fixtures and configuration for pytest.
"""

import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from knowledge.core.config import EmbeddingConfig, KnowledgeSettings
from knowledge.core.exceptions import EmbeddingTransportError
from knowledge.core.utils import normalize_text
from knowledge.providers.embedding_client import Embedder, EmbeddingProvider
from knowledge.retrieval.index_store import IndexCache, IndexStore


logger = logging.getLogger(__name__)


FAKE_MODEL = "fake-embed"
FAKE_DIMENSION = 256


# ============================================================================
# Fake embedding provider
# ============================================================================

class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic offline provider.

    Each content character (after ``normalize_text``) adds 1.0 to bucket
    ``ord(ch) % dimension``, so texts sharing characters score high.

    Set ``fail_on_batch`` to make the n-th call (1-based) raise a transport
    error.
    """

    name = "fake"

    def __init__(
        self,
        model: str = FAKE_MODEL,
        dimension: int = FAKE_DIMENSION,
        fail_on_batch: Optional[int] = None,
    ):
        super().__init__(EmbeddingConfig(api_key="test-key", model=model, batch_size=4))
        self.dimension = dimension
        self.fail_on_batch = fail_on_batch
        self.calls: List[List[str]] = []

    def _endpoint_path(self) -> str:
        return "/fake"

    def _build_payload(self, texts):
        return {"texts": texts}

    def _extract_items(self, body):
        return body["items"]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_on_batch is not None and len(self.calls) == self.fail_on_batch:
            raise EmbeddingTransportError("fake provider unavailable", provider=self.name, status_code=503)
        return [self.vectorize(text) for text in texts]

    def vectorize(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        for ch in normalize_text(text):
            vector[ord(ch) % self.dimension] += 1.0
        return vector


# ============================================================================
# Sample documents
# ============================================================================

JIA_PARAGRAPHS = [
    "甲木参天，脱胎要火。春不容金，秋不容土。火炽乘龙，水宕骑虎。地润天和，植立千古。",
    "甲木为阳木，其性刚健，喜得庚金雕琢成器，又喜丁火泄秀，木火通明者多主聪慧文采。",
    "甲木生于春月，木旺得令，宜见庚金修剪，再得丁火制金，方成栋梁之材，不宜水多漂浮。",
]

YI_PHRASE = "乙木虽柔，刲羊解牛，怀丁抱丙，跨凤乘猴，虚湿之地，骑马亦忧，藤萝系甲，可春可秋。"


def build_sample_document() -> str:
    """One document: section 甲 with three short paragraphs, section 乙 with one long paragraph."""
    jia = "\n\n".join(JIA_PARAGRAPHS)
    yi = YI_PHRASE * 30
    return f"### 甲\n{jia}\n\n### 乙\n{yi}\n"


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "e2e: End-to-end ingestion and retrieval on temporary data")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    """Fixture providing a fresh fake provider."""
    return FakeEmbeddingProvider()


@pytest.fixture
def embedder(fake_provider) -> Embedder:
    """Embedder over the fake provider with a batch size of 4."""
    return Embedder(fake_provider, batch_size=4)


@pytest.fixture
def data_dir(tmp_path) -> Path:
    """Temporary data root (``knowledge/`` and ``index/`` live below it)."""
    root = tmp_path / "data"
    root.mkdir()
    return root


@pytest.fixture
def settings(data_dir) -> KnowledgeSettings:
    """Settings pointing at the temporary data root and the fake model."""
    return KnowledgeSettings(
        data_dir=data_dir,
        embedding=EmbeddingConfig(api_key="test-key", model=FAKE_MODEL),
    )


@pytest.fixture
def index_store(settings) -> IndexStore:
    return IndexStore(settings.index_dir)


@pytest.fixture
def index_cache() -> IndexCache:
    """A fresh cache so tests never share loaded indexes."""
    return IndexCache()


@pytest.fixture
def write_board_docs(settings):
    """
    Fixture returning a helper that writes documents for a board.

    Usage:
        write_board_docs("bazi", {"tiangan.txt": "### 甲\\n..."})
    """
    def _write(board: str, documents: Dict[str, str]) -> Path:
        board_dir = settings.board_dir(board)
        for name, content in documents.items():
            path = board_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return board_dir

    return _write


@pytest.fixture
def sample_document() -> str:
    return build_sample_document()


@pytest.fixture
def make_provider():
    """Factory for fake providers with custom model, dimension or failure point."""
    def _make(**kwargs) -> FakeEmbeddingProvider:
        return FakeEmbeddingProvider(**kwargs)

    return _make
