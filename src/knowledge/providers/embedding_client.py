"""
Embedding provider clients.

Thin HTTP clients for batch embedding endpoints. Each provider wire shape
is one ``EmbeddingProvider`` subclass; the configured provider is chosen
once, at construction time, by ``create_provider``.

Supported shapes:
- ``openai``: POST {base}/v1/embeddings, ``{"model", "input": [...]}`` →
  ``{"data": [{"embedding": [...]}, ...]}``
- ``dashscope``: POST {base}/api/v1/services/embeddings/text-embedding/text-embedding,
  ``{"model", "input": {"texts": [...]}}`` →
  ``{"output": {"embeddings": [{"embedding": [...]}, ...]}}``
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import requests

from ..core.config import (
    PROVIDER_DASHSCOPE,
    PROVIDER_OPENAI,
    EmbeddingConfig,
)
from ..core.exceptions import (
    EmbeddingLengthMismatchError,
    EmbeddingResponseError,
    EmbeddingTransportError,
    EmptyQueryError,
    KnowledgeConfigError,
)
from ..core.utils import normalize_vector


logger = logging.getLogger(__name__)

# Error bodies are echoed into exception messages; keep them short
MAX_ERROR_BODY_CHARS = 500


class EmbeddingProvider(ABC):
    """
    Batch embedding capability for one provider wire shape.

    Stateless apart from the HTTP session: ``embed_batch`` maps N strings
    to N raw vectors, in order, or raises.

    Example:
        >>> provider = create_provider(EmbeddingConfig(api_key="sk-...", model="text-embedding-v3"))
        >>> vectors = provider.embed_batch(["甲木参天", "乙木花草"])
    """

    name: str = "base"

    def __init__(self, config: EmbeddingConfig, session: Optional[requests.Session] = None):
        """
        Initialize the provider.

        Args:
            config: Embedding settings (validated here)
            session: Optional requests session, mainly for tests

        Raises:
            KnowledgeConfigError: If credentials or model are missing
        """
        config.validate()
        self.config = config
        self.model = config.model
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout_seconds
        self.session = session or requests.Session()

        logger.debug(
            f"Initialized {type(self).__name__}: base_url={self.base_url}, model={self.model}"
        )

    @property
    def endpoint_url(self) -> str:
        return f"{self.base_url}{self._endpoint_path()}"

    @abstractmethod
    def _endpoint_path(self) -> str:
        """Provider-specific path appended to the base URL."""

    @abstractmethod
    def _build_payload(self, texts: List[str]) -> Dict[str, Any]:
        """Request body for a batch of texts."""

    @abstractmethod
    def _extract_items(self, body: Dict[str, Any]) -> List[Any]:
        """Pull the list of per-input embedding items out of a response body."""

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed a batch of strings.

        Args:
            texts: Non-empty strings, at most one provider batch

        Returns:
            One raw vector per input, in input order

        Raises:
            EmbeddingTransportError: Connection failure or non-success status
            EmbeddingResponseError: Body is not JSON or lacks the vector fields
            EmbeddingLengthMismatchError: Vector count differs from input count
        """
        texts = list(texts)
        body = self._post(self._build_payload(texts))

        try:
            items = self._extract_items(body)
        except (AttributeError, KeyError, TypeError) as e:
            raise EmbeddingResponseError(
                f"{self.name} embedding response is malformed: {e}",
                provider=self.name,
            )
        if not isinstance(items, list):
            raise EmbeddingResponseError(
                f"{self.name} embedding response has no embedding list",
                provider=self.name,
            )

        if len(items) != len(texts):
            raise EmbeddingLengthMismatchError(
                f"{self.name} returned {len(items)} embeddings for {len(texts)} inputs",
                provider=self.name,
                expected=len(texts),
                received=len(items),
            )

        return [self._parse_vector(item) for item in self._in_input_order(items)]

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self.endpoint_url
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

        logger.debug(f"Making embedding request to {url} with model {self.model}")

        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name} embeddings: {e}")
            raise EmbeddingTransportError(
                f"Failed to connect to {self.name} at {self.base_url}: {e}",
                provider=self.name,
            )

        if not response.ok:
            error_body = (response.text or "")[:MAX_ERROR_BODY_CHARS]
            logger.error(f"HTTP error from {self.name} embeddings: {response.status_code} - {error_body}")
            raise EmbeddingTransportError(
                f"{self.name} embedding API error: {response.status_code} - "
                f"{error_body or 'Embedding request failed.'}",
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON response from {self.name} embeddings: {e}")
            raise EmbeddingResponseError(
                f"Invalid JSON response from {self.name} embeddings: {e}",
                provider=self.name,
            )
        if not isinstance(body, dict):
            raise EmbeddingResponseError(
                f"{self.name} embedding response is not a JSON object",
                provider=self.name,
            )
        return body

    def _in_input_order(self, items: List[Any]) -> List[Any]:
        # Both shapes may carry an explicit position field
        keys = [item.get(self._index_field()) if isinstance(item, dict) else None for item in items]
        if all(isinstance(k, int) for k in keys) and sorted(keys) == list(range(len(items))):
            return [item for _, item in sorted(zip(keys, items), key=lambda pair: pair[0])]
        return items

    def _index_field(self) -> str:
        return "index"

    def _parse_vector(self, item: Any) -> List[float]:
        vector = item.get("embedding") if isinstance(item, dict) else None
        if not isinstance(vector, list) or not vector:
            raise EmbeddingResponseError(
                f"{self.name} embedding item has no vector",
                provider=self.name,
            )
        try:
            return [float(v) for v in vector]
        except (TypeError, ValueError):
            raise EmbeddingResponseError(
                f"{self.name} embedding vector contains non-numeric values",
                provider=self.name,
            )

    def close(self) -> None:
        """Close the HTTP session."""
        if self.session:
            self.session.close()


class OpenAICompatibleProvider(EmbeddingProvider):
    """Generic batch-embeddings shape (``data[].embedding``)."""

    name = PROVIDER_OPENAI

    def _endpoint_path(self) -> str:
        return "/v1/embeddings"

    def _build_payload(self, texts: List[str]) -> Dict[str, Any]:
        return {"model": self.model, "input": texts}

    def _extract_items(self, body: Dict[str, Any]) -> List[Any]:
        return body["data"]


class DashScopeProvider(EmbeddingProvider):
    """DashScope text-embedding shape (``output.embeddings[].embedding``)."""

    name = PROVIDER_DASHSCOPE

    def _endpoint_path(self) -> str:
        return "/api/v1/services/embeddings/text-embedding/text-embedding"

    def _build_payload(self, texts: List[str]) -> Dict[str, Any]:
        return {"model": self.model, "input": {"texts": texts}}

    def _extract_items(self, body: Dict[str, Any]) -> List[Any]:
        return body["output"]["embeddings"]

    def _index_field(self) -> str:
        return "text_index"


PROVIDER_CLASSES = {
    PROVIDER_OPENAI: OpenAICompatibleProvider,
    PROVIDER_DASHSCOPE: DashScopeProvider,
}


def create_provider(config: EmbeddingConfig, session: Optional[requests.Session] = None) -> EmbeddingProvider:
    """
    Build the provider selected by ``config.provider``.

    Raises:
        KnowledgeConfigError: If the provider name is unknown or settings are missing
    """
    provider_cls = PROVIDER_CLASSES.get(config.provider)
    if provider_cls is None:
        raise KnowledgeConfigError(
            f"Unknown embedding provider {config.provider!r}; "
            f"expected one of {', '.join(sorted(PROVIDER_CLASSES))}"
        )
    return provider_cls(config, session=session)


class Embedder:
    """
    Batching, normalising facade over an ``EmbeddingProvider``.

    Batches are issued strictly one after another. Any failing batch
    aborts the whole call.
    """

    def __init__(self, provider: EmbeddingProvider, batch_size: Optional[int] = None):
        self.provider = provider
        self.batch_size = max(1, batch_size or provider.config.effective_batch_size)

    @property
    def model(self) -> str:
        return self.provider.model

    def embed_texts(self, texts: Sequence[str], normalize: bool = True) -> List[List[float]]:
        """
        Embed any number of texts in sequential provider batches.

        Args:
            texts: Non-empty strings
            normalize: Scale each vector to unit length (pass False to keep
                raw provider vectors, e.g. for persistence)

        Returns:
            One vector per input, in input order

        Raises:
            ValueError: If any input is empty
            EmbeddingProviderError: If any batch fails
        """
        texts = list(texts)
        if any(not text or not text.strip() for text in texts):
            raise ValueError("Embedding inputs must be non-empty strings")

        vectors: List[List[float]] = []
        total = len(texts)
        for start in range(0, total, self.batch_size):
            batch = texts[start:start + self.batch_size]
            batch_vectors = self.provider.embed_batch(batch)
            vectors.extend(batch_vectors)
            logger.info(f"Embedded {min(start + self.batch_size, total)} / {total}")

        dimensions = {len(v) for v in vectors}
        if len(dimensions) > 1:
            raise EmbeddingResponseError(
                f"{self.provider.name} returned vectors of differing dimensions: {sorted(dimensions)}",
                provider=self.provider.name,
            )

        if normalize:
            return [normalize_vector(v) for v in vectors]
        return vectors

    def embed_query(self, query: str) -> List[float]:
        """
        Embed a single query and return its unit-normalised vector.

        Raises:
            EmptyQueryError: If the query is empty (no provider call is made)
        """
        if not query or not query.strip():
            raise EmptyQueryError()
        [vector] = self.embed_texts([query.strip()], normalize=True)
        return vector


def create_embedder(config: EmbeddingConfig, session: Optional[requests.Session] = None) -> Embedder:
    """Provider plus batching facade from one config."""
    return Embedder(create_provider(config, session=session), batch_size=config.effective_batch_size)
