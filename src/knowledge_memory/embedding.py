"""Embedding gateway for the knowledge memory core.

Wraps the external "text -> fixed-length vector" capability behind a single
boundary that truncates inputs, batches requests, and isolates per-item
failures so one bad input never aborts its siblings.

Two providers are shipped:
- ``SentenceTransformerProvider``: local model, lazy-loaded on first use
- ``OpenAICompatibleEmbeddingProvider``: remote ``/embeddings`` endpoint
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx
import numpy as np
from loguru import logger

from .config import EmbeddingConfig
from .exceptions import UpstreamUnavailableError

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that turns text into a vector."""

    async def embed(self, text: str) -> list[float]:
        """Embed a single text. May raise on failure."""
        ...


class SentenceTransformerProvider:
    """Local embedding provider using sentence-transformers.

    Features:
    - Lazy model loading (only when first embedding is requested)
    - Encoding runs in a worker thread to keep the event loop responsive
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        """Initialize the provider.

        Args:
            config: Embedding configuration
        """
        self._config = config or EmbeddingConfig()
        self._model: SentenceTransformer | None = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for the local embedding "
                "provider. Install with: pip install knowledge-memory[local]"
            )

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        # Update dimension from actual model
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode texts into normalized embedding vectors."""
        if not texts:
            return []

        self._ensure_model()

        embeddings: np.ndarray = self._model.encode(
            texts, batch_size=32, show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    async def embed(self, text: str) -> list[float]:
        results = await asyncio.to_thread(self.encode, [text])
        return results[0] if results else []


class OpenAICompatibleEmbeddingProvider:
    """Remote embedding provider speaking the OpenAI ``/embeddings`` API."""

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config or EmbeddingConfig(provider="api")
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self._config.api_key:
                headers["Authorization"] = f"Bearer {self._config.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._config.api_base_url.rstrip("/"),
                headers=headers,
                timeout=self._config.timeout_seconds,
            )
        return self._client

    async def embed(self, text: str) -> list[float]:
        client = self._get_client()
        try:
            response = await client.post(
                "/embeddings",
                json={"model": self._config.model, "input": text},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("embedding", str(e)) from e

        try:
            return [float(x) for x in payload["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamUnavailableError(
                "embedding", f"unexpected response shape: {e}"
            ) from e

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def build_embedding_provider(
    config: EmbeddingConfig,
) -> EmbeddingProvider | None:
    """Create the provider named by ``config.provider`` ("none" -> None)."""
    if config.provider == "local":
        return SentenceTransformerProvider(config)
    if config.provider == "api":
        return OpenAICompatibleEmbeddingProvider(config)
    if config.provider != "none":
        logger.warning(
            f"Unknown embedding provider {config.provider!r}, "
            f"embeddings disabled"
        )
    return None


class EmbeddingGateway:
    """Failure-isolating front for an embedding provider.

    Every call returns ``None`` instead of raising when the provider is
    missing, slow, or broken; callers treat ``None`` as "no vector".
    """

    def __init__(
        self,
        provider: EmbeddingProvider | None,
        config: EmbeddingConfig | None = None,
    ):
        self._provider = provider
        self._config = config or EmbeddingConfig()
        if provider is None:
            logger.warning(
                "EmbeddingGateway: no provider configured - embeddings "
                "disabled, retrieval falls back to non-vector signals"
            )

    @property
    def enabled(self) -> bool:
        return self._provider is not None

    async def embed(self, text: str) -> list[float] | None:
        """Embed one text, truncated to the provider's input limit."""
        if self._provider is None:
            return None

        truncated = text[: self._config.max_input_chars]
        try:
            vector = await asyncio.wait_for(
                self._provider.embed(truncated),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Embedding timed out after {self._config.timeout_seconds}s "
                f"({len(truncated)} chars)"
            )
            return None
        except Exception as e:
            logger.warning(f"Embedding generation failed: {e}")
            return None

        if not vector:
            return None
        return list(vector)

    async def embed_batch(self, texts: list[str]) -> list[list[float] | None]:
        """Embed many texts; one result per input, order preserved.

        Requests are issued in slices of ``batch_size`` so the remote service
        never sees more than that many concurrent calls.
        """
        if not texts:
            return []
        if self._provider is None:
            return [None] * len(texts)

        batch_size = max(1, self._config.batch_size)
        results: list[list[float] | None] = []
        for start in range(0, len(texts), batch_size):
            batch = texts[start : start + batch_size]
            results.extend(
                await asyncio.gather(*(self.embed(text) for text in batch))
            )

        failed = sum(1 for r in results if r is None)
        if failed:
            logger.info(f"Embedded {len(texts) - failed}/{len(texts)} texts")
        return results

    async def aclose(self) -> None:
        closer = getattr(self._provider, "aclose", None)
        if closer is not None:
            await closer()

    @staticmethod
    def cosine_similarity(
        a: list[float] | None, b: list[float] | None
    ) -> float:
        """Cosine similarity; 0.0 for missing, mismatched or zero vectors."""
        if not a or not b or len(a) != len(b):
            return 0.0
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
        denominator = float(np.linalg.norm(va) * np.linalg.norm(vb))
        if denominator == 0.0:
            return 0.0
        return float(np.dot(va, vb) / denominator)
