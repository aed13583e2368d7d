"""
Tome - Embedding Service Adapter
==================================
Thin async wrapper around a LangChain embedding model (Gemini by default).

When no API key is configured the adapter runs in **mock mode** and
returns pseudo-random vectors of the declared dimensionality.  The random
source is injectable so tests can tell mock vectors apart from real ones
and reproduce them.

Failures of the real service raise ``EmbeddingError``; whether to degrade
is decided by the caller (see ``QueryExpander``).
"""

from __future__ import annotations

import random
from typing import Protocol, runtime_checkable

from tome.config.settings import settings
from tome.src.core.errors import EmbeddingError
from tome.src.utils.logger import get_logger

logger = get_logger(__name__)

EmbeddingVector = list[float]


@runtime_checkable
class Embedder(Protocol):
    """Structural type for any LangChain-compatible async embedding model."""

    async def aembed_query(self, text: str) -> list[float]: ...


class EmbeddingService:
    """
    Produce embedding vectors for query text.

    Parameters
    ----------
    embedder
        A LangChain embedding model.  ``None`` enables mock mode.
    dimension
        Declared dimensionality; defaults to ``settings.EMBEDDING_DIMENSION``.
    rng
        Random source for mock vectors.
    """

    __slots__ = ("_embedder", "_dimension", "_rng")

    def __init__(self, embedder: Embedder | None = None, dimension: int | None = None, rng: random.Random | None = None) -> None:
        self._embedder = embedder
        self._dimension = dimension or settings.EMBEDDING_DIMENSION
        self._rng = rng or random.Random()


    @property
    def is_mock(self) -> bool:
        return self._embedder is None


    @property
    def dimension(self) -> int:
        return self._dimension


    async def embed(self, text: str) -> EmbeddingVector:
        """
        Embed *text*.

        Raises
        ------
        ValueError
            If *text* is empty or whitespace.
        EmbeddingError
            If the embedding service call fails.
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text.")

        if self._embedder is None:
            logger.debug("[EMBED] Mock mode — returning random %d-dim vector.", self._dimension)
            return [self._rng.random() * 2 - 1 for _ in range(self._dimension)]

        try:
            vector = await self._embedder.aembed_query(text)
        except Exception as exc:
            logger.error("[EMBED] Embedding service call failed: %s", exc)
            raise EmbeddingError("Failed to generate embedding") from exc

        return [float(v) for v in vector]


def create_embedding_service() -> EmbeddingService:
    """Build the service from settings; mock mode without ``GOOGLE_API_KEY``."""
    api_key = settings.google_api_key
    if api_key is None:
        logger.warning("GOOGLE_API_KEY not set — embeddings run in mock mode.")
        return EmbeddingService()

    from langchain_google_genai import GoogleGenerativeAIEmbeddings

    embedder = GoogleGenerativeAIEmbeddings(model=settings.EMBEDDING_MODEL, google_api_key=api_key)
    logger.info("Embedding model initialised: %s", settings.EMBEDDING_MODEL)
    return EmbeddingService(embedder)
