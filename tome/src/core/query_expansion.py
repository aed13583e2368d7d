"""
Tome - Query Expansion & Enhanced Embedding
=============================================
Broadens a user query with domain terms and blends the two embeddings.

Algorithm (``enhanced_embedding``)
----------------------------------
1. ``expanded = expand_query(query)``
2. ``e0 = embed(query)``
3. expansion unchanged → return ``e0``
4. ``e1 = embed(expanded)``
5. ``c = 0.7·e0 + 0.3·e1``  (the original query dominates to avoid drift)
6. ``c / ‖c‖₂``, or ``e0`` unmodified when ``‖c‖₂ == 0``

Any failure in steps 2–6 falls back to a plain ``embed(query)``.
"""

from __future__ import annotations

import time

import numpy as np

from tome.config.prompt_templates import QUERY_EXPANSION_PROMPT
from tome.src.services.completion import CompletionService
from tome.src.services.embeddings import EmbeddingService, EmbeddingVector
from tome.src.utils.logger import get_logger
from tome.src.utils.text_utils import normalize_text

logger = get_logger(__name__)

QUERY_WEIGHT = 0.7
EXPANSION_WEIGHT = 0.3
EXPANSION_SEPARATOR = " + "


class QueryExpander:
    """
    Parameters
    ----------
    embeddings
        Adapter used for both the original and the expanded query.
    completion
        Adapter used to ask for the extra domain terms.
    """

    __slots__ = ("_embeddings", "_completion")

    def __init__(self, embeddings: EmbeddingService, completion: CompletionService) -> None:
        self._embeddings = embeddings
        self._completion = completion


    async def expand_query(self, query: str) -> str:
        """
        Return ``"<query> + <terms>"``, or *query* unchanged on any failure.
        """
        if self._completion.is_mock:
            return query

        try:
            reply = await self._completion.complete(QUERY_EXPANSION_PROMPT, [], query)
        except Exception:
            logger.warning("[EXPAND] Expansion call failed — using the original query.", exc_info=True)
            return query

        return self._format_expansion(query, reply)


    @staticmethod
    def _format_expansion(query: str, reply: str) -> str:
        line = normalize_text(reply.splitlines()[0] if reply.strip() else "")
        if not line:
            return query

        if line.startswith(query):
            additions = line[len(query):].strip()
        else:
            # model sent only the additions
            additions = line
        additions = additions.lstrip("+").strip()

        if not additions:
            return query
        return f"{query}{EXPANSION_SEPARATOR}{additions}"


    async def enhanced_embedding(self, query: str) -> EmbeddingVector:
        """Blend the query and expanded-query embeddings into one unit vector."""
        t_start = time.perf_counter()
        expanded = await self.expand_query(query)
        logger.info("[EXPAND] '%s' → '%s'", query[:50], expanded[:80])

        try:
            e0 = await self._embeddings.embed(query)
            if expanded == query:
                return e0

            e1 = await self._embeddings.embed(expanded)
            combined = self._combine(e0, e1)
        except Exception:
            logger.warning("[EXPAND] Enhanced embedding failed — falling back to a plain embedding.", exc_info=True)
            return await self._embeddings.embed(query)

        logger.debug("[EXPAND] Enhanced embedding in %.1fms", (time.perf_counter() - t_start) * 1000)
        return combined


    @staticmethod
    def _combine(e0: EmbeddingVector, e1: EmbeddingVector) -> EmbeddingVector:
        a = np.asarray(e0, dtype=np.float64)
        b = np.asarray(e1, dtype=np.float64)
        if a.shape != b.shape:
            raise ValueError(f"Embedding dimension mismatch: {a.shape} vs {b.shape}")

        combined = QUERY_WEIGHT * a + EXPANSION_WEIGHT * b
        norm = float(np.linalg.norm(combined))
        if norm == 0.0 or not np.isfinite(norm):
            logger.warning("[EXPAND] Degenerate combined vector — returning the original embedding.")
            return e0
        return (combined / norm).tolist()
