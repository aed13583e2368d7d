"""
Tome - Retrieval & Context Assembler
======================================
Turns a query vector into the grounding section of the system prompt.

``retrieve``               vector index top-k (service-ranked)
``build_context``          strict ``score > threshold`` filter, ``\\n\\n`` join
``extract_topics_entities``  one JSON-mode completion, soft-fails to empty
``compose_system_prompt``  deterministic template; empty sections omitted
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from tome.config.prompt_templates import CLOSING_PROMPT, CONTEXT_SECTION_TEMPLATE, ENTITIES_LINE_TEMPLATE, PERSONA_PROMPT, PERSONALIZATION_SECTION_TEMPLATE, TOPIC_EXTRACTION_PROMPT, TOPICS_LINE_TEMPLATE
from tome.config.settings import settings
from tome.src.core.models import RetrievalMatch, TopicsEntities
from tome.src.services.completion import CompletionService
from tome.src.utils.logger import get_logger
from tome.src.utils.text_utils import parse_json_object, string_list

logger = get_logger(__name__)

SECTION_SEPARATOR = "\n\n"


class VectorQuery(Protocol):
    async def query(self, vector: list[float], k: int = 5, include_metadata: bool = True) -> list[RetrievalMatch]: ...


def build_context(matches: Sequence[RetrievalMatch], threshold: float | None = None) -> str:
    """
    Join the text of every match scoring strictly above *threshold*.

    Matches without a score are dropped.  Ranked order is preserved.
    """
    limit = settings.RELEVANCE_THRESHOLD if threshold is None else threshold
    kept = [m.metadata_text for m in matches if m.score is not None and m.score > limit and m.metadata_text]
    logger.debug("[RETRIEVE] %d/%d match(es) above %.2f.", len(kept), len(matches), limit)
    return SECTION_SEPARATOR.join(kept)


def compose_system_prompt(context: str, topics: Sequence[str], entities: Sequence[str], personalization: str) -> str:
    """Assemble the system prompt; sections with no content are left out."""
    sections: list[str] = [PERSONA_PROMPT]

    if context.strip():
        sections.append(CONTEXT_SECTION_TEMPLATE.format(context=context))
    if topics:
        sections.append(TOPICS_LINE_TEMPLATE.format(topics=", ".join(topics)))
    if entities:
        sections.append(ENTITIES_LINE_TEMPLATE.format(entities=", ".join(entities)))
    if personalization.strip():
        sections.append(PERSONALIZATION_SECTION_TEMPLATE.format(personalization=personalization))

    sections.append(CLOSING_PROMPT)
    return SECTION_SEPARATOR.join(sections)


class ContextAssembler:
    """
    Parameters
    ----------
    index
        Anything with ``VectorIndex.query``'s signature.
    completion
        Used for topic / entity extraction.
    """

    __slots__ = ("_index", "_completion")

    def __init__(self, index: VectorQuery, completion: CompletionService) -> None:
        self._index = index
        self._completion = completion


    async def retrieve(self, vector: list[float], k: int | None = None) -> list[RetrievalMatch]:
        """Top-*k* matches, descending score.  Index errors propagate."""
        return await self._index.query(vector, k or settings.RETRIEVAL_TOP_K, include_metadata=True)


    async def extract_topics_entities(self, text: str) -> TopicsEntities:
        """Ask the model for ``{entities, topics}``; empty lists on any failure."""
        if not text.strip() or self._completion.is_mock:
            return TopicsEntities()

        try:
            reply = await self._completion.complete(TOPIC_EXTRACTION_PROMPT, [], text)
        except Exception:
            logger.warning("[RETRIEVE] Topic extraction call failed.", exc_info=True)
            return TopicsEntities()

        result = parse_json_object(reply)
        if not result.ok:
            logger.warning("[RETRIEVE] Could not parse topic extraction reply: %s", result.error)
            return TopicsEntities()

        value = result.value or {}
        return TopicsEntities(entities=string_list(value.get("entities")), topics=string_list(value.get("topics")))
