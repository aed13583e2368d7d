"""
Tome - RAG Engine
==================
Orchestrates one question/answer exchange.

Architecture
------------
``QueryExpander``
    Expansion + blended query embedding (``query_expansion.py``).
``ContextAssembler``
    Vector retrieval, threshold filtering, topic/entity extraction and
    system-prompt composition (``retrieval.py``).
``PersonalizationEngine``
    Helpful-answer snapshot for the current identity.
``ConversationService``
    Active conversation + persistence through the current repository.

``RAGManager.submit`` flow:
    1. Reject if a submission is already in flight.
    2. Enhanced embedding (expansion, blend, normalise).
    3. Retrieve top-k → build context (score > threshold).
    4. Topic / entity extraction on the question.
    5. Personalization snapshot.
    6. Compose system prompt.
    7. One completion call with the conversation history.
    8. Append the exchange and persist it.

Retrieval, extraction and personalization degrade to empty sections when
their services fail.  Only the final completion call surfaces an error
(``CompletionError`` with a user-safe message).  Persistence errors
propagate as ``PersistenceFailure`` with the active conversation unchanged.

Usage:
    rag = RAGManager(expander, assembler, completion, conversations, personalization)
    conversation = await rag.submit("What is nongenetic information?")
"""

from __future__ import annotations

import time

from tome.src.core.conversations import ConversationService
from tome.src.core.errors import ServiceUnavailable, SubmissionInProgress, TomeError
from tome.src.core.models import ChatMessage, Conversation
from tome.src.core.personalization import PersonalizationEngine
from tome.src.core.query_expansion import QueryExpander
from tome.src.core.retrieval import ContextAssembler, build_context, compose_system_prompt
from tome.src.services.completion import CompletionService
from tome.src.utils.logger import get_logger
from tome.src.utils.text_utils import normalize_text

logger = get_logger(__name__)


class RAGManager:
    """
    Parameters
    ----------
    expander
        Produces the retrieval vector.
    assembler
        Retrieval + prompt building.
    completion
        Generation service for the final answer.
    conversations
        Active conversation state and persistence.
    personalization
        Helpful-answer snapshot.
    """

    __slots__ = ("_expander", "_assembler", "_completion", "_conversations", "_personalization", "_in_flight")

    def __init__(self, expander: QueryExpander, assembler: ContextAssembler, completion: CompletionService, conversations: ConversationService, personalization: PersonalizationEngine) -> None:
        self._expander = expander
        self._assembler = assembler
        self._completion = completion
        self._conversations = conversations
        self._personalization = personalization
        self._in_flight = False


    @property
    def busy(self) -> bool:
        return self._in_flight


    async def submit(self, user_text: str) -> Conversation:
        """
        Answer *user_text* within the active conversation and persist the exchange.

        Raises
        ------
        ValueError
            Empty question.
        SubmissionInProgress
            A previous submission has not finished.
        CompletionError
            The generation call failed (``user_message`` is displayable).
        PersistenceFailure
            The exchange could not be saved.
        """
        question = normalize_text(user_text)
        if not question:
            raise ValueError("Question must not be empty.")
        if self._in_flight:
            raise SubmissionInProgress()

        self._in_flight = True
        try:
            active = self._conversations.active
            answer = await self.generate_response(question, self._conversations.active_history())
            return await self._conversations.append_exchange(active, question, answer)
        finally:
            self._in_flight = False


    async def generate_response(self, question: str, history: list[ChatMessage]) -> str:
        """Run steps 2–7 and return the model's answer."""
        t_start = time.perf_counter()

        # ── 2–3. Embed + retrieve ─────────────────────────────────────
        t_search = time.perf_counter()
        context = await self._retrieve_context(question)
        search_ms = (time.perf_counter() - t_search) * 1000

        # ── 4. Topics / entities ──────────────────────────────────────
        extracted = await self._assembler.extract_topics_entities(question)

        # ── 5. Personalization ────────────────────────────────────────
        personalization = await self._personalized_context()

        # ── 6. System prompt ──────────────────────────────────────────
        system_prompt = compose_system_prompt(context, extracted.topics, extracted.entities, personalization)

        # ── 7. Generate ───────────────────────────────────────────────
        t_llm = time.perf_counter()
        answer = await self._completion.complete(system_prompt, history, question)
        llm_ms = (time.perf_counter() - t_llm) * 1000

        total_ms = (time.perf_counter() - t_start) * 1000
        logger.info("[RAG] Pipeline total: %.1fms (search=%.1f, llm=%.1f, context=%d chars, topics=%d, entities=%d)", total_ms, search_ms, llm_ms, len(context), len(extracted.topics), len(extracted.entities))
        return answer


    async def _retrieve_context(self, question: str) -> str:
        try:
            vector = await self._expander.enhanced_embedding(question)
            matches = await self._assembler.retrieve(vector)
        except ServiceUnavailable as exc:
            logger.warning("[RAG] Retrieval unavailable (%s) — answering without book context.", exc)
            return ""
        return build_context(matches)


    async def _personalized_context(self) -> str:
        try:
            return await self._personalization.get_personalized_context()
        except TomeError as exc:
            logger.warning("[RAG] Personalization unavailable (%s).", exc)
            return ""
