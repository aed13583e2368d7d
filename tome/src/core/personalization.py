"""
Tome - Personalization
=======================
Feedback recording and the "what worked before" snapshot fed into the
system prompt.  The snapshot is recomputed on every request and never
stored.
"""

from __future__ import annotations

from tome.config.settings import settings
from tome.src.core.conversations import ConversationService
from tome.src.core.models import Feedback
from tome.src.utils.logger import get_logger

logger = get_logger(__name__)


class PersonalizationEngine:
    """Works against whatever repository ``conversations`` currently uses."""

    __slots__ = ("_conversations",)

    def __init__(self, conversations: ConversationService) -> None:
        self._conversations = conversations


    def _limit(self) -> int:
        if self._conversations.repository.is_guest:
            return settings.PERSONALIZATION_LIMIT_GUEST
        return settings.PERSONALIZATION_LIMIT_AUTH


    async def record_feedback(self, message_id: str, feedback: Feedback | None) -> bool:
        """
        Set (overwrite, not toggle) the feedback on *message_id*.

        Returns whether a message matched.  ``None`` clears the feedback.
        """
        matched = await self._conversations.repository.record_feedback(message_id, feedback)
        if matched:
            logger.info("[FEEDBACK] %s → %s", message_id, feedback.value if feedback else "cleared")
        else:
            logger.warning("[FEEDBACK] No message with id %s.", message_id)

        active = self._conversations.active
        if matched and active is not None and active.find_message(message_id) is not None:
            history = [m.with_feedback(feedback) if m.id == message_id else m for m in active.history]
            self._conversations.active = active.model_copy(update={"history": history})
        return matched


    async def get_personalized_context(self) -> str:
        """Most recent helpful messages, newest first, blank-line separated."""
        messages = await self._conversations.repository.helpful_messages(self._limit())
        return "\n\n".join(m.content for m in messages)
