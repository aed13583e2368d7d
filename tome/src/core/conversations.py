"""
Tome - Conversation History
============================
Active-conversation bookkeeping on top of whichever repository currently
owns the user's data.

Repositories form a tagged union chosen once per identity state:

    GuestConversationRepository   (session-local store)
    MongoConversationRepository   (durable store, one authenticated user)

``ConversationService`` never branches on identity; it talks to
``self.repository`` and swaps it when the reconciler says so.

Failure policy: a repository error propagates as ``PersistenceFailure``
and the service's own state (active id / history) is left as it was.
"""

from __future__ import annotations

from typing import Protocol

from tome.src.core.models import ChatMessage, Conversation, Feedback, Message, Owner, exchange_messages
from tome.src.database.document_store import load_history as _load_document_history
from tome.src.utils.logger import get_logger

logger = get_logger(__name__)


class ConversationRepository(Protocol):
    is_guest: bool

    @property
    def owner(self) -> Owner: ...

    async def list_conversations(self) -> list[Conversation]: ...

    async def get(self, conversation_id: str) -> Conversation | None: ...

    async def create(self, history: list[Message]) -> Conversation: ...

    async def append(self, conversation: Conversation, messages: list[Message]) -> Conversation: ...

    async def delete(self, conversation_id: str) -> bool: ...

    async def record_feedback(self, message_id: str, feedback: Feedback | None) -> bool: ...

    async def helpful_messages(self, limit: int) -> list[Message]: ...


def load_history(conversation: Conversation | dict[str, object]) -> list[Message]:
    """
    History of *conversation*, verbatim when present.

    Raw legacy documents without a ``history`` field get a two-message
    history synthesized from ``input`` / ``response``.
    """
    if isinstance(conversation, Conversation):
        return list(conversation.history)
    return _load_document_history(conversation)


class ConversationService:
    """
    Parameters
    ----------
    repository
        Initial repository (normally the guest one).
    """

    __slots__ = ("repository", "active")

    def __init__(self, repository: ConversationRepository) -> None:
        self.repository: ConversationRepository = repository
        self.active: Conversation | None = None


    @property
    def active_id(self) -> str | None:
        return self.active.id if self.active else None


    def active_history(self) -> list[ChatMessage]:
        """The active conversation's turns in completion-service form."""
        if self.active is None:
            return []
        return [m.as_chat_message() for m in self.active.history]


    def use_repository(self, repository: ConversationRepository) -> None:
        """Switch identity context; the active selection does not carry over."""
        self.repository = repository
        self.reset_active()


    def reset_active(self) -> None:
        self.active = None


    async def append_exchange(self, conversation: Conversation | None, user_text: str, assistant_text: str) -> Conversation:
        """
        Record one user/assistant exchange.

        ``None`` creates a conversation owned by the current identity;
        otherwise both messages are appended to *conversation*.  On success
        the result becomes the active conversation.
        """
        messages = exchange_messages(user_text, assistant_text)

        if conversation is None:
            updated = await self.repository.create(messages)
        else:
            updated = await self.repository.append(conversation, messages)

        self.active = updated
        logger.info("[HISTORY] Conversation %s now has %d message(s).", updated.id, len(updated.history))
        return updated


    async def list_conversations(self) -> list[Conversation]:
        return await self.repository.list_conversations()


    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return await self.repository.get(conversation_id)


    async def select_conversation(self, conversation_id: str) -> Conversation | None:
        """Make *conversation_id* active; ``None`` (and no change) if unknown."""
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            return None
        if not conversation.has_paired_turns():
            logger.warning("[HISTORY] Conversation %s has unpaired history.", conversation_id)
        self.active = conversation
        return conversation


    def start_new_conversation(self) -> None:
        self.reset_active()


    async def delete_conversation(self, conversation_id: str) -> bool:
        """Remove from the owning store; clears the selection if it was active."""
        removed = await self.repository.delete(conversation_id)
        if self.active_id == conversation_id:
            self.reset_active()
        return removed


    def on_external_change(self, conversations: list[Conversation]) -> None:
        """Drop the active selection if another writer removed it."""
        if self.active is None:
            return
        if not any(c.id == self.active.id for c in conversations):
            logger.info("[HISTORY] Active conversation %s removed elsewhere, clearing selection.", self.active.id)
            self.reset_active()
