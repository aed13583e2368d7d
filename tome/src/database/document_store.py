"""
Tome - Durable Document Store
==============================
Async conversation persistence for authenticated users, backed by
MongoDB via ``motor``.

Every query filters by ``user_id``, so one user never sees another's
conversations.

Collections
-----------
``conversations``::

    {
        "_id": ObjectId,
        "user_id": str,
        "user_email": str | None,
        "owner_type": "auth",
        "created_at": datetime,
        "updated_at": datetime,
        "history": [{"id", "role", "content", "timestamp", "feedback"}, ...],
        "input": str,        # legacy mirror of the last user turn
        "response": str      # legacy mirror of the last assistant turn
    }

``messages`` — one record per message, used for feedback and
personalization::

    {"user_id", "conversation_id", "message_id", "role", "content", "timestamp", "feedback"}

History appends use ``$push`` + ``$each`` so two near-simultaneous appends
both land instead of one overwriting the other.
"""

from __future__ import annotations

from datetime import datetime

import motor.motor_asyncio
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from tome.config.settings import settings
from tome.src.core.errors import PersistenceFailure
from tome.src.core.models import Conversation, Feedback, Identity, Message, Owner, history_entries, utc_now
from tome.src.utils.logger import get_logger

logger = get_logger(__name__)

MongoDocument = dict[str, object]

# ══════════════════════════════════════════════════════════════════════
#  MONGODB SINGLETON CLIENT
# ══════════════════════════════════════════════════════════════════════

_mongo_client: motor.motor_asyncio.AsyncIOMotorClient | None = None


def _get_mongo_client() -> motor.motor_asyncio.AsyncIOMotorClient:
    """Return (or create) the module-level async MongoDB client."""
    global _mongo_client
    if _mongo_client is None:
        _mongo_client = motor.motor_asyncio.AsyncIOMotorClient(settings.MONGO_URI.get_secret_value())
        logger.info("MongoDB async client created (singleton).")
    return _mongo_client


def default_collections() -> tuple[object, object]:
    """``(conversations, messages)`` collections from settings."""
    db = _get_mongo_client()[settings.MONGO_DB_NAME]
    return db[settings.CONVERSATIONS_COLLECTION], db[settings.MESSAGES_COLLECTION]


# ══════════════════════════════════════════════════════════════════════
#  DOCUMENT MAPPING
# ══════════════════════════════════════════════════════════════════════


def message_to_document(message: Message) -> MongoDocument:
    return {"id": message.id, "role": message.role, "content": message.content, "timestamp": message.timestamp, "feedback": message.feedback.value if message.feedback else None}


def load_history(document: MongoDocument) -> list[Message]:
    """
    History for a stored conversation.

    Entries without an ``id`` get ``"<_id>-<index>"``.  Documents written
    before history tracking only carry ``input`` / ``response``; those get a
    synthesized two-message history stamped with ``created_at`` (or ``None``).
    """
    return [Message.model_validate(entry) for entry in history_entries(document)]


def document_to_conversation(document: MongoDocument) -> Conversation:
    owner = Owner(user_id=str(document["user_id"]), email=document.get("user_email"))  # type: ignore[arg-type]
    created_at = document.get("created_at")
    conversation = Conversation(id=str(document["_id"]), owner=owner, created_at=created_at if isinstance(created_at, datetime) else None, history=load_history(document))
    if not conversation.has_paired_turns():
        logger.warning("[HISTORY] Conversation %s has unpaired history (%d messages).", conversation.id, len(conversation.history))
    return conversation


def _object_id(conversation_id: str) -> ObjectId | None:
    try:
        return ObjectId(conversation_id)
    except (InvalidId, TypeError):
        return None


# ══════════════════════════════════════════════════════════════════════
#  AUTHENTICATED CONVERSATION REPOSITORY
# ══════════════════════════════════════════════════════════════════════


class MongoConversationRepository:
    """
    Conversation persistence for one authenticated user.

    Parameters
    ----------
    identity
        The signed-in user; every read and write is scoped to ``identity.id``.
    conversations, messages
        Motor collections.  Default to the configured database.
    """

    __slots__ = ("identity", "_conversations", "_messages")

    is_guest = False

    def __init__(self, identity: Identity, conversations: object | None = None, messages: object | None = None) -> None:
        self.identity = identity
        if conversations is None or messages is None:
            default_conversations, default_messages = default_collections()
            conversations = conversations if conversations is not None else default_conversations
            messages = messages if messages is not None else default_messages
        self._conversations = conversations
        self._messages = messages


    @property
    def owner(self) -> Owner:
        return Owner.authenticated(self.identity)


    def _message_records(self, conversation_id: str, messages: list[Message]) -> list[MongoDocument]:
        return [{"user_id": self.identity.id, "conversation_id": conversation_id, "message_id": m.id, **{k: v for k, v in message_to_document(m).items() if k != "id"}} for m in messages]


    async def list_conversations(self) -> list[Conversation]:
        """All of the user's conversations, newest first."""
        try:
            cursor = self._conversations.find({"user_id": self.identity.id}).sort("created_at", DESCENDING)  # type: ignore[attr-defined]
            documents = await cursor.to_list(length=None)
        except PyMongoError as exc:
            logger.error("Failed to list conversations: %s", exc)
            raise PersistenceFailure("Failed to get conversations") from exc
        return [document_to_conversation(doc) for doc in documents]


    async def get(self, conversation_id: str) -> Conversation | None:
        oid = _object_id(conversation_id)
        if oid is None:
            return None
        try:
            document = await self._conversations.find_one({"_id": oid, "user_id": self.identity.id})  # type: ignore[attr-defined]
        except PyMongoError as exc:
            logger.error("Failed to get conversation %s: %s", conversation_id, exc)
            raise PersistenceFailure("Failed to get conversation") from exc
        return document_to_conversation(document) if document else None


    async def create(self, history: list[Message], created_at: datetime | None = None) -> Conversation:
        """Insert a new conversation; the store assigns the id."""
        now = created_at or utc_now()
        draft = Conversation(owner=self.owner, created_at=now, history=list(history))
        document: MongoDocument = {
            "user_id": self.identity.id,
            "user_email": self.identity.email,
            "owner_type": "auth",
            "created_at": now,
            "updated_at": now,
            "history": [message_to_document(m) for m in draft.history],
            "input": draft.input,
            "response": draft.response,
        }
        try:
            result = await self._conversations.insert_one(document)  # type: ignore[attr-defined]
            conversation_id = str(result.inserted_id)
            if draft.history:
                await self._messages.insert_many(self._message_records(conversation_id, draft.history))  # type: ignore[attr-defined]
        except PyMongoError as exc:
            logger.error("Error saving conversation: %s", exc)
            raise PersistenceFailure("Failed to save conversation") from exc

        logger.info("[HISTORY] Conversation %s created for user %s.", conversation_id, self.identity.id)
        return draft.model_copy(update={"id": conversation_id})


    async def append(self, conversation: Conversation, messages: list[Message]) -> Conversation:
        """Merge *messages* into the stored history (``$push``, never overwrite)."""
        oid = _object_id(conversation.id or "")
        if oid is None:
            raise PersistenceFailure(f"Unknown conversation id {conversation.id!r}")

        updated = conversation.model_copy(update={"history": [*conversation.history, *messages]})
        try:
            result = await self._conversations.update_one(  # type: ignore[attr-defined]
                {"_id": oid, "user_id": self.identity.id},
                {"$push": {"history": {"$each": [message_to_document(m) for m in messages]}}, "$set": {"input": updated.input, "response": updated.response, "updated_at": utc_now()}},
            )
            if result.matched_count == 0:
                raise PersistenceFailure(f"Conversation {conversation.id} no longer exists")
            await self._messages.insert_many(self._message_records(str(oid), messages))  # type: ignore[attr-defined]
        except PyMongoError as exc:
            logger.error("Error updating conversation history: %s", exc)
            raise PersistenceFailure("Failed to update conversation history") from exc
        return updated


    async def delete(self, conversation_id: str) -> bool:
        oid = _object_id(conversation_id)
        if oid is None:
            return False
        try:
            result = await self._conversations.delete_one({"_id": oid, "user_id": self.identity.id})  # type: ignore[attr-defined]
            if result.deleted_count:
                await self._messages.delete_many({"user_id": self.identity.id, "conversation_id": conversation_id})  # type: ignore[attr-defined]
        except PyMongoError as exc:
            logger.error("Error deleting conversation: %s", exc)
            raise PersistenceFailure("Failed to delete conversation") from exc
        return result.deleted_count > 0


    async def record_feedback(self, message_id: str, feedback: Feedback | None) -> bool:
        """Overwrite the feedback on the ``(user_id, message_id)`` record."""
        try:
            result = await self._messages.update_one(  # type: ignore[attr-defined]
                {"user_id": self.identity.id, "message_id": message_id},
                {"$set": {"feedback": feedback.value if feedback else None, "feedback_at": utc_now()}},
            )
        except PyMongoError as exc:
            logger.error("Error recording feedback: %s", exc)
            raise PersistenceFailure("Failed to record feedback") from exc
        return result.matched_count > 0


    async def helpful_messages(self, limit: int) -> list[Message]:
        """The user's most recent helpful-flagged messages."""
        try:
            cursor = self._messages.find({"user_id": self.identity.id, "feedback": Feedback.HELPFUL.value}).sort("timestamp", DESCENDING).limit(limit)  # type: ignore[attr-defined]
            records = await cursor.to_list(length=limit)
        except PyMongoError as exc:
            logger.error("Error loading helpful messages: %s", exc)
            raise PersistenceFailure("Failed to load feedback") from exc
        return [Message(id=r["message_id"], role=r["role"], content=r["content"], timestamp=r.get("timestamp"), feedback=r.get("feedback")) for r in records]


    async def import_conversation(self, conversation: Conversation) -> Conversation:
        """Insert a guest conversation as this user's, with a fresh timestamp."""
        return await self.create(conversation.history, created_at=utc_now())
