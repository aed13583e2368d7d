"""
Tome - Domain Models
=====================
Pydantic entities shared by every layer.

``Message``
    One chat turn.  Frozen; the only mutable aspect, ``feedback``, is
    changed through ``with_feedback`` which returns a copy.
``Owner``
    Exactly one of ``guest_id`` / ``user_id`` is set.
``Conversation``
    Owner + ordered ``history``.  ``input`` / ``response`` are computed
    from the tail of ``history``; they are serialised for legacy readers
    but are never stored state.
``Identity``
    What the identity provider hands us for a signed-in user.
``RetrievalMatch``
    One ranked hit from the vector index.  Read-only, never persisted.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

Role = Literal["user", "assistant"]

# Roles/contents sent to the completion service
ChatMessage = dict[str, str]


class Feedback(str, Enum):
    HELPFUL = "helpful"
    NOT_HELPFUL = "not_helpful"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str
    timestamp: datetime | None = None
    feedback: Feedback | None = None


    def with_feedback(self, feedback: Feedback | None) -> Message:
        return self.model_copy(update={"feedback": feedback})


    def as_chat_message(self) -> ChatMessage:
        return {"role": self.role, "content": self.content}


def _with_stable_id(entry: object, fallback_id: str) -> object:
    if isinstance(entry, Mapping) and not entry.get("id"):
        return {**entry, "id": fallback_id}
    return entry


def history_entries(data: Mapping[str, object]) -> list[object]:
    """
    Raw history entries for a stored conversation record.

    Stored entries are kept in order; any without an ``id`` get
    ``"<conversation id>-<index>"`` so feedback can find them again on the
    next read.  Records written before history tracking only carry
    ``input`` / ``response`` and get a synthesized user/assistant pair
    stamped with ``created_at`` (or ``None``).
    """
    conversation_id = str(data.get("_id") or data.get("id") or "legacy")
    stored = data.get("history")
    if isinstance(stored, list) and stored:
        return [_with_stable_id(entry, f"{conversation_id}-{index}") for index, entry in enumerate(stored)]

    user_text, assistant_text = data.get("input"), data.get("response")
    if not user_text and not assistant_text:
        return []
    created_at = data.get("created_at")
    timestamp = created_at if isinstance(created_at, (datetime, str)) else None
    return [
        {"id": f"{conversation_id}-0", "role": "user", "content": str(user_text or ""), "timestamp": timestamp},
        {"id": f"{conversation_id}-1", "role": "assistant", "content": str(assistant_text or ""), "timestamp": timestamp},
    ]


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str | None = None


class Owner(BaseModel):
    model_config = ConfigDict(frozen=True)

    guest_id: str | None = None
    user_id: str | None = None
    email: str | None = None

    @model_validator(mode="after")
    def _exactly_one_identity(self) -> Owner:
        if (self.guest_id is None) == (self.user_id is None):
            raise ValueError("exactly one of guest_id / user_id must be set")
        return self


    @classmethod
    def guest(cls, guest_id: str) -> Owner:
        return cls(guest_id=guest_id)


    @classmethod
    def authenticated(cls, identity: Identity) -> Owner:
        return cls(user_id=identity.id, email=identity.email)


    @property
    def is_guest(self) -> bool:
        return self.guest_id is not None


class Conversation(BaseModel):
    id: str | None = None
    owner: Owner
    created_at: datetime | None = None
    history: list[Message] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _legacy_history(cls, data: object) -> object:
        # a non-list history is left for field validation to reject
        if isinstance(data, Mapping) and isinstance(data.get("history", []), list):
            return {**data, "history": history_entries(data)}
        return data

    @computed_field  # type: ignore[prop-decorator]
    @property
    def input(self) -> str:
        """Content of the most recent user message."""
        for message in reversed(self.history):
            if message.role == "user":
                return message.content
        return ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def response(self) -> str:
        """Content of the most recent assistant message."""
        for message in reversed(self.history):
            if message.role == "assistant":
                return message.content
        return ""


    def has_paired_turns(self) -> bool:
        """True when history alternates user/assistant in complete pairs."""
        if len(self.history) % 2:
            return False
        return all(m.role == ("user" if i % 2 == 0 else "assistant") for i, m in enumerate(self.history))


    def find_message(self, message_id: str) -> Message | None:
        return next((m for m in self.history if m.id == message_id), None)


class RetrievalMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    score: float | None = None
    metadata_text: str = ""


class TopicsEntities(BaseModel):
    model_config = ConfigDict(frozen=True)

    entities: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)


def exchange_messages(user_text: str, assistant_text: str, timestamp: datetime | None = None) -> list[Message]:
    """Build the ``[user, assistant]`` pair for one exchange."""
    ts = timestamp or utc_now()
    return [Message(role="user", content=user_text, timestamp=ts), Message(role="assistant", content=assistant_text, timestamp=ts)]
