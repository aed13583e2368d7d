"""
Tome - Session-Local Store
===========================
Device-local key/value persistence for guest users.

``SessionStore``
    An in-memory mirror of the backend plus a subscription channel.
    Local writes go to the backend first and then notify subscribers.
    Writes made elsewhere (another tab / process sharing the same backend)
    arrive through ``receive_external`` or ``sync`` and simply overwrite the
    mirror (last writer wins, no locking).
``JsonFileBackend``
    One JSON document per device profile holding every key.
``GuestConversationRepository``
    Guest conversations kept under the ``guest-conversations`` key.
    Nothing here survives a device change.
"""

from __future__ import annotations

import json
import threading
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from tome.src.core.errors import PersistenceFailure
from tome.src.core.models import Conversation, Feedback, Message, Owner, utc_now
from tome.src.utils.logger import get_logger

logger = get_logger(__name__)

GUEST_CONVERSATIONS_KEY = "guest-conversations"
GUEST_ID_KEY = "guest-id"

Listener = Callable[[str, object], None]

_conversation_list = TypeAdapter(list[Conversation])


def decode_conversations(value: object, owner: Owner | None = None) -> tuple[list[Conversation], list[object]]:
    """
    Decode a stored ``guest-conversations`` value record by record.

    Returns ``(conversations, unreadable)``.  Records that fail validation
    are returned untouched in ``unreadable`` so a later rewrite can carry
    them along instead of dropping them.  Records without an ``owner``
    (written before ownership was stored) are attributed to *owner*.
    """
    if value is None:
        return [], []
    if not isinstance(value, list):
        logger.error("Stored guest conversations are not a list — keeping them aside.")
        return [], [value]

    conversations: list[Conversation] = []
    unreadable: list[object] = []
    for record in value:
        candidate = record
        if owner is not None and isinstance(record, dict) and "owner" not in record:
            candidate = {**record, "owner": owner.model_dump()}
        try:
            conversations.append(Conversation.model_validate(candidate))
        except ValidationError as exc:
            record_id = record.get("id") if isinstance(record, dict) else None
            logger.warning("Skipping unreadable guest conversation %s (%d error(s)).", record_id or "?", exc.error_count())
            unreadable.append(record)
    return conversations, unreadable


def conversations_from_value(value: object, owner: Owner | None = None) -> list[Conversation]:
    """The readable conversations of a stored ``guest-conversations`` value."""
    return decode_conversations(value, owner)[0]


# ══════════════════════════════════════════════════════════════════════
#  BACKENDS
# ══════════════════════════════════════════════════════════════════════


class StorageBackend(Protocol):
    """Synchronous raw-string key/value storage."""

    def read(self, key: str) -> str | None: ...

    def write(self, key: str, raw: str) -> None: ...

    def remove(self, key: str) -> None: ...


class JsonFileBackend:
    """All keys in a single JSON object on disk."""

    __slots__ = ("_path", "_lock")

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()


    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError:
            logger.error("Session file %s is corrupt — treating it as empty.", self._path)
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}


    def _dump(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self._path)


    def read(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)


    def write(self, key: str, raw: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = raw
            self._dump(data)


    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._dump(data)


class MemoryBackend:
    """Process-local backend; shared instances behave like tabs of one profile."""

    __slots__ = ("_data",)

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def read(self, key: str) -> str | None:
        return self._data.get(key)

    def write(self, key: str, raw: str) -> None:
        self._data[key] = raw

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


# ══════════════════════════════════════════════════════════════════════
#  EVENT-SOURCED CACHE
# ══════════════════════════════════════════════════════════════════════


class SessionStore:
    """
    Mirror + subscription channel over a ``StorageBackend``.

    Values are JSON-serialisable objects.  Subscribers receive
    ``(key, new_value)`` after every accepted change, local or external.
    """

    __slots__ = ("_backend", "_mirror", "_listeners")

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend
        self._mirror: dict[str, object] = {}
        self._listeners: list[Listener] = []


    def get(self, key: str, default: object = None) -> object:
        if key not in self._mirror:
            raw = self._backend.read(key)
            if raw is None:
                return default
            try:
                self._mirror[key] = json.loads(raw)
            except json.JSONDecodeError:
                logger.error("Unreadable session value for key '%s' — using default.", key)
                return default
        return self._mirror[key]


    def set(self, key: str, value: object) -> None:
        """Persist *value*; raises ``PersistenceFailure`` and leaves the mirror untouched on error."""
        try:
            raw = json.dumps(value, ensure_ascii=False)
            self._backend.write(key, raw)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to write session key '%s': %s", key, exc)
            raise PersistenceFailure(f"Could not save '{key}' to session storage.") from exc
        self._mirror[key] = json.loads(raw)
        self._notify(key, self._mirror[key])


    def remove(self, key: str) -> None:
        try:
            self._backend.remove(key)
        except OSError as exc:
            raise PersistenceFailure(f"Could not remove '{key}' from session storage.") from exc
        self._mirror.pop(key, None)
        self._notify(key, None)


    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns the unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe


    def receive_external(self, key: str, raw: str | None) -> None:
        """
        Apply a change notification from another writer.

        Removals (``raw is None``) and unparseable payloads are ignored;
        anything else overwrites the local mirror.
        """
        if raw is None:
            return
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed external update for key '%s'.", key)
            return
        logger.debug("External update applied for key '%s'.", key)
        self._mirror[key] = value
        self._notify(key, value)


    def sync(self, key: str) -> None:
        """Re-read *key* from the backend, as if another writer had announced it."""
        self.receive_external(key, self._backend.read(key))


    def _notify(self, key: str, value: object) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception:
                logger.exception("Session store listener failed for key '%s'.", key)


# ══════════════════════════════════════════════════════════════════════
#  GUEST CONVERSATION REPOSITORY
# ══════════════════════════════════════════════════════════════════════


class GuestConversationRepository:
    """
    Conversation persistence for a guest identity.

    Conversations are kept newest first under ``GUEST_CONVERSATIONS_KEY``.
    Every mutation rewrites the whole collection; records that cannot be
    decoded are written back unchanged, never dropped.
    """

    __slots__ = ("_store", "guest_id")

    is_guest = True

    def __init__(self, store: SessionStore) -> None:
        self._store = store
        self.guest_id = self._ensure_guest_id()


    def _ensure_guest_id(self) -> str:
        existing = self._store.get(GUEST_ID_KEY)
        if isinstance(existing, str) and existing:
            return existing
        guest_id = f"guest-{uuid.uuid4().hex}"
        self._store.set(GUEST_ID_KEY, guest_id)
        return guest_id


    @property
    def owner(self) -> Owner:
        return Owner.guest(self.guest_id)


    @property
    def store(self) -> SessionStore:
        return self._store


    def _read(self) -> tuple[list[Conversation], list[object]]:
        return decode_conversations(self._store.get(GUEST_CONVERSATIONS_KEY, []), self.owner)


    def load(self) -> list[Conversation]:
        return self._read()[0]


    def _save(self, conversations: list[Conversation], unreadable: list[object]) -> None:
        # unreadable records go back at the tail exactly as they were read
        self._store.set(GUEST_CONVERSATIONS_KEY, [*_conversation_list.dump_python(conversations, mode="json"), *unreadable])


    def _new_id(self, existing: list[Conversation], unreadable: list[object]) -> str:
        taken = {c.id for c in existing} | {r.get("id") for r in unreadable if isinstance(r, dict)}
        stamp = int(time.time() * 1000)
        while f"guest-{stamp}" in taken:
            stamp += 1
        return f"guest-{stamp}"


    async def list_conversations(self) -> list[Conversation]:
        return self.load()


    async def get(self, conversation_id: str) -> Conversation | None:
        return next((c for c in self.load() if c.id == conversation_id), None)


    async def create(self, history: list[Message]) -> Conversation:
        conversations, unreadable = self._read()
        conversation = Conversation(id=self._new_id(conversations, unreadable), owner=self.owner, created_at=utc_now(), history=list(history))
        self._save([conversation, *conversations], unreadable)
        logger.info("[HISTORY] Guest conversation %s created.", conversation.id)
        return conversation


    async def append(self, conversation: Conversation, messages: list[Message]) -> Conversation:
        conversations, unreadable = self._read()
        stored = next((c for c in conversations if c.id == conversation.id), None)
        base = stored.history if stored is not None else conversation.history
        updated = conversation.model_copy(update={"history": [*base, *messages]})

        if stored is None:
            conversations.insert(0, updated)
        else:
            conversations = [updated if c.id == conversation.id else c for c in conversations]
        self._save(conversations, unreadable)
        return updated


    async def delete(self, conversation_id: str) -> bool:
        conversations, unreadable = self._read()
        remaining = [c for c in conversations if c.id != conversation_id]
        if len(remaining) == len(conversations):
            return False
        self._save(remaining, unreadable)
        return True


    async def record_feedback(self, message_id: str, feedback: Feedback | None) -> bool:
        """Update the first message with *message_id* across all conversations."""
        conversations, unreadable = self._read()
        for index, conversation in enumerate(conversations):
            history = list(conversation.history)
            for position, message in enumerate(history):
                if message.id != message_id:
                    continue
                history[position] = message.with_feedback(feedback)
                conversations[index] = conversation.model_copy(update={"history": history})
                self._save(conversations, unreadable)
                return True
        return False


    async def helpful_messages(self, limit: int) -> list[Message]:
        """Helpful-flagged messages, newest first."""
        helpful = [m for c in self.load() for m in c.history if m.feedback == Feedback.HELPFUL]
        helpful.sort(key=lambda m: m.timestamp.timestamp() if m.timestamp else float("-inf"), reverse=True)
        return helpful[:limit]


    def clear(self) -> None:
        """
        Drop every readable guest conversation (the guest id is kept).

        Unreadable records stay behind so they can still be recovered.
        """
        _, unreadable = self._read()
        if unreadable:
            self._store.set(GUEST_CONVERSATIONS_KEY, unreadable)
        else:
            self._store.remove(GUEST_CONVERSATIONS_KEY)
