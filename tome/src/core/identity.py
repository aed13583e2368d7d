"""
Tome - Identity Reconciliation
===============================
Guest → authenticated state machine::

    GUEST ──sign-in──▶ MIGRATING ──▶ AUTHENTICATED ──sign-out──▶ GUEST

``MIGRATING`` re-inserts every guest conversation into the durable store,
owned by the signed-in user and stamped with a fresh timestamp.

* Full success → guest conversations are cleared locally and the active
  selection is reset.
* Partial failure → nothing is cleared locally and
  ``MigrationPartialFailure`` is raised.  The user is still signed in;
  ``migrate_guest_data`` can be called again by hand.  There is no
  idempotency key, so a retry re-inserts conversations that already made it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from pymongo.errors import PyMongoError

from tome.src.core.conversations import ConversationService
from tome.src.core.errors import MigrationPartialFailure, PersistenceFailure
from tome.src.core.models import Conversation, Identity
from tome.src.database.document_store import MongoConversationRepository
from tome.src.database.session_store import GUEST_CONVERSATIONS_KEY, GuestConversationRepository, conversations_from_value
from tome.src.utils.logger import get_logger

logger = get_logger(__name__)

DurableRepositoryFactory = Callable[[Identity], MongoConversationRepository]


class IdentityState(str, Enum):
    GUEST = "guest"
    MIGRATING = "migrating"
    AUTHENTICATED = "authenticated"


@dataclass
class MigrationReport:
    migrated: list[Conversation] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class IdentityReconciler:
    """
    Parameters
    ----------
    conversations
        The service whose repository is swapped on every transition.
    guest_repository
        Device-local repository used while signed out.
    durable_factory
        Builds the durable repository for a signed-in identity.
    """

    __slots__ = ("_conversations", "_guest", "_durable_factory", "_durable", "state", "identity", "_unsubscribe")

    def __init__(self, conversations: ConversationService, guest_repository: GuestConversationRepository, durable_factory: DurableRepositoryFactory = MongoConversationRepository) -> None:
        self._conversations = conversations
        self._guest = guest_repository
        self._durable_factory = durable_factory
        self._durable: MongoConversationRepository | None = None
        self.state = IdentityState.GUEST
        self.identity: Identity | None = None
        self._conversations.use_repository(guest_repository)
        self._unsubscribe = guest_repository.store.subscribe(self._on_store_change)


    def _on_store_change(self, key: str, value: object) -> None:
        if key != GUEST_CONVERSATIONS_KEY or self.state is not IdentityState.GUEST:
            return
        self._conversations.on_external_change(conversations_from_value(value, self._guest.owner))


    async def sign_in(self, identity: Identity) -> MigrationReport:
        """
        Handle the identity provider's sign-in event.

        Raises
        ------
        MigrationPartialFailure
            Some guest conversations could not be migrated (non-fatal).
        PersistenceFailure
            The durable store could not be opened; the reconciler is back
            in ``GUEST`` with the guest repository active.
        """
        if self.state is IdentityState.AUTHENTICATED and self.identity == identity:
            return MigrationReport()

        logger.info("[MIGRATE] Sign-in for user %s — migrating guest data.", identity.id)
        self.state = IdentityState.MIGRATING
        try:
            durable = self._durable_factory(identity)
        except PyMongoError as exc:
            logger.error("[MIGRATE] Could not open the durable store for user %s: %s", identity.id, exc)
            self._use_guest()
            raise PersistenceFailure("Could not connect to the conversation store.") from exc
        except Exception:
            logger.exception("[MIGRATE] Could not open the durable store for user %s.", identity.id)
            self._use_guest()
            raise

        self.identity = identity
        self._durable = durable
        self._conversations.use_repository(durable)

        try:
            return await self.migrate_guest_data()
        finally:
            self.state = IdentityState.AUTHENTICATED


    async def migrate_guest_data(self) -> MigrationReport:
        """Copy every guest conversation into the durable store."""
        if self._durable is None:
            raise PersistenceFailure("No signed-in user to migrate guest conversations to.")

        guest_conversations = self._guest.load()
        report = MigrationReport()
        if not guest_conversations:
            return report

        # stored newest first; insert oldest first
        for conversation in reversed(guest_conversations):
            try:
                report.migrated.append(await self._durable.import_conversation(conversation))
            except PersistenceFailure:
                logger.exception("[MIGRATE] Failed to migrate guest conversation %s.", conversation.id)
                report.failed.append(conversation.id or "")

        if report.failed:
            raise MigrationPartialFailure(migrated=len(report.migrated), failed=len(report.failed))

        self._guest.clear()
        self._conversations.reset_active()
        logger.info("[MIGRATE] Migrated %d guest conversation(s).", len(report.migrated))
        return report


    def sign_out(self) -> None:
        """Handle the identity provider's sign-out event."""
        logger.info("[MIGRATE] Sign-out for user %s.", self.identity.id if self.identity else "?")
        self._use_guest()


    def _use_guest(self) -> None:
        self.identity = None
        self._durable = None
        self.state = IdentityState.GUEST
        self._conversations.use_repository(self._guest)


    def close(self) -> None:
        self._unsubscribe()
