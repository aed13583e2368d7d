import asyncio
from functools import partial

import pytest
from pymongo.errors import ConfigurationError

from tome.src.core.conversations import ConversationService
from tome.src.core.errors import MigrationPartialFailure, PersistenceFailure
from tome.src.core.identity import IdentityReconciler, IdentityState
from tome.src.core.models import Message
from tome.src.database.document_store import MongoConversationRepository
from tome.src.database.session_store import GUEST_CONVERSATIONS_KEY


def _reconciler(guest_repo, mongo_collections):
    conversations, messages = mongo_collections
    factory = partial(MongoConversationRepository, conversations=conversations, messages=messages)
    service = ConversationService(guest_repo)
    return service, IdentityReconciler(service, guest_repo, durable_factory=factory)


def _seed_guest(service, count):
    created = []
    for i in range(count):
        service.start_new_conversation()
        created.append(asyncio.run(service.append_exchange(None, f"guest q{i}", f"guest a{i}")))
    return created


def test_sign_in_migrates_every_guest_conversation(guest_repo, mongo_collections, identity):
    service, reconciler = _reconciler(guest_repo, mongo_collections)
    _seed_guest(service, 2)

    report = asyncio.run(reconciler.sign_in(identity))

    conversations, messages = mongo_collections
    assert reconciler.state is IdentityState.AUTHENTICATED
    assert len(report.migrated) == 2 and report.failed == []
    assert [d["user_id"] for d in conversations.documents] == [identity.id, identity.id]
    # oldest guest conversation is inserted first
    assert [d["input"] for d in conversations.documents] == ["guest q0", "guest q1"]
    assert len(messages.documents) == 4
    assert guest_repo.store.get(GUEST_CONVERSATIONS_KEY) is None
    assert guest_repo.load() == []
    assert service.active is None
    assert not service.repository.is_guest


def test_migrated_conversations_get_fresh_timestamps(guest_repo, mongo_collections, identity):
    service, reconciler = _reconciler(guest_repo, mongo_collections)
    [original] = _seed_guest(service, 1)

    [migrated] = asyncio.run(reconciler.sign_in(identity)).migrated

    assert migrated.created_at >= original.created_at
    assert migrated.owner.user_id == identity.id
    assert [m.content for m in migrated.history] == ["guest q0", "guest a0"]


def test_partial_failure_keeps_guest_data(guest_repo, mongo_collections, identity):
    service, reconciler = _reconciler(guest_repo, mongo_collections)
    _seed_guest(service, 2)
    conversations, _ = mongo_collections
    conversations.fail_on_insert = {2}

    with pytest.raises(MigrationPartialFailure) as excinfo:
        asyncio.run(reconciler.sign_in(identity))

    assert (excinfo.value.migrated, excinfo.value.failed) == (1, 1)
    assert len(guest_repo.load()) == 2
    assert reconciler.state is IdentityState.AUTHENTICATED
    assert len(conversations.documents) == 1


def test_sign_in_without_guest_data_is_a_no_op(guest_repo, mongo_collections, identity):
    _, reconciler = _reconciler(guest_repo, mongo_collections)

    report = asyncio.run(reconciler.sign_in(identity))

    assert report.migrated == [] and report.failed == []
    assert mongo_collections[0].documents == []


def test_repeated_sign_in_for_same_identity_does_not_remigrate(guest_repo, mongo_collections, identity):
    service, reconciler = _reconciler(guest_repo, mongo_collections)
    asyncio.run(reconciler.sign_in(identity))
    asyncio.run(guest_repo.create([Message(role="user", content="late guest write")]))

    report = asyncio.run(reconciler.sign_in(identity))

    assert report.migrated == []
    assert mongo_collections[0].documents == []


def test_authenticated_writes_go_to_durable_store(guest_repo, mongo_collections, identity):
    service, reconciler = _reconciler(guest_repo, mongo_collections)
    asyncio.run(reconciler.sign_in(identity))

    asyncio.run(service.append_exchange(None, "q", "a"))

    assert len(mongo_collections[0].documents) == 1
    assert guest_repo.load() == []


def test_sign_out_returns_to_guest(guest_repo, mongo_collections, identity):
    service, reconciler = _reconciler(guest_repo, mongo_collections)
    asyncio.run(reconciler.sign_in(identity))
    asyncio.run(service.append_exchange(None, "q", "a"))

    reconciler.sign_out()

    assert reconciler.state is IdentityState.GUEST
    assert reconciler.identity is None
    assert service.repository is guest_repo
    assert service.active is None
    assert asyncio.run(service.list_conversations()) == []


def test_external_guest_change_clears_selection_only_while_guest(guest_repo, mongo_collections, identity):
    service, reconciler = _reconciler(guest_repo, mongo_collections)
    [conversation] = _seed_guest(service, 1)

    guest_repo.store.receive_external(GUEST_CONVERSATIONS_KEY, "[]")

    assert service.active is None
    reconciler.close()


def _failing_factory(error):
    def factory(identity):
        raise error
    return factory


def test_store_open_failure_returns_to_guest(guest_repo, identity):
    service = ConversationService(guest_repo)
    reconciler = IdentityReconciler(service, guest_repo, durable_factory=_failing_factory(ConfigurationError("bad uri")))
    [conversation] = _seed_guest(service, 1)

    with pytest.raises(PersistenceFailure):
        asyncio.run(reconciler.sign_in(identity))

    assert reconciler.state is IdentityState.GUEST
    assert reconciler.identity is None
    assert service.repository is guest_repo
    assert len(guest_repo.load()) == 1

    # still listening for guest changes from other writers
    asyncio.run(service.select_conversation(conversation.id))
    guest_repo.store.receive_external(GUEST_CONVERSATIONS_KEY, "[]")
    assert service.active is None
    reconciler.close()


def test_unexpected_factory_error_propagates_after_rollback(guest_repo, identity):
    service = ConversationService(guest_repo)
    reconciler = IdentityReconciler(service, guest_repo, durable_factory=_failing_factory(ValueError("boom")))

    with pytest.raises(ValueError, match="boom"):
        asyncio.run(reconciler.sign_in(identity))

    assert reconciler.state is IdentityState.GUEST
    assert service.repository is guest_repo
