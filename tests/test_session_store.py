import asyncio
import json

import pytest

from tome.src.core.models import Message
from tome.src.database.session_store import (
    GUEST_CONVERSATIONS_KEY,
    GUEST_ID_KEY,
    GuestConversationRepository,
    JsonFileBackend,
    MemoryBackend,
    SessionStore,
    conversations_from_value,
)


def test_set_notifies_subscribers(session_store):
    seen = []
    unsubscribe = session_store.subscribe(lambda key, value: seen.append((key, value)))

    session_store.set("k", {"a": 1})
    unsubscribe()
    session_store.set("k", {"a": 2})

    assert seen == [("k", {"a": 1})]
    assert session_store.get("k") == {"a": 2}


def test_receive_external_overwrites_mirror_and_notifies(session_store):
    seen = []
    session_store.subscribe(lambda key, value: seen.append(key))
    session_store.set("k", [1])

    session_store.receive_external("k", "[1, 2]")

    assert session_store.get("k") == [1, 2]
    assert seen == ["k", "k"]


@pytest.mark.parametrize("raw", [None, "{not json"])
def test_receive_external_ignores_removals_and_garbage(session_store, raw):
    session_store.set("k", [1])

    session_store.receive_external("k", raw)

    assert session_store.get("k") == [1]


def test_sync_picks_up_writes_from_another_store():
    backend = MemoryBackend()
    tab_a, tab_b = SessionStore(backend), SessionStore(backend)
    assert tab_b.get("k") is None

    tab_a.set("k", "from a")
    tab_b.sync("k")

    assert tab_b.get("k") == "from a"


def test_failing_listener_does_not_block_others(session_store):
    seen = []

    def broken(key, value):
        raise RuntimeError("listener bug")

    session_store.subscribe(broken)
    session_store.subscribe(lambda key, value: seen.append(value))

    session_store.set("k", 1)

    assert seen == [1]


def test_json_file_backend_persists_across_instances(tmp_path):
    path = tmp_path / "session" / "local_storage.json"
    SessionStore(JsonFileBackend(path)).set("k", {"x": [1, 2]})

    assert SessionStore(JsonFileBackend(path)).get("k") == {"x": [1, 2]}
    assert json.loads(path.read_text(encoding="utf-8")) == {"k": '{"x": [1, 2]}'}


def test_json_file_backend_treats_corrupt_file_as_empty(tmp_path):
    path = tmp_path / "local_storage.json"
    path.write_text("{broken", encoding="utf-8")

    assert JsonFileBackend(path).read("k") is None


def test_json_file_backend_remove(tmp_path):
    backend = JsonFileBackend(tmp_path / "s.json")
    backend.write("a", "1")
    backend.write("b", "2")

    backend.remove("a")

    assert backend.read("a") is None
    assert backend.read("b") == "2"


def test_malformed_conversation_value_decodes_to_empty():
    assert conversations_from_value([{"history": "nope"}]) == []
    assert conversations_from_value(None) == []


def test_guest_id_is_stable_per_store(session_store):
    first = GuestConversationRepository(session_store)
    second = GuestConversationRepository(session_store)

    assert first.guest_id.startswith("guest-")
    assert first.guest_id == second.guest_id == session_store.get(GUEST_ID_KEY)


def test_guest_conversations_are_newest_first(guest_repo):
    older = asyncio.run(guest_repo.create([Message(role="user", content="first")]))
    newer = asyncio.run(guest_repo.create([Message(role="user", content="second")]))

    assert [c.id for c in asyncio.run(guest_repo.list_conversations())] == [newer.id, older.id]
    assert older.id != newer.id


def test_guest_conversations_are_stored_under_well_known_key(guest_repo, session_store):
    asyncio.run(guest_repo.create([Message(role="user", content="q"), Message(role="assistant", content="a")]))

    [stored] = session_store.get(GUEST_CONVERSATIONS_KEY)

    assert stored["owner"]["guest_id"] == guest_repo.guest_id
    assert (stored["input"], stored["response"]) == ("q", "a")


def test_guest_append_uses_latest_stored_history(guest_repo):
    conversation = asyncio.run(guest_repo.create([Message(role="user", content="q1"), Message(role="assistant", content="a1")]))
    asyncio.run(guest_repo.append(conversation, [Message(role="user", content="q2"), Message(role="assistant", content="a2")]))

    # stale snapshot from before the first append
    asyncio.run(guest_repo.append(conversation, [Message(role="user", content="q3"), Message(role="assistant", content="a3")]))

    assert [m.content for m in guest_repo.load()[0].history] == ["q1", "a1", "q2", "a2", "q3", "a3"]


def test_guest_delete_and_clear(guest_repo):
    conversation = asyncio.run(guest_repo.create([Message(role="user", content="q")]))
    asyncio.run(guest_repo.create([Message(role="user", content="q2")]))

    assert asyncio.run(guest_repo.delete(conversation.id))
    assert not asyncio.run(guest_repo.delete(conversation.id))
    assert len(guest_repo.load()) == 1

    guest_id = guest_repo.guest_id
    guest_repo.clear()

    assert guest_repo.load() == []
    assert guest_repo.store.get(GUEST_ID_KEY) == guest_id


# ── Unreadable and legacy records ──────────────────────────────────────

LEGACY_RECORD = {"id": "guest-1", "input": "old q", "response": "old a"}
BROKEN_RECORD = {"id": "guest-9", "history": "not a list"}


def _seed_mixed(guest_repo, session_store):
    good = asyncio.run(guest_repo.create([Message(role="user", content="q"), Message(role="assistant", content="a")]))
    session_store.set(GUEST_CONVERSATIONS_KEY, [*session_store.get(GUEST_CONVERSATIONS_KEY), LEGACY_RECORD, BROKEN_RECORD])
    return good


def test_one_bad_record_does_not_hide_the_others(guest_repo, session_store):
    good = _seed_mixed(guest_repo, session_store)

    assert [c.id for c in guest_repo.load()] == [good.id, "guest-1"]


def test_rewrite_keeps_every_stored_record(guest_repo, session_store):
    good = _seed_mixed(guest_repo, session_store)

    created = asyncio.run(guest_repo.create([Message(role="user", content="new")]))

    assert [c.id for c in guest_repo.load()] == [created.id, good.id, "guest-1"]
    assert session_store.get(GUEST_CONVERSATIONS_KEY)[-1] == BROKEN_RECORD


def test_legacy_guest_record_gets_synthesized_history(guest_repo, session_store):
    _seed_mixed(guest_repo, session_store)

    legacy = asyncio.run(guest_repo.get("guest-1"))

    assert [(m.id, m.role, m.content) for m in legacy.history] == [("guest-1-0", "user", "old q"), ("guest-1-1", "assistant", "old a")]
    assert (legacy.input, legacy.response) == ("old q", "old a")
    assert legacy.owner == guest_repo.owner


def test_clear_leaves_unreadable_records(guest_repo, session_store):
    _seed_mixed(guest_repo, session_store)

    guest_repo.clear()

    assert guest_repo.load() == []
    assert session_store.get(GUEST_CONVERSATIONS_KEY) == [BROKEN_RECORD]


def test_non_list_value_is_kept_aside(guest_repo, session_store):
    session_store.set(GUEST_CONVERSATIONS_KEY, {"unexpected": True})

    created = asyncio.run(guest_repo.create([Message(role="user", content="q")]))

    stored = session_store.get(GUEST_CONVERSATIONS_KEY)
    assert stored[0]["id"] == created.id
    assert stored[1] == {"unexpected": True}
