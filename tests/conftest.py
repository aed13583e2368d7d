import copy
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Provide defaults for settings imports; no key means mock embeddings/completions
os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017")
os.environ.pop("GOOGLE_API_KEY", None)
os.environ.setdefault("ENV", "prod")

from bson import ObjectId
from pymongo.errors import AutoReconnect

from tome.src.core.models import Identity
from tome.src.database.session_store import GuestConversationRepository, MemoryBackend, SessionStore


class _Result:
    def __init__(self, **fields):
        self.__dict__.update(fields)


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction):
        self._docs = sorted(self._docs, key=lambda d: (d.get(key) is not None, d.get(key) or 0), reverse=direction < 0)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        docs = [copy.deepcopy(d) for d in self._docs]
        return docs if length is None else docs[:length]


class FakeCollection:
    """The slice of ``AsyncIOMotorCollection`` Tome uses, kept in memory."""

    def __init__(self):
        self.documents = []
        self.fail_on_insert = set()
        self.insert_calls = 0

    @staticmethod
    def _matches(doc, query):
        return all(doc.get(key) == value for key, value in query.items())

    async def insert_one(self, document):
        self.insert_calls += 1
        if self.insert_calls in self.fail_on_insert:
            raise AutoReconnect("simulated outage")
        stored = copy.deepcopy(document)
        stored.setdefault("_id", ObjectId())
        self.documents.append(stored)
        return _Result(inserted_id=stored["_id"])

    async def insert_many(self, documents):
        ids = []
        for document in documents:
            stored = copy.deepcopy(document)
            stored.setdefault("_id", ObjectId())
            self.documents.append(stored)
            ids.append(stored["_id"])
        return _Result(inserted_ids=ids)

    async def find_one(self, query, projection=None):
        for doc in self.documents:
            if self._matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None):
        return FakeCursor([d for d in self.documents if self._matches(d, query or {})])

    async def update_one(self, query, update, upsert=False):
        for doc in self.documents:
            if not self._matches(doc, query):
                continue
            for key, value in update.get("$set", {}).items():
                doc[key] = copy.deepcopy(value)
            for key, value in update.get("$push", {}).items():
                items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                doc.setdefault(key, []).extend(copy.deepcopy(items))
            return _Result(matched_count=1, modified_count=1)
        return _Result(matched_count=0, modified_count=0)

    async def delete_one(self, query):
        for index, doc in enumerate(self.documents):
            if self._matches(doc, query):
                del self.documents[index]
                return _Result(deleted_count=1)
        return _Result(deleted_count=0)

    async def delete_many(self, query):
        before = len(self.documents)
        self.documents = [d for d in self.documents if not self._matches(d, query)]
        return _Result(deleted_count=before - len(self.documents))


@pytest.fixture
def session_store():
    return SessionStore(MemoryBackend())


@pytest.fixture
def guest_repo(session_store):
    return GuestConversationRepository(session_store)


@pytest.fixture
def mongo_collections():
    return FakeCollection(), FakeCollection()


@pytest.fixture
def identity():
    return Identity(id="user-42", email="reader@example.com")
