"""Fixtures partagées: faux objets motor (client, base, collection, curseur, session) et schémas d'exemple."""

import copy
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

from mongomodel.core.bson_utils import MongoBaseModel, PyObjectId
from mongomodel.core.settings import Settings
from mongomodel.db.mongodb import MongoContext


def _get(doc: Any, path: str) -> Any:
    cursor = doc
    for segment in path.split("."):
        if isinstance(cursor, dict):
            cursor = cursor.get(segment)
        elif isinstance(cursor, list) and segment.isdigit():
            index = int(segment)
            cursor = cursor[index] if index < len(cursor) else None
        else:
            return None
    return cursor


def _match_value(value: Any, cond: Any) -> bool:
    if isinstance(cond, dict) and cond and all(str(k).startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$in":
                candidates = value if isinstance(value, list) else [value]
                if not any(c in arg for c in candidates):
                    return False
            elif op == "$gt" and not (value is not None and value > arg):
                return False
            elif op == "$gte" and not (value is not None and value >= arg):
                return False
            elif op == "$lt" and not (value is not None and value < arg):
                return False
            elif op == "$ne" and value == arg:
                return False
        return True
    if isinstance(value, list) and not isinstance(cond, list):
        return cond in value
    return value == cond


def matches(doc: dict, filter: dict) -> bool:
    for key, cond in (filter or {}).items():
        if key.startswith("$"):
            continue
        if not _match_value(_get(doc, key), cond):
            return False
    return True


def run_pipeline(docs: list, pipeline: list) -> list:
    """Mini-évaluateur: $match, $sort (1 clé), $skip, $limit, $count ; autres étapes ignorées."""
    out = list(docs)
    for stage in pipeline:
        (op, arg), = stage.items()
        if op == "$match":
            out = [d for d in out if matches(d, arg)]
        elif op == "$sort":
            for key, direction in reversed(list(arg.items())):
                out.sort(key=lambda d: (_get(d, key) is None, _get(d, key)), reverse=direction < 0)
        elif op == "$skip":
            out = out[arg:]
        elif op == "$limit":
            out = out[:arg]
        elif op == "$count":
            out = [{arg: len(out)}] if out else []
    return out


def _apply_set(doc: dict, fields: dict) -> None:
    for key, value in fields.items():
        cursor = doc
        segments = key.split(".")
        for segment in segments[:-1]:
            cursor = cursor.setdefault(segment, {})
        cursor[segments[-1]] = value


class FakeCursor:
    def __init__(self, docs):
        self.docs = docs
        self.closed = False

    async def to_list(self, length=None):
        return list(self.docs)

    async def close(self):
        self.closed = True


class FakeCollection:
    def __init__(self, name, database):
        self.name = name
        self.database = database
        self.docs: list = []
        self.calls: list = []
        self.cursors: list = []

    def aggregate(self, pipeline, **kwargs):
        self.calls.append(("aggregate", copy.deepcopy(pipeline), kwargs))
        cursor = FakeCursor(copy.deepcopy(run_pipeline(self.docs, pipeline)))
        self.cursors.append(cursor)
        return cursor

    async def insert_one(self, doc, **kwargs):
        self.calls.append(("insert_one", doc, kwargs))
        doc.setdefault("_id", ObjectId())
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"], acknowledged=True)

    async def insert_many(self, docs, **kwargs):
        self.calls.append(("insert_many", docs, kwargs))
        ids = []
        for doc in docs:
            doc.setdefault("_id", ObjectId())
            self.docs.append(copy.deepcopy(doc))
            ids.append(doc["_id"])
        return SimpleNamespace(inserted_ids=ids, acknowledged=True)

    async def _update(self, filter, update, many, kwargs, name):
        self.calls.append((name, copy.deepcopy(filter), copy.deepcopy(update), kwargs))
        matched = [d for d in self.docs if matches(d, filter)]
        if not many:
            matched = matched[:1]
        for doc in matched:
            _apply_set(doc, update.get("$set", {}))
        return SimpleNamespace(
            matched_count=len(matched),
            modified_count=len(matched),
            upserted_id=None,
            acknowledged=True,
        )

    async def update_one(self, filter, update, **kwargs):
        return await self._update(filter, update, False, kwargs, "update_one")

    async def update_many(self, filter, update, **kwargs):
        return await self._update(filter, update, True, kwargs, "update_many")

    async def replace_one(self, filter, replacement, **kwargs):
        self.calls.append(("replace_one", filter, replacement, kwargs))
        for index, doc in enumerate(self.docs):
            if matches(doc, filter):
                self.docs[index] = {"_id": doc["_id"], **replacement}
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def _delete(self, filter, many, kwargs, name):
        self.calls.append((name, filter, kwargs))
        removed = [d for d in self.docs if matches(d, filter)]
        if not many:
            removed = removed[:1]
        self.docs = [d for d in self.docs if not any(d is r for r in removed)]
        return SimpleNamespace(deleted_count=len(removed), acknowledged=True)

    async def delete_one(self, filter, **kwargs):
        return await self._delete(filter, False, kwargs, "delete_one")

    async def delete_many(self, filter, **kwargs):
        return await self._delete(filter, True, kwargs, "delete_many")

    def watch(self, pipeline, **kwargs):
        self.calls.append(("watch", pipeline, kwargs))
        return SimpleNamespace(pipeline=pipeline)

    async def create_indexes(self, indexes, **kwargs):
        self.calls.append(("create_indexes", indexes, kwargs))
        return [i.document["name"] for i in indexes]

    async def drop_index(self, name, **kwargs):
        self.calls.append(("drop_index", name, kwargs))


class FakeDatabase:
    def __init__(self, name, client):
        self.name = name
        self.client = client
        self.collections: dict = {}

    def get_collection(self, name, **kwargs):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name, self)
        return self.collections[name]

    def __getitem__(self, name):
        return self.get_collection(name)


class FakeSession:
    def __init__(self, client):
        self.client = client
        self.in_transaction = False
        self.committed = False
        self.aborted = False
        self.ended = False

    def start_transaction(self, **kwargs):
        self.in_transaction = True

    async def commit_transaction(self):
        self.in_transaction = False
        self.committed = True

    async def abort_transaction(self):
        self.in_transaction = False
        self.aborted = True

    async def end_session(self):
        self.ended = True

    async def with_transaction(self, callback):
        self.start_transaction()
        try:
            result = await callback(self)
        except Exception:
            await self.abort_transaction()
            raise
        await self.commit_transaction()
        return result

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.end_session()


class FakeClient:
    def __init__(self, uri="mongodb://fake", **options):
        self.uri = uri
        self.options = options
        self.databases: dict = {}
        self.sessions: list = []
        self.closed = False

    def get_database(self, name):
        if name not in self.databases:
            self.databases[name] = FakeDatabase(name, self)
        return self.databases[name]

    def __getitem__(self, name):
        return self.get_database(name)

    def get_default_database(self, default=None):
        return self.get_database(default)

    async def start_session(self, **kwargs):
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    async def drop_database(self, name):
        self.databases.pop(name, None)

    def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Schémas d'exemple
# ---------------------------------------------------------------------------

class Address(BaseModel):
    city: str
    zip: Optional[str] = None


class Tag(BaseModel):
    name: str
    weight: int = 1


class User(MongoBaseModel):
    username: str
    age: int = 0
    address: Optional[Address] = None
    tags: list[Tag] = []
    scores: list[int] = []
    friends: list[PyObjectId] = []
    profile: Optional[PyObjectId] = None


class StrictUser(MongoBaseModel):
    username: str
    model_config = ConfigDict(extra="forbid", populate_by_name=True, arbitrary_types_allowed=True)


class Post(MongoBaseModel):
    title: str
    author: Optional[PyObjectId] = None
    likes: int = Field(default=0, ge=0)


@pytest.fixture
def settings():
    return Settings(mongodb_uri="mongodb://first,mongodb://second", mongodb_db="testdb")


@pytest.fixture
def context(settings):
    """Contexte non connecté utilisant les faux clients."""
    return MongoContext(settings=settings, client_factory=FakeClient)


@pytest.fixture
def connected(context):
    """Contexte avec deux connexions ouvertes (index 0 et 1)."""
    context.clients = [FakeClient("mongodb://first"), FakeClient("mongodb://second")]
    return context


def collection_of(model):
    """Faux collection derrière un modèle."""
    return model.collection
