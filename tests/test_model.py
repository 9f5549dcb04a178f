"""Tests de la surface CRUD du modèle (hooks, validation, variantes or_fail, composites, registre)."""

import logging

import pytest
from bson import ObjectId

from conftest import FakeClient, Post, User
from mongomodel.core.exceptions import (
    ConfigurationError,
    CrossConnectionError,
    DeleteFailedError,
    DocumentValidationError,
    UpdateFailedError,
)
from mongomodel.query.update import UpdateResult


@pytest.fixture
def users(connected):
    return connected.model("user", User)


@pytest.fixture
def posts(connected):
    return connected.model("post", Post)


def _calls(model, name):
    return [c for c in model.collection.calls if c[0] == name]


class TestRegistry:
    def test_name_is_pluralised_and_registered(self, context):
        model = context.model("category", Post)
        assert model.name == "categories"
        assert context.models["categories"] is model

    def test_invalid_schema(self, context):
        with pytest.raises(ConfigurationError, match="Invalid or unexpected schema passed!"):
            context.model("thing", {"title": str})

    def test_lazy_schema_factory(self, context):
        model = context.model("post", lambda: Post)
        assert model.get_schema() is Post

    def test_not_connected(self, context):
        model = context.model("user", User)
        with pytest.raises(ConfigurationError, match="Please connect to the database!"):
            model.collection


class TestConnectionLifecycle:
    @pytest.mark.asyncio
    async def test_connect_events_and_indexes(self, context):
        order = []
        context.pre("connect", lambda: order.append("pre"))
        context.post("connect", lambda: order.append("post"))

        users = context.model("user", User)
        users.create_index({"key": {"username": 1}, "unique": True})

        await context.connect()
        assert order == ["pre", "post"]
        assert context.is_connected(0) and context.is_connected(1)
        assert context.clients[0].options["serverSelectionTimeoutMS"] == 30000

        (call,) = _calls(users, "create_indexes")
        assert call[1][0].document["key"] == {"username": 1}
        assert call[1][0].document["unique"] is True

    @pytest.mark.asyncio
    async def test_connect_keeps_open_clients(self, connected):
        first = connected.clients[0]
        await connected.connect()
        assert connected.clients[0] is first

    @pytest.mark.asyncio
    async def test_disconnect(self, connected):
        events = []
        connected.post("disconnect", lambda: events.append(1), index=1)
        client = connected.clients[1]

        await connected.disconnect(1)
        assert client.closed and events == [1]
        assert not connected.is_connected(1)
        assert connected.is_connected(0)

    def test_unknown_event(self, context):
        with pytest.raises(ConfigurationError):
            context.pre("explode", lambda: None)

    def test_database_reresolved_after_reconnect(self, connected, users):
        before = users.database
        assert users.database is before

        connected.clients[0] = FakeClient("mongodb://first")
        after = users.database
        assert after is not before
        assert after.client is connected.clients[0]

    def test_database_option(self, connected):
        model = connected.model("user", User, options={"database": "other"})
        assert model.database.name == "other"

    @pytest.mark.asyncio
    async def test_drop(self, connected, users):
        users.collection
        await connected.drop()
        assert "testdb" not in connected.clients[0].databases


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_runs_hooks_and_validates(self, users):
        def lowercase(details):
            return {**details["data"], "username": details["data"]["username"].lower()}

        users.pre("create", lowercase)
        users.post("create", lambda details: {**details["data"], "created": True})

        result = await users.create({"username": "BOB", "age": "12"})

        assert result["username"] == "bob"
        assert result["age"] == 12
        assert isinstance(result["_id"], ObjectId)
        assert result["created"] is True
        stored = users.collection.docs[0]
        assert stored["username"] == "bob" and "created" not in stored

    @pytest.mark.asyncio
    async def test_invalid_document_is_not_written(self, users):
        with pytest.raises(DocumentValidationError) as info:
            await users.create({"age": "abc"})
        assert {e["loc"] for e in info.value.errors} >= {"username", "age"}
        assert users.collection.docs == []

    @pytest.mark.asyncio
    async def test_create_without_validation(self, users):
        result = await users.create({"anything": 1}, validate=False)
        assert result["anything"] == 1

    @pytest.mark.asyncio
    async def test_create_many(self, users):
        assert await users.create_many([]) == []
        assert _calls(users, "insert_many") == []

        results = await users.create_many([{"username": "a"}, {"username": "b", "scores": ["1"]}])
        assert [r["username"] for r in results] == ["a", "b"]
        assert results[1]["scores"] == [1]
        assert all(isinstance(r["_id"], ObjectId) for r in results)

    @pytest.mark.asyncio
    async def test_create_many_reports_element_position(self, users):
        with pytest.raises(DocumentValidationError) as info:
            await users.create_many([{"username": "a"}, {"username": "b", "age": "x"}])
        assert info.value.errors[0]["loc"] == "1.age"
        assert users.collection.docs == []

    @pytest.mark.asyncio
    async def test_foreign_session_rejected(self, connected, users):
        session = await connected.clients[1].start_session()
        with pytest.raises(CrossConnectionError):
            await users.create({"username": "a"}, session=session)
        assert users.collection.docs == []


class TestUpdate:
    def test_updates_are_merged(self, users):
        query = (
            users.update_one({"username": "a"}, {"age": 1})
            .updates({"$set": {"username": "b"}, "$inc": {"age": 1}})
            .updates({"$inc": {"age": 2}})
        )
        assert query.update_doc == {"$set": {"age": 1, "username": "b"}, "$inc": {"age": 2}}
        assert users.update_one({}, {"age": 1}).updates({"age": 2}).update_doc == {"$set": {"age": 2}}

    def test_filter_replaces(self, users):
        oid = ObjectId()
        query = users.update_one({"username": "a"}).filter({"age": 1})
        assert query.filters == {"age": 1}
        assert users.update_one(str(oid)).filters == {"_id": oid}

    @pytest.mark.asyncio
    async def test_update_validates_and_reports_modifications(self, users):
        users.collection.docs.append({"_id": ObjectId(), "username": "a", "age": 1})

        result = await users.update_one(
            {"username": "a"},
            {"age": "5", "$push": {"tags": {"name": "x"}}, "address.city": "Lyon"},
        )

        assert isinstance(result, UpdateResult)
        assert result.matched_count == 1
        (call,) = _calls(users, "update_one")
        assert call[2]["$set"] == {"age": 5, "address.city": "Lyon"}
        assert call[2]["$push"] == {"tags": {"name": "x", "weight": 1}}
        assert result.modifications == {
            "age": 5,
            "address": {"city": "Lyon"},
            "tags": [{"name": "x", "weight": 1}],
        }

    @pytest.mark.asyncio
    async def test_invalid_update_is_not_sent(self, users):
        with pytest.raises(DocumentValidationError):
            await users.update_many({}, {"age": "old"})
        assert _calls(users, "update_many") == []

    @pytest.mark.asyncio
    async def test_update_without_validation(self, users):
        await users.update_one({}, {"age": "old"}, validate=False)
        (call,) = _calls(users, "update_one")
        assert call[2] == {"$set": {"age": "old"}}

    @pytest.mark.asyncio
    async def test_update_hooks(self, users):
        seen = {}

        def pre(details):
            details["updates"]["$set"]["age"] = 9

        users.pre("update", pre)
        users.post("update", lambda details: seen.update(details))

        await users.update_one({}, {"age": 1})
        (call,) = _calls(users, "update_one")
        assert call[2]["$set"]["age"] == 9
        assert seen["event"] == "update"
        assert seen["method"] == "update_one"
        assert isinstance(seen["data"], UpdateResult)

    @pytest.mark.asyncio
    async def test_or_fail_variants(self, users):
        with pytest.raises(UpdateFailedError, match="Record update has been failed!"):
            await users.update_one_or_fail({"username": "nobody"}, {"age": 1})
        with pytest.raises(UpdateFailedError):
            await users.update_many_or_fail({"username": "nobody"}, {"age": 1})

        users.collection.docs.append({"_id": ObjectId(), "username": "a"})
        result = await users.update_many_or_fail({"username": "a"}, {"age": 3})
        assert result.matched_count == 1


class TestCompositeQueries:
    @pytest.fixture
    def seeded(self, users):
        users.collection.docs.extend(
            [
                {"_id": ObjectId(), "username": "a", "age": 1},
                {"_id": ObjectId(), "username": "b", "age": 1},
            ]
        )
        return users

    @pytest.mark.asyncio
    async def test_update_and_find_one_returns_new_state(self, seeded):
        doc = await seeded.update_and_find_one({"username": "a"}, {"age": 2})
        assert doc["age"] == 2

    @pytest.mark.asyncio
    async def test_find_and_update_one_returns_old_state(self, seeded):
        doc = await seeded.find_and_update_one({"username": "a"}, {"age": 2})
        assert doc["age"] == 1
        assert seeded.collection.docs[0]["age"] == 2

    @pytest.mark.asyncio
    async def test_many_variants(self, seeded):
        before = await seeded.find_and_update_many({"age": 1}, {"age": 4}).sort({"username": -1})
        assert [d["username"] for d in before] == ["b", "a"]
        assert {d["age"] for d in before} == {1}

        after = await seeded.update_and_find_many({"age": 4}, {"age": 5})
        assert {d["age"] for d in after} == set()
        assert {d["age"] for d in seeded.collection.docs} == {5}

    @pytest.mark.asyncio
    async def test_filter_set_after_construction(self, seeded):
        query = seeded.find_and_update_one(None, {"age": 7}).filter({"username": "b"})
        doc = await query
        assert doc["username"] == "b"

    @pytest.mark.asyncio
    async def test_find_and_delete(self, seeded):
        doc = await seeded.find_and_delete_one({"username": "a"})
        assert doc["username"] == "a"
        assert [d["username"] for d in seeded.collection.docs] == ["b"]

        docs = await seeded.find_and_delete_many()
        assert [d["username"] for d in docs] == ["b"]
        assert seeded.collection.docs == []


class TestDeleteAndReplace:
    @pytest.mark.asyncio
    async def test_delete_hooks_and_or_fail(self, users):
        users.collection.docs.append({"_id": ObjectId(), "username": "a"})
        events = []
        users.pre("delete", lambda details: events.append(("pre", details["filter"])))
        users.post("delete", lambda details: events.append(("post", details["data"].deleted_count)))

        result = await users.delete_one({"username": "a"})
        assert result.deleted_count == 1
        assert events == [("pre", {"username": "a"}), ("post", 1)]

        with pytest.raises(DeleteFailedError):
            await users.delete_one_or_fail({"username": "a"})
        with pytest.raises(DeleteFailedError):
            await users.delete_many_or_fail({})

    @pytest.mark.asyncio
    async def test_replace_one(self, posts):
        oid = ObjectId()
        posts.collection.docs.append({"_id": oid, "title": "old", "likes": 3})
        posts.pre("replace", lambda details: {**details["replacement"], "title": "hooked"})

        result = await posts.replace_one(oid, {"title": "new"})
        assert result.matched_count == 1
        assert posts.collection.docs[0] == {"_id": oid, "title": "hooked", "author": None, "likes": 0}

    @pytest.mark.asyncio
    async def test_replace_rejects_invalid(self, posts):
        with pytest.raises(DocumentValidationError):
            await posts.replace_one({}, {"title": "x", "likes": -1})
        assert _calls(posts, "replace_one") == []


class TestMisc:
    def test_watch(self, users):
        stream = users.watch({"username": "a"})
        assert stream.pipeline == [{"$match": {"username": "a"}}]

    @pytest.mark.asyncio
    async def test_watch_rejects_transaction(self, connected, users):
        from mongomodel.db.transaction import MongoTransaction

        async def work(txn):
            await users.create({"username": "a"}, session=txn)
            users.watch({}, session=txn)

        with pytest.raises(ConfigurationError, match="inside a transaction"):
            await MongoTransaction.transaction(work, context=connected)
        assert _calls(users, "watch") == []
        assert connected.clients[0].sessions[0].aborted

    @pytest.mark.asyncio
    async def test_watch_accepts_own_driver_session(self, connected, users):
        session = await connected.clients[0].start_session()
        users.watch({}, session=session)
        assert _calls(users, "watch")[0][2]["session"] is session

        other = await connected.clients[1].start_session()
        with pytest.raises(CrossConnectionError):
            users.watch({}, session=other)

    @pytest.mark.asyncio
    async def test_query_logging_when_enabled(self, connected, caplog):
        model = connected.model("user", User, options={"logs": True})
        with caplog.at_level(logging.INFO, logger="mongomodel.generic"):
            await model.find({"age": 1})
        assert "Query Executed:: testdb.users.find(" in caplog.text

    @pytest.mark.asyncio
    async def test_transaction_session_is_resolved_per_connection(self, connected, users):
        from mongomodel.db.transaction import MongoTransaction

        async def work(txn):
            await users.create({"username": "a"}, session=txn)
            await users.find(session=txn)

        await MongoTransaction.transaction(work, context=connected)
        session = connected.clients[0].sessions[0]
        (insert,) = _calls(users, "insert_one")
        assert insert[2]["session"] is session
        assert _calls(users, "aggregate")[0][2]["session"] is session
        assert session.committed
