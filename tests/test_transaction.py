"""Tests des transactions multi-connexions et de la transaction simple du contexte."""

import pytest

from conftest import FakeClient, Post, User
from mongomodel.core.exceptions import CrossConnectionError
from mongomodel.db.transaction import MongoTransaction


@pytest.fixture
def models(connected):
    return connected.model("user", User), connected.model("post", Post, connection_index=1)


class TestMongoTransaction:
    @pytest.mark.asyncio
    async def test_commits_every_connection(self, connected, models):
        users, posts = models

        async def work(txn):
            await users.create({"username": "a"}, session=txn)
            await posts.create({"title": "p"}, session=txn)
            return "done"

        assert await MongoTransaction.transaction(work, context=connected) == "done"

        first, second = connected.clients[0].sessions[0], connected.clients[1].sessions[0]
        assert first.committed and second.committed
        assert first.ended and second.ended

    @pytest.mark.asyncio
    async def test_sessions_started_lazily(self, connected, models):
        users, _ = models

        async def work(txn):
            await users.find(session=txn)

        await MongoTransaction.transaction(work, context=connected)
        assert len(connected.clients[0].sessions) == 1
        assert connected.clients[1].sessions == []

    @pytest.mark.asyncio
    async def test_abort_and_reraise(self, connected, models):
        users, posts = models

        class Boom(Exception):
            pass

        async def work(txn):
            await users.create({"username": "a"}, session=txn)
            await posts.create({"title": "p"}, session=txn)
            raise Boom("stop")

        with pytest.raises(Boom, match="stop"):
            await MongoTransaction.transaction(work, context=connected)

        sessions = connected.clients[0].sessions + connected.clients[1].sessions
        assert all(s.aborted and not s.committed for s in sessions)
        assert all(s.ended for s in sessions)

    @pytest.mark.asyncio
    async def test_parent_transaction_is_reused(self, connected):
        seen = []

        async def inner(txn):
            seen.append(txn)

        async def outer(txn):
            await MongoTransaction.transaction(inner, txn, context=connected)
            seen.append(txn)

        await MongoTransaction.transaction(outer, context=connected)
        assert seen[0] is seen[1]

    @pytest.mark.asyncio
    async def test_parent_session_is_borrowed(self, connected, models):
        users, _ = models
        parent = await connected.clients[0].start_session()
        parent.start_transaction()

        async def work(txn):
            assert await txn.get_session(0) is parent
            await users.create({"username": "a"}, session=txn)

        await MongoTransaction.transaction(work, parent, context=connected)
        assert not parent.committed and not parent.ended
        assert len(connected.clients[0].sessions) == 1

    @pytest.mark.asyncio
    async def test_unknown_parent_session(self, connected):
        stray = await FakeClient().start_session()

        async def work(txn):
            return None

        with pytest.raises(CrossConnectionError):
            await MongoTransaction.transaction(work, stray, context=connected)

    @pytest.mark.asyncio
    async def test_resolve_command_opts(self, connected):
        txn = MongoTransaction(connected)
        opts = {"session": txn, "comment": "x"}

        resolved = await MongoTransaction.resolve_command_opts(opts, 1)
        assert resolved["session"] is connected.clients[1].sessions[0]
        assert resolved["comment"] == "x"
        assert opts["session"] is txn
        assert await MongoTransaction.resolve_command_opts(None, 0) == {}


class TestContextTransaction:
    @pytest.mark.asyncio
    async def test_with_transaction_commits(self, connected):
        async def work(session):
            return session

        session = await connected.transaction(work)
        assert session.committed and session.ended

    @pytest.mark.asyncio
    async def test_with_transaction_aborts(self, connected):
        async def work(session):
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await connected.transaction(work, connection_index=1)
        session = connected.clients[1].sessions[0]
        assert session.aborted and session.ended

    @pytest.mark.asyncio
    async def test_parent_session_passthrough(self, connected):
        parent = await connected.clients[0].start_session()

        async def work(session):
            return session

        assert await connected.transaction(work, parent) is parent
        assert len(connected.clients[0].sessions) == 1
