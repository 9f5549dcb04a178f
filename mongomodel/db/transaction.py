# mongomodel/db/transaction.py
# Transactions multi-connexions: une session par index de connexion, commit global ou abort global.

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from mongomodel.core.exceptions import CrossConnectionError
from mongomodel.core.logging_config import get_loggers
from mongomodel.core.utils import is_client_session, maybe_await
from mongomodel.db.mongodb import Mongo, MongoContext


class MongoTransaction:
    """Coordinateur de transaction couvrant plusieurs connexions.

    Description:
        Les sessions sont démarrées à la demande (`get_session(index)`), une par connexion.
        En fin de callback: commit de toutes les sessions ; en cas d'erreur: abort des sessions
        encore en transaction puis re-levée de l'erreur d'origine. Les sessions ouvertes ici
        sont toujours fermées. Ce n'est pas un commit à deux phases: un échec de commit sur une
        connexion peut laisser les autres déjà validées.
    """

    def __init__(self, context: Optional[MongoContext] = None):
        self.context = context or Mongo
        self.sessions: dict[int, Any] = {}
        self._borrowed: set[int] = set()
        self._session_opts: dict[str, Any] = {}
        self._transaction_opts: dict[str, Any] = {}
        self._lock = asyncio.Lock()

    @classmethod
    async def transaction(
        cls,
        callback: Callable[["MongoTransaction"], Awaitable[Any]],
        opts: Any = None,
        *,
        context: Optional[MongoContext] = None,
    ) -> Any:
        """Exécute `callback(txn)` dans une nouvelle transaction (ou la transaction parente).

        Args:
            callback: Coroutine recevant le `MongoTransaction`.
            opts: `{"session_opts": ..., "transaction_opts": ...}`, ou un `MongoTransaction`
                parent, ou une session driver parente.
        """
        return await cls(context).exec(callback, opts)

    @staticmethod
    async def resolve_command_opts(
        opts: Optional[dict[str, Any]], connection_index: int
    ) -> dict[str, Any]:
        """Remplace un `MongoTransaction` placé dans `opts["session"]` par la session de la connexion."""
        opts = dict(opts or {})
        session = opts.get("session")
        if isinstance(session, MongoTransaction):
            opts["session"] = await session.get_session(connection_index)
        return opts

    async def get_session(self, connection_index: int) -> Any:
        """Session (en transaction) de la connexion `connection_index`, démarrée au premier appel."""
        async with self._lock:
            if connection_index in self.sessions:
                return self.sessions[connection_index]

            client = self.context.get_client(connection_index)
            session = await client.start_session(**self._session_opts)
            session.start_transaction(**self._transaction_opts)
            self.sessions[connection_index] = session
            return session

    def _owned(self) -> list[Any]:
        return [s for i, s in self.sessions.items() if i not in self._borrowed]

    async def exec(
        self,
        callback: Callable[["MongoTransaction"], Awaitable[Any]],
        opts: Any = None,
    ) -> Any:
        if isinstance(opts, MongoTransaction):
            return await callback(opts)

        if is_client_session(opts):
            index = self.context.index_of(opts.client)
            if index is None:
                raise CrossConnectionError("Invalid parent mongo session!")
            # Session parente: commit / fin de session restent à la charge de son propriétaire
            self.sessions[index] = opts
            self._borrowed.add(index)
            opts = None

        opts = opts or {}
        self._session_opts = dict(opts.get("session_opts") or {})
        self._transaction_opts = dict(opts.get("transaction_opts") or {})

        try:
            result = await callback(self)
            await asyncio.gather(*(s.commit_transaction() for s in self._owned()))
            return result
        except Exception as exc:
            _, error_logger, _ = get_loggers()
            error_logger.error("Transaction aborted: %r", exc)
            await asyncio.gather(
                *(s.abort_transaction() for s in self._owned() if s.in_transaction),
                return_exceptions=True,
            )
            raise
        finally:
            await asyncio.gather(
                *(maybe_await(s.end_session()) for s in self._owned()), return_exceptions=True
            )
            self.sessions.clear()
            self._borrowed.clear()
