# mongomodel/query/delete.py
# Requêtes de suppression (delete_one, delete_many).

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from mongomodel.db.transaction import MongoTransaction
from mongomodel.query.base import BaseQuery

if TYPE_CHECKING:
    from mongomodel.models.model import MongoModel


class BaseDeleteQuery(BaseQuery):
    method = "delete_one"

    def __init__(self, model: "MongoModel", **options: Any):
        self.model = model
        self.options = options
        self.filters: dict[str, Any] = {}
        model.check_session(options.get("session"))

    def filter(self, filter: Optional[dict[str, Any]]):
        self.filters = filter or {}
        return self

    async def _delete(self, operation: str) -> Any:
        await self.model.run_hooks("pre", "delete", {"method": self.method, "filter": self.filters})
        self.model.log(self.method, self.filters, self.options)

        options = await MongoTransaction.resolve_command_opts(
            self.options, self.model.connection_index
        )
        result = await getattr(self.model.collection, operation)(self.filters, **options)

        await self.model.run_hooks("post", "delete", {"method": self.method, "data": result})
        return result


class DeleteOneQuery(BaseDeleteQuery):
    method = "delete_one"

    async def exec(self) -> Any:
        return await self._delete("delete_one")


class DeleteManyQuery(BaseDeleteQuery):
    method = "delete_many"

    async def exec(self) -> Any:
        return await self._delete("delete_many")
