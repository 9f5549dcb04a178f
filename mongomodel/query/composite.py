# mongomodel/query/composite.py
# Requêtes composites: lecture + mise à jour / suppression partageant le même filtre.

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from mongomodel.core.utils import pick_props
from mongomodel.query.delete import BaseDeleteQuery, DeleteManyQuery, DeleteOneQuery
from mongomodel.query.find import FindOneQuery, FindQuery
from mongomodel.query.update import BaseUpdateQuery, UpdateManyQuery, UpdateOneQuery

if TYPE_CHECKING:
    from mongomodel.models.model import MongoModel

# Options d'écriture également valides pour aggregate()
AGGREGATE_SAFE_OPTIONS = ("session", "collation", "comment", "let", "hint")


class _FindDelegate:
    """Relaie les méthodes de lecture vers la requête `find_query` interne."""

    find_query: Any

    def sort(self, sort: dict[str, Any]):
        self.find_query.sort(sort)
        return self

    def project(self, project: dict[str, Any]):
        self.find_query.project(project)
        return self

    def skip(self, skip: int):
        self.find_query.skip(skip)
        return self

    def limit(self, limit: int):
        self.find_query.limit(limit)
        return self

    def populate(self, field: str, model: "MongoModel", **options: Any):
        self.find_query.populate(field, model, **options)
        return self

    def populate_one(self, field: str, model: "MongoModel", **options: Any):
        self.find_query.populate_one(field, model, **options)
        return self

    def fetch(self, field: str, model: "MongoModel", **options: Any):
        self.find_query.fetch(field, model, **options)
        return self

    def fetch_one(self, field: str, model: "MongoModel", **options: Any):
        self.find_query.fetch_one(field, model, **options)
        return self


def _find_query(query_class: type, owner: Any, model: "MongoModel", options: dict[str, Any]) -> Any:
    # Le filtre est lu au moment de l'exécution (il peut être défini après la construction)
    return query_class(
        model,
        initial_filter=lambda: owner.filters,
        **pick_props(options, AGGREGATE_SAFE_OPTIONS),
    )


class BaseFindAndUpdateQuery(_FindDelegate, BaseUpdateQuery):
    find_class: type = FindOneQuery

    def __init__(self, model: "MongoModel", *, validate: bool = True, **options: Any):
        super().__init__(model, validate=validate, **options)
        self.find_query = _find_query(self.find_class, self, model, options)

    def _update_query(self, query_class: type) -> Any:
        return (
            query_class(self.model, validate=self.should_validate, **self.options)
            .filter(self.filters)
            .updates(self.update_doc)
        )


class UpdateAndFindOneQuery(BaseFindAndUpdateQuery):
    """Met à jour un document puis le relit."""

    find_class = FindOneQuery

    async def exec(self) -> Any:
        await self._update_query(UpdateOneQuery)
        return await self.find_query


class FindAndUpdateOneQuery(BaseFindAndUpdateQuery):
    """Lit un document (état avant mise à jour) puis le met à jour."""

    find_class = FindOneQuery

    async def exec(self) -> Any:
        result = await self.find_query
        await self._update_query(UpdateOneQuery)
        return result


class UpdateAndFindManyQuery(BaseFindAndUpdateQuery):
    find_class = FindQuery

    async def exec(self) -> list[Any]:
        await self._update_query(UpdateManyQuery)
        return await self.find_query


class FindAndUpdateManyQuery(BaseFindAndUpdateQuery):
    find_class = FindQuery

    async def exec(self) -> list[Any]:
        result = await self.find_query
        await self._update_query(UpdateManyQuery)
        return result


class BaseFindAndDeleteQuery(_FindDelegate, BaseDeleteQuery):
    find_class: type = FindOneQuery

    def __init__(self, model: "MongoModel", **options: Any):
        super().__init__(model, **options)
        self.find_query = _find_query(self.find_class, self, model, options)


class FindAndDeleteOneQuery(BaseFindAndDeleteQuery):
    find_class = FindOneQuery

    async def exec(self) -> Any:
        result = await self.find_query
        await DeleteOneQuery(self.model, **self.options).filter(self.filters)
        return result


class FindAndDeleteManyQuery(BaseFindAndDeleteQuery):
    find_class = FindQuery

    async def exec(self) -> list[Any]:
        result = await self.find_query
        await DeleteManyQuery(self.model, **self.options).filter(self.filters)
        return result
