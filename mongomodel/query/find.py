# mongomodel/query/find.py
# Requêtes de lecture (find, find_one, count) construites comme pipelines d'agrégation.

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from mongomodel.core.exceptions import RecordNotFoundError
from mongomodel.core.utils import maybe_await
from mongomodel.db.transaction import MongoTransaction
from mongomodel.query.base import BaseQuery
from mongomodel.services.query_builder import create_populate_aggregation
from mongomodel.services.relations import FetchConfig, fetch_relations

if TYPE_CHECKING:
    from mongomodel.models.model import MongoModel


class BaseFindQuery(BaseQuery):
    """Constructeur de pipeline d'agrégation (ordre des appels conservé)."""

    method = "find"

    def __init__(
        self,
        model: "MongoModel",
        *,
        initial_filter: Optional[Callable[[], dict[str, Any]]] = None,
        cache: Optional[dict[str, Any]] = None,
        **options: Any,
    ):
        self.model = model
        self.initial_filter = initial_filter
        self.cache = cache
        self.options = options
        self.aggregation: list[dict[str, Any]] = []
        self.fetches: dict[str, FetchConfig] = {}
        model.check_session(options.get("session"))

    # --- construction -------------------------------------------------

    def filter(self, filter: Optional[dict[str, Any]]):
        if isinstance(filter, dict) and filter:
            self.aggregation.append({"$match": filter})
        return self

    def sort(self, sort: Optional[dict[str, Any]]):
        if isinstance(sort, dict) and sort:
            self.aggregation.append({"$sort": sort})
        return self

    def project(self, project: Optional[dict[str, Any]]):
        if isinstance(project, dict) and project:
            self.aggregation.append({"$project": project})
        return self

    def skip(self, skip: int):
        self.aggregation.append({"$skip": skip})
        return self

    def limit(self, limit: int):
        self.aggregation.append({"$limit": limit})
        return self

    def group_by(self, fields: Union[str, list[str]], *, select_last_doc: bool = False):
        """Regroupe par tuple de champs en gardant le premier (ou dernier) document du groupe.

        Description:
            Les clés de groupe de premier niveau et `totalCount` (taille du groupe) sont
            fusionnées dans le document conservé.
        """
        fields = [fields] if isinstance(fields, str) else list(fields)
        group_id = {f.replace(".", "_"): f"${f}" for f in fields}

        self.aggregation.append(
            {
                "$group": {
                    "_id": group_id,
                    "doc": {("$last" if select_last_doc else "$first"): "$$ROOT"},
                    "totalCount": {"$sum": 1},
                }
            }
        )
        self.aggregation.append(
            {
                "$replaceRoot": {
                    "newRoot": {
                        "$mergeObjects": [
                            "$doc",
                            {f: f"$_id.{f}" for f in fields if "." not in f},
                            {"totalCount": "$totalCount"},
                        ]
                    }
                }
            }
        )
        return self

    def custom(self, stages: Union[dict[str, Any], list[dict[str, Any]]]):
        """Injecte des étapes brutes."""
        self.aggregation.extend([stages] if isinstance(stages, dict) else stages)
        return self

    def populate(self, field: str, model: "MongoModel", **options: Any):
        """Population embarquée (`$lookup`), résultat en tableau. Même connexion uniquement."""
        self.aggregation.extend(
            create_populate_aggregation(
                field, model, options, unwind=False, connection_index=self.model.connection_index
            )
        )
        return self

    def populate_one(self, field: str, model: "MongoModel", **options: Any):
        """Population embarquée, résultat singulier (`$unwind`)."""
        self.aggregation.extend(
            create_populate_aggregation(
                field, model, options, unwind=True, connection_index=self.model.connection_index
            )
        )
        return self

    def fetch(self, field: str, model: "MongoModel", **options: Any):
        """Relation résolue par requête séparée (multi-connexions possible)."""
        self.fetches[field] = FetchConfig(field, model, options)
        return self

    def fetch_one(self, field: str, model: "MongoModel", **options: Any):
        self.fetches[field] = FetchConfig(field, model, options, singular=True)
        return self

    def get_pipeline(self) -> list[dict[str, Any]]:
        """Pipeline effectif (filtre initial des requêtes composites en tête)."""
        if callable(self.initial_filter):
            initial = self.initial_filter()
            if isinstance(initial, dict) and initial:
                return [{"$match": initial}, *self.aggregation]
        return list(self.aggregation)

    # --- exécution ----------------------------------------------------

    async def _aggregate(self, pipeline: list[dict[str, Any]], options: dict[str, Any]) -> list[Any]:
        cursor = self.model.collection.aggregate(pipeline, **options)
        try:
            return await cursor.to_list(length=None)
        finally:
            # Le curseur serveur est libéré même en cas de succès
            await maybe_await(cursor.close())

    async def _run(self, pipeline: list[dict[str, Any]]) -> list[Any]:
        await self.model.run_hooks(
            "pre", "read", {"method": self.method, "aggregation_pipeline": pipeline}
        )
        self.model.log(self.method, pipeline, self.options)

        options = await MongoTransaction.resolve_command_opts(
            self.options, self.model.connection_index
        )

        async def operation() -> list[Any]:
            results = await self._aggregate(pipeline, options)
            if self.fetches:
                results = await fetch_relations(
                    results, list(self.fetches.values()), self.options.get("session")
                )
            return results

        return await self.model.context.use_caching(operation, self.cache)

    async def _post_read(self, docs: list[Any]) -> list[Any]:
        if not self.model.has_hooks("post", "read"):
            return list(docs)
        return list(
            await asyncio.gather(
                *(self.model.fold_hooks("post", "read", doc, method=self.method) for doc in docs)
            )
        )


class FindQuery(BaseFindQuery):
    method = "find"

    async def exec(self) -> list[Any]:
        results = await self._run(self.get_pipeline())
        return await self._post_read(results)


class FindOneQuery(BaseFindQuery):
    method = "find_one"

    def __init__(self, model: "MongoModel", *, error_on_null: bool = False, **options: Any):
        super().__init__(model, **options)
        self.error_on_null = error_on_null
        self._limit_applied = False

    async def exec(self) -> Any:
        if not self._limit_applied:
            self.limit(1)
            self._limit_applied = True

        results = await self._run(self.get_pipeline())

        if not results:
            if self.error_on_null:
                raise RecordNotFoundError()
            return None

        return (await self._post_read(results[:1]))[0]


class CountQuery(BaseFindQuery):
    method = "count"

    def __init__(self, model: "MongoModel", **options: Any):
        super().__init__(model, **options)
        self._count_applied = False

    async def exec(self) -> int:
        if not self._count_applied:
            self.custom({"$count": "count"})
            self._count_applied = True

        results = await self._run(self.get_pipeline())
        # Pipeline vide -> aucun document, pas une erreur
        return int(results[0]["count"]) if results else 0
