# mongomodel/query/update.py
# Requêtes de mise à jour (update_one, update_many): fusion des modificateurs, hooks, validation, driver.

from __future__ import annotations

from functools import cached_property
from typing import TYPE_CHECKING, Any, Optional

from mongomodel.core.utils import dot_notation_to_deep_object, mongodb_modifiers_to_object
from mongomodel.db.transaction import MongoTransaction
from mongomodel.query.base import BaseQuery
from mongomodel.services.update_validator import validate_updates

if TYPE_CHECKING:
    from mongomodel.models.model import MongoModel


class UpdateResult:
    """Résultat driver enrichi d'une vue `modifications` (calculée à la demande).

    Description:
        Les attributs du résultat pymongo (`matched_count`, `modified_count`, `upserted_id`,
        `acknowledged`, `raw_result`) sont délégués. `modifications` reconstruit l'objet imbriqué
        des valeurs effectivement envoyées (`$set`, `$setOnInsert`, `$push`, `$addToSet`).
    """

    def __init__(self, result: Any, updates: dict[str, Any]):
        self.result = result
        self.updates = updates

    def __getattr__(self, name: str) -> Any:
        if name == "result":
            raise AttributeError(name)
        return getattr(self.result, name)

    @cached_property
    def modifications(self) -> dict[str, Any]:
        return dot_notation_to_deep_object(mongodb_modifiers_to_object(self.updates))

    def __repr__(self) -> str:
        return f"UpdateResult({self.result!r}, updates={self.updates!r})"


class BaseUpdateQuery(BaseQuery):
    """Accumule filtre et document de mise à jour."""

    method = "update_one"

    def __init__(self, model: "MongoModel", *, validate: bool = True, **options: Any):
        self.model = model
        self.should_validate = validate
        self.options = options
        self.filters: dict[str, Any] = {}
        self.update_doc: dict[str, Any] = {}
        model.check_session(options.get("session"))

    def filter(self, filter: Optional[dict[str, Any]]):
        """Remplace le filtre courant."""
        self.filters = filter or {}
        return self

    def updates(self, updates: Optional[dict[str, Any]]):
        """Fusionne un document de mise à jour.

        Description:
            Les clés `$...` sont fusionnées par opérateur ; les clés simples sont rangées
            dans `$set`. Même clé: la dernière écriture l'emporte.
        """
        if not isinstance(updates, dict):
            return self

        merged = dict(self.update_doc)
        for key, value in updates.items():
            if key.startswith("$"):
                merged[key] = {**merged.get(key, {}), **(value or {})}
            else:
                merged["$set"] = {**merged.get("$set", {}), key: value}
        self.update_doc = merged
        return self

    def set(self, fields: dict[str, Any]):
        return self.updates({"$set": fields})

    async def _prepare(self) -> tuple[dict[str, Any], dict[str, Any]]:
        # Les hooks "pre" peuvent modifier filtre et mise à jour sur place
        await self.model.run_hooks(
            "pre",
            "update",
            {"method": self.method, "filter": self.filters, "updates": self.update_doc},
        )
        self.model.log(self.method, self.filters, self.update_doc, self.options)

        updates = self.update_doc
        if self.should_validate:
            updates = validate_updates(
                self.model.get_schema(),
                updates,
                context={"name": self.model.name},
                name=self.model.name,
            )

        options = await MongoTransaction.resolve_command_opts(
            self.options, self.model.connection_index
        )
        return updates, options

    async def _finish(self, raw: Any, updates: dict[str, Any]) -> UpdateResult:
        result = UpdateResult(raw, updates)
        await self.model.run_hooks(
            "post", "update", {"method": self.method, "updates": updates, "data": result}
        )
        return result


class UpdateOneQuery(BaseUpdateQuery):
    method = "update_one"

    async def exec(self) -> UpdateResult:
        updates, options = await self._prepare()
        raw = await self.model.collection.update_one(self.filters, updates, **options)
        return await self._finish(raw, updates)


class UpdateManyQuery(BaseUpdateQuery):
    method = "update_many"

    async def exec(self) -> UpdateResult:
        updates, options = await self._prepare()
        raw = await self.model.collection.update_many(self.filters, updates, **options)
        return await self._finish(raw, updates)
