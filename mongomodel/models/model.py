# mongomodel/models/model.py
# Modèle MongoDB: handle nommé, typé par un schéma Pydantic, lié à une connexion.
# Surface CRUD (requêtes différées), hooks, index, populations copy-on-write.

from __future__ import annotations

import asyncio
import copy
from typing import Any, Optional

from pymongo import IndexModel
from pymongo.errors import PyMongoError

from mongomodel.core.bson_utils import to_object_id_filter
from mongomodel.core.exceptions import (
    ConfigurationError,
    CrossConnectionError,
    DeleteFailedError,
    UpdateFailedError,
)
from mongomodel.core.logging_config import get_loggers, log_query
from mongomodel.core.utils import is_client_session
from mongomodel.db.mongodb import Mongo, MongoContext
from mongomodel.db.transaction import MongoTransaction
from mongomodel.models.hooks import MongoHooks
from mongomodel.models.schema import (
    SchemaLike,
    array_of,
    deep_partial,
    resolve_schema,
    validate,
)
from mongomodel.query.composite import (
    FindAndDeleteManyQuery,
    FindAndDeleteOneQuery,
    FindAndUpdateManyQuery,
    FindAndUpdateOneQuery,
    UpdateAndFindManyQuery,
    UpdateAndFindOneQuery,
)
from mongomodel.query.delete import DeleteManyQuery, DeleteOneQuery
from mongomodel.query.find import CountQuery, FindOneQuery, FindQuery
from mongomodel.query.update import UpdateManyQuery, UpdateOneQuery
from mongomodel.services.query_builder import PopulateConfig, check_population_model


class MongoModel(MongoHooks):
    """Handle d'une collection.

    Description:
        - `name`: nom de collection (déjà au pluriel via `Mongo.model`)
        - schéma: classe Pydantic ou fabrique sans argument, résolue au premier usage
        - `connection_index`: toutes les requêtes utilisent cette connexion ; une session
          rattachée à une autre connexion est refusée
        - `options`: `database` (nom de base), `collection_options`, `logs`
        - `populate` / `populate_one` renvoient un *nouveau* modèle (registre de hooks partagé)
    """

    def __init__(
        self,
        name: str,
        schema: SchemaLike,
        connection_index: int = 0,
        options: Optional[dict[str, Any]] = None,
        *,
        context: Optional[MongoContext] = None,
        populate_configs: tuple[PopulateConfig, ...] = (),
    ):
        super().__init__()
        self.name = name
        self.model_schema = schema
        self.connection_index = connection_index
        self.options = dict(options or {})
        self.context = context or Mongo
        self.populate_configs = tuple(populate_configs)
        self._schema = None
        self._database = None
        self._database_client = None

    def __repr__(self) -> str:
        return f"MongoModel({self.name!r}, connection={self.connection_index})"

    # ------------------------------------------------------------------
    # Schéma
    # ------------------------------------------------------------------

    def get_schema(self):
        if self._schema is None:
            self._schema = resolve_schema(self.model_schema)
        return self._schema

    def get_update_schema(self):
        return deep_partial(self.get_schema())

    def _validate_document(self, doc: Any) -> dict[str, Any]:
        data = validate(self.get_schema(), doc, {"name": self.name}, name=self.name)
        if data.get("_id") is None:
            data.pop("_id", None)
        return data

    # ------------------------------------------------------------------
    # Connexion
    # ------------------------------------------------------------------

    @property
    def database(self):
        """Base du modèle, ré-résolue si le client de la connexion a changé (reconnexion)."""
        client = self.context.get_client(self.connection_index)
        if self._database is None or self._database_client is not client:
            self._database = self.context.get_database(
                self.connection_index, self.options.get("database")
            )
            self._database_client = client
        return self._database

    @property
    def collection(self):
        return self.database.get_collection(
            self.name, **(self.options.get("collection_options") or {})
        )

    def check_session(self, session: Any) -> None:
        """Refuse une session driver ouverte sur une autre connexion que celle du modèle."""
        if session is None or isinstance(session, MongoTransaction):
            return
        if is_client_session(session):
            index = self.context.index_of(session.client)
            if index != self.connection_index:
                raise CrossConnectionError(
                    f"Session belongs to connection {index} but model '{self.name}' "
                    f"uses connection {self.connection_index}!"
                )

    @staticmethod
    def normalize_filter(filter: Any) -> dict[str, Any]:
        return to_object_id_filter(filter)

    def log(self, method: str, *args: Any) -> None:
        if self.options.get("logs") or self.context.enable_logs:
            log_query(f"{self.database.name}.{self.name}.{method}", *args)

    async def _resolve(self, options: dict[str, Any]) -> dict[str, Any]:
        self.check_session(options.get("session"))
        return await MongoTransaction.resolve_command_opts(options, self.connection_index)

    # ------------------------------------------------------------------
    # Index (appliqués à la connexion)
    # ------------------------------------------------------------------

    def create_index(self, *specs: dict[str, Any]):
        """Déclare des index créés à chaque connexion (`{"key": {...}, **options}`)."""

        async def create_indexes() -> None:
            if not specs:
                return
            self.log("create_index", *specs)
            indexes = [
                IndexModel(list(spec["key"].items()), **{k: v for k, v in spec.items() if k != "key"})
                for spec in specs
            ]
            try:
                await self.collection.create_indexes(indexes)
            except PyMongoError as exc:
                _, error_logger, _ = get_loggers()
                error_logger.error("Index creation failed on '%s': %s", self.name, exc)

        self.context.post("connect", create_indexes, self.connection_index)
        return self

    def drop_index(self, names: list[str], **options: Any):
        """Déclare des index supprimés à chaque connexion."""

        async def drop_indexes() -> None:
            for name in names:
                self.log("drop_index", {"name": name}, options)
                try:
                    await self.collection.drop_index(name, **options)
                except PyMongoError as exc:
                    _, error_logger, _ = get_loggers()
                    error_logger.error("Index drop failed on '%s' (%s): %s", self.name, name, exc)

        self.context.post("connect", drop_indexes, self.connection_index)
        return self

    # ------------------------------------------------------------------
    # Création
    # ------------------------------------------------------------------

    async def create(self, doc: Any, *, validate: bool = True, **options: Any) -> dict[str, Any]:
        """Insère un document.

        Description:
            Hooks `pre create` (réduction), validation complète, `insert_one`, puis hooks
            `post create` sur le document renvoyé (avec `_id`).

        Raises:
            DocumentValidationError: Document invalide (rien n'est écrit).
        """
        self.check_session(options.get("session"))
        doc = await self.fold_hooks("pre", "create", doc, method="create")
        self.log("create", doc, options)

        data = self._validate_document(doc) if validate else dict(doc)
        ack = await self.collection.insert_one(data, **await self._resolve(options))

        result = {**data, "_id": ack.inserted_id}
        return await self.fold_hooks("post", "create", result, method="create")

    async def create_many(
        self, docs: list[Any], *, validate: bool = True, **options: Any
    ) -> list[dict[str, Any]]:
        """Insère plusieurs documents (hooks `pre create` en parallèle entre documents)."""
        if not docs:
            return []

        self.check_session(options.get("session"))
        docs = await asyncio.gather(
            *(self.fold_hooks("pre", "create", doc, method="create_many") for doc in docs)
        )
        self.log("create_many", list(docs), options)

        if validate:
            data = validate_array(self, list(docs))
        else:
            data = [dict(doc) for doc in docs]

        ack = await self.collection.insert_many(data, **await self._resolve(options))

        results = [{**doc, "_id": _id} for doc, _id in zip(data, ack.inserted_ids)]
        return list(
            await asyncio.gather(
                *(self.fold_hooks("post", "create", doc, method="create_many") for doc in results)
            )
        )

    # ------------------------------------------------------------------
    # Lecture
    # ------------------------------------------------------------------

    def find(self, filter: Any = None, **options: Any) -> FindQuery:
        return FindQuery(self, **options).filter(self.normalize_filter(filter))

    def search(self, term: Any = None, **options: Any) -> FindQuery:
        """Recherche plein texte (`$text`), terme simple ou objet `{"$search": ..., "$language": ...}`."""
        text = {"$text": term if isinstance(term, dict) else {"$search": term}} if term else {}
        return FindQuery(self, **options).filter(text)

    def find_one(self, filter: Any = None, **options: Any) -> FindOneQuery:
        return FindOneQuery(self, **options).filter(self.normalize_filter(filter))

    def find_one_or_fail(self, filter: Any = None, **options: Any) -> FindOneQuery:
        return FindOneQuery(self, error_on_null=True, **options).filter(self.normalize_filter(filter))

    def count(self, filter: Any = None, **options: Any) -> CountQuery:
        return CountQuery(self, **options).filter(self.normalize_filter(filter))

    async def exists(self, filter: Any = None, **options: Any) -> bool:
        return bool(await self.count(filter, **options).limit(1))

    def watch(self, filter: Any = None, **options: Any):
        """Change stream sur la collection, filtré par `$match`.

        Raises:
            ConfigurationError: Session `MongoTransaction` (pas de change stream dans une transaction).
            CrossConnectionError: Session driver d'une autre connexion.
        """
        session = options.get("session")
        if isinstance(session, MongoTransaction):
            raise ConfigurationError("Change streams cannot be opened inside a transaction!")
        self.check_session(session)
        match = self.normalize_filter(filter)
        self.log("watch", match, options)
        return self.collection.watch([{"$match": match}], **options)

    # ------------------------------------------------------------------
    # Mise à jour
    # ------------------------------------------------------------------

    def update_one(self, filter: Any = None, updates: Optional[dict[str, Any]] = None, **options: Any) -> UpdateOneQuery:
        return UpdateOneQuery(self, **options).filter(self.normalize_filter(filter)).updates(updates)

    async def update_one_or_fail(self, filter: Any = None, updates: Optional[dict[str, Any]] = None, **options: Any):
        result = await self.update_one(filter, updates, **options)
        if not result.matched_count:
            raise UpdateFailedError()
        return result

    def update_many(self, filter: Any = None, updates: Optional[dict[str, Any]] = None, **options: Any) -> UpdateManyQuery:
        return UpdateManyQuery(self, **options).filter(self.normalize_filter(filter)).updates(updates)

    async def update_many_or_fail(self, filter: Any = None, updates: Optional[dict[str, Any]] = None, **options: Any):
        result = await self.update_many(filter, updates, **options)
        if not result.matched_count:
            raise UpdateFailedError()
        return result

    def update_and_find_one(self, filter: Any = None, updates: Optional[dict[str, Any]] = None, **options: Any):
        return UpdateAndFindOneQuery(self, **options).filter(self.normalize_filter(filter)).updates(updates)

    def find_and_update_one(self, filter: Any = None, updates: Optional[dict[str, Any]] = None, **options: Any):
        return FindAndUpdateOneQuery(self, **options).filter(self.normalize_filter(filter)).updates(updates)

    def update_and_find_many(self, filter: Any = None, updates: Optional[dict[str, Any]] = None, **options: Any):
        return UpdateAndFindManyQuery(self, **options).filter(self.normalize_filter(filter)).updates(updates)

    def find_and_update_many(self, filter: Any = None, updates: Optional[dict[str, Any]] = None, **options: Any):
        return FindAndUpdateManyQuery(self, **options).filter(self.normalize_filter(filter)).updates(updates)

    # ------------------------------------------------------------------
    # Suppression
    # ------------------------------------------------------------------

    def delete_one(self, filter: Any = None, **options: Any) -> DeleteOneQuery:
        return DeleteOneQuery(self, **options).filter(self.normalize_filter(filter))

    async def delete_one_or_fail(self, filter: Any = None, **options: Any):
        result = await self.delete_one(filter, **options)
        if not result.deleted_count:
            raise DeleteFailedError()
        return result

    def delete_many(self, filter: Any = None, **options: Any) -> DeleteManyQuery:
        return DeleteManyQuery(self, **options).filter(self.normalize_filter(filter))

    async def delete_many_or_fail(self, filter: Any = None, **options: Any):
        result = await self.delete_many(filter, **options)
        if not result.deleted_count:
            raise DeleteFailedError()
        return result

    def find_and_delete_one(self, filter: Any = None, **options: Any) -> FindAndDeleteOneQuery:
        return FindAndDeleteOneQuery(self, **options).filter(self.normalize_filter(filter))

    def find_and_delete_many(self, filter: Any = None, **options: Any) -> FindAndDeleteManyQuery:
        return FindAndDeleteManyQuery(self, **options).filter(self.normalize_filter(filter))

    # ------------------------------------------------------------------
    # Remplacement
    # ------------------------------------------------------------------

    async def replace_one(self, filter: Any, replacement: Any, *, validate: bool = True, **options: Any):
        """Remplace un document entier (validation complète)."""
        self.check_session(options.get("session"))
        filter = self.normalize_filter(filter)
        replacement = await self.fold_hooks(
            "pre", "replace", replacement, key="replacement", method="replace_one", filter=filter
        )
        self.log("replace_one", filter, replacement, options)

        data = self._validate_document(replacement) if validate else dict(replacement)
        result = await self.collection.replace_one(filter, data, **await self._resolve(options))

        await self.run_hooks("post", "replace", {"method": "replace_one", "data": result})
        return result

    # ------------------------------------------------------------------
    # Populations (copy-on-write)
    # ------------------------------------------------------------------

    def _with_populate(self, config: PopulateConfig) -> "MongoModel":
        check_population_model(config.model, self.connection_index)
        clone = copy.copy(self)
        clone.populate_configs = self.populate_configs + (config,)
        return clone

    def populate(self, field: str, model: "MongoModel", **options: Any) -> "MongoModel":
        """Nouveau modèle portant une population (utilisée quand ce modèle est lui-même peuplé)."""
        return self._with_populate(PopulateConfig(field, model, options))

    def populate_one(self, field: str, model: "MongoModel", **options: Any) -> "MongoModel":
        return self._with_populate(PopulateConfig(field, model, options, unwind=True))


def validate_array(model: MongoModel, docs: list[Any]) -> list[dict[str, Any]]:
    data = validate(array_of(model.get_schema()), docs, {"name": model.name}, name=model.name)
    for doc in data:
        if doc.get("_id") is None:
            doc.pop("_id", None)
    return data
