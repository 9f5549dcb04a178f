# mongomodel/db/mongodb.py
# Registre des connexions MongoDB (clients motor indexés), événements connect/disconnect,
# registre des modèles et orchestration du cache externe.

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from mongomodel.core.exceptions import ConfigurationError
from mongomodel.core.logging_config import get_loggers
from mongomodel.core.settings import Settings, get_settings
from mongomodel.core.utils import maybe_await, pluralize

if TYPE_CHECKING:
    from mongomodel.models.model import MongoModel

logger = logging.getLogger(__name__)

EventCallback = Callable[[], Union[Any, Awaitable[Any]]]
CONNECTION_EVENTS = ("connect", "disconnect")


class MongoContext:
    """Contexte process: clients MongoDB, modèles déclarés, événements et cache.

    Description:
        - `clients[i]` est le client de la connexion d'index `i` (`None` si déconnectée)
        - `connect` / `disconnect` sont les seules opérations qui modifient ce registre
        - les modèles comparent l'identité du client courant pour invalider leur handle de base
        - le cache est un collaborateur externe (`get` / `set` / `delete`, sync ou async)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Callable[..., Any] = AsyncIOMotorClient,
    ):
        self.settings = settings or get_settings()
        self.enable_logs: bool = self.settings.enable_logs
        self.client_factory = client_factory
        self.clients: list[Optional[AsyncIOMotorClient]] = []
        self.models: dict[str, "MongoModel"] = {}
        self._events: dict[tuple[str, str], dict[int, list[EventCallback]]] = {
            (phase, event): {} for phase in ("pre", "post") for event in CONNECTION_EVENTS
        }
        self._caching: Optional[dict[str, Callable[..., Any]]] = None

    # ------------------------------------------------------------------
    # Événements
    # ------------------------------------------------------------------

    def _register(self, phase: str, event: str, callback: EventCallback, index: int):
        if event not in CONNECTION_EVENTS:
            raise ConfigurationError(f"Unknown connection event '{event}'!")
        self._events[(phase, event)].setdefault(index, []).append(callback)
        return self

    def pre(self, event: str, callback: EventCallback, index: int = 0):
        """Callback exécuté avant `connect` / `disconnect` de la connexion `index`."""
        return self._register("pre", event, callback, index)

    def post(self, event: str, callback: EventCallback, index: int = 0):
        """Callback exécuté après `connect` / `disconnect` de la connexion `index`."""
        return self._register("post", event, callback, index)

    async def _emit(self, phase: str, event: str, index: int) -> None:
        for callback in list(self._events[(phase, event)].get(index, [])):
            await maybe_await(callback())

    # ------------------------------------------------------------------
    # Connexions
    # ------------------------------------------------------------------

    async def connect(
        self, uris: Union[str, list[str], None] = None, **client_options: Any
    ) -> "MongoContext":
        """Ouvre un client par URI (index = position).

        Description:
            Sans argument, utilise `settings.mongodb_uri` (liste séparée par des virgules).
            Une connexion déjà ouverte à un index donné est conservée.
            Les événements pre/post `connect` de chaque index sont émis.

        Args:
            uris (str | list[str] | None): URI(s) MongoDB.
            **client_options: Options passées à `AsyncIOMotorClient`.

        Returns:
            MongoContext: `self` (chaînable).
        """
        if uris is None:
            uri_list = self.settings.mongodb_uris
        elif isinstance(uris, str):
            uri_list = [u.strip() for u in uris.split(",") if u.strip()]
        else:
            uri_list = list(uris)

        if not uri_list:
            raise ConfigurationError("No MongoDB URI provided!")

        client_options.setdefault(
            "serverSelectionTimeoutMS", self.settings.server_selection_timeout_ms
        )

        generic_logger, _, _ = get_loggers()

        for index, uri in enumerate(uri_list):
            if index < len(self.clients) and self.clients[index] is not None:
                continue

            await self._emit("pre", "connect", index)

            client = self.client_factory(uri, **client_options)
            while len(self.clients) <= index:
                self.clients.append(None)
            self.clients[index] = client

            generic_logger.info("MongoDB connection %d opened", index)
            await self._emit("post", "connect", index)

        return self

    async def disconnect(self, index: Optional[int] = None) -> None:
        """Ferme une connexion (ou toutes si `index` est `None`)."""
        indexes = range(len(self.clients)) if index is None else [index]
        generic_logger, _, _ = get_loggers()

        for i in indexes:
            if i >= len(self.clients) or self.clients[i] is None:
                continue

            await self._emit("pre", "disconnect", i)
            client = self.clients[i]
            self.clients[i] = None
            client.close()
            generic_logger.info("MongoDB connection %d closed", i)
            await self._emit("post", "disconnect", i)

    def is_connected(self, index: int = 0) -> bool:
        return 0 <= index < len(self.clients) and self.clients[index] is not None

    def get_client(self, index: int = 0) -> AsyncIOMotorClient:
        """Client de la connexion `index`.

        Raises:
            ConfigurationError: Connexion absente ou fermée.
        """
        if not self.is_connected(index):
            raise ConfigurationError("Please connect to the database!")
        return self.clients[index]

    def index_of(self, client: Any) -> Optional[int]:
        """Index de connexion d'un client (comparaison par identité)."""
        for index, registered in enumerate(self.clients):
            if registered is not None and registered is client:
                return index
        return None

    def get_database(self, index: int = 0, name: Optional[str] = None) -> AsyncIOMotorDatabase:
        """Base `name`, ou base par défaut de l'URI, ou `settings.mongodb_db`."""
        client = self.get_client(index)
        if name:
            return client[name]
        return client.get_default_database(self.settings.mongodb_db)

    async def drop(self, index: int = 0, name: Optional[str] = None) -> None:
        """Supprime la base de la connexion `index`."""
        database = self.get_database(index, name)
        await self.get_client(index).drop_database(database.name)

    async def drop_all(self) -> None:
        for index, client in enumerate(self.clients):
            if client is not None:
                await self.drop(index)

    # ------------------------------------------------------------------
    # Modèles
    # ------------------------------------------------------------------

    def model(
        self,
        name: str,
        schema: Any,
        connection_index: int = 0,
        options: Optional[dict[str, Any]] = None,
    ) -> "MongoModel":
        """Déclare un modèle (nom de collection au pluriel) et l'enregistre.

        Args:
            name (str): Nom singulier (`user` -> collection `users`).
            schema: Classe Pydantic ou fabrique sans argument (schémas récursifs).
            connection_index (int): Connexion du modèle.
            options (dict | None): `database`, `collection_options`, `logs`.

        Raises:
            ConfigurationError: Schéma invalide.
        """
        from mongomodel.models.model import MongoModel
        from mongomodel.models.schema import is_model

        if not (is_model(schema) or (callable(schema) and not isinstance(schema, type))):
            raise ConfigurationError("Invalid or unexpected schema passed!")

        model = MongoModel(
            pluralize(name), schema, connection_index, options, context=self
        )
        self.models[model.name] = model
        return model

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def set_caching_methods(
        self,
        setter: Callable[..., Any],
        getter: Callable[..., Any],
        deleter: Optional[Callable[..., Any]] = None,
    ) -> None:
        """Branche le cache externe: `setter(key, value, ttl)`, `getter(key)`, `deleter(key)`."""
        if not callable(setter) or not callable(getter):
            raise ConfigurationError("Caching methods must be callables!")
        self._caching = {"set": setter, "get": getter, "delete": deleter}

    def _caching_method(self, name: str) -> Callable[..., Any]:
        method = (self._caching or {}).get(name)
        if not callable(method):
            raise ConfigurationError("Caching methods are not provided!")
        return method

    async def get_cache(self, key: str) -> Any:
        return await maybe_await(self._caching_method("get")(key))

    async def set_cache(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await maybe_await(self._caching_method("set")(key, value, ttl))

    async def delete_cache(self, key: str) -> None:
        await maybe_await(self._caching_method("delete")(key))

    async def use_caching(
        self,
        operation: Callable[[], Awaitable[Any]],
        cache: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Lecture via le cache, exécution et stockage en cas d'absence.

        Description:
            - pas d'options de cache (ou pas de clé): `operation()` seule
            - pas de cache configuré: avertissement puis `operation()` (jamais stocké)
            - `None` renvoyé par le cache = absence ; un résultat `None` n'est jamais stocké
            - `ttl` absent: stocké sans expiration (à la charge du cache)
            Deux absences concurrentes exécutent chacune l'opération (pas de coalescence).

        Args:
            operation: Coroutine à exécuter en cas d'absence.
            cache (dict | None): `{"key": str, "ttl": int | None}`.
        """
        key = (cache or {}).get("key")
        if not key:
            return await operation()

        if self._caching is None:
            logger.warning("Cache requested for key '%s' but no caching methods are set", key)
            return await operation()

        cached = await self.get_cache(key)
        if cached is not None:
            return cached

        result = await operation()
        if result is not None:
            await self.set_cache(key, result, cache.get("ttl"))
        return result

    # ------------------------------------------------------------------
    # Transactions (une connexion)
    # ------------------------------------------------------------------

    async def transaction(
        self,
        callback: Callable[[Any], Awaitable[Any]],
        session: Any = None,
        *,
        connection_index: int = 0,
    ) -> Any:
        """Exécute `callback(session)` dans une transaction réessayable.

        Description:
            Une session parente passée en argument est réutilisée telle quelle.
            Sinon une session est ouverte sur la connexion, `with_transaction` gère
            commit / abort / ré-essais, et la session est toujours fermée.
        """
        if session is not None:
            return await callback(session)

        client = self.get_client(connection_index)
        async with await client.start_session() as new_session:
            return await new_session.with_transaction(callback)


# Contexte global
Mongo = MongoContext()
