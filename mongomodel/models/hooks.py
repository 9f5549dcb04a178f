# mongomodel/models/hooks.py
# Registre de hooks pre/post par événement (create, read, update, delete, replace).

from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Union

from mongomodel.core.utils import maybe_await

HookCallback = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


class HookEvent(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"


class HookPhase(str, Enum):
    PRE = "pre"
    POST = "post"


class MongoHooks:
    """Table fixe (événement, phase) -> liste ordonnée de callbacks.

    Description:
        Les callbacks reçoivent un dict de détails (`event`, `method`, puis selon le cas
        `data`, `filter`, `updates`, `aggregation_pipeline`, `replacement`). Ils peuvent être
        synchrones ou asynchrones. Pour les événements transformants (create, replace, post-read),
        la valeur renvoyée par un hook devient l'entrée du suivant ; `None` conserve la valeur courante.
    """

    def __init__(self) -> None:
        self.pre_hooks: dict[HookEvent, list[HookCallback]] = {e: [] for e in HookEvent}
        self.post_hooks: dict[HookEvent, list[HookCallback]] = {e: [] for e in HookEvent}

    def _table(self, phase: HookPhase) -> dict[HookEvent, list[HookCallback]]:
        return self.pre_hooks if HookPhase(phase) is HookPhase.PRE else self.post_hooks

    def pre(self, event: Union[HookEvent, str], callback: HookCallback):
        """Enregistre un hook exécuté avant l'appel au driver (chaînable)."""
        self.pre_hooks[HookEvent(event)].append(callback)
        return self

    def post(self, event: Union[HookEvent, str], callback: HookCallback):
        """Enregistre un hook exécuté après l'appel au driver (chaînable)."""
        self.post_hooks[HookEvent(event)].append(callback)
        return self

    def has_hooks(self, phase: Union[HookPhase, str], event: Union[HookEvent, str]) -> bool:
        return bool(self._table(HookPhase(phase))[HookEvent(event)])

    async def run_hooks(
        self, phase: Union[HookPhase, str], event: Union[HookEvent, str], details: dict[str, Any]
    ) -> None:
        """Exécute les hooks dans l'ordre d'enregistrement, chacun attendu avant le suivant."""
        event = HookEvent(event)
        for hook in self._table(HookPhase(phase))[event]:
            await maybe_await(hook({"event": event.value, **details}))

    async def fold_hooks(
        self,
        phase: Union[HookPhase, str],
        event: Union[HookEvent, str],
        value: Any,
        key: str = "data",
        **details: Any,
    ) -> Any:
        """Réduction séquentielle: la sortie d'un hook alimente le suivant.

        Args:
            phase: `pre` ou `post`.
            event: Événement concerné.
            value: Valeur initiale (document, remplacement...).
            key (str): Clé sous laquelle la valeur est passée aux hooks.
            **details: Détails additionnels (`method`, `filter`...).

        Returns:
            Any: Valeur finale.
        """
        event = HookEvent(event)
        for hook in self._table(HookPhase(phase))[event]:
            result = await maybe_await(hook({"event": event.value, **details, key: value}))
            if result is not None:
                value = result
        return value
