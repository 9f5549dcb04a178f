# mongomodel/services/relations.py
# Récupération "hors pipeline" des relations (fetch): requêtes séparées sur le modèle cible,
# possiblement sur une autre connexion, puis ré-association par position.

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field as dc_field
from typing import TYPE_CHECKING, Any, Optional

from mongomodel.core.utils import deep_value, is_client_session, is_index, set_deep_value, split_path
from mongomodel.db.transaction import MongoTransaction

if TYPE_CHECKING:
    from mongomodel.models.model import MongoModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchConfig:
    field: str
    model: "MongoModel"
    options: dict[str, Any] = dc_field(default_factory=dict)
    singular: bool = False


def _is_empty(ref: Any) -> bool:
    return ref is None or ref == "" or (isinstance(ref, (list, tuple)) and not ref)


def _session_for(model: "MongoModel", session: Any) -> Any:
    """Session à transmettre au modèle cible: une session driver ne sert que sur sa propre connexion."""
    if session is None or isinstance(session, MongoTransaction) or not is_client_session(session):
        return session
    if model.context.index_of(session.client) == model.connection_index:
        return session
    return None


def _flatten(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        out: list[Any] = []
        for item in value:
            out.extend(_flatten(item))
        return out
    return [] if value is None else [value]


def _unique(ids: list[Any]) -> list[Any]:
    seen: dict[str, Any] = {}
    for value in ids:
        seen.setdefault(str(value), value)
    return list(seen.values())


def _with_foreign_field(project: dict[str, Any], foreign: str) -> dict[str, Any]:
    # Projection "inclusive": le champ étranger est nécessaire à la ré-association
    inclusive = any(v and k != "_id" for k, v in project.items())
    if inclusive and foreign not in project:
        return {**project, foreign: 1}
    return project


def _apply_options(query: Any, options: dict[str, Any], *, batched: bool = False) -> Any:
    if options.get("filter"):
        query.filter(options["filter"])
    if options.get("sort"):
        query.sort(options["sort"])
    if options.get("project"):
        project = options["project"]
        if batched:
            project = _with_foreign_field(project, options.get("foreign_field", "_id"))
        query.project(project)
    # skip / limit n'ont pas de sens sur une requête regroupant tous les documents
    if not batched:
        if options.get("skip"):
            query.skip(options["skip"])
        if options.get("limit"):
            query.limit(options["limit"])
    if options.get("having"):
        query.filter(options["having"])
    return query


def _resolve(ref: Any, groups: dict[str, list[Any]], singular: bool) -> Any:
    if ref is None:
        return None
    if isinstance(ref, list):
        out: list[Any] = []
        for item in ref:
            if isinstance(item, list):
                out.append(_resolve(item, groups, False))
            else:
                # Identifiants non résolus: absents du tableau résultat (comme $lookup)
                out.extend(groups.get(str(item), []))
        if singular:
            return out[0] if out else None
        return out
    matches = groups.get(str(ref), [])
    return matches[0] if matches else None


def _splice(container: Any, segments: list[str], groups: dict[str, list[Any]], singular: bool) -> None:
    if not segments:
        return

    head, rest = segments[0], segments[1:]

    if isinstance(container, list):
        if is_index(head):
            index = int(head)
            if index < len(container):
                if rest:
                    _splice(container[index], rest, groups, singular)
                else:
                    container[index] = _resolve(container[index], groups, singular)
            return
        for item in container:
            _splice(item, segments, groups, singular)
        return

    if not isinstance(container, dict) or head not in container:
        return

    if rest:
        _splice(container[head], rest, groups, singular)
    else:
        container[head] = _resolve(container[head], groups, singular)


async def _fetch_plural(results: list[dict[str, Any]], fetch: FetchConfig, session: Any) -> None:
    foreign = fetch.options.get("foreign_field", "_id")

    ids: list[Any] = []
    for doc in results:
        found = deep_value(doc, fetch.field)
        if found.exists:
            ids.extend(_flatten(found.value))
    ids = _unique(ids)

    if not ids:
        return

    query = fetch.model.find({foreign: {"$in": ids}}, session=_session_for(fetch.model, session))
    matches = await _apply_options(query, fetch.options, batched=True)

    groups: dict[str, list[Any]] = defaultdict(list)
    for match in matches:
        key_value = deep_value(match, foreign)
        for key in _flatten(key_value.value) if key_value.exists else []:
            groups[str(key)].append(match)

    segments = split_path(fetch.field)
    for doc in results:
        _splice(doc, segments, groups, fetch.singular)


async def _fetch_direct(doc: dict[str, Any], fetch: FetchConfig, session: Any) -> None:
    found = deep_value(doc, fetch.field)
    if not found.exists or _is_empty(found.value):
        return

    foreign = fetch.options.get("foreign_field", "_id")
    ref = found.value
    criteria = {foreign: {"$in": list(ref)}} if isinstance(ref, (list, tuple)) else {foreign: ref}

    if fetch.singular:
        query = fetch.model.find_one(criteria, session=_session_for(fetch.model, session))
    else:
        query = fetch.model.find(criteria, session=_session_for(fetch.model, session))

    set_deep_value(doc, fetch.field, await _apply_options(query, fetch.options))


async def fetch_relations(
    results: list[dict[str, Any]],
    fetches: list[FetchConfig],
    session: Optional[Any] = None,
) -> list[dict[str, Any]]:
    """Résout les relations `fetch` sur un jeu de résultats déjà matérialisé.

    Description:
        Les champs sont traités l'un après l'autre.
        - Chemin pluriel (traverse un tableau): tous les identifiants de tous les documents sont
          dédupliqués puis récupérés en une seule requête `$in`, regroupés par identifiant (str)
          et ré-insérés position par position: une référence scalaire devient un document (ou
          `None`), un tableau devient un tableau de documents (identifiants non résolus omis),
          les tableaux doublement imbriqués restent imbriqués.
        - Chemin direct: requête `find` / `find_one` du modèle cible par document, en parallèle,
          avec les options filter/sort/project/skip/limit/having.
        Aucune requête n'est émise pour une référence vide ou absente.

    Args:
        results (list[dict]): Documents (modifiés sur place).
        fetches (list[FetchConfig]): Relations à résoudre.
        session: `MongoTransaction` (résolu sur la connexion du modèle cible) ou session driver
            (transmise aux seuls modèles cibles de la même connexion).

    Returns:
        list[dict]: Les mêmes documents, enrichis.
    """
    for fetch in fetches:
        plural = any(deep_value(doc, fetch.field).is_plural for doc in results)
        logger.debug("Fetching '%s' from '%s' (plural=%s)", fetch.field, fetch.model.name, plural)

        if plural:
            await _fetch_plural(results, fetch, session)
        else:
            await asyncio.gather(*(_fetch_direct(doc, fetch, session) for doc in results))

    return results
