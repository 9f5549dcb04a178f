# mongomodel/core/utils.py
# Utilitaires chemins pointés <-> objets imbriqués, extraction/assignation profonde, vue "modifications".

from __future__ import annotations

import inspect
import re
from typing import Any, Callable, Iterable, NamedTuple, Optional, Sequence, Union

Path = Union[str, Sequence[str]]

_POSITIONAL = re.compile(r"^\$(\[[^\]]*\])?$")
_MISSING = object()


def split_path(path: Path) -> list[str]:
    """Découpe un chemin pointé (`"a.b.c"`) ou renvoie la liste de segments telle quelle."""
    if isinstance(path, str):
        return path.split(".")
    return [str(p) for p in path]


def is_positional(segment: str) -> bool:
    """Vrai pour les opérateurs positionnels Mongo: `$`, `$[]`, `$[identifiant]`."""
    return bool(_POSITIONAL.match(segment))


def is_index(segment: str) -> bool:
    return segment.isdigit()


def dot_notation_to_deep_object(mapping: dict[str, Any]) -> dict[str, Any]:
    """Convertit une map `{"a.b": 1}` en objet imbriqué `{"a": {"b": 1}}`.

    Description:
        Chaque clé est découpée sur `.`; les objets intermédiaires sont créés au besoin
        et le dernier segment porte la valeur. Un même préfixe utilisé à la fois comme
        feuille et comme branche n'est pas géré (la dernière écriture l'emporte).

    Args:
        mapping (dict): Map chemin pointé -> valeur.

    Returns:
        dict: Objet imbriqué.
    """
    out: dict[str, Any] = {}
    for key, value in mapping.items():
        segments = split_path(key)
        cursor = out
        for segment in segments[:-1]:
            nxt = cursor.get(segment)
            if not isinstance(nxt, dict):
                nxt = cursor[segment] = {}
            cursor = nxt
        cursor[segments[-1]] = value
    return out


class DeepValue(NamedTuple):
    exists: bool
    value: Any
    is_plural: bool


def _walk(value: Any, segments: list[str]) -> DeepValue:
    if not segments:
        return DeepValue(True, value, False)

    segment, rest = segments[0], segments[1:]

    if isinstance(value, list):
        if is_index(segment):
            index = int(segment)
            if index >= len(value):
                return DeepValue(False, None, False)
            return _walk(value[index], rest)

        # Traversée implicite d'un tableau: une valeur par élément (alignée sur les positions)
        values = []
        found = False
        for item in value:
            res = _walk(item, segments)
            found = found or res.exists
            values.append(res.value if res.exists else None)
        return DeepValue(found, values, True)

    if isinstance(value, dict):
        if segment not in value:
            return DeepValue(False, None, False)
        return _walk(value[segment], rest)

    return DeepValue(False, None, False)


def deep_value(obj: Any, path: Path) -> DeepValue:
    """Lit la valeur au bout d'un chemin.

    Description:
        Un intermédiaire absent court-circuite avec `exists=False`. Si le chemin traverse
        un tableau (segment non numérique appliqué à une liste), le résultat est *pluriel*:
        `value` est la liste des valeurs par élément (`None` pour un élément sans valeur),
        les tableaux imbriqués restant imbriqués.

    Args:
        obj (Any): Document source.
        path (str | list[str]): Chemin pointé ou segments.

    Returns:
        DeepValue: `(exists, value, is_plural)`.
    """
    return _walk(obj, split_path(path))


def _default_resolver(segment: str, parent: Any) -> Any:
    if isinstance(parent, list):
        return parent[0] if parent else _MISSING
    if isinstance(parent, dict):
        return parent.get(segment, _MISSING)
    return _MISSING


def assign_deep_values(
    keys: Iterable[str],
    source: Any,
    *,
    modifier: Optional[Callable[[str, Any], Any]] = None,
    resolver: Optional[Callable[[str, Any], Any]] = None,
) -> dict[str, Any]:
    """Ré-aplatit un objet imbriqué sur un jeu de clés pointées.

    Description:
        Pour chaque clé, suit les mêmes segments dans `source`. Les segments positionnels
        (`$`, `$[...]`) passent par `resolver(segment, parent)` (par défaut: index 0 d'une liste,
        ou la clé littérale d'un dict). `modifier(key, value)` post-traite chaque valeur extraite.
        Les clés introuvables dans `source` sont omises.

    Returns:
        dict: Map clé pointée -> valeur.
    """
    resolve = resolver or _default_resolver
    out: dict[str, Any] = {}

    for key in keys:
        cursor = source
        for segment in split_path(key):
            if is_positional(segment):
                cursor = resolve(segment, cursor)
            elif isinstance(cursor, dict):
                cursor = cursor.get(segment, _MISSING)
            elif isinstance(cursor, list) and is_index(segment):
                index = int(segment)
                cursor = cursor[index] if index < len(cursor) else _MISSING
            else:
                cursor = _MISSING

            if cursor is _MISSING:
                break

        if cursor is _MISSING:
            continue

        out[key] = modifier(key, cursor) if modifier else cursor

    return out


def set_deep_value(obj: dict[str, Any], path: Path, value: Any) -> dict[str, Any]:
    """Écrit `value` au bout du chemin, en créant les dicts intermédiaires."""
    segments = split_path(path)
    cursor = obj
    for segment in segments[:-1]:
        nxt = cursor.get(segment)
        if not isinstance(nxt, dict):
            nxt = cursor[segment] = {}
        cursor = nxt
    cursor[segments[-1]] = value
    return obj


def pick_props(
    obj: dict[str, Any],
    keys: Iterable[str],
    transform: Optional[Callable[[Any, str], Any]] = None,
) -> dict[str, Any]:
    """Garde uniquement `keys` (filtre superficiel), avec transformation optionnelle des valeurs."""
    return {
        key: transform(obj[key], key) if transform else obj[key]
        for key in keys
        if key in obj
    }


def omit_props(
    obj: dict[str, Any],
    keys: Iterable[str],
    transform: Optional[Callable[[Any, str], Any]] = None,
) -> dict[str, Any]:
    """Retire `keys` (filtre superficiel), avec transformation optionnelle des valeurs."""
    excluded = set(keys)
    return {
        key: transform(value, key) if transform else value
        for key, value in obj.items()
        if key not in excluded
    }


def _normalize_positional(key: str) -> str:
    # `field.$` -> `field.0` ; `$[]` / `$[id]` restent littéraux
    return ".".join("0" if segment == "$" else segment for segment in split_path(key))


def mongodb_modifiers_to_object(update_doc: dict[str, Any]) -> dict[str, Any]:
    """Réduit un document de mise à jour en une seule map pointée (vue "modifications").

    Description:
        - `$setOnInsert` puis `$set`: valeur telle quelle
        - `$push` / `$addToSet`: liste des éléments ajoutés (`$each` ou `[valeur]`)
        - `field.$` normalisé en `field.0`; les filtres `$[identifiant]` sont conservés tels quels
        - les autres opérateurs (`$inc`, `$unset`, ...) ne sont pas représentés

    Args:
        update_doc (dict): Document de mise à jour (déjà validé).

    Returns:
        dict: Map chemin pointé -> valeur.
    """
    out: dict[str, Any] = {}

    for operator in ("$setOnInsert", "$set", "$push", "$addToSet"):
        fields = update_doc.get(operator)
        if not isinstance(fields, dict):
            continue

        for key, value in fields.items():
            if operator in ("$push", "$addToSet"):
                if isinstance(value, dict) and "$each" in value:
                    value = list(value["$each"])
                else:
                    value = [value]
            out[_normalize_positional(key)] = value

    return out


_ES_SUFFIXES = ("s", "x", "z", "ch", "sh")


def pluralize(name: str) -> str:
    """Pluriel anglais simple pour les noms de collections (`user` -> `users`, `category` -> `categories`)."""
    lower = name.lower()
    if lower.endswith("s") and not lower.endswith("ss"):
        return name
    if lower.endswith("y") and len(lower) > 1 and lower[-2] not in "aeiou":
        return name[:-1] + "ies"
    if lower.endswith(_ES_SUFFIXES):
        return name + "es"
    return name + "s"


def is_client_session(value: Any) -> bool:
    """Vrai pour une session driver (motor / pymongo): porte `client` et les primitives de transaction."""
    return (
        value is not None
        and hasattr(value, "client")
        and hasattr(value, "commit_transaction")
        and hasattr(value, "abort_transaction")
    )


async def maybe_await(value: Any) -> Any:
    """Attend `value` si c'est un awaitable (hooks et cache peuvent être sync ou async)."""
    if inspect.isawaitable(value):
        return await value
    return value
