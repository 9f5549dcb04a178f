# mongomodel/models/schema.py
# Adaptateur Pydantic v2: résolution des schémas, navigation par chemin, validation (complète / partielle)
# et opérateurs composables (partial, deep_partial, pick, omit, extend).

from __future__ import annotations

import copy
import types
import typing
from typing import Annotated, Any, Callable, Iterable, Optional, Union, get_args, get_origin

from annotated_types import MaxLen, MinLen
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, create_model
from pydantic.fields import FieldInfo

from mongomodel.core.exceptions import ConfigurationError, DocumentValidationError
from mongomodel.core.utils import is_index, is_positional, split_path

SchemaLike = Union[type[BaseModel], Callable[[], type[BaseModel]]]

_NONE_TYPE = type(None)
_LIST_ORIGINS = (list, set, frozenset, tuple, typing.List, typing.Set)


# ---------------------------------------------------------------------------
# Résolution / structure
# ---------------------------------------------------------------------------

def is_model(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def resolve_schema(schema: SchemaLike) -> type[BaseModel]:
    """Résout un schéma: classe Pydantic, ou fabrique sans argument (schémas récursifs).

    Raises:
        ConfigurationError: Si le résultat n'est pas une sous-classe de `BaseModel`.
    """
    if is_model(schema):
        return schema
    if callable(schema) and not isinstance(schema, type):
        resolved = schema()
        if is_model(resolved):
            return resolved
    raise ConfigurationError("Invalid or unexpected schema passed!")


def _strip(annotation: Any) -> Any:
    """Retire `Annotated[...]` et `Optional[...]` pour atteindre le type porteur."""
    while True:
        origin = get_origin(annotation)
        if origin is Annotated:
            annotation = get_args(annotation)[0]
            continue
        if origin in (Union, types.UnionType):
            args = [a for a in get_args(annotation) if a is not _NONE_TYPE]
            if len(args) == 1:
                annotation = args[0]
                continue
        return annotation


def _list_element(annotation: Any) -> Optional[Any]:
    core = _strip(annotation)
    origin = get_origin(core)
    if core in (list, set, tuple):
        return Any
    if origin in _LIST_ORIGINS:
        args = get_args(core)
        return args[0] if args else Any
    return None


def _dict_value(annotation: Any) -> Optional[Any]:
    core = _strip(annotation)
    if core is dict:
        return Any
    if get_origin(core) in (dict, typing.Dict):
        args = get_args(core)
        return args[1] if len(args) == 2 else Any
    return None


def field_for_key(model: type[BaseModel], key: str) -> Optional[tuple[str, FieldInfo]]:
    """Retrouve un champ par son nom ou son alias (`_id` -> `id`)."""
    fields = model.model_fields
    if key in fields:
        return key, fields[key]
    for name, field in fields.items():
        if field.alias == key:
            return name, field
    return None


def field_annotation(field: FieldInfo) -> Any:
    """Annotation complète d'un champ (type + contraintes portées par `metadata`)."""
    if field.metadata:
        return Annotated[(field.annotation, *field.metadata)]
    return field.annotation


def annotation_at(model: type[BaseModel], path: Any) -> Optional[Any]:
    """Annotation du champ désigné par un chemin pointé.

    Description:
        Les segments positionnels (`$`, `$[]`, `$[id]`) et numériques entrent dans l'élément
        d'un tableau. Un segment nommé appliqué à un tableau de sous-documents traverse
        implicitement l'élément. Renvoie `None` si le chemin ne correspond à aucun champ.

    Args:
        model (type[BaseModel]): Schéma racine.
        path (str | list[str]): Chemin pointé.

    Returns:
        Any | None: Annotation trouvée (`Any` pour les zones non typées).
    """
    annotation: Any = model
    for segment in split_path(path):
        if annotation is Any:
            return Any

        element = _list_element(annotation)
        if element is not None:
            if is_positional(segment) or is_index(segment):
                annotation = element
                continue
            annotation = element

        core = _strip(annotation)
        if core is Any:
            return Any
        if is_model(core):
            found = field_for_key(core, segment)
            if found is None:
                return None
            annotation = field_annotation(found[1])
            continue

        value = _dict_value(core)
        if value is not None:
            annotation = value
            continue

        return None
    return annotation


def element_of(annotation: Any) -> Optional[Any]:
    """Type d'élément d'un champ tableau (`list[T]` -> `T`), `None` sinon."""
    if annotation is Any:
        return Any
    return _list_element(annotation)


def array_of(annotation: Any) -> Any:
    """Enveloppe tableau d'un schéma (`T` -> `list[T]`)."""
    return list[annotation]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_ADAPTERS: dict[Any, TypeAdapter] = {}


def _adapter(annotation: Any) -> TypeAdapter:
    try:
        adapter = _ADAPTERS.get(annotation)
    except TypeError:
        # Métadonnées non hachables: pas de cache
        return TypeAdapter(annotation)
    if adapter is None:
        adapter = _ADAPTERS[annotation] = TypeAdapter(annotation)
    return adapter


def validate(
    annotation: Any,
    value: Any,
    context: Optional[dict[str, Any]] = None,
    loc: Iterable[Any] = (),
    name: Optional[str] = None,
) -> Any:
    """Valide `value` contre `annotation` et renvoie la forme prête pour Mongo.

    Description:
        `TypeAdapter.validate_python` puis `dump_python(by_alias=True)`: les modèles deviennent
        des dicts (alias `_id`), les `ObjectId` restent des `ObjectId`.

    Raises:
        DocumentValidationError: Erreurs Pydantic converties (chemins préfixés par `loc`).
    """
    adapter = _adapter(annotation)
    try:
        result = adapter.validate_python(value, context=context)
    except ValidationError as exc:
        raise DocumentValidationError.from_pydantic(exc, loc, name=name) from exc
    return adapter.dump_python(result, by_alias=True)


def _extra_policy(model: type[BaseModel]) -> str:
    return model.model_config.get("extra") or "ignore"


_UPDATE_MODELS: dict[tuple[type[BaseModel], bool], type[BaseModel]] = {}


def _without_size_bounds(field: FieldInfo) -> Any:
    if _list_element(field.annotation) is None:
        return field_annotation(field)
    kept = [m for m in field.metadata if not isinstance(m, (MinLen, MaxLen))]
    return Annotated[(field.annotation, *kept)] if kept else field.annotation


def update_model(model: type[BaseModel], items: bool = False) -> type[BaseModel]:
    """Sous-classe d'un schéma où tous les champs deviennent optionnels.

    Description:
        Contrairement à `partial`, le modèle d'origine est la classe de base: ses
        `field_validator` / `model_validator` et sa `model_config` (`str_strip_whitespace`,
        `strict`...) s'appliquent. Les validateurs de modèle "after" voient `None` pour les
        champs absents de la mise à jour.

        Avec `items=True`, les bornes de taille des champs tableau (`min_length`, `max_length`)
        sont retirées: la valeur validée n'est alors qu'une liste d'éléments à insérer.
    """
    cached = _UPDATE_MODELS.get((model, items))
    if cached is None:
        fields = {
            name: _clone_field(
                field, _without_size_bounds(field) if items else field_annotation(field), optional=True
            )
            for name, field in model.model_fields.items()
        }
        prefix = "Push" if items else "Update"
        cached = _UPDATE_MODELS[(model, items)] = create_model(
            f"{prefix}{model.__name__}", __base__=model, **fields
        )
    return cached


def validate_fields(
    model: type[BaseModel],
    values: dict[str, Any],
    context: Optional[dict[str, Any]] = None,
    loc: Iterable[Any] = (),
    name: Optional[str] = None,
    items: bool = False,
) -> dict[str, Any]:
    """Valide quelques champs d'un modèle à travers le modèle lui-même.

    Args:
        model (type[BaseModel]): Modèle propriétaire des champs.
        values (dict): Valeurs par nom ou alias de champ (champs connus uniquement).
        context (dict | None): Contexte Pydantic.
        loc (Iterable): Préfixe des chemins d'erreur.
        items (bool): Valeurs tableau = éléments ajoutés (bornes de taille ignorées).

    Returns:
        dict: Valeurs validées prêtes pour Mongo, sous les clés d'entrée.

    Raises:
        DocumentValidationError: Valeur refusée par le type, un validateur ou la config.
    """
    target = update_model(model, items)
    keys: dict[str, str] = {}
    data: dict[str, Any] = {}
    for key, value in values.items():
        field_name, _ = field_for_key(model, key)
        keys[key] = field_name
        data[target.model_fields[field_name].alias or field_name] = value

    try:
        instance = target.model_validate(data, context=context)
    except ValidationError as exc:
        raise DocumentValidationError.from_pydantic(exc, loc, name=name) from exc

    dumped = instance.model_dump(by_alias=True, exclude_unset=True)
    out: dict[str, Any] = {}
    for key, field_name in keys.items():
        dump_key = target.model_fields[field_name].alias or field_name
        if dump_key in dumped:
            out[key] = dumped[dump_key]
    return out


def owner_at(model: type[BaseModel], path: Any) -> Optional[tuple[type[BaseModel], str]]:
    """Modèle propriétaire du dernier segment d'un chemin, et nom de ce champ."""
    segments = split_path(path)
    parent = annotation_at(model, segments[:-1]) if len(segments) > 1 else model
    if parent is None or parent is Any:
        return None
    element = _list_element(parent)
    core = _strip(element if element is not None else parent)
    if not is_model(core):
        return None
    found = field_for_key(core, segments[-1])
    return (core, found[0]) if found else None


def _is_branch(annotation: Any, value: Any, path: tuple[str, ...], full_paths: frozenset[str]) -> bool:
    if ".".join(path) in full_paths or not isinstance(value, dict) or annotation is Any:
        return False
    core = _strip(annotation)
    return _list_element(annotation) is not None or is_model(core) or _dict_value(core) is not None


def _walk_partial(
    annotation: Any,
    value: Any,
    path: tuple[str, ...],
    full_paths: frozenset[str],
    context: Optional[dict[str, Any]],
    prefix: tuple[str, ...],
    errors: list[dict[str, Any]],
) -> Any:
    def check(ann: Any, val: Any) -> Any:
        try:
            return validate(ann, val, context, prefix + path)
        except DocumentValidationError as exc:
            errors.extend(exc.errors)
            return val

    if ".".join(path) in full_paths or not isinstance(value, dict) or annotation is Any:
        return check(annotation, value)

    element = _list_element(annotation)
    if element is not None:
        out = {}
        for key, item in value.items():
            if is_positional(key) or is_index(key):
                out[key] = _walk_partial(element, item, path + (key,), full_paths, context, prefix, errors)
            else:
                errors.append(
                    {
                        "loc": ".".join(prefix + path + (key,)),
                        "msg": "Array elements must be addressed by index or positional operator",
                        "type": "array_path",
                    }
                )
        return out

    core = _strip(annotation)
    if is_model(core):
        policy = _extra_policy(core)
        out = {}
        leaves: dict[str, Any] = {}
        for key, item in value.items():
            found = field_for_key(core, key)
            if found is None:
                if policy == "allow":
                    out[key] = item
                elif policy == "forbid":
                    errors.append(
                        {
                            "loc": ".".join(prefix + path + (key,)),
                            "msg": "Extra inputs are not permitted",
                            "type": "extra_forbidden",
                        }
                    )
                continue
            child = field_annotation(found[1])
            if _is_branch(child, item, path + (key,), full_paths):
                out[key] = _walk_partial(child, item, path + (key,), full_paths, context, prefix, errors)
            else:
                # Réservé pour conserver l'ordre des clés, rempli après validation par le modèle
                out[key] = item
                leaves[key] = item

        if leaves:
            try:
                out.update(validate_fields(core, leaves, context, prefix + path))
            except DocumentValidationError as exc:
                errors.extend(exc.errors)
        return out

    dict_value = _dict_value(core)
    if dict_value is not None:
        return {
            key: _walk_partial(dict_value, item, path + (key,), full_paths, context, prefix, errors)
            for key, item in value.items()
        }

    return check(annotation, value)


def validate_partial(
    annotation: Any,
    value: dict[str, Any],
    full_paths: Iterable[str] = (),
    context: Optional[dict[str, Any]] = None,
    loc: Iterable[Any] = (),
    name: Optional[str] = None,
) -> dict[str, Any]:
    """Validation "deep partial" d'un objet imbriqué.

    Description:
        Parcourt l'objet champ par champ: seuls les chemins présents sont validés, aucun champ
        requis n'est exigé. Les chemins listés dans `full_paths` (remplacement d'un élément de
        tableau) sont validés en entier contre le schéma complet de l'élément.
        Les clés positionnelles/numériques sous un champ tableau valident l'élément.
        Les feuilles d.un sous-document sont validées ensemble par `validate_fields` sur le modèle
        qui les porte: ses validateurs et sa config s.appliquent comme à la création.
        Les clés inconnues suivent `model_config["extra"]` (allow / ignore / forbid).
        Toutes les erreurs sont collectées avant de lever.

    Args:
        annotation: Schéma racine.
        value (dict): Objet imbriqué à valider.
        full_paths (Iterable[str]): Chemins pointés à valider en mode complet.
        context (dict | None): Contexte Pydantic.
        loc (Iterable): Préfixe des chemins d'erreur (ex. `("$set",)`).

    Returns:
        dict: Objet validé (mêmes clés que l'entrée).

    Raises:
        DocumentValidationError: Si au moins un chemin est invalide.
    """
    errors: list[dict[str, Any]] = []
    result = _walk_partial(
        annotation,
        value,
        (),
        frozenset(full_paths),
        context,
        tuple(str(p) for p in loc),
        errors,
    )
    if errors:
        raise DocumentValidationError(errors, name=name)
    return result


# ---------------------------------------------------------------------------
# Opérateurs composables
# ---------------------------------------------------------------------------

def _clone_field(field: FieldInfo, annotation: Any = None, optional: bool = False) -> tuple[Any, FieldInfo]:
    ann = field.annotation if annotation is None else annotation
    if optional:
        return Optional[ann], Field(
            default=None,
            alias=field.alias,
            description=field.description,
        )
    return ann, copy.copy(field)


def partial(model: type[BaseModel]) -> type[BaseModel]:
    """Tous les champs de premier niveau deviennent optionnels (défaut `None`)."""
    fields = {
        name: _clone_field(field, field_annotation(field), optional=True)
        for name, field in model.model_fields.items()
    }
    return create_model(f"Partial{model.__name__}", __config__=model.model_config, **fields)


_DEEP_PARTIALS: dict[type[BaseModel], type[BaseModel]] = {}


def _deep_partial_annotation(annotation: Any, seen: set) -> Any:
    core = _strip(annotation)
    if is_model(core):
        return core if core in seen else deep_partial(core, seen)
    element = _list_element(annotation)
    if element is not None and is_model(_strip(element)):
        inner = _strip(element)
        return list[inner if inner in seen else deep_partial(inner, seen)]
    return annotation


def deep_partial(model: type[BaseModel], _seen: Optional[set] = None) -> type[BaseModel]:
    """Version "partial" récursive: les sous-documents (et éléments de tableaux) aussi.

    Description:
        Les schémas auto-référents ne sont dépliés qu'une fois (garde de récursion):
        la référence interne garde le schéma d'origine.
    """
    if model in _DEEP_PARTIALS:
        return _DEEP_PARTIALS[model]

    seen = set(_seen or ())
    seen.add(model)
    fields = {}
    for name, field in model.model_fields.items():
        ann = _deep_partial_annotation(field_annotation(field), seen)
        fields[name] = _clone_field(field, ann, optional=True)

    result = create_model(f"DeepPartial{model.__name__}", __config__=model.model_config, **fields)
    if _seen is None:
        _DEEP_PARTIALS[model] = result
    return result


def pick(model: type[BaseModel], keys: Iterable[str]) -> type[BaseModel]:
    """Garde uniquement les champs nommés (nom ou alias)."""
    wanted = set(keys)
    fields = {
        name: _clone_field(field)
        for name, field in model.model_fields.items()
        if name in wanted or field.alias in wanted
    }
    return create_model(f"Picked{model.__name__}", __config__=model.model_config, **fields)


def omit(model: type[BaseModel], keys: Iterable[str]) -> type[BaseModel]:
    """Retire les champs nommés (nom ou alias)."""
    excluded = set(keys)
    fields = {
        name: _clone_field(field)
        for name, field in model.model_fields.items()
        if name not in excluded and field.alias not in excluded
    }
    return create_model(f"Omitted{model.__name__}", __config__=model.model_config, **fields)


def extend(model: type[BaseModel], **fields: Any) -> type[BaseModel]:
    """Étend un schéma avec de nouveaux champs (`nom=(type, défaut)`)."""
    return create_model(f"Extended{model.__name__}", __base__=model, **fields)
