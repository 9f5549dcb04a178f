# mongomodel/services/update_validator.py
# Validation des documents de mise à jour ($set, $setOnInsert, $push, $addToSet) contre le schéma du modèle.

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel

from mongomodel.core.exceptions import DocumentValidationError
from mongomodel.core.utils import (
    assign_deep_values,
    dot_notation_to_deep_object,
    is_index,
    is_positional,
    split_path,
)
from mongomodel.models.schema import (
    annotation_at,
    array_of,
    element_of,
    owner_at,
    validate,
    validate_fields,
    validate_partial,
)

logger = logging.getLogger(__name__)

SET_OPERATORS = ("$set", "$setOnInsert")
PUSH_OPERATORS = ("$push", "$addToSet")
PUSH_MODIFIERS = ("$each", "$slice", "$position", "$sort")


def is_expression(value: Any) -> bool:
    """Vrai si la valeur est une expression Mongo (dict portant une clé `$...`)."""
    return isinstance(value, dict) and any(str(k).startswith("$") for k in value)


def is_replacement_key(key: str) -> bool:
    """Vrai si la clé remplace un élément entier de tableau (`a.$`, `a.$[]`, `a.$[i]`, `a.3`)."""
    last = split_path(key)[-1]
    return is_positional(last) or is_index(last)


def _validate_set(
    schema: type[BaseModel],
    operator: str,
    fields: dict[str, Any],
    context: Optional[dict[str, Any]],
    errors: list[dict[str, Any]],
) -> dict[str, Any]:
    expressions = {k: v for k, v in fields.items() if is_expression(v)}
    plain = {k: v for k, v in fields.items() if k not in expressions}

    if not plain:
        return dict(fields)

    full_paths = [k for k in plain if is_replacement_key(k)]

    try:
        validated = validate_partial(
            schema,
            dot_notation_to_deep_object(plain),
            full_paths=full_paths,
            context=context,
            loc=(operator,),
        )
    except DocumentValidationError as exc:
        errors.extend(exc.errors)
        return dict(fields)

    flat = assign_deep_values(plain.keys(), validated)

    # Ordre d'origine conservé ; les expressions sont ré-attachées telles quelles
    out: dict[str, Any] = {}
    for key in fields:
        if key in expressions:
            out[key] = expressions[key]
        elif key in flat:
            out[key] = flat[key]
    return out


def _validate_push(
    schema: type[BaseModel],
    operator: str,
    fields: dict[str, Any],
    context: Optional[dict[str, Any]],
    errors: list[dict[str, Any]],
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    extra = schema.model_config.get("extra") or "ignore"

    for key, value in fields.items():
        annotation = annotation_at(schema, key)

        if annotation is None:
            if extra == "allow":
                out[key] = value
            elif extra == "forbid":
                errors.append(
                    {"loc": f"{operator}.{key}", "msg": "Extra inputs are not permitted", "type": "extra_forbidden"}
                )
            continue

        element = element_of(annotation)
        if element is None:
            errors.append(
                {"loc": f"{operator}.{key}", "msg": "Target field is not an array", "type": "array_type"}
            )
            continue

        modifiers = isinstance(value, dict) and any(m in value for m in PUSH_MODIFIERS)
        # Un push sans $each insère UN élément
        items = value.get("$each", []) if modifiers else [value]

        try:
            items = _validate_items(schema, operator, key, element, items, context)
        except DocumentValidationError as exc:
            errors.extend(exc.errors)
            continue

        if modifiers:
            out[key] = {**value, "$each": items}
        elif items:
            out[key] = items[0]

    return out


def _validate_items(
    schema: type[BaseModel],
    operator: str,
    key: str,
    element: Any,
    items: list[Any],
    context: Optional[dict[str, Any]],
) -> list[Any]:
    """Valide les éléments ajoutés comme valeur du champ tableau, via son modèle propriétaire."""
    owner = owner_at(schema, key)
    if owner is None:
        return validate(array_of(element), items, context, (operator, key))

    model, field_name = owner
    parent = split_path(key)[:-1]
    validated = validate_fields(model, {field_name: items}, context, (operator, *parent), items=True)
    return validated.get(field_name, items)


def validate_updates(
    schema: type[BaseModel],
    updates: dict[str, Any],
    context: Optional[dict[str, Any]] = None,
    name: Optional[str] = None,
) -> dict[str, Any]:
    """Valide un document de mise à jour Mongo.

    Description:
        - `$set` / `$setOnInsert`: validation "deep partial" des chemins touchés ; les clés de
          remplacement d'élément (`a.$`, `a.$[i]`, `a.0`) sont validées contre l'élément complet ;
          les expressions (`{"$...": ...}`) passent telles quelles.
        - `$push` / `$addToSet`: les éléments ajoutés sont validés comme valeur du champ tableau par
          son modèle propriétaire (validateurs de champ et config compris) ; `$each` est ré-enveloppé
          avec ses options.
        - Autres opérateurs (`$inc`, `$unset`, `$pull`, ...): inchangés.

        Toutes les erreurs sont collectées puis levées ensemble: rien n'est envoyé au driver.

    Args:
        schema (type[BaseModel]): Schéma du modèle.
        updates (dict): Document de mise à jour.
        context (dict | None): Contexte de validation Pydantic.
        name (str | None): Nom du modèle (pour le message d'erreur).

    Returns:
        dict: Nouveau document de mise à jour, valeurs validées.

    Raises:
        DocumentValidationError: Au moins un chemin invalide.
    """
    errors: list[dict[str, Any]] = []
    out: dict[str, Any] = {}

    for operator, fields in updates.items():
        if operator in SET_OPERATORS and isinstance(fields, dict):
            result = _validate_set(schema, operator, fields, context, errors)
        elif operator in PUSH_OPERATORS and isinstance(fields, dict):
            result = _validate_push(schema, operator, fields, context, errors)
        else:
            out[operator] = fields
            continue

        if result:
            out[operator] = result

    if errors:
        logger.debug("Update validation failed for %s: %s", name, errors)
        raise DocumentValidationError(errors, name=name)

    return out
