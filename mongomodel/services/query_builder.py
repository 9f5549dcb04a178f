# mongomodel/services/query_builder.py
# Synthèse des étapes d'agrégation pour la population "embarquée" ($lookup), y compris sur champs imbriqués.

from __future__ import annotations

from dataclasses import dataclass, field as dc_field
from typing import TYPE_CHECKING, Any, Optional

from mongomodel.core.exceptions import ConfigurationError, CrossConnectionError

if TYPE_CHECKING:
    from mongomodel.models.model import MongoModel

# NOTE: ordre fixe des options dans le sous-pipeline: match -> sort -> project -> skip -> limit -> having


@dataclass(frozen=True)
class PopulateConfig:
    field: str
    model: "MongoModel"
    options: dict[str, Any] = dc_field(default_factory=dict)
    unwind: bool = False


def option_stages(options: Optional[dict[str, Any]]) -> list[dict[str, Any]]:
    """Étapes issues des options de population (`filter`, `sort`, `project`, `skip`, `limit`, `having`)."""
    options = options or {}
    stages: list[dict[str, Any]] = []

    if isinstance(options.get("filter"), dict):
        stages.append({"$match": options["filter"]})
    if isinstance(options.get("sort"), dict):
        stages.append({"$sort": options["sort"]})
    if isinstance(options.get("project"), dict):
        stages.append({"$project": options["project"]})
    if isinstance(options.get("skip"), int) and not isinstance(options["skip"], bool):
        stages.append({"$skip": options["skip"]})
    if isinstance(options.get("limit"), int) and not isinstance(options["limit"], bool):
        stages.append({"$limit": options["limit"]})
    if isinstance(options.get("having"), dict):
        stages.append({"$match": options["having"]})

    return stages


def check_population_model(model: Any, connection_index: int) -> None:
    """Vérifie la cible d'une population embarquée.

    Raises:
        ConfigurationError: Cible qui n'est pas un `MongoModel`.
        CrossConnectionError: Cible sur une autre connexion (jointure impossible côté serveur).
    """
    from mongomodel.models.model import MongoModel

    if not isinstance(model, MongoModel):
        raise ConfigurationError("Invalid population model!")
    if model.connection_index != connection_index:
        raise CrossConnectionError(
            f"Cannot populate '{model.name}' (connection {model.connection_index}) "
            f"from connection {connection_index}, use fetch instead!"
        )


def create_populate_aggregation(
    field: str,
    model: "MongoModel",
    options: Optional[dict[str, Any]] = None,
    unwind: bool = False,
    connection_index: int = 0,
) -> list[dict[str, Any]]:
    """Construit les étapes `$lookup` d'une population embarquée.

    Description:
        - champ simple: `$lookup` (+ `$unwind` préservant les vides si `unwind`)
        - champ imbriqué (`a.b`): marque `isNull_a` / `isArray_a`, déroule `a`, effectue le
          `$lookup` sur l'élément, regroupe par `_id` (`$push` + `$mergeObjects`), puis restaure
          la forme d'origine (`$$REMOVE` si nul, scalaire si non-tableau) et retire les marqueurs.
        - si la cible porte elle-même des populations, elles sont générées récursivement dans
          le `pipeline` du `$lookup`, suivies des étapes d'options.

    Args:
        field (str): Champ local (éventuellement pointé).
        model (MongoModel): Modèle cible (même connexion).
        options (dict | None): `foreign_field`, `filter`, `sort`, `project`, `skip`, `limit`, `having`.
        unwind (bool): Résultat singulier (`populate_one`).
        connection_index (int): Connexion du modèle appelant.

    Returns:
        list[dict]: Étapes d'agrégation.
    """
    check_population_model(model, connection_index)
    options = options or {}

    nested = "." in field
    parent = field.split(".")[0]
    stages: list[dict[str, Any]] = []

    if nested:
        stages += [
            {"$addFields": {f"isNull_{parent}": {"$cond": [f"${parent}", False, True]}}},
            {"$addFields": {f"isArray_{parent}": {"$isArray": f"${parent}"}}},
            {"$unwind": {"path": f"${parent}", "preserveNullAndEmptyArrays": True}},
        ]

    sub_pipeline: list[dict[str, Any]] = []
    for config in model.populate_configs:
        sub_pipeline += create_populate_aggregation(
            config.field, config.model, config.options, config.unwind, model.connection_index
        )
    sub_pipeline += option_stages(options)

    stages.append(
        {
            "$lookup": {
                "from": model.name,
                "localField": field,
                "foreignField": options.get("foreign_field", "_id"),
                "as": field,
                "pipeline": sub_pipeline,
            }
        }
    )

    if unwind:
        stages.append({"$unwind": {"path": f"${field}", "preserveNullAndEmptyArrays": True}})

    if nested:
        stages += [
            {
                "$group": {
                    "_id": "$_id",
                    parent: {"$push": f"${parent}"},
                    "otherFields": {"$mergeObjects": "$$ROOT"},
                }
            },
            {
                "$replaceRoot": {
                    "newRoot": {
                        "$mergeObjects": [
                            "$otherFields",
                            {"_id": "$_id", parent: f"${parent}"},
                        ]
                    }
                }
            },
            {
                "$addFields": {
                    parent: {
                        "$cond": [
                            {"$eq": [f"$isNull_{parent}", True]},
                            "$$REMOVE",
                            {
                                "$cond": [
                                    {"$eq": [f"$isArray_{parent}", True]},
                                    f"${parent}",
                                    {"$arrayElemAt": [f"${parent}", 0]},
                                ]
                            },
                        ]
                    }
                }
            },
            {"$unset": [f"isNull_{parent}", f"isArray_{parent}"]},
        ]

    return stages
