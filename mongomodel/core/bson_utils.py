# mongomodel/core/bson_utils.py
# Helpers Pydantic v2 pour ObjectId + base model Mongo, utilisables directement comme schémas de modèles.
from __future__ import annotations

from typing import Any, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, GetCoreSchemaHandler
from pydantic.json_schema import GetJsonSchemaHandler, JsonSchemaValue
from pydantic_core import core_schema


class PyObjectId(ObjectId):
    """ObjectId compatible Pydantic v2.

    Description:
        Étend `bson.ObjectId` avec les hooks Pydantic v2 pour:
        - accepter une chaîne hex de 24 caractères **ou** un `ObjectId`
        - conserver un `ObjectId` lors d'un dump Python (documents prêts pour Mongo)
        - sérialiser en chaîne uniquement en mode JSON
    """

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        """Hook Pydantic v2: schéma de validation/serialization côté core.

        Args:
            source_type (Any): Type source vu par Pydantic.
            handler (GetCoreSchemaHandler): Gestionnaire de schémas core.

        Returns:
            core_schema.CoreSchema: Schéma de validation/serialization.
        """
        return core_schema.json_or_python_schema(
            json_schema=core_schema.no_info_plain_validator_function(cls._validate),
            python_schema=core_schema.no_info_plain_validator_function(cls._validate),
            serialization=core_schema.plain_serializer_function_ser_schema(
                str, when_used="json"
            ),
        )

    @classmethod
    def __get_pydantic_json_schema__(
        cls, core_schema_obj: core_schema.CoreSchema, handler: GetJsonSchemaHandler
    ) -> JsonSchemaValue:
        """Hook Pydantic v2: schéma JSON (string + pattern ObjectId)."""
        return {
            "type": "string",
            "format": "objectid",
            "pattern": "^[a-fA-F0-9]{24}$",
            "examples": ["507f1f77bcf86cd799439011"],
        }

    @classmethod
    def _validate(cls, v: Any) -> ObjectId:
        """Valide et convertit en ObjectId.

        Description:
            Accepte un `ObjectId` déjà typé ou une chaîne valide (24 hex). Lève `ValueError` sinon,
            ce qui produit une erreur de validation Pydantic classique.

        Args:
            v (Any): Valeur à convertir.

        Returns:
            ObjectId: Instance validée.

        Raises:
            ValueError: Si la valeur n'est pas un ObjectId valide.
        """
        if isinstance(v, ObjectId):
            return v
        if isinstance(v, str) and ObjectId.is_valid(v):
            return ObjectId(v)
        raise ValueError(f"Invalid ObjectId: {v!r}")


class MongoBaseModel(BaseModel):
    """BaseModel Pydantic pour documents Mongo.

    Description:
        - Champ `_id` exposé via l'alias `id` (type `PyObjectId`)
        - Config adaptée à Mongo (aliases, `arbitrary_types_allowed`)
    """

    id: Optional[PyObjectId] = Field(default=None, alias="_id")

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )


def is_object_id(value: Any) -> bool:
    """Vrai si `value` est un ObjectId ou une chaîne convertible (24 hex)."""
    if isinstance(value, ObjectId):
        return True
    # ObjectId.is_valid accepte aussi les chaînes de 12 octets bruts
    return isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value)


def to_object_id_filter(value: Any) -> Any:
    """Réécrit un identifiant nu en filtre `{"_id": ObjectId}`.

    Description:
        Un filtre qui est lui-même un identifiant valide (ObjectId ou chaîne hex) est transformé
        en `{"_id": ObjectId(value)}`. Tout autre filtre est renvoyé tel quel (`None` → `{}`).

    Args:
        value: Filtre brut passé à une opération de modèle.

    Returns:
        Any: Filtre Mongo.
    """
    if value is None:
        return {}
    if is_object_id(value):
        return {"_id": ObjectId(value)}
    return value
