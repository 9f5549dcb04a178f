# mongomodel/core/exceptions.py
# Taxonomie des erreurs levées par l'ODM (configuration, validation, assertions "or fail", connexions).

from __future__ import annotations

from typing import Any, Iterable, Optional

from pydantic import ValidationError


class MongoModelError(Exception):
    """Erreur de base de l'ODM."""


class ConfigurationError(MongoModelError):
    """Utilisation invalide: client non connecté, schéma invalide, modèle de population invalide."""


class CrossConnectionError(MongoModelError):
    """Session ou population rattachée à une autre connexion que celle du modèle."""


class RecordNotFoundError(MongoModelError):
    """Aucun document ne correspond (famille `*_or_fail`)."""

    def __init__(self, message: str = "Record not found!"):
        super().__init__(message)


class UpdateFailedError(MongoModelError):
    """La mise à jour n'a touché aucun document."""

    def __init__(self, message: str = "Record update has been failed!"):
        super().__init__(message)


class DeleteFailedError(MongoModelError):
    """La suppression n'a touché aucun document."""

    def __init__(self, message: str = "Record deletion has been failed!"):
        super().__init__(message)


class DocumentValidationError(MongoModelError):
    """Échec de validation d'un document ou d'une mise à jour.

    Description:
        Regroupe les erreurs Pydantic sous une forme stable et sérialisable:
        une liste de `{"loc": "chemin.pointé", "msg": ..., "type": ...}`.
        Levée avant tout appel au driver: aucune écriture partielle.

    Attributes:
        errors (list[dict]): Détail par chemin.
    """

    def __init__(self, errors: list[dict[str, Any]], name: Optional[str] = None):
        self.errors = errors
        self.name = name
        first = errors[0] if errors else {}
        summary = f"{first.get('loc', '')}: {first.get('msg', '')}" if first else "invalid document"
        prefix = f"{name}: " if name else ""
        more = f" (+{len(errors) - 1} more)" if len(errors) > 1 else ""
        super().__init__(f"{prefix}Validation failed, {summary}{more}")

    @staticmethod
    def format_errors(
        exc: ValidationError, loc: Iterable[Any] = ()
    ) -> list[dict[str, Any]]:
        """Convertit une `ValidationError` Pydantic en liste `{loc, msg, type}`.

        Args:
            exc (ValidationError): Erreur Pydantic.
            loc (Iterable): Préfixe de chemin (segments) à ajouter devant chaque erreur.

        Returns:
            list[dict]: Erreurs à plat, chemins pointés.
        """
        prefix = [str(p) for p in loc]
        out = []
        for err in exc.errors():
            path = prefix + [str(p) for p in err.get("loc", ())]
            out.append(
                {
                    "loc": ".".join(path),
                    "msg": err.get("msg", ""),
                    "type": err.get("type", "value_error"),
                }
            )
        return out

    @classmethod
    def from_pydantic(
        cls, exc: ValidationError, loc: Iterable[Any] = (), name: Optional[str] = None
    ) -> "DocumentValidationError":
        return cls(cls.format_errors(exc, loc), name=name)
