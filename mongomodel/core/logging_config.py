"""Configuration du système de logging centralisé."""

import json
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from bson import ObjectId
from rich.pretty import pretty_repr

from mongomodel.core.settings import get_settings
from mongomodel.core.utils import is_client_session


class CustomJSONEncoder(json.JSONEncoder):
    """Encodeur JSON personnalisé pour gérer ObjectId et datetime."""

    def default(self, obj):
        if isinstance(obj, ObjectId):
            return str(obj)
        elif isinstance(obj, datetime):
            return obj.isoformat()
        elif is_client_session(obj):
            return session_repr(obj)
        return super().default(obj)


class DataLogger:
    """Logger spécialisé pour les données lourdes en JSON (pipelines, documents)."""

    def __init__(self, logs_dir: str = "logs"):
        self.logs_dir = Path(logs_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def log_data(
        self,
        calling_context: str,
        data: Dict[str, Any],
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Ajoute une entrée au fichier JSON du jour (tableau JSON toujours valide)."""
        today = datetime.now().strftime("%Y-%m-%d")
        json_file = self.logs_dir / f"{today}-data.json"

        entry = {
            "datetime": datetime.now().isoformat(),
            "calling_context": calling_context,
            "extra": extra or {},
            "data": data,
        }
        payload = json.dumps(entry, cls=CustomJSONEncoder)

        if json_file.exists():
            with open(json_file, "r", encoding="utf-8") as f:
                content = f.read().rstrip()

            # On retire le crochet fermant puis on ajoute l'entrée
            if content.endswith("]"):
                content = content[:-1].rstrip()
            if content.endswith("}"):
                content += ","

            with open(json_file, "w", encoding="utf-8") as f:
                f.write(content)
                f.write(payload)
                f.write("]")
        else:
            with open(json_file, "w", encoding="utf-8") as f:
                f.write("[")
                f.write(payload)
                f.write("]")


def _file_handler(path: Path, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=path, when="midnight", interval=1, encoding="utf-8"
    )
    handler.suffix = "%Y-%m-%d"
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> tuple[logging.Logger, logging.Logger, Optional[DataLogger]]:
    """Configure les loggers de l'ODM.

    Description:
        - `mongomodel.generic` (niveau `log_level`): requêtes exécutées, événements de connexion
        - `mongomodel.errors` (ERROR+): erreurs d'index, transactions annulées
        - Rotation quotidienne des fichiers seulement si `logs_dir` est configuré ;
          sinon les messages remontent aux handlers de l'application hôte.
        - `DataLogger` JSON seulement si `log_data` est activé.

    Returns:
        tuple: (logger_generic, logger_errors, data_logger | None)
    """
    settings = get_settings()
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    generic_logger = logging.getLogger("mongomodel.generic")
    generic_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    error_logger = logging.getLogger("mongomodel.errors")
    error_logger.setLevel(logging.ERROR)

    data_logger: Optional[DataLogger] = None

    if settings.logs_dir:
        logs_dir = Path(settings.logs_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)

        if not generic_logger.handlers:  # Éviter les doublons
            generic_logger.addHandler(_file_handler(logs_dir / "generic.log", formatter))
        if not error_logger.handlers:
            error_logger.addHandler(_file_handler(logs_dir / "errors.log", formatter))

        if settings.log_data:
            data_logger = DataLogger(str(logs_dir))

    return generic_logger, error_logger, data_logger


# Instance globale (lazy initialization)
_loggers: Optional[tuple[logging.Logger, logging.Logger, Optional[DataLogger]]] = None


def get_loggers() -> tuple[logging.Logger, logging.Logger, Optional[DataLogger]]:
    """Retourne les loggers configurés (singleton)."""
    global _loggers
    if _loggers is None:
        _loggers = setup_logging()
    return _loggers


def session_repr(session: Any) -> str:
    """Rendu compact d'une session: `ClientSession(<uuid>)`."""
    try:
        sid = session.session_id["id"]
        return f"ClientSession({sid.as_uuid()})"
    except (AttributeError, KeyError, TypeError, ValueError):
        return "ClientSession(?)"


def _loggable(arg: Any) -> Any:
    if isinstance(arg, dict) and "session" in arg:
        arg = dict(arg)
        session = arg["session"]
        if session is not None and not isinstance(session, str):
            arg["session"] = session_repr(session) if is_client_session(session) else repr(session)
    return arg


def log_query(label: str, *args: Any) -> None:
    """Journalise une requête exécutée.

    Description:
        Écrit `Query Executed:: <db>.<collection>.<méthode>(...)` sur le logger générique,
        arguments rendus avec `rich.pretty.pretty_repr`. Les sessions sont réduites à leur id.
        Si le `DataLogger` est actif, les arguments bruts sont aussi archivés en JSON.

    Args:
        label (str): `<db>.<collection>.<méthode>`.
        *args: Arguments de la requête (filtre, pipeline, options...).
    """
    generic_logger, _, data_logger = get_loggers()
    rendered = [_loggable(arg) for arg in args if arg is not None]
    body = ",\n\t".join(pretty_repr(arg) for arg in rendered)
    generic_logger.info("Query Executed:: %s(\n\t%s\n)", label, body)

    if data_logger is not None:
        data_logger.log_data(label, {"args": rendered})
