# mongomodel/core/settings.py
# Configuration de la couche ODM (URIs MongoDB, logs) chargée depuis l'environnement / .env.

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # === MongoDB ===
    # Une ou plusieurs URIs séparées par des virgules (index de connexion = position)
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "mongomodel"
    server_selection_timeout_ms: int = 30000

    # === Logs ===
    enable_logs: bool = False
    log_level: str = "INFO"
    logs_dir: Optional[str] = None
    log_data: bool = False

    model_config = SettingsConfigDict(
        env_prefix="MONGOMODEL_", env_file=".env", extra="ignore"
    )

    @property
    def mongodb_uris(self) -> list[str]:
        """Liste des URIs déclarées (ordre conservé, entrées vides ignorées)."""
        return [uri.strip() for uri in self.mongodb_uri.split(",") if uri.strip()]


@lru_cache
def get_settings() -> Settings:
    """Retourne l'instance de configuration (mise en cache)."""
    return Settings()
