"""Chat backend application configuration.

Loads settings from two YAML files:
  * chat.settings.yaml: non-secret configuration
  * chat.secrets.yaml: secrets (never committed)

Both files are optional. Missing files fall back to defaults so the test
suite and local development work without any configuration on disk.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chat.settings.yaml")
SECRETS_FILE  = Path("chat.secrets.yaml")

JWT_SECRET_ENV = "CHAT_JWT_SECRET"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class DatabaseSettings(BaseModel):
    """DuckDB location. ``:memory:`` keeps everything in process."""
    path: str = "chat.duckdb"


class AuthSettings(BaseModel):
    token_expire_minutes: int = 60 * 24 * 7
    algorithm:            str = "HS256"


class ChatSettings(BaseModel):
    last_message_preview_length: int = 500
    max_text_length:             int = 2000
    default_page_size:           int = 50
    max_page_size:               int = 100


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_database_path(config: AppConfig, settings_path: Path) -> None:
    """Resolve a relative database path against the settings file directory."""
    raw = config.database.path
    if raw == ":memory:":
        return
    path = Path(raw)
    if path.is_absolute():
        return
    config.database.path = str(settings_path.resolve().parent / path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    secrets_path = Path(secrets_path) if secrets_path else SECRETS_FILE

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    _resolve_database_path(config, settings_path)

    env_secret = os.environ.get(JWT_SECRET_ENV)
    if env_secret:
        config.secrets.jwt.secret_key = env_secret
        logger.info("JWT secret taken from %s", JWT_SECRET_ENV)

    logger.info(
        "Settings loaded (server=%s:%s, database=%s, log_level=%s)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.logging.level,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Set (or clear) the process-wide configuration."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget the cached configuration so the next call reloads it."""
    set_config(None)
