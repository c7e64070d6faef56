"""roomchat application configuration.

Loads settings from two YAML files:
  * roomchat.settings.yaml  - non-secret configuration
  * roomchat.secrets.yaml   - secrets (never committed)

Relative ``database.path`` values resolve against the directory holding the
settings file, so the service can be started from any working directory.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("roomchat.settings.yaml")
SECRETS_FILE  = Path("roomchat.secrets.yaml")


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
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class DatabaseSettings(BaseModel):
    """Where the DuckDB file lives. ``:memory:`` keeps everything in-process."""
    path: str = "roomchat.duckdb"


class ChatSettings(BaseModel):
    default_room_key:   str = "global"
    default_room_title: str = "General chat"
    max_text_length:    int = Field(default=5000, ge=1)
    max_attachments:    int = Field(default=10, ge=0)
    default_page_size:  int = Field(default=30, ge=1)
    max_page_size:      int = Field(default=200, ge=1)
    default_search_limit: int = Field(default=50, ge=1)
    max_search_limit:   int = Field(default=200, ge=1)


class NotificationSettings(BaseModel):
    reply_cache_size: int = Field(default=200, ge=1)


class AppConfig(BaseModel):
    server:        ServerSettings       = Field(default_factory=ServerSettings)
    logging:       LoggingSettings      = Field(default_factory=LoggingSettings)
    database:      DatabaseSettings     = Field(default_factory=DatabaseSettings)
    chat:          ChatSettings         = Field(default_factory=ChatSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    secrets:       Secrets              = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_database_path(config: AppConfig, base_dir: Path) -> None:
    raw = config.database.path
    if raw == ":memory:":
        return
    path = Path(raw)
    if not path.is_absolute():
        config.database.path = str(base_dir / path)


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.with_name(SECRETS_FILE.name)

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    _resolve_database_path(config, settings_path.resolve().parent)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, default_room=%s)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.chat.default_room_key,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Replace the process-wide config (``None`` forces a reload)."""
    global _config
    _config = config
