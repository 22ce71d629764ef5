"""Secure chat relay configuration.

Loads settings from two YAML files:
  * chat.settings.yaml: non-secret configuration
  * chat.secrets.yaml: secrets (never committed)

Both files are optional; missing files fall back to model defaults.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chat.settings.yaml")
SECRETS_FILE  = Path("chat.secrets.yaml")


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
    port:            int       = 3001
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class AuthSettings(BaseModel):
    algorithm:            str = "HS256"
    token_expire_minutes: int = 24 * 60


class SessionSettings(BaseModel):
    """Real-time session behaviour."""
    idle_timeout_seconds: float = 300.0  # 0 disables
    outbound_queue_size:  int   = 256
    require_join:         bool  = False

    @field_validator("outbound_queue_size")
    @classmethod
    def _positive_queue(cls, v: int) -> int:
        if v < 1:
            raise ValueError("outbound_queue_size must be >= 1")
        return v

    @field_validator("idle_timeout_seconds")
    @classmethod
    def _non_negative_timeout(cls, v: float) -> float:
        if v < 0:
            raise ValueError("idle_timeout_seconds must be >= 0")
        return v


class StorageSettings(BaseModel):
    backend:              Literal["memory", "duckdb"] = "memory"
    path:                 str                         = "chat_messages.duckdb"
    max_history_per_room: int                         = 0  # 0 = unbounded


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_data = _load_yaml(Path(settings_path) if settings_path else SETTINGS_FILE)
    secrets_data  = _load_yaml(Path(secrets_path) if secrets_path else SECRETS_FILE)

    # Secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, storage=%s, require_join=%s)",
        config.server.host,
        config.server.port,
        config.storage.backend,
        config.session.require_join,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config (used by tests)."""
    global _config
    _config = None
