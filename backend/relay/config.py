"""Chat Drive Relay configuration.

Loads settings from two YAML files:
  * relay.settings.yaml: non-secret configuration
  * relay.secrets.yaml:  secrets (never committed)

A handful of environment variables override the YAML values so container
deployments can tune the relay without shipping a settings file:
  * MAX_CONCURRENT_UPLOADS, TEMP_DIR, DATA_DIR, PORT, LOG_LEVEL,
    DEFAULT_ADMIN_PHONE
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path(os.environ.get("RELAY_SETTINGS_FILE", "relay.settings.yaml"))
SECRETS_FILE  = Path(os.environ.get("RELAY_SECRETS_FILE", "relay.secrets.yaml"))


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class GoogleSecrets(BaseModel):
    client_id:     Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token:  Optional[str] = None


class Secrets(BaseModel):
    google: GoogleSecrets = Field(default_factory=GoogleSecrets)
    # Shared secret a transport bridge sends in X-Relay-Token to POST /messages.
    ingest_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000


class LoggingSettings(BaseModel):
    level: str = "info"


class BotSettings(BaseModel):
    """Chat-facing behaviour: accepted media and command syntax."""
    name:           str       = "WhatsApp Drive Bot"
    version:        str       = "2.0.0"
    max_file_size:  int       = 100 * 1024 * 1024
    command_prefix: str       = "."
    reply_timeout_seconds: float = 30.0
    supported_types: List[str] = Field(default_factory=lambda: [
        "image/jpeg", "image/png", "image/gif", "image/webp", "image/bmp",
        "video/mp4", "video/avi", "video/mov", "video/wmv", "video/flv",
        "audio/mpeg", "audio/wav", "audio/ogg", "audio/mp3", "audio/aac",
        "application/pdf", "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain", "text/csv", "application/json", "application/xml",
    ])
    # Stickers arrive as webp; they are never worth relaying.
    blocked_types: List[str] = Field(default_factory=lambda: [
        "image/webp",
        "application/x-vnd.whatsapp.sticker",
    ])


class UploadSettings(BaseModel):
    """Upload queue tuning."""
    max_concurrent:                int             = 3
    max_queue_size:                Optional[int]   = 50
    progress_interval_seconds:     float           = 1.0
    progress_high_water:           float           = 90.0
    progress_buffer_size:          int             = 100
    duplicate_detection:           bool            = True
    duplicate_max_age_hours:       float           = 24.0
    housekeeping_interval_seconds: float           = 3600.0
    upload_timeout_seconds:        Optional[float] = None
    retry_attempts:                int             = 0
    retry_initial_delay:           float           = 1.0
    retry_max_delay:               float           = 30.0

    @field_validator("max_concurrent")
    @classmethod
    def _positive_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrent must be at least 1")
        return v

    @field_validator("max_queue_size")
    @classmethod
    def _positive_queue_size(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("max_queue_size must be at least 1 (or null for unbounded)")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def _non_negative_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("retry_attempts cannot be negative")
        return v

    @model_validator(mode="after")
    def _high_water_below_completion(self) -> "UploadSettings":
        if not 0 < self.progress_high_water < 100:
            raise ValueError("progress_high_water must be between 0 and 100 (exclusive)")
        return self


class FileSettings(BaseModel):
    temp_dir:                  str   = "/app/temp"
    data_dir:                  str   = "/app/data"
    max_temp_file_age_seconds: float = 3600.0


class AdminSettings(BaseModel):
    """Admin store location and the bootstrap super admin."""
    enabled:         bool          = True
    # Defaults to <files.data_dir>/admin.duckdb
    db_file:         Optional[str] = None
    default_admin:   Optional[str] = None
    country_code:    str           = "91"
    audit_log_limit: int           = 1000


class HealthSettings(BaseModel):
    check_interval_seconds:  float = 30.0
    memory_warning_percent:  float = 80.0
    memory_critical_percent: float = 90.0
    success_rate_threshold:  float = 80.0
    max_queue_threshold:     int   = 20
    max_uptime_hours:        float = 168.0


class LocalStorageSettings(BaseModel):
    base_dir:        str = "var/storage"
    public_base_url: str = "http://localhost:3000"


class GoogleDriveSettings(BaseModel):
    folder_id:       Optional[str] = None
    make_public:     bool          = True
    timeout_seconds: float         = 120.0


class StorageSettings(BaseModel):
    provider:     Literal["local", "google_drive"] = "local"
    local:        LocalStorageSettings = Field(default_factory=LocalStorageSettings)
    google_drive: GoogleDriveSettings  = Field(default_factory=GoogleDriveSettings)


class AppSettings(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    bot:     BotSettings     = Field(default_factory=BotSettings)
    upload:  UploadSettings  = Field(default_factory=UploadSettings)
    files:   FileSettings    = Field(default_factory=FileSettings)
    health:  HealthSettings  = Field(default_factory=HealthSettings)
    admin:   AdminSettings   = Field(default_factory=AdminSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

# env var -> (section, key)
_ENV_OVERRIDES = {
    "MAX_CONCURRENT_UPLOADS": ("upload", "max_concurrent"),
    "TEMP_DIR":               ("files", "temp_dir"),
    "DATA_DIR":               ("files", "data_dir"),
    "PORT":                   ("server", "port"),
    "LOG_LEVEL":              ("logging", "level"),
    "DEFAULT_ADMIN_PHONE":    ("admin", "default_admin"),
}


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay environment variables on top of the YAML settings.

    Values stay strings; pydantic coerces them to the field types.
    """
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None or value == "":
            continue
        data.setdefault(section, {})
        if data[section] is None:
            data[section] = {}
        data[section][key] = value
        logger.debug("Config override from env: %s -> %s.%s", env_name, section, key)
    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file or SETTINGS_FILE)
    secrets_data  = _load_yaml(secrets_file or SECRETS_FILE)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data
    settings_data = _apply_env_overrides(settings_data)

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, storage=%s, max_concurrent=%s, max_queue_size=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.provider,
        app_settings.upload.max_concurrent,
        app_settings.upload.max_queue_size,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (for testing)."""
    global _config
    _config = None
