"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import pytz

from .models import SyncConfiguration

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Replica settings read from the environment and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR"),
    )

    # Sync peer
    api_base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL of the sync peer (POST {base}/sync/events)"
    )
    sync_channel: str = Field(
        default="events",
        description="Name of the persisted sync cursor for this replica"
    )

    # Provider OAuth
    google_client_id: Optional[str] = Field(None, description="Google OAuth Client ID")
    outlook_client_id: Optional[str] = Field(None, description="Microsoft application (client) ID")
    outlook_tenant_id: str = Field(default="common", description="Microsoft tenant")
    outlook_scopes: List[str] = Field(
        default=["offline_access", "Calendars.ReadWrite", "User.Read"],
        description="Microsoft Graph scopes requested on refresh"
    )

    # Application
    app_name: str = Field(default="coachsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )
    default_timezone: str = Field(
        default="UTC",
        description="Zone applied to floating ICS times without a known TZID"
    )

    # Storage
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".coachsync",
        description="Directory holding the local database"
    )
    database_url: str = Field(
        default="",
        description="SQLAlchemy URL; empty means coachsync.db inside data_dir"
    )

    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Sync protocol and import tuning"
    )

    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Timeout applied to every peer and provider request"
    )

    @validator("data_dir", pre=True)
    def absolute_data_dir(cls, v):
        return Path(v).expanduser().absolute()

    @validator("database_url")
    def default_sqlite_url(cls, v, values):
        """Fall back to a SQLite file in the data directory."""
        data_dir = values.get("data_dir")
        if v or data_dir is None:
            return v
        return f"sqlite:///{data_dir / 'coachsync.db'}"

    @validator('api_base_url')
    def strip_trailing_slash(cls, v):
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("api_base_url must be an http(s) URL")
        return v.rstrip("/")

    @validator("log_level")
    def known_log_level(cls, v):
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @validator('default_timezone')
    def validate_timezone(cls, v):
        """Validate that the zone is known to pytz."""
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def timezone(self):
        return pytz.timezone(self.default_timezone)

    @property
    def sync_endpoint(self) -> str:
        return f"{self.api_base_url}/sync/events"

    def account_endpoint(self, account_id: str, action: str) -> str:
        """URL of a backend account action such as ``refresh`` or ``tokens``."""
        return f"{self.api_base_url}/accounts/{account_id}/{action}"

    def ensure_directories(self):
        """Create the data directory, readable by the owner only."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Read settings, preferring ``config_file`` over ./.env when given."""
    settings = Settings(_env_file=config_file) if config_file else Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Write a commented .env template to ``path``."""
    template = '''# coachsync configuration
# Copy this file to .env and adjust the values

# Sync peer
API_BASE_URL=http://127.0.0.1:8000
SYNC_CHANNEL=events

# Provider OAuth (used for direct token refresh)
# GOOGLE_CLIENT_ID=your_google_client_id_here
# OUTLOOK_CLIENT_ID=your_outlook_client_id_here
OUTLOOK_TENANT_ID=common

# Application
DEBUG=false
LOG_LEVEL=INFO
DEFAULT_TIMEZONE=UTC
REQUEST_TIMEOUT_SECONDS=30

# Sync tuning
SYNC_CONFIG__BATCH_SIZE=50
SYNC_CONFIG__ACK_CACHE_SIZE=1000
SYNC_CONFIG__SYNC_INTERVAL_SECONDS=300
SYNC_CONFIG__LOCAL_CHANGE_DELAY_SECONDS=2
SYNC_CONFIG__INITIAL_SYNC_DELAY_SECONDS=1
SYNC_CONFIG__RETRIGGER_DELAY_SECONDS=2
SYNC_CONFIG__MIN_REMOTE_PULL_INTERVAL_SECONDS=30
SYNC_CONFIG__SYNC_RETRY_ATTEMPTS=3
SYNC_CONFIG__MAX_OCCURRENCES=500

# Provider import window
SYNC_CONFIG__LOOKBACK_DAYS=7
SYNC_CONFIG__LOOKAHEAD_DAYS=30
SYNC_CONFIG__FIRST_SYNC_LOOKAHEAD_DAYS=3
SYNC_CONFIG__ACCOUNT_SYNC_INTERVAL_SECONDS=300
SYNC_CONFIG__ACCOUNT_CHANGE_DELAY_SECONDS=3

# Storage (optional)
# DATA_DIR=~/.coachsync
# DATABASE_URL=sqlite:///~/.coachsync/coachsync.db
'''
    path.write_text(template, encoding="utf-8")
