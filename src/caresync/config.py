"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration

# Path Google posts push notifications to, relative to webhook_base_url
WEBHOOK_PATH = "/integrations/google/webhook"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Google OAuth client used to refresh per-user tokens
    google_client_id: str = Field(..., description="Google OAuth Client ID")
    google_client_secret: str = Field(..., description="Google OAuth Client Secret")
    google_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint"
    )
    google_scopes: List[str] = Field(
        default=["https://www.googleapis.com/auth/calendar"],
        description="Google API scopes"
    )

    # Application Configuration
    app_name: str = Field(default="caresync", description="Application name")
    app_base_url: str = Field(
        default="http://localhost:5173",
        description="Base URL embedded as the event source link"
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".caresync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    # Performance Configuration
    max_concurrent_requests: int = Field(default=10, ge=1, le=100)
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Deadline for a single Google API call"
    )

    # Realtime notifier
    plan_update_url: Optional[str] = Field(
        default=None,
        description="Endpoint that receives plan-updated notifications"
    )

    # Push notifications; watch channels are only opened when this is set
    webhook_base_url: Optional[str] = Field(
        default=None,
        description="Public base URL Google can reach for watch notifications"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            return f"sqlite:///{values['data_dir']}/caresync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @property
    def webhook_address(self) -> Optional[str]:
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url.rstrip('/')}{WEBHOOK_PATH}"

    def ensure_directories(self):
        """Create the data directory with owner-only permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def validate_required_settings(self) -> List[str]:
        """Return the names of required settings that are empty."""
        missing = []
        if not self.google_client_id:
            missing.append('GOOGLE_CLIENT_ID')
        if not self.google_client_secret:
            missing.append('GOOGLE_CLIENT_SECRET')
        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Write an example .env file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# CareSync Configuration
# Copy this file to .env and fill in your OAuth client

GOOGLE_CLIENT_ID=your_google_client_id_here
GOOGLE_CLIENT_SECRET=your_google_client_secret_here

DEBUG=false
LOG_LEVEL=INFO
APP_BASE_URL=https://app.example.org

# DATABASE_URL=postgresql+psycopg2://caresync@localhost/caresync
# PLAN_UPDATE_URL=http://localhost:8080/internal/plan-updated
# WEBHOOK_BASE_URL=https://sync.example.org

SYNC_CONFIG__LOOKBACK_DAYS=30
SYNC_CONFIG__DEBOUNCE_MS=15000
SYNC_CONFIG__RETRY_BASE_MS=60000
SYNC_CONFIG__RETRY_MAX_MS=300000
SYNC_CONFIG__POLL_INTERVAL_MS=1800000
SYNC_CONFIG__ENABLE_POLLING_FALLBACK=false
SYNC_CONFIG__DEFAULT_TIME_ZONE=America/New_York
SYNC_CONFIG__MANAGED_CALENDAR_NAME=CareSync

MAX_CONCURRENT_REQUESTS=10
REQUEST_TIMEOUT_SECONDS=30
'''

    with open(path, 'w') as f:
        f.write(example_content)
