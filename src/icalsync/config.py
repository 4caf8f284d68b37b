# src/icalsync/config.py
"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncConfiguration


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR") or None,
    )

    # CalDAV
    caldav_server_url: str = Field(
        default="https://caldav.icloud.com/",
        description="Default CalDAV base URL for new accounts"
    )

    # Application Configuration
    app_name: str = Field(default="icalsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".icalsync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Sync Configuration
    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    # Performance Configuration
    max_concurrent_accounts: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Accounts synchronized in parallel during a scheduled run"
    )
    request_timeout_seconds: float = Field(
        default=30,
        gt=0,
        le=300,
        description="HTTP request timeout"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @model_validator(mode='after')
    def set_default_database_url(self):
        """Set default SQLite database URL if not provided."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir}/icalsync.db"
        return self

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('caldav_server_url')
    def validate_caldav_server_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError("CalDAV server URL must start with http:// or https://")
        return v

    def ensure_directories(self):
        """Create the data directory with owner-only permissions."""
        if self.database_url.startswith('sqlite:///'):
            self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        env_file: Optional path to a dotenv file overriding ``.env``

    Returns:
        Settings instance
    """
    if env_file:
        settings = Settings(_env_file=env_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# icalsync configuration
# Copy this file to .env and adjust as needed

# Default CalDAV server for new accounts
CALDAV_SERVER_URL=https://caldav.icloud.com/

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Storage Configuration (optional)
# DATA_DIR=~/.icalsync
# DATABASE_URL=sqlite:///~/.icalsync/icalsync.db

# Performance Configuration
MAX_CONCURRENT_ACCOUNTS=4
REQUEST_TIMEOUT_SECONDS=30

# Sync Configuration
SYNC_CONFIG__RETRY_ATTEMPTS=3
SYNC_CONFIG__RETRY_DELAY_SECONDS=2
SYNC_CONFIG__RETRY_MAX_DELAY_SECONDS=30
SYNC_CONFIG__DEFAULT_SYNC_INTERVAL_MINUTES=30
SYNC_CONFIG__PUSH_LOCAL_UPDATES=false
'''

    with open(path, 'w') as f:
        f.write(example_content)
