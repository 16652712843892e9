"""Configuration management using pydantic-settings"""

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Process-level settings loaded from environment variables.

    These require a restart to change. Runtime settings that the dashboard can
    edit (credentials, destinations, deletion policy) live in the store, see
    ``distributor.services.settings_service``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Configuration
    environment: str = Field(default="production", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="error", description="Log level: debug, info, warning, error (default: error for production)")

    # Storage Layout
    data_dir: Path = Field(default=Path("./data"), description="Directory holding the record store")
    config_dir: Path = Field(default=Path("./config"), description="Directory of the legacy settings.json")
    log_dir: Path = Field(default=Path("./logs"), description="Directory of the append-only audit files")
    upload_dir: Path = Field(default=Path("./uploads"), description="Temporary location of received files")
    photos_dir: Path = Field(default=Path("./photos"), description="Fallback placement when no destination is enabled")
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy URL, derived from data_dir when unset")

    # Store
    store_flush_interval_seconds: int = Field(default=5, description="Seconds between periodic store flushes")

    # Login Rate Limiter
    rate_limit_max_attempts: int = Field(default=5, description="Failed logins allowed per window")
    rate_limit_window_minutes: int = Field(default=15, description="Length of the failure window")
    rate_limit_sweep_minutes: int = Field(default=5, description="Interval of the expired-entry sweep")

    # Remote Destinations
    token_refresh_interval_minutes: int = Field(default=45, description="Proactive credential refresh interval")
    upload_timeout_seconds: int = Field(default=300, description="Total timeout of a remote upload request")

    # Ingestion channel (informational, the transfer server is external)
    ftp_host: str = "0.0.0.0"
    ftp_port: int = 21

    # Web Dashboard API
    web_host: str = "0.0.0.0"
    web_port: int = 3001

    @model_validator(mode="before")
    @classmethod
    def normalize_empty_values(cls, data: dict) -> dict:
        """Map NODE_ENV to ENVIRONMENT and drop empty optional values"""
        if isinstance(data, dict):
            if "NODE_ENV" in data and "ENVIRONMENT" not in data:
                data["ENVIRONMENT"] = data["NODE_ENV"]

            # DATABASE_URL= in a .env file means "derive it"
            for key in ("database_url", "DATABASE_URL"):
                if key in data and not str(data[key] or "").strip():
                    data[key] = None
        return data

    @model_validator(mode="after")
    def set_derived_defaults(self) -> "AppConfig":
        """Set environment-specific log level and derived database URL"""
        if self.environment == "production" and not os.getenv("LOG_LEVEL"):
            self.log_level = "error"

        if not self.database_url:
            db_path = (self.data_dir / "photo-distributor.db").as_posix()
            self.database_url = f"sqlite:///{db_path}"

        return self

    @property
    def rate_limit_window_seconds(self) -> float:
        return self.rate_limit_window_minutes * 60.0


# Global config instance
config = AppConfig()
