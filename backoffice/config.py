"""
Configuration management.
Simple .env based config for VPS deployment.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # SalesDrive API
    salesdrive_api_url: str = ""
    salesdrive_api_key: str = ""
    salesdrive_form_key: str = ""

    # Database
    database_path: str = "./data/app.db"

    # Automatic sync
    auto_sync_enabled: bool = True
    sync_interval_minutes: int = 60
    sync_timeout_seconds: int = 600

    # Logging
    log_level: str = "INFO"


# Global settings instance
settings = Settings()
