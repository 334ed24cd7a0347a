"""
Application configuration using Pydantic settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_name: str = "Dealseries"

    # Database
    database_url: str = "sqlite:///./data/db.sqlite"

    # Recurring scheduler
    recurring_enabled: bool = True  # Kill switch, toggled without a deploy
    recurring_dry_run: bool = False  # Staging: log what would happen, mutate nothing
    recurring_batch_size: int = 50
    recurring_max_consecutive_failures: int = 3
    recurring_claim_lease_seconds: int = 300
    recurring_default_due_date_offset: int = 30  # Days from issue date to due date

    # Upcoming notifications
    upcoming_notification_hours: int = 24
    upcoming_notification_batch_size: int = 100

    default_currency: str = "USD"

    # Worker
    log_level: str = "INFO"

    # Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    frontend_url: str = "http://localhost:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


# Global settings instance
settings = Settings()
