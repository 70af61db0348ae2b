import os
from pathlib import Path

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_database_url() -> str:
    """Get database URL, using an absolute path for the SQLite fallback.

    SQLite is for local development only. Set DATABASE_URL to a PostgreSQL
    connection string in any shared deployment: concurrent webhook workers
    rely on the unique constraints being enforced by a real server.
    """
    db_url = os.getenv("DATABASE_URL", "")
    if db_url:
        logger.info("Using DATABASE_URL from environment")
        return db_url

    db_path = Path(__file__).parent.parent.parent / "ridesync.db"
    db_url = f"sqlite:///{db_path.resolve()}"
    logger.warning(f"Using SQLite database (LOCAL DEV ONLY): {db_url}")
    return db_url


class Settings(BaseSettings):
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str = Field(default="", validation_alias="LOG_FILE")

    # Garmin OAuth2 / Health API
    garmin_client_id: str = Field(default="", validation_alias="GARMIN_CLIENT_ID")
    garmin_client_secret: str = Field(default="", validation_alias="GARMIN_CLIENT_SECRET")
    garmin_token_url: str = Field(
        default="https://diauth.garmin.com/di-oauth2-service/oauth/token",
        validation_alias="GARMIN_TOKEN_URL",
    )
    garmin_api_base_url: str = Field(
        default="https://apis.garmin.com/wellness-api/rest",
        validation_alias="GARMIN_API_BASE_URL",
    )
    garmin_webhook_token: str = Field(
        default="",
        validation_alias="GARMIN_WEBHOOK_TOKEN",
        description="Shared token expected on inbound webhooks (empty disables the check)",
    )

    # Inbound webhook protection
    webhook_rate_limit_requests: int = Field(default=100, validation_alias="WEBHOOK_RATE_LIMIT_REQUESTS")
    webhook_rate_limit_window_seconds: int = Field(default=60, validation_alias="WEBHOOK_RATE_LIMIT_WINDOW_SECONDS")
    webhook_max_body_bytes: int = Field(default=10 * 1024 * 1024, validation_alias="WEBHOOK_MAX_BODY_BYTES")

    # Outbound calls
    token_refresh_buffer_seconds: int = Field(default=300, validation_alias="TOKEN_REFRESH_BUFFER_SECONDS")
    http_timeout_seconds: float = Field(default=15.0, validation_alias="HTTP_TIMEOUT_SECONDS")
    file_download_timeout_seconds: float = Field(default=30.0, validation_alias="FILE_DOWNLOAD_TIMEOUT_SECONDS")

    # Backfill / sync
    backfill_max_days: int = Field(default=30, validation_alias="BACKFILL_MAX_DAYS")
    sync_default_days: int = Field(default=30, validation_alias="SYNC_DEFAULT_DAYS")

    # Reprocessing pass
    enable_reprocess_scheduler: bool = Field(default=True, validation_alias="ENABLE_REPROCESS_SCHEDULER")
    reprocess_interval_minutes: int = Field(default=5, validation_alias="REPROCESS_INTERVAL_MINUTES")
    reprocess_batch_size: int = Field(default=10, validation_alias="REPROCESS_BATCH_SIZE")
    reprocess_max_retries: int = Field(default=6, validation_alias="REPROCESS_MAX_RETRIES")
    reprocess_auth_retry_minutes: int = Field(default=60, validation_alias="REPROCESS_AUTH_RETRY_MINUTES")
    reprocess_auth_max_age_hours: int = Field(default=168, validation_alias="REPROCESS_AUTH_MAX_AGE_HOURS")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(valid_levels)}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("garmin_client_id", "garmin_client_secret")
    @classmethod
    def validate_garmin_credentials(cls, value: str) -> str:
        """Warn when Garmin credentials are missing.

        Empty values are allowed for local development; token refresh and
        backfill requests will fail until they are configured.
        """
        if not value:
            logger.warning(
                "GARMIN_CLIENT_ID and/or GARMIN_CLIENT_SECRET are not set. "
                "Token refresh and backfill requests will not work."
            )
        return value

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
