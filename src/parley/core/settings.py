"""Application settings and configuration.

This module defines all configuration options for the Parley messaging service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Parley", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # Security and authentication
    secret_key: str = Field(alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./parley.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # JWT authentication settings (tokens are issued by the host application)
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24 * 7,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # Offline delivery queue
    delivery_retry_interval_seconds: float = Field(
        default=30.0,
        alias="DELIVERY_RETRY_INTERVAL_SECONDS",
    )
    delivery_max_retries: int = Field(default=10, alias="DELIVERY_MAX_RETRIES")
    delivery_pending_limit: int = Field(default=100, alias="DELIVERY_PENDING_LIMIT")

    # Presence: delay before an "offline" status is broadcast after disconnect
    presence_offline_grace_seconds: float = Field(
        default=5.0,
        alias="PRESENCE_OFFLINE_GRACE_SECONDS",
    )

    # Pagination defaults
    messages_page_size: int = Field(default=50, alias="MESSAGES_PAGE_SIZE")
    conversations_page_size: int = Field(default=20, alias="CONVERSATIONS_PAGE_SIZE")

    # Push-notification relay for offline recipients (disabled when unset)
    push_relay_url: str | None = Field(default=None, alias="PUSH_RELAY_URL")
    push_relay_timeout_seconds: float = Field(
        default=2.0,
        alias="PUSH_RELAY_TIMEOUT_SECONDS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides.

        Returns:
            The active database URL (test database if in testing mode, otherwise production)
        """
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url


settings = Settings()  # type: ignore[call-arg]
