"""Configuration management for the Voting API service."""
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service configuration
    SERVICE_NAME: str = "voting-api"
    API_VERSION: str = "v1"
    DEBUG: bool = False

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Storage backend: "postgres" or "memory"
    STORAGE_BACKEND: str = "postgres"

    # PostgreSQL configuration
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "versus_db"
    POSTGRES_USER: str = "versus_user"
    POSTGRES_PASSWORD: str = "versus_pass"
    POSTGRES_POOL_MIN_SIZE: int = 5
    POSTGRES_POOL_MAX_SIZE: int = 20
    POSTGRES_COMMAND_TIMEOUT: float = 10.0

    # RabbitMQ configuration (notification outbox)
    RABBITMQ_HOST: str = "rabbitmq"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_POOL_SIZE: int = 10
    NOTIFICATION_EXCHANGE: str = "notifications.exchange"
    NOTIFICATION_ROUTING_KEY: str = "vote.completed"

    # Redis configuration (identity tokens)
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    AUTH_TOKEN_PREFIX: str = "auth_tokens"

    # Rate limiting
    RATE_LIMIT: str = "100/second"
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # CORS settings
    CORS_ORIGINS: list = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list = ["*"]
    CORS_ALLOW_HEADERS: list = ["*"]

    # Read-modify-write retries
    MAX_RETRY_ATTEMPTS: int = 5
    RETRY_DELAY_SECONDS: float = 0.05

    # Background sweep deactivating tests past their end date
    EXPIRY_SWEEP_INTERVAL_SECONDS: float = 60.0

    # Site settings
    DEFAULT_LANGUAGE: str = "tr"
    SUPPORTED_LANGUAGES: list = ["tr", "en", "de", "fr"]
    UNKNOWN_CATEGORY_LABEL: str = "Unknown category"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def postgres_dsn(self) -> str:
        """Generate PostgreSQL connection string."""
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Generate RabbitMQ connection URL."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}/"
        )

    @property
    def redis_url(self) -> str:
        """Generate Redis connection URL."""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


settings = Settings()
