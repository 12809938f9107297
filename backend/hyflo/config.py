"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


DEFAULT_JWT_SECRET = "change-me-in-production"


class Settings(BaseSettings):
    """Application settings."""

    # App
    APP_NAME: str = "HyFlo_Reading_Workflow"
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Database
    DATABASE_URL: str = "sqlite:///./hyflo.db"
    DATABASE_ECHO: bool = False

    # JWT (tokens are issued by the external auth service, only verified here)
    JWT_SECRET_KEY: str = DEFAULT_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    JWT_LEEWAY_SECONDS: int = 30  # clock skew tolerance for exp validation

    # Workflow
    VALIDATOR_AUTHORITY: str = "VALIDATE_READING"
    NOTES_MAX_LENGTH: int = 500
    REJECTION_REASON_MIN_LENGTH: int = 5

    # Live notifications
    HEARTBEAT_INTERVAL_SECONDS: float = 10.0
    HEARTBEAT_MISSED_LIMIT: int = 3
    SESSION_QUEUE_MAXSIZE: int = 100

    # Client reconnect policy (advertised to clients on connect)
    RECONNECT_BASE_DELAY_SECONDS: float = 1.0
    RECONNECT_MAX_DELAY_SECONDS: float = 30.0
    RECONNECT_MAX_ATTEMPTS: int = 10

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
